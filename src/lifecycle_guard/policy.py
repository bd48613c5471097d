"""
Lifecycle policy: who may do what to a post or an order, and which status
moves are legal.

Every function here is pure. Nothing is loaded or written; callers pass in
the resource state and whatever lookups the rule needs. Violations come
back as Decision.deny(...), never as exceptions.
"""
from decimal import Decimal
from typing import Dict, FrozenSet, Iterable, Mapping, Optional, Tuple

from lifecycle_guard.domain import (
    Actor,
    ChangeOrderStatus,
    CreateProduct,
    Decision,
    DeleteOrder,
    DeletePost,
    DenyReason,
    EditPost,
    EditProduct,
    OrderLineRequest,
    OrderStatus,
    PostStatus,
    ReadOrder,
    ReadPost,
    ResourceKind,
    ResourceState,
    Supplied,
)

# Allowed post status moves. Same-status is a no-op and is accepted so a
# partial update may resend the current status.
POST_TRANSITIONS: Dict[PostStatus, FrozenSet[PostStatus]] = {
    PostStatus.DRAFT: frozenset({PostStatus.DRAFT, PostStatus.PUBLISHED}),
    PostStatus.PUBLISHED: frozenset({PostStatus.PUBLISHED}),
}

ORDER_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.PROCESSING, OrderStatus.CANCELLED}),
    OrderStatus.PROCESSING: frozenset({OrderStatus.SHIPPED, OrderStatus.CANCELLED}),
    OrderStatus.SHIPPED: frozenset({OrderStatus.DELIVERED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

ORDER_TERMINAL_STATES: FrozenSet[OrderStatus] = frozenset(
    status for status, targets in ORDER_TRANSITIONS.items() if not targets
)

# Statuses from which the owning user (not only an Admin) may cancel
OWNER_CANCELLABLE: FrozenSet[OrderStatus] = frozenset({OrderStatus.PENDING})


def is_terminal_order_status(status: OrderStatus) -> bool:
    return status in ORDER_TERMINAL_STATES


def is_valid_order_transition(current: OrderStatus, requested: OrderStatus) -> bool:
    return requested in ORDER_TRANSITIONS.get(current, frozenset())


def is_owner_or_admin(actor: Actor, resource: ResourceState) -> bool:
    return actor.is_admin or actor.id == resource.owner_id


def can_transition(resource: ResourceState, actor: Actor, change) -> Decision:
    """Decide whether `actor` may apply `change` to an existing resource"""
    if resource.kind == ResourceKind.POST:
        return evaluate_post(resource, actor, change)
    if resource.kind == ResourceKind.ORDER:
        return evaluate_order(resource, actor, change)
    if resource.kind == ResourceKind.USER:
        return evaluate_user_delete(resource.id, actor)
    raise ValueError(f"Unknown resource kind: {resource.kind}")


#==============================================================================
# POSTS
#==============================================================================

def evaluate_post(post: ResourceState, actor: Actor, change) -> Decision:
    current = PostStatus(post.status)

    if isinstance(change, ReadPost):
        if current == PostStatus.PUBLISHED or is_owner_or_admin(actor, post):
            return Decision.allow()
        # Drafts of other authors are reported as missing
        return Decision.deny(DenyReason.NOT_FOUND, "Post not found")

    if not is_owner_or_admin(actor, post):
        return Decision.deny(DenyReason.NOT_OWNER, "Only the author or an admin may modify this post")

    if isinstance(change, DeletePost):
        return Decision.allow()

    if isinstance(change, EditPost):
        if isinstance(change.status, Supplied):
            requested = PostStatus(change.status.value)
            if requested not in POST_TRANSITIONS[current]:
                return Decision.deny(
                    DenyReason.INVALID_TRANSITION,
                    f"Post cannot move from {current.value} to {requested.value}",
                )
        return Decision.allow()

    raise TypeError(f"Unsupported post change: {type(change).__name__}")


#==============================================================================
# ORDERS
#==============================================================================

def evaluate_order(order: ResourceState, actor: Actor, change) -> Decision:
    current = OrderStatus(order.status)

    if isinstance(change, ReadOrder):
        if is_owner_or_admin(actor, order):
            return Decision.allow()
        return Decision.deny(DenyReason.NOT_FOUND, "Order not found")

    if not is_owner_or_admin(actor, order):
        return Decision.deny(DenyReason.NOT_OWNER, "Not authorized to modify this order")

    if isinstance(change, ChangeOrderStatus):
        return evaluate_order_status(current, OrderStatus(change.status), actor)

    if isinstance(change, DeleteOrder):
        if actor.is_admin or current == OrderStatus.PENDING:
            return Decision.allow()
        return Decision.deny(DenyReason.INVALID_TRANSITION, "Can only delete pending orders")

    raise TypeError(f"Unsupported order change: {type(change).__name__}")


def evaluate_order_status(current: OrderStatus, requested: OrderStatus, actor: Actor) -> Decision:
    """Status rule for an actor already known to be the owner or an Admin"""
    if not is_valid_order_transition(current, requested):
        return Decision.deny(
            DenyReason.INVALID_TRANSITION,
            f"Order cannot move from {current.value} to {requested.value}",
        )

    if actor.is_admin:
        return Decision.allow()

    if requested == OrderStatus.CANCELLED and current in OWNER_CANCELLABLE:
        return Decision.allow()

    if requested == OrderStatus.CANCELLED:
        message = f"Only an admin may cancel a {current.value.lower()} order"
    else:
        message = "Only an admin may advance order status"
    return Decision.deny(DenyReason.NOT_OWNER, message)


def validate_order_lines(
    items: Iterable[OrderLineRequest],
    unit_prices: Mapping[int, Decimal],
    max_quantity: int,
) -> Decision:
    """
    Check every line of a new order against the catalog snapshot.

    `unit_prices` maps each existing product id to its current price; a
    product missing from it does not exist. Lines are checked in order and
    the first failure wins.
    """
    items = list(items)
    if not items:
        return Decision.deny(DenyReason.QUANTITY_OUT_OF_RANGE, "Order must have at least one item")

    for item in items:
        if item.product_id not in unit_prices:
            return Decision.deny(
                DenyReason.REFERENCED_ENTITY_MISSING,
                f"Product with ID {item.product_id} not found",
            )
        quantity = item.quantity
        if isinstance(quantity, bool) or not isinstance(quantity, int) or not 1 <= quantity <= max_quantity:
            return Decision.deny(
                DenyReason.QUANTITY_OUT_OF_RANGE,
                f"Quantity for product {item.product_id} must be between 1 and {max_quantity}",
            )
    return Decision.allow()


def price_order_lines(
    items: Iterable[OrderLineRequest],
    unit_prices: Mapping[int, Decimal],
) -> Tuple[list, Decimal]:
    """Return [(line, unit_price)] and the order total, using prices as of now"""
    priced = [(item, Decimal(unit_prices[item.product_id])) for item in items]
    total = sum((price * item.quantity for item, price in priced), Decimal("0"))
    return priced, total.quantize(Decimal("0.01"))


#==============================================================================
# USERS AND CATALOG
#==============================================================================

def evaluate_user_delete(target_id: int, actor: Actor) -> Decision:
    # Self-delete is refused before anything else, whatever the role
    if target_id == actor.id:
        return Decision.deny(DenyReason.SELF_DELETE, "You cannot delete your own account")
    return require_admin(actor, "delete users")


def require_admin(actor: Actor, action: str) -> Decision:
    if actor.is_admin:
        return Decision.allow()
    return Decision.deny(DenyReason.NOT_OWNER, f"Only an admin may {action}")


def evaluate_category_name(actor: Actor, change, name_taken: bool) -> Decision:
    decision = require_admin(actor, "manage categories")
    if not decision.allowed:
        return decision
    if name_taken:
        return Decision.deny(DenyReason.DUPLICATE_NAME, f"Category '{change.name}' already exists")
    return Decision.allow()


def evaluate_product_change(actor: Actor, change, category_exists: Optional[bool] = None,
                            name_taken: bool = False) -> Decision:
    """
    Admin-only product maintenance.

    `category_exists` is only consulted when the change names a category;
    `name_taken` reports a case-insensitive clash with another product.
    """
    decision = require_admin(actor, "manage products")
    if not decision.allowed:
        return decision
    category_id = _requested_category(change)
    if category_id is not None and not category_exists:
        return Decision.deny(
            DenyReason.REFERENCED_ENTITY_MISSING,
            f"Category with ID {category_id} not found",
        )
    if name_taken:
        return Decision.deny(DenyReason.DUPLICATE_NAME, "Another product with the same name exists")
    return Decision.allow()


def _requested_category(change) -> Optional[int]:
    if isinstance(change, CreateProduct):
        return change.category_id
    if isinstance(change, EditProduct) and isinstance(change.category_id, Supplied):
        return change.category_id.value
    return None


def evaluate_catalog_delete(actor: Actor, label: str, in_use: bool) -> Decision:
    decision = require_admin(actor, f"delete {label}s")
    if not decision.allowed:
        return decision
    if in_use:
        if label == "category":
            message = "Cannot delete a category that still has products"
        else:
            message = "Cannot delete a product that appears on existing orders"
        return Decision.deny(DenyReason.IN_USE, message)
    return Decision.allow()

