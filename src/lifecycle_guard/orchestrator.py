"""
Mutation orchestrator: the single entry point for reads and writes on
posts, orders, users and the catalog.

Each request goes through the same sequence:

1. resolve the actor from the credential (Unauthenticated on failure)
2. load the resource (NotFound if absent)
3. ask the lifecycle policy for a decision
4. if allowed, perform every write inside one database.atomic() block

A failure anywhere in step 4 rolls back the whole block, so parent fields
and child rows (tags, order lines) always change together. Optimistic
version checks turn a lost race into ConflictError instead of a silent
overwrite.
"""
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lifecycle_guard import policy
from lifecycle_guard.config import Settings, get_settings
from lifecycle_guard.database import atomic, reading
from lifecycle_guard.domain import (
    Actor,
    ChangeOrderStatus,
    ChangeProductPrice,
    CreateCategory,
    CreateOrder,
    CreatePost,
    CreateProduct,
    DeleteCategory,
    DeleteOrder,
    DeletePost,
    DeleteProduct,
    DeleteUser,
    DenyReason,
    EditPost,
    EditProduct,
    OrderStatus,
    PostStatus,
    ReadCategory,
    ReadOrder,
    ReadPost,
    ReadProduct,
    RegisterUser,
    RenameCategory,
    Role,
    Supplied,
    TransitionResult,
)
from lifecycle_guard.errors import ConflictError, NotFoundError, UnauthenticatedError
from lifecycle_guard.identity import IdentityResolver, create_access_token, get_password_hash, verify_password
from lifecycle_guard.logging_config import DECISION_COUNT
from lifecycle_guard.models import Order, Post, Product, utcnow
from lifecycle_guard.repositories import (
    CatalogRepository,
    OrderRepository,
    PostRepository,
    UserRepository,
)
from lifecycle_guard.schemas import (
    CategoryDetailResponse,
    CategoryResponse,
    OrderResponse,
    PostResponse,
    ProductResponse,
    UserResponse,
)

logger = structlog.get_logger(__name__)


def post_to_dict(post: Post) -> Dict[str, Any]:
    return PostResponse.model_validate(post).model_dump(mode="json")


def order_to_dict(order: Order) -> Dict[str, Any]:
    return OrderResponse.model_validate(order).model_dump(mode="json")


def product_to_dict(product: Product) -> Dict[str, Any]:
    return ProductResponse.model_validate(product).model_dump(mode="json")


def user_to_dict(user) -> Dict[str, Any]:
    return UserResponse.model_validate(user).model_dump(mode="json")


class MutationOrchestrator:
    """Sequence identity, policy and persistence for one database session"""

    def __init__(self, db: Session, settings: Optional[Settings] = None,
                 identity: Optional[IdentityResolver] = None):
        self.db = db
        self.settings = settings or get_settings()
        self.identity = identity or IdentityResolver(db, self.settings)
        self.posts = PostRepository(db)
        self.orders = OrderRepository(db)
        self.users = UserRepository(db)
        self.catalog = CatalogRepository(db)

        self._handlers: Dict[type, Callable[[Optional[int], Actor, Any], TransitionResult]] = {
            CreatePost: self._create_post,
            ReadPost: self._read_post,
            EditPost: self._edit_post,
            DeletePost: self._delete_post,
            CreateOrder: self._create_order,
            ReadOrder: self._read_order,
            ChangeOrderStatus: self._change_order_status,
            DeleteOrder: self._delete_order,
            DeleteUser: self._delete_user,
            CreateCategory: self._create_category,
            RenameCategory: self._rename_category,
            CreateProduct: self._create_product,
            ChangeProductPrice: self._change_product_price,
            ReadProduct: self._read_product,
            EditProduct: self._edit_product,
            DeleteProduct: self._delete_product,
            ReadCategory: self._read_category,
            DeleteCategory: self._delete_category,
        }

    #==========================================================================
    # ENTRY POINTS
    #==========================================================================

    def request_transition(self, resource_id: Optional[int], credential: Optional[str],
                           change) -> TransitionResult:
        """Authenticate the caller, then apply `change` to `resource_id`"""
        actor = self._authenticate(credential, type(change).__name__)
        if isinstance(actor, TransitionResult):
            return actor
        return self.apply(resource_id, actor, change)

    def apply(self, resource_id: Optional[int], actor: Actor, change) -> TransitionResult:
        """
        Apply `change` for an already resolved actor.

        Denials come back as a TransitionResult. ConflictError and
        PersistenceUnavailableError propagate to the caller.
        """
        handler = self._handlers.get(type(change))
        if handler is None:
            raise TypeError(f"Unsupported change: {type(change).__name__}")

        try:
            result = handler(resource_id, actor, change)
        except NotFoundError as exc:
            result = TransitionResult.denied(DenyReason.NOT_FOUND, exc.message)

        self._record(type(change).__name__, resource_id, actor, result)
        return result

    def list_posts(self, credential: Optional[str], skip: int = 0, limit: int = 100,
                   author_id: Optional[int] = None, tag: Optional[str] = None) -> TransitionResult:
        """
        Published posts plus the caller's own drafts; an admin sees every post.

        `author_id` and `tag` narrow the same visible set, so filtering by
        another user's id never reveals their drafts.
        """
        actor = self._authenticate(credential, "ListPosts")
        if isinstance(actor, TransitionResult):
            return actor
        with reading(self.db):
            posts = self.posts.get_posts(actor.id, include_all=actor.is_admin, skip=skip, limit=limit,
                                         author_id=author_id, tag=tag)
            items = [post_to_dict(post) for post in posts]
        return TransitionResult.accepted({"items": items, "count": len(items)})

    def list_products(self, credential: Optional[str], category_id: Optional[int] = None) -> TransitionResult:
        actor = self._authenticate(credential, "ListProducts")
        if isinstance(actor, TransitionResult):
            return actor
        with reading(self.db):
            items = [product_to_dict(product) for product in self.catalog.get_products(category_id)]
        return TransitionResult.accepted({"items": items, "count": len(items)})

    def list_categories(self, credential: Optional[str]) -> TransitionResult:
        actor = self._authenticate(credential, "ListCategories")
        if isinstance(actor, TransitionResult):
            return actor
        with reading(self.db):
            items = [
                CategoryResponse(id=category.id, name=category.name, product_count=count).model_dump()
                for category, count in self.catalog.get_categories()
            ]
        return TransitionResult.accepted({"items": items, "count": len(items)})

    #==========================================================================
    # ACCOUNTS
    #==========================================================================

    def register_user(self, change: RegisterUser) -> TransitionResult:
        """Create a User-role account and hand back a token for it"""
        try:
            with atomic(self.db):
                if self.users.get_user_by_email(change.email) is not None:
                    return self._deny_anonymous("RegisterUser", DenyReason.DUPLICATE_NAME,
                                                "User with this email already exists")
                user = self.users.create_user(
                    {
                        "name": change.name,
                        "email": change.email,
                        "hashed_password": get_password_hash(change.password),
                        "role": Role.USER.value,
                        "is_active": True,
                    }
                )
        except IntegrityError:
            # Lost a race with a concurrent signup for the same email
            return self._deny_anonymous("RegisterUser", DenyReason.DUPLICATE_NAME,
                                        "User with this email already exists")

        DECISION_COUNT.labels(operation="RegisterUser", outcome="allowed").inc()
        logger.info("user_registered", user_id=user.id)
        return TransitionResult.accepted(
            {**user_to_dict(user), "access_token": create_access_token(user.id, self.settings)},
            "User registered successfully",
        )

    def login(self, email: str, password: str) -> TransitionResult:
        """Exchange email and password for an access token"""
        with reading(self.db):
            user = self.users.get_user_by_email(email)
        if user is None or not user.is_active or not verify_password(password, user.hashed_password):
            # One message for every failure so the response does not reveal which accounts exist
            return self._deny_anonymous("Login", DenyReason.UNAUTHENTICATED, "Invalid email or password")

        DECISION_COUNT.labels(operation="Login", outcome="allowed").inc()
        logger.info("user_logged_in", user_id=user.id)
        return TransitionResult.accepted(
            {
                "access_token": create_access_token(user.id, self.settings),
                "token_type": "bearer",
                "expires_in": self.settings.access_token_expire_minutes * 60,
                "user": user_to_dict(user),
            },
            "Login successful",
        )

    def current_user(self, credential: Optional[str]) -> TransitionResult:
        actor = self._authenticate(credential, "CurrentUser")
        if isinstance(actor, TransitionResult):
            return actor
        with reading(self.db):
            user = self.users.get_user_by_id(actor.id)
            return TransitionResult.accepted(user_to_dict(user))

    def list_orders(self, credential: Optional[str]) -> TransitionResult:
        """An admin sees all orders, a user only their own"""
        actor = self._authenticate(credential, "ListOrders")
        if isinstance(actor, TransitionResult):
            return actor
        with reading(self.db):
            orders = self.orders.get_orders(None if actor.is_admin else actor.id)
            items = [order_to_dict(order) for order in orders]
        return TransitionResult.accepted({"items": items, "count": len(items)})

    #==========================================================================
    # POSTS
    #==========================================================================

    def _create_post(self, _resource_id, actor: Actor, change: CreatePost) -> TransitionResult:
        with atomic(self.db):
            post = self.posts.create_post(
                {
                    "title": change.title,
                    "content": change.content,
                    "author_id": actor.id,
                    "status": PostStatus.DRAFT.value,
                    "created_at": utcnow(),
                },
                change.tags,
            )
        logger.info("post_created", post_id=post.id, user_id=actor.id)
        return TransitionResult.accepted(post_to_dict(post), "Post created successfully")

    def _read_post(self, post_id: int, actor: Actor, change: ReadPost) -> TransitionResult:
        with reading(self.db):
            post = self._load_post(post_id)
            decision = policy.can_transition(self.posts.state(post), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            return TransitionResult.accepted(post_to_dict(post))

    def _edit_post(self, post_id: int, actor: Actor, change: EditPost) -> TransitionResult:
        with atomic(self.db):
            post = self._load_post(post_id)
            decision = policy.can_transition(self.posts.state(post), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self._check_version(post.version, change.expected_version, post_id)

            if change.is_empty():
                return TransitionResult.accepted(post_to_dict(post), "Nothing to update")

            updates: Dict[str, Any] = {"updated_at": utcnow()}
            if isinstance(change.title, Supplied):
                updates["title"] = change.title.value
            if isinstance(change.content, Supplied):
                updates["content"] = change.content.value
            if isinstance(change.status, Supplied):
                updates["status"] = PostStatus(change.status.value).value
            self.posts.update_fields(post, updates)

            if isinstance(change.tags, Supplied):
                self.posts.replace_tags(post, change.tags.value)
            self.db.flush()

        logger.info("post_updated", post_id=post_id, user_id=actor.id)
        return TransitionResult.accepted(post_to_dict(post), "Post updated successfully")

    def _delete_post(self, post_id: int, actor: Actor, change: DeletePost) -> TransitionResult:
        with atomic(self.db):
            post = self._load_post(post_id)
            decision = policy.can_transition(self.posts.state(post), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self.posts.delete_post(post)
        logger.info("post_deleted", post_id=post_id, user_id=actor.id)
        return TransitionResult.accepted({"id": post_id}, "Post deleted successfully")

    #==========================================================================
    # ORDERS
    #==========================================================================

    def _create_order(self, _resource_id, actor: Actor, change: CreateOrder) -> TransitionResult:
        with atomic(self.db):
            unit_prices = self.catalog.unit_prices(item.product_id for item in change.items)
            decision = policy.validate_order_lines(
                change.items, unit_prices, self.settings.max_item_quantity
            )
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)

            priced_lines, total = policy.price_order_lines(change.items, unit_prices)
            order = self.orders.create_order(
                {
                    "user_id": actor.id,
                    "status": OrderStatus.PENDING.value,
                    "shipping_address": change.shipping_address,
                    "total_amount": total,
                    "order_date": utcnow(),
                },
                priced_lines,
            )
        logger.info("order_created", order_id=order.id, order_number=order.order_number,
                    user_id=actor.id, total_amount=str(total))
        return TransitionResult.accepted(order_to_dict(order), "Order created successfully")

    def _read_order(self, order_id: int, actor: Actor, change: ReadOrder) -> TransitionResult:
        with reading(self.db):
            order = self._load_order(order_id)
            decision = policy.can_transition(self.orders.state(order), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            return TransitionResult.accepted(order_to_dict(order))

    def _change_order_status(self, order_id: int, actor: Actor,
                             change: ChangeOrderStatus) -> TransitionResult:
        with atomic(self.db):
            order = self._load_order(order_id)
            decision = policy.can_transition(self.orders.state(order), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self._check_version(order.version, change.expected_version, order_id)
            previous = order.status
            self.orders.set_status(order, OrderStatus(change.status), utcnow())

        logger.info("order_status_changed", order_id=order_id, user_id=actor.id,
                    from_status=previous, to_status=OrderStatus(change.status).value)
        return TransitionResult.accepted(order_to_dict(order), "Order status updated successfully")

    def _delete_order(self, order_id: int, actor: Actor, change: DeleteOrder) -> TransitionResult:
        with atomic(self.db):
            order = self._load_order(order_id)
            decision = policy.can_transition(self.orders.state(order), actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self.orders.delete_order(order)
        logger.info("order_deleted", order_id=order_id, user_id=actor.id)
        return TransitionResult.accepted({"id": order_id}, "Order deleted successfully")

    #==========================================================================
    # USERS
    #==========================================================================

    def _delete_user(self, user_id: int, actor: Actor, change: DeleteUser) -> TransitionResult:
        # Decided before the lookup so self-delete is refused even for a missing row
        decision = policy.evaluate_user_delete(user_id, actor)
        if not decision.allowed:
            return TransitionResult.denied(decision.reason, decision.message)

        with atomic(self.db):
            user = self.users.get_user_by_id(user_id)
            if user is None or not user.is_active:
                raise NotFoundError("User not found", user_id)
            self.users.deactivate(user)
        logger.info("user_deactivated", target_user_id=user_id, user_id=actor.id)
        return TransitionResult.accepted(
            user_to_dict(user), "User deleted successfully"
        )

    #==========================================================================
    # CATALOG
    #==========================================================================

    def _create_category(self, _resource_id, actor: Actor, change: CreateCategory) -> TransitionResult:
        try:
            with atomic(self.db):
                taken = self.catalog.category_name_exists(change.name)
                decision = policy.evaluate_category_name(actor, change, taken)
                if not decision.allowed:
                    return TransitionResult.denied(decision.reason, decision.message)
                category = self.catalog.create_category(change.name)
        except IntegrityError:
            # Lost a race with a concurrent create of the same name
            return TransitionResult.denied(
                DenyReason.DUPLICATE_NAME, f"Category '{change.name}' already exists"
            )
        return TransitionResult.accepted(
            CategoryResponse.model_validate(category).model_dump(mode="json"),
            "Category created successfully",
        )

    def _rename_category(self, category_id: int, actor: Actor, change: RenameCategory) -> TransitionResult:
        try:
            with atomic(self.db):
                category = self._load(self.catalog.get_category_by_id, category_id, "Category")
                taken = self.catalog.category_name_exists(change.name, exclude_id=category_id)
                decision = policy.evaluate_category_name(actor, change, taken)
                if not decision.allowed:
                    return TransitionResult.denied(decision.reason, decision.message)
                category.name = change.name
                self.db.flush()
        except IntegrityError:
            return TransitionResult.denied(
                DenyReason.DUPLICATE_NAME, f"Category '{change.name}' already exists"
            )
        return TransitionResult.accepted(
            CategoryResponse.model_validate(category).model_dump(mode="json"),
            "Category updated successfully",
        )

    def _create_product(self, _resource_id, actor: Actor, change: CreateProduct) -> TransitionResult:
        with atomic(self.db):
            category_exists = None
            if change.category_id is not None:
                category_exists = self.catalog.get_category_by_id(change.category_id) is not None
            taken = self.catalog.product_name_exists(change.name)
            decision = policy.evaluate_product_change(actor, change, category_exists, name_taken=taken)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            product = self.catalog.create_product(
                {
                    "name": change.name,
                    "price": change.price,
                    "category_id": change.category_id,
                    "description": change.description,
                }
            )
        return TransitionResult.accepted(
            product_to_dict(product),
            "Product created successfully",
        )

    def _change_product_price(self, product_id: int, actor: Actor,
                              change: ChangeProductPrice) -> TransitionResult:
        # Existing orders keep the unit price captured on their lines
        with atomic(self.db):
            product = self._load(self.catalog.get_product_by_id, product_id, "Product")
            decision = policy.evaluate_product_change(actor, change)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            product.price = change.price
            self.db.flush()
        logger.info("product_price_changed", product_id=product_id, user_id=actor.id, price=str(change.price))
        return TransitionResult.accepted(
            product_to_dict(product),
            "Product price updated successfully",
        )

    def _read_product(self, product_id: int, actor: Actor, change: ReadProduct) -> TransitionResult:
        with reading(self.db):
            product = self._load(self.catalog.get_product_by_id, product_id, "Product")
            return TransitionResult.accepted(product_to_dict(product))

    def _edit_product(self, product_id: int, actor: Actor, change: EditProduct) -> TransitionResult:
        with atomic(self.db):
            product = self._load(self.catalog.get_product_by_id, product_id, "Product")
            category_exists = None
            if isinstance(change.category_id, Supplied):
                category_exists = self.catalog.get_category_by_id(change.category_id.value) is not None
            taken = isinstance(change.name, Supplied) and self.catalog.product_name_exists(
                change.name.value, exclude_id=product_id
            )
            decision = policy.evaluate_product_change(actor, change, category_exists, name_taken=taken)
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            if change.is_empty():
                return TransitionResult.accepted(product_to_dict(product), "Nothing to update")

            updates = {
                field: value.value
                for field, value in (
                    ("name", change.name),
                    ("description", change.description),
                    ("category_id", change.category_id),
                    ("price", change.price),
                )
                if isinstance(value, Supplied)
            }
            self.catalog.update_product(product, updates)
        logger.info("product_updated", product_id=product_id, user_id=actor.id, fields=sorted(updates))
        return TransitionResult.accepted(product_to_dict(product), "Product updated successfully")

    def _delete_product(self, product_id: int, actor: Actor, change: DeleteProduct) -> TransitionResult:
        with atomic(self.db):
            product = self._load(self.catalog.get_product_by_id, product_id, "Product")
            decision = policy.evaluate_catalog_delete(actor, "product", self.catalog.product_in_use(product_id))
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self.catalog.delete_product(product)
        logger.info("product_deleted", product_id=product_id, user_id=actor.id)
        return TransitionResult.accepted({"id": product_id}, "Product deleted successfully")

    def _read_category(self, category_id: int, actor: Actor, change: ReadCategory) -> TransitionResult:
        with reading(self.db):
            category = self._load(self.catalog.get_category_by_id, category_id, "Category")
            products = self.catalog.get_products(category_id)
            detail = CategoryDetailResponse(
                id=category.id,
                name=category.name,
                products=[ProductResponse.model_validate(product) for product in products],
            )
            return TransitionResult.accepted(detail.model_dump(mode="json"))

    def _delete_category(self, category_id: int, actor: Actor, change: DeleteCategory) -> TransitionResult:
        with atomic(self.db):
            category = self._load(self.catalog.get_category_by_id, category_id, "Category")
            decision = policy.evaluate_catalog_delete(
                actor, "category", self.catalog.category_has_products(category_id)
            )
            if not decision.allowed:
                return TransitionResult.denied(decision.reason, decision.message)
            self.catalog.delete_category(category)
        logger.info("category_deleted", category_id=category_id, user_id=actor.id)
        return TransitionResult.accepted({"id": category_id}, "Category deleted successfully")

    #==========================================================================
    # HELPERS
    #==========================================================================

    def _authenticate(self, credential: Optional[str], operation: str):
        try:
            return self.identity.resolve_actor(credential)
        except UnauthenticatedError as exc:
            DECISION_COUNT.labels(operation=operation, outcome=DenyReason.UNAUTHENTICATED.value).inc()
            logger.info("transition_denied", operation=operation, reason=DenyReason.UNAUTHENTICATED.value,
                        detail=exc.message)
            return TransitionResult.denied(DenyReason.UNAUTHENTICATED, exc.message)

    @staticmethod
    def _deny_anonymous(operation: str, reason: DenyReason, message: str) -> TransitionResult:
        DECISION_COUNT.labels(operation=operation, outcome=reason.value).inc()
        logger.info("transition_denied", operation=operation, reason=reason.value, detail=message)
        return TransitionResult.denied(reason, message)

    def _load(self, getter: Callable[[int], Any], resource_id: Optional[int], label: str):
        entity = getter(resource_id) if resource_id is not None else None
        if entity is None:
            raise NotFoundError(f"{label} not found", resource_id)
        return entity

    def _load_post(self, post_id: int) -> Post:
        return self._load(self.posts.get_post_by_id, post_id, "Post")

    def _load_order(self, order_id: int) -> Order:
        return self._load(self.orders.get_order_by_id, order_id, "Order")

    @staticmethod
    def _check_version(current: int, expected: Optional[int], resource_id: int) -> None:
        if expected is not None and expected != current:
            raise ConflictError(
                f"Resource {resource_id} is at version {current}, not {expected}", resource_id
            )

    @staticmethod
    def _record(operation: str, resource_id: Optional[int], actor: Actor, result: TransitionResult) -> None:
        outcome = "allowed" if result.ok else result.reason.value
        DECISION_COUNT.labels(operation=operation, outcome=outcome).inc()
        if result.ok:
            logger.info("transition_allowed", operation=operation, resource_id=resource_id, user_id=actor.id)
        else:
            logger.info("transition_denied", operation=operation, resource_id=resource_id,
                        user_id=actor.id, reason=outcome, detail=result.message)
