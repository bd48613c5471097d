"""
Domain vocabulary shared by the policy, the orchestrator and the API layer.

Actors, statuses, deny reasons, the field-or-absent wrapper used by partial
updates, and the change specs a caller can request.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Generic, List, Mapping, Optional, TypeVar, Union

T = TypeVar("T")


class Role(str, Enum):
    USER = "User"
    ADMIN = "Admin"


class PostStatus(str, Enum):
    DRAFT = "Draft"
    PUBLISHED = "Published"


class OrderStatus(str, Enum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    SHIPPED = "Shipped"
    DELIVERED = "Delivered"
    CANCELLED = "Cancelled"


class ResourceKind(str, Enum):
    POST = "Post"
    ORDER = "Order"
    USER = "User"


class DenyReason(str, Enum):
    UNAUTHENTICATED = "Unauthenticated"
    NOT_FOUND = "NotFound"
    NOT_OWNER = "NotOwner"
    INVALID_TRANSITION = "InvalidTransition"
    REFERENCED_ENTITY_MISSING = "ReferencedEntityMissing"
    QUANTITY_OUT_OF_RANGE = "QuantityOutOfRange"
    DUPLICATE_NAME = "DuplicateName"
    SELF_DELETE = "SelfDelete"
    IN_USE = "InUse"


@dataclass(frozen=True)
class Actor:
    """Authenticated caller, resolved once per request"""

    id: int
    role: Role

    @property
    def is_admin(self) -> bool:
        return self.role == Role.ADMIN


@dataclass(frozen=True)
class ResourceState:
    """Ownership and status fields the policy needs from a stored resource"""

    kind: ResourceKind
    id: int
    owner_id: int
    status: Optional[str] = None


@dataclass(frozen=True)
class Decision:
    allowed: bool
    reason: Optional[DenyReason] = None
    message: str = ""

    @classmethod
    def allow(cls) -> "Decision":
        return cls(allowed=True)

    @classmethod
    def deny(cls, reason: DenyReason, message: str) -> "Decision":
        return cls(allowed=False, reason=reason, message=message)


#==============================================================================
# FIELD-OR-ABSENT
#==============================================================================

class Absent:
    """Marker for a field the caller did not supply"""

    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "ABSENT"

    def __bool__(self) -> bool:
        return False


ABSENT = Absent()


@dataclass(frozen=True)
class Supplied(Generic[T]):
    value: T


FieldChange = Union[Supplied[T], Absent]


def text_field(payload: Mapping[str, Any], key: str) -> FieldChange:
    """
    Read an updatable text field from a partial-update payload.

    Missing keys, null and blank strings all come back as ABSENT. A caller
    therefore cannot clear a text field by sending "" or "   "; blank means
    "leave unchanged".
    """
    value = payload.get(key)
    if value is None or not isinstance(value, str) or not value.strip():
        return ABSENT
    return Supplied(value.strip())


def list_field(payload: Mapping[str, Any], key: str) -> FieldChange:
    """A list field replaces the stored set only when the key is present and not null"""
    if key not in payload or payload[key] is None:
        return ABSENT
    return Supplied(list(payload[key]))


#==============================================================================
# CHANGE SPECS
#==============================================================================

@dataclass(frozen=True)
class CreatePost:
    title: str
    content: str
    tags: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class ReadPost:
    pass


@dataclass(frozen=True)
class EditPost:
    title: FieldChange = ABSENT
    content: FieldChange = ABSENT
    status: FieldChange = ABSENT
    tags: FieldChange = ABSENT
    expected_version: Optional[int] = None

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any], expected_version: Optional[int] = None) -> "EditPost":
        status = payload.get("status")
        return cls(
            title=text_field(payload, "title"),
            content=text_field(payload, "content"),
            status=Supplied(PostStatus(status)) if status is not None else ABSENT,
            tags=list_field(payload, "tags"),
            expected_version=expected_version,
        )

    def is_empty(self) -> bool:
        return not any(isinstance(v, Supplied) for v in (self.title, self.content, self.status, self.tags))


@dataclass(frozen=True)
class DeletePost:
    pass


@dataclass(frozen=True)
class OrderLineRequest:
    product_id: int
    quantity: int


@dataclass(frozen=True)
class CreateOrder:
    items: List[OrderLineRequest]
    shipping_address: str


@dataclass(frozen=True)
class ReadOrder:
    pass


@dataclass(frozen=True)
class ChangeOrderStatus:
    status: OrderStatus
    expected_version: Optional[int] = None


@dataclass(frozen=True)
class DeleteOrder:
    pass


@dataclass(frozen=True)
class DeleteUser:
    pass


@dataclass(frozen=True)
class CreateCategory:
    name: str


@dataclass(frozen=True)
class RenameCategory:
    name: str


@dataclass(frozen=True)
class CreateProduct:
    name: str
    price: Decimal
    category_id: Optional[int] = None
    description: str = ""


@dataclass(frozen=True)
class ChangeProductPrice:
    price: Decimal


@dataclass(frozen=True)
class EditProduct:
    name: FieldChange = ABSENT
    description: FieldChange = ABSENT
    category_id: FieldChange = ABSENT
    price: FieldChange = ABSENT

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "EditProduct":
        category_id = payload.get("category_id")
        price = payload.get("price")
        return cls(
            name=text_field(payload, "name"),
            description=text_field(payload, "description"),
            category_id=Supplied(category_id) if category_id is not None else ABSENT,
            price=Supplied(Decimal(price)) if price is not None else ABSENT,
        )

    def is_empty(self) -> bool:
        return not any(
            isinstance(v, Supplied) for v in (self.name, self.description, self.category_id, self.price)
        )


@dataclass(frozen=True)
class DeleteProduct:
    pass


@dataclass(frozen=True)
class DeleteCategory:
    pass


@dataclass(frozen=True)
class ReadProduct:
    pass


@dataclass(frozen=True)
class ReadCategory:
    pass


@dataclass(frozen=True)
class RegisterUser:
    name: str
    email: str
    password: str


@dataclass
class TransitionResult:
    """What request_transition hands back to the caller"""

    ok: bool
    resource: Optional[Dict[str, Any]] = None
    reason: Optional[DenyReason] = None
    message: str = ""

    @classmethod
    def accepted(cls, resource: Optional[Dict[str, Any]], message: str = "") -> "TransitionResult":
        return cls(ok=True, resource=resource, message=message)

    @classmethod
    def denied(cls, reason: DenyReason, message: str) -> "TransitionResult":
        return cls(ok=False, reason=reason, message=message)

    def to_dict(self) -> Dict[str, Any]:
        if self.ok:
            return {"ok": True, "resource": self.resource, "message": self.message}
        return {"ok": False, "reason": self.reason.value, "message": self.message}
