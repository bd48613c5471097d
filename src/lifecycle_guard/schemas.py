"""
Pydantic request/response models.
"""
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator

from lifecycle_guard.domain import (
    ChangeOrderStatus,
    ChangeProductPrice,
    CreateCategory,
    CreateOrder,
    CreatePost,
    CreateProduct,
    EditPost,
    EditProduct,
    OrderLineRequest,
    OrderStatus,
    PostStatus,
    RegisterUser,
    RenameCategory,
)

TITLE_MIN, TITLE_MAX = 5, 200
CONTENT_MIN, CONTENT_MAX = 10, 1000
PASSWORD_MIN = 8


def require_text(value: str, label: str) -> str:
    if not value.strip():
        raise ValueError(f"{label} must not be blank")
    return value


def check_stripped_length(value: Optional[str], minimum: int, label: str) -> Optional[str]:
    """Minimum length of the trimmed text; blank values are left to the caller"""
    if value and value.strip() and len(value.strip()) < minimum:
        raise ValueError(f"{label} must be at least {minimum} characters")
    return value


# Post models
class PostCreateRequest(BaseModel):
    title: str = Field(..., min_length=TITLE_MIN, max_length=TITLE_MAX)
    content: str = Field(..., min_length=CONTENT_MIN, max_length=CONTENT_MAX)
    tags: List[str] = Field(default_factory=list, max_length=10)

    @field_validator("title")
    @classmethod
    def title_length(cls, value: str) -> str:
        return check_stripped_length(require_text(value, "title"), TITLE_MIN, "title")

    @field_validator("content")
    @classmethod
    def content_length(cls, value: str) -> str:
        return check_stripped_length(require_text(value, "content"), CONTENT_MIN, "content")

    def to_change(self) -> CreatePost:
        return CreatePost(title=self.title.strip(), content=self.content.strip(), tags=list(self.tags))


class PostUpdateRequest(BaseModel):
    """
    Partial update. Omitted fields are left alone, and so are blank
    strings: "" or "   " for title/content means "no change", not "clear".
    `tags` replaces the whole tag set when present; [] removes every tag.
    """

    title: Optional[str] = Field(None, max_length=TITLE_MAX)
    content: Optional[str] = Field(None, max_length=CONTENT_MAX)
    status: Optional[PostStatus] = None
    tags: Optional[List[str]] = Field(None, max_length=10)
    expected_version: Optional[int] = None

    @field_validator("title")
    @classmethod
    def title_length(cls, value: Optional[str]) -> Optional[str]:
        return check_stripped_length(value, TITLE_MIN, "title")

    @field_validator("content")
    @classmethod
    def content_length(cls, value: Optional[str]) -> Optional[str]:
        return check_stripped_length(value, CONTENT_MIN, "content")

    def to_change(self) -> EditPost:
        payload = self.model_dump(exclude_unset=True, exclude={"expected_version"})
        return EditPost.from_payload(payload, expected_version=self.expected_version)


class PostResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    title: str
    content: str
    status: PostStatus
    author_id: int
    tags: List[str] = []
    version: int
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("tags", mode="before")
    @classmethod
    def tag_names(cls, value):
        return [getattr(tag, "name", tag) for tag in value or []]


# Order models
class OrderItemRequest(BaseModel):
    product_id: int
    quantity: int


class OrderCreateRequest(BaseModel):
    items: List[OrderItemRequest] = Field(..., min_length=1)
    shipping_address: str = Field(..., min_length=10, max_length=500)

    def to_change(self) -> CreateOrder:
        return CreateOrder(
            items=[OrderLineRequest(product_id=i.product_id, quantity=i.quantity) for i in self.items],
            shipping_address=self.shipping_address.strip(),
        )


class OrderStatusRequest(BaseModel):
    status: OrderStatus
    expected_version: Optional[int] = None

    def to_change(self) -> ChangeOrderStatus:
        return ChangeOrderStatus(status=self.status, expected_version=self.expected_version)


class OrderItemResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    product_id: int
    quantity: int
    unit_price: Decimal
    subtotal: Decimal


class OrderResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    order_number: str
    user_id: int
    status: OrderStatus
    shipping_address: str
    total_amount: Decimal
    version: int
    order_date: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    items: List[OrderItemResponse] = []


# Auth models
class RegisterRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    password: str = Field(..., min_length=PASSWORD_MIN, max_length=128)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return require_text(value, "name")

    def to_change(self) -> RegisterUser:
        return RegisterUser(name=self.name.strip(), email=str(self.email).lower(), password=self.password)


class LoginRequest(BaseModel):
    email: EmailStr
    password: str = Field(..., min_length=1, max_length=128)


# User models
class UserResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    email: str
    role: str
    is_active: bool


# Catalog models
class CategoryRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return require_text(value, "name")

    def to_create(self) -> CreateCategory:
        return CreateCategory(name=self.name.strip())

    def to_rename(self) -> RenameCategory:
        return RenameCategory(name=self.name.strip())


class CategoryResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    product_count: Optional[int] = None


class ProductCreateRequest(BaseModel):
    name: str = Field(..., min_length=1, max_length=200)
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    category_id: Optional[int] = None
    description: str = Field("", max_length=2000)

    @field_validator("name")
    @classmethod
    def name_not_blank(cls, value: str) -> str:
        return require_text(value, "name")

    def to_change(self) -> CreateProduct:
        return CreateProduct(
            name=self.name.strip(),
            price=self.price,
            category_id=self.category_id,
            description=self.description,
        )


class ProductUpdateRequest(BaseModel):
    """
    Partial product update. Omitted or blank fields keep their stored value,
    the same rule post edits follow.
    """

    name: Optional[str] = Field(None, max_length=200)
    description: Optional[str] = Field(None, max_length=2000)
    category_id: Optional[int] = None
    price: Optional[Decimal] = Field(None, gt=0, max_digits=12, decimal_places=2)

    def to_change(self) -> EditProduct:
        return EditProduct.from_payload(self.model_dump(exclude_unset=True))


class ProductPriceRequest(BaseModel):
    price: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)

    def to_change(self) -> ChangeProductPrice:
        return ChangeProductPrice(price=self.price)


class ProductResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = ""
    price: Decimal
    category_id: Optional[int] = None


class CategoryDetailResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    products: List[ProductResponse] = []
