"""
Data access for each aggregate.

Repositories only stage changes on the session. Committing belongs to the
caller's unit of work (database.atomic), so one request's writes land
together or not at all.
"""
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session, selectinload

from lifecycle_guard.domain import OrderStatus, PostStatus, ResourceKind, ResourceState
from lifecycle_guard.models import Category, Order, OrderItem, Post, Product, Tag, User

# Largest value a 64-bit INTEGER primary key can hold
MAX_ID = 2 ** 63 - 1


def is_storable_id(value) -> bool:
    """Ids outside the column range cannot exist and are never sent to the driver"""
    return isinstance(value, int) and not isinstance(value, bool) and -MAX_ID <= value <= MAX_ID


def normalize_tag_names(tag_names: Iterable[str]) -> List[str]:
    """Trim, drop blanks and de-duplicate while keeping first-seen order"""
    seen = set()
    names = []
    for raw in tag_names:
        if raw is None or not raw.strip():
            continue
        name = raw.strip()
        if name.lower() in seen:
            continue
        seen.add(name.lower())
        names.append(name)
    return names


class UserRepository:
    """Data access layer for users"""

    def __init__(self, db: Session):
        self.db = db

    def get_user_by_id(self, user_id: int) -> Optional[User]:
        if not is_storable_id(user_id):
            return None
        return self.db.query(User).filter(User.id == user_id).first()

    def get_active_user(self, user_id: int) -> Optional[User]:
        if not is_storable_id(user_id):
            return None
        return self.db.query(User).filter(User.id == user_id, User.is_active.is_(True)).first()

    def get_user_by_email(self, email: str) -> Optional[User]:
        return self.db.query(User).filter(func.lower(User.email) == email.strip().lower()).first()

    def create_user(self, user_data: dict) -> User:
        user = User(**user_data)
        self.db.add(user)
        self.db.flush()
        return user

    def deactivate(self, user: User) -> User:
        user.is_active = False
        self.db.flush()
        return user


class TagRepository:
    """Data access layer for tags"""

    def __init__(self, db: Session):
        self.db = db

    def get_or_create(self, name: str) -> Tag:
        tag = self.db.query(Tag).filter(func.lower(Tag.name) == name.lower()).first()
        if not tag:
            tag = Tag(name=name)
            self.db.add(tag)
            self.db.flush()
        return tag


class PostRepository:
    """Data access layer for posts"""

    def __init__(self, db: Session):
        self.db = db
        self.tags = TagRepository(db)

    def get_post_by_id(self, post_id: int) -> Optional[Post]:
        if not is_storable_id(post_id):
            return None
        return (
            self.db.query(Post)
            .options(selectinload(Post.tags))
            .filter(Post.id == post_id)
            .first()
        )

    def get_posts(self, viewer_id: int, include_all: bool = False, skip: int = 0, limit: int = 100,
                  author_id: Optional[int] = None, tag: Optional[str] = None) -> List[Post]:
        """Posts visible to `viewer_id`, optionally narrowed to one author or one tag"""
        if author_id is not None and not is_storable_id(author_id):
            return []
        query = self.db.query(Post).options(selectinload(Post.tags))
        if author_id is not None:
            query = query.filter(Post.author_id == author_id)
        if tag is not None:
            query = query.filter(Post.tags.any(func.lower(Tag.name) == tag.strip().lower()))
        if not include_all:
            query = query.filter(
                (Post.status == PostStatus.PUBLISHED.value) | (Post.author_id == viewer_id)
            )
        return query.order_by(Post.created_at.desc(), Post.id.desc()).offset(skip).limit(limit).all()

    def create_post(self, post_data: dict, tag_names: List[str]) -> Post:
        post = Post(**post_data)
        self.db.add(post)
        self.db.flush()  # Get the ID without committing
        self.replace_tags(post, tag_names)
        return post

    def update_fields(self, post: Post, update_data: dict) -> Post:
        for field, value in update_data.items():
            setattr(post, field, value)
        return post

    def replace_tags(self, post: Post, tag_names: List[str]) -> Post:
        """Swap the whole tag set; the caller's transaction makes it atomic"""
        post.tags = [self.tags.get_or_create(name) for name in normalize_tag_names(tag_names)]
        self.db.flush()
        return post

    def delete_post(self, post: Post) -> None:
        self.db.delete(post)
        self.db.flush()

    def state(self, post: Post) -> ResourceState:
        return ResourceState(kind=ResourceKind.POST, id=post.id, owner_id=post.author_id, status=post.status)


class CatalogRepository:
    """Product lookups used when pricing orders, plus catalog maintenance"""

    def __init__(self, db: Session):
        self.db = db

    def product_exists(self, product_id: int) -> bool:
        if not is_storable_id(product_id):
            return False
        return self.db.query(Product.id).filter(Product.id == product_id).first() is not None

    def product_unit_price(self, product_id: int) -> Optional[Decimal]:
        if not is_storable_id(product_id):
            return None
        row = self.db.query(Product.price).filter(Product.id == product_id).first()
        return row[0] if row else None

    def unit_prices(self, product_ids: Iterable[int]) -> Dict[int, Decimal]:
        """Current price for every id that exists; unknown ids are simply absent"""
        ids = {product_id for product_id in product_ids if is_storable_id(product_id)}
        if not ids:
            return {}
        rows = self.db.query(Product.id, Product.price).filter(Product.id.in_(ids)).all()
        return {product_id: price for product_id, price in rows}

    def get_product_by_id(self, product_id: int) -> Optional[Product]:
        if not is_storable_id(product_id):
            return None
        return self.db.query(Product).filter(Product.id == product_id).first()

    def get_products(self, category_id: Optional[int] = None) -> List[Product]:
        if category_id is not None and not is_storable_id(category_id):
            return []
        query = self.db.query(Product)
        if category_id is not None:
            query = query.filter(Product.category_id == category_id)
        return query.order_by(Product.name, Product.id).all()

    def product_name_exists(self, name: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Product.id).filter(func.lower(Product.name) == name.strip().lower())
        if exclude_id is not None:
            query = query.filter(Product.id != exclude_id)
        return query.first() is not None

    def product_in_use(self, product_id: int) -> bool:
        """True once any order line references the product"""
        return self.db.query(OrderItem.id).filter(OrderItem.product_id == product_id).first() is not None

    def update_product(self, product: Product, update_data: dict) -> Product:
        for field, value in update_data.items():
            setattr(product, field, value)
        self.db.flush()
        return product

    def delete_product(self, product: Product) -> None:
        self.db.delete(product)
        self.db.flush()

    def create_product(self, product_data: dict) -> Product:
        product = Product(**product_data)
        self.db.add(product)
        self.db.flush()
        return product

    def get_category_by_id(self, category_id: int) -> Optional[Category]:
        if not is_storable_id(category_id):
            return None
        return self.db.query(Category).filter(Category.id == category_id).first()

    def get_categories(self) -> List[Tuple[Category, int]]:
        """Every category with its product count"""
        product_count = func.count(Product.id)
        return (
            self.db.query(Category, product_count)
            .outerjoin(Product, Product.category_id == Category.id)
            .group_by(Category.id)
            .order_by(Category.name)
            .all()
        )

    def category_has_products(self, category_id: int) -> bool:
        return self.db.query(Product.id).filter(Product.category_id == category_id).first() is not None

    def delete_category(self, category: Category) -> None:
        self.db.delete(category)
        self.db.flush()

    def category_name_exists(self, name: str, exclude_id: Optional[int] = None) -> bool:
        query = self.db.query(Category.id).filter(func.lower(Category.name) == name.strip().lower())
        if exclude_id is not None:
            query = query.filter(Category.id != exclude_id)
        return query.first() is not None

    def create_category(self, name: str) -> Category:
        category = Category(name=name.strip())
        self.db.add(category)
        self.db.flush()
        return category


class OrderRepository:
    """Data access layer for orders and their line items"""

    def __init__(self, db: Session):
        self.db = db

    def get_order_by_id(self, order_id: int) -> Optional[Order]:
        if not is_storable_id(order_id):
            return None
        return (
            self.db.query(Order)
            .options(selectinload(Order.items))
            .filter(Order.id == order_id)
            .first()
        )

    def get_orders(self, user_id: Optional[int] = None) -> List[Order]:
        query = self.db.query(Order).options(selectinload(Order.items))
        if user_id is not None:
            query = query.filter(Order.user_id == user_id)
        return query.order_by(Order.order_date.desc(), Order.id.desc()).all()

    def create_order(self, order_data: dict, priced_lines: list) -> Order:
        """Write the order and all of its lines in one flush"""
        order = Order(**order_data)
        order.items = [
            OrderItem(product_id=line.product_id, quantity=line.quantity, unit_price=unit_price)
            for line, unit_price in priced_lines
        ]
        self.db.add(order)
        self.db.flush()
        return order

    def set_status(self, order: Order, status: OrderStatus, updated_at) -> Order:
        order.status = status.value
        order.updated_at = updated_at
        self.db.flush()
        return order

    def delete_order(self, order: Order) -> None:
        self.db.delete(order)
        self.db.flush()

    def state(self, order: Order) -> ResourceState:
        return ResourceState(kind=ResourceKind.ORDER, id=order.id, owner_id=order.user_id, status=order.status)
