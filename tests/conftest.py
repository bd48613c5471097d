"""
Shared fixtures: a file-backed SQLite database per test, seeded with an
admin (id 1), two users (ids 7 and 8) and one product priced at 10.00.
"""
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from lifecycle_guard.api import app
from lifecycle_guard.database import Base, get_db
from lifecycle_guard.domain import OrderStatus
from lifecycle_guard.identity import create_access_token
from lifecycle_guard.models import Order, OrderItem, Post, Product, User
from lifecycle_guard.orchestrator import MutationOrchestrator

ADMIN_ID = 1
OWNER_ID = 7
STRANGER_ID = 8
PRODUCT_ID = 1
ADDRESS = "12 Market Street, Springfield"


@pytest.fixture
def engine(tmp_path):
    """Fresh database file for every test"""
    engine = create_engine(
        f"sqlite:///{tmp_path / 'guard.db'}",
        connect_args={"check_same_thread": False}
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def seeded(session_factory):
    db = session_factory()
    db.add_all([
        User(id=ADMIN_ID, name="Ada Admin", email="admin@example.com", role="Admin"),
        User(id=OWNER_ID, name="Olive Owner", email="owner@example.com", role="User"),
        User(id=STRANGER_ID, name="Sam Stranger", email="stranger@example.com", role="User"),
        Product(id=PRODUCT_ID, name="Notebook", description="A5, dotted", price=Decimal("10.00")),
    ])
    db.commit()
    db.close()


@pytest.fixture
def db(session_factory, seeded):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def orchestrator(db):
    return MutationOrchestrator(db)


@pytest.fixture
def token():
    """Build a bearer token for a user id"""
    return lambda user_id: create_access_token(user_id)


@pytest.fixture
def auth_headers(token):
    return lambda user_id: {"Authorization": f"Bearer {token(user_id)}"}


@pytest.fixture
def client(session_factory, seeded):
    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_order(session_factory, seeded):
    """Insert an order directly in a given status, bypassing the policy"""
    def _make(user_id=OWNER_ID, status=OrderStatus.PENDING, quantity=2):
        db = session_factory()
        order = Order(
            user_id=user_id,
            status=status.value,
            shipping_address=ADDRESS,
            total_amount=Decimal("10.00") * quantity,
        )
        order.items = [OrderItem(product_id=PRODUCT_ID, quantity=quantity, unit_price=Decimal("10.00"))]
        db.add(order)
        db.commit()
        order_id = order.id
        db.close()
        return order_id
    return _make


@pytest.fixture
def make_post(session_factory, seeded):
    """Insert a post directly with the given author and status"""
    def _make(author_id=OWNER_ID, status="Draft", title="A post about lifecycles"):
        db = session_factory()
        post = Post(title=title, content="Body text long enough to pass.", status=status, author_id=author_id)
        db.add(post)
        db.commit()
        post_id = post.id
        db.close()
        return post_id
    return _make
