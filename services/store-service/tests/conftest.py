import os

# Must be set before the app modules build their engine
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["EVENTS_ENABLED"] = "false"

from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.auth import get_current_admin, get_current_user
from app.database import get_db
from app.deps import get_inventory_cache
from app.inventory_cache import InventoryCache
from app.main import app
from app.models import Base, Product, ProductSize
from app.reservations import ReservationService


@pytest.fixture
def engine(tmp_path):
    # file-backed so worker threads share one database
    engine = create_engine(
        f"sqlite:///{tmp_path / 'store.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def cache():
    cache = InventoryCache(default_ttl=300, check_period=60)
    yield cache
    cache.dispose()


@pytest.fixture
def reservations(db, cache):
    return ReservationService(db, cache)


@pytest.fixture
def make_product(db):
    """Insert a product record as-is: no distribution, no total recomputation."""
    counter = {"n": 0}

    def _make(sizes=("S", "M", "L"), stock=None, size_inventory=None, name=None, price="25.00"):
        counter["n"] += 1
        size_inventory = size_inventory or {}
        if stock is None:
            stock = sum(size_inventory.values())
        product = Product(
            name=name or f"Product {counter['n']}",
            price=Decimal(price),
            stock=stock,
            sizes=list(sizes),
            colors=[],
            size_stock=[ProductSize(size=s, quantity=q) for s, q in size_inventory.items()],
        )
        db.add(product)
        db.commit()
        db.refresh(product)
        return product

    return _make


@pytest.fixture
def read_stock(session_factory):
    """Read a product's stock fields straight from the database."""

    def _read(product_id):
        session = session_factory()
        try:
            product = session.get(Product, product_id)
            return product.stock, product.size_inventory
        finally:
            session.close()

    return _read


@pytest.fixture
def user():
    return {"id": 1, "username": "alice", "email": "alice@example.com", "is_admin": False}


@pytest.fixture
def admin():
    return {"id": 99, "username": "admin", "email": "admin@admin.com", "is_admin": True}


@pytest.fixture
def client(session_factory, cache, user, admin):
    def _get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = _get_db
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_current_admin] = lambda: admin
    app.dependency_overrides[get_inventory_cache] = lambda: cache
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()
