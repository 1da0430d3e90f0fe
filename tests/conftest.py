"""Pytest configuration for storefront tests."""
import itertools
from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from storefront.core.config import StorefrontConfig
from storefront.data.database import create_engine_from_config, create_session_factory, init_db
from storefront.data.models import Category, Product, User

SHIPPING_RATES = {"inside_dhaka": 6000, "outside_dhaka": 12000}


def make_config(database_url: str = "sqlite://") -> StorefrontConfig:
    return StorefrontConfig(
        database_url=database_url,
        shipping_rates=dict(SHIPPING_RATES),
        checkout_retry_backoff_seconds=0,
        log_level="WARNING",
    )


# ---------------------------------------------------------------------------
# Databases
# ---------------------------------------------------------------------------

@pytest.fixture
def config() -> StorefrontConfig:
    return make_config()


@pytest.fixture
def engine(config):
    """Fresh in-memory SQLite database per test."""
    eng = create_engine_from_config(config)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
def db(session_factory) -> Session:
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def file_config(tmp_path) -> StorefrontConfig:
    """File-backed SQLite, for tests that use several connections at once."""
    return make_config(f"sqlite:///{tmp_path / 'storefront-test.db'}")


@pytest.fixture
def file_engine(file_config):
    eng = create_engine_from_config(file_config)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def file_session_factory(file_engine):
    return create_session_factory(file_engine)


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------

_counter = itertools.count(1)
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


@pytest.fixture
def make_category():
    def _make(db: Session, name: str = "Electronics", **kwargs) -> Category:
        n = next(_counter)
        category = Category(name=name, slug=kwargs.pop("slug", f"{name.lower()}-{n}"), **kwargs)
        db.add(category)
        db.commit()
        return category
    return _make


@pytest.fixture
def make_product(make_category):
    """
    Create a product; a category is created on demand. ``created_at`` is
    spaced one minute apart in creation order unless given.
    """
    def _make(db: Session, name: str = "Test Product", price_cents: int = 10000, stock_quantity: int = 10, **kwargs) -> Product:
        n = next(_counter)
        if "category_id" not in kwargs:
            kwargs["category_id"] = make_category(db).id
        product = Product(
            name=name,
            slug=kwargs.pop("slug", f"product-{n}"),
            sku=kwargs.pop("sku", f"SKU-{n:05d}"),
            price_cents=price_cents,
            stock_quantity=stock_quantity,
            created_at=kwargs.pop("created_at", BASE_TIME + timedelta(minutes=n)),
            **kwargs,
        )
        db.add(product)
        db.commit()
        return product
    return _make


@pytest.fixture
def make_user():
    def _make(db: Session, name: str = "Test User", **kwargs) -> User:
        n = next(_counter)
        user = User(name=name, email=kwargs.pop("email", f"user{n}@example.com"), **kwargs)
        db.add(user)
        db.commit()
        return user
    return _make
