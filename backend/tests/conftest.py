"""
Pytest fixtures for stock ledger tests.

Provides an in-memory database app, per-test table wipe, catalog factories
and the Flask test client.
"""

import itertools
from datetime import timedelta

import pytest
from stockledger import create_app
from stockledger.extensions import db
from stockledger.models import Product
from stockledger.services import movement_service
from stockledger.time_utils import utcnow


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'LEDGER_RETRY_BACKOFF_SECONDS': 0,
    })

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Core deletes bypass the ORM append-only guards on stock_movements
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        db.session.rollback()


@pytest.fixture(scope='function')
def past():
    """A base time safely in the past for back-dated events."""
    return utcnow().replace(microsecond=0) - timedelta(days=30)


_sku_counter = itertools.count(1)


@pytest.fixture(scope='function')
def make_product(db_session):
    def _make(name: str = "Test Product", sku: str | None = None) -> Product:
        product = Product(name=name, sku=sku or f"PROD-{next(_sku_counter):05d}")
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture(scope='function')
def make_variant(db_session, make_product):
    """Variants are created through the recorder so their stock is replayable."""
    def _make(product: Product | None = None, *, stock: int = 0, price_cents: int = 1000,
              reorder_point: int = 10, sku: str | None = None, occurred_at=None):
        if product is None:
            product = make_product()
        return movement_service.create_variant(
            product_id=product.id,
            sku=sku or f"VAR-{next(_sku_counter):05d}",
            price_cents=price_cents,
            initial_stock=stock,
            reorder_point=reorder_point,
            occurred_at=occurred_at,
        )
    return _make


@pytest.fixture(scope='function')
def variant(make_variant):
    """A variant with no stock and no movements."""
    return make_variant()
