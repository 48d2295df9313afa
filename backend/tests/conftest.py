"""
Pytest fixtures for stockroom backend tests.

Provides the application on an in-memory database, a per-test data wipe and
small factories for stores, variants and opening stock.
"""

import pytest

from stockroom import create_app
from stockroom.extensions import db
from stockroom.models import ProductVariant, Store
from stockroom.models.inventory import REASON_MANUAL_ADJUSTMENT
from stockroom.services import inventory_service


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app({
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'DB_RETRY_BACKOFF': 0,
    })

    # Contexts are pushed per test by db_session, never for the whole session.
    with app.app_context():
        db.create_all()

    yield app

    with app.app_context():
        db.drop_all()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def store(db_session):
    """Create the main store."""
    store = Store(name="Main Store", code="MAIN")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def other_store(db_session):
    """Create a second store for transfers."""
    store = Store(name="Branch Store", code="BRANCH")
    db_session.add(store)
    db_session.commit()
    return store


@pytest.fixture(scope='function')
def make_variant(db_session):
    """Factory: make_variant(sku, price=..., cost_price=...)."""
    def _make(sku, *, price=1000, cost_price=500, name=None):
        variant = ProductVariant(sku=sku, name=name or f"Variant {sku}", price=price, cost_price=cost_price)
        db_session.add(variant)
        db_session.commit()
        return variant
    return _make


@pytest.fixture(scope='function')
def variant(make_variant):
    return make_variant("SKU-001")


@pytest.fixture(scope='function')
def second_variant(make_variant):
    return make_variant("SKU-002", price=2500, cost_price=1200)


@pytest.fixture(scope='function')
def stock(db_session):
    """Factory: stock(variant, store, quantity) posts opening stock."""
    def _stock(variant, store, quantity):
        inventory_service.increment(
            variant.id,
            store.id,
            quantity,
            REASON_MANUAL_ADJUSTMENT,
            note="Opening stock",
        )
        return inventory_service.get_current_quantity(variant.id, store.id)
    return _stock
