"""
Shared pytest fixtures for the fulfillment core test suite.

Provides:
    - app: Flask application (session-scoped)
    - _setup_db: Database table creation/teardown (session-scoped)
    - session: Per-test DB cleanup w/ rollback + recreate (autouse)
    - client: Flask test client (function-scoped)
    - product / customer: F-18-like product and a 40-minute customer
    - approvers: actor → role mappings for QC and QP sign-off
    - published: audit entries delivered to the event sink
    - make_order / make_batch: service-level factories
"""

from datetime import datetime, time, timedelta, timezone

import pytest

from radiopharm import create_app
from radiopharm.models import db as _db
from radiopharm.services import catalog_service, event_sink, fulfillment_service
from radiopharm.services.role_resolver import set_role


# ── App & DB fixtures ────────────────────────────────────────────────────


@pytest.fixture(scope="session")
def app():
    """Create the Flask application once per test session."""
    return create_app("testing")


@pytest.fixture(scope="session")
def _setup_db(app):
    """Create all tables at session start, drop at end."""
    with app.app_context():
        _db.create_all()
    yield
    with app.app_context():
        _db.drop_all()


@pytest.fixture(autouse=True)
def session(app, _setup_db):
    """Per-test: open app context, rollback after test, recreate tables."""
    with app.app_context():
        event_sink.clear_subscribers()
        yield
        event_sink.clear_subscribers()
        _db.session.rollback()
        _db.drop_all()
        _db.create_all()


@pytest.fixture()
def client(app):
    """Flask test client."""
    return app.test_client()


# ── Convenience fixtures ─────────────────────────────────────────────────


@pytest.fixture()
def tomorrow_noon():
    """Injection time safely in the future and away from midnight."""
    tomorrow = datetime.now(timezone.utc).date() + timedelta(days=1)
    return datetime.combine(tomorrow, time(12, 0), tzinfo=timezone.utc)


@pytest.fixture()
def product():
    """F-18 FDG-like: t½ 110 min, synthesis 40, QC 20, shelf life 10 h, overage 10 %."""
    return catalog_service.create_product({
        "code": "FDG",
        "name": "Fludeoxyglucose F-18",
        "isotope": "F-18",
        "half_life_minutes": 110,
        "synthesis_time_minutes": 40,
        "qc_time_minutes": 20,
        "shelf_life_minutes": 600,
        "overage_percent": 10,
    })


@pytest.fixture()
def customer():
    return catalog_service.create_customer({
        "code": "HOSP-1",
        "name": "City Hospital",
        "travel_time_minutes": 40,
    })


@pytest.fixture()
def approvers():
    """QC and QP approvers known to the role resolver."""
    set_role("qc.alice", "QC")
    set_role("qp.bob", "QP")
    set_role("prod.dave", "PRODUCTION")
    return {"QC": "qc.alice", "QP": "qp.bob", "PRODUCTION": "prod.dave"}


@pytest.fixture()
def published():
    """Collect every audit entry delivered to the event sink."""
    entries = []
    event_sink.subscribe(entries.append)
    return entries


@pytest.fixture()
def make_order(product, customer, tomorrow_noon):
    """Factory: create an order (DRAFT) for the default product/customer."""

    def _make(**overrides):
        data = {
            "product_id": product.id,
            "customer_id": customer.id,
            "requested_activity": 100,
            "activity_unit": "mCi",
            "delivery_window_start": tomorrow_noon.isoformat(),
        }
        data.update(overrides)
        return fulfillment_service.create_order(data, actor="sales.erin")

    return _make


@pytest.fixture()
def make_batch(product, tomorrow_noon):
    """Factory: create a PLANNED batch for the default product."""

    def _make(**overrides):
        data = {
            "product_id": product.id,
            "planned_start_time": (tomorrow_noon - timedelta(hours=2)).isoformat(),
        }
        data.update(overrides)
        return fulfillment_service.create_batch(data, actor="prod.dave")

    return _make
