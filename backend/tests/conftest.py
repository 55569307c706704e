"""
Pytest fixtures for warranty core tests.

Provides test database setup, two isolated storefronts with products,
customers and activated barcodes, actors for every role, and factories
for driving claims through their lifecycle.
"""

import itertools
from datetime import timedelta

import pytest

from warranty import create_app
from warranty.extensions import db
from warranty.models import Customer, Product, Storefront
from warranty.permissions import Actor, Role
from warranty.services import barcode_repository
from warranty.services.tenant_service import ResolutionHints
from warranty.time_utils import utcnow


TEST_CONFIG = {
    'TESTING': True,
    'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
    'SQLALCHEMY_TRACK_MODIFICATIONS': False,
    'CELERY_BROKER_URL': 'memory://',
    'CELERY_RESULT_BACKEND': 'cache+memory://',
    'CELERY_TASK_ALWAYS_EAGER': True,
    # Batches are driven explicitly by the tests
    'WARRANTY_BATCH_DISPATCHER': None,
    'WARRANTY_BASE_DOMAIN': 'shops.test',
    'WARRANTY_BATCH_CHUNK_SIZE': 100,
    'WARRANTY_COLLISION_MIN_SAMPLE': 100,
    'WARRANTY_COLLISION_WINDOW': 1000,
}

_codes = itertools.count(1)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TEST_CONFIG)

    with app.app_context():
        db.create_all()
        yield app
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def service(app):
    """The warranty orchestrator wired by create_app()."""
    return app.extensions['warranty']


@pytest.fixture(scope='function')
def db_session(app, service):
    """Create fresh database for each test."""
    with app.app_context():
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        service.resolver.cache.clear()

        yield db.session

        # Cleanup after test
        db.session.rollback()


# =============================================================================
# TENANTS
# =============================================================================

@pytest.fixture(scope='function')
def storefront_a(db_session):
    """Create Storefront A (first tenant)."""
    storefront = Storefront(slug="acme", name="Acme Electronics", custom_domain="warranty.acme.test")
    db_session.add(storefront)
    db_session.commit()
    return storefront


@pytest.fixture(scope='function')
def storefront_b(db_session):
    """Create Storefront B (second tenant)."""
    storefront = Storefront(slug="beta", name="Beta Appliances")
    db_session.add(storefront)
    db_session.commit()
    return storefront


@pytest.fixture(scope='function')
def tenant_a(service, storefront_a):
    return service.resolve_tenant(ResolutionHints(explicit_slug="acme"))


@pytest.fixture(scope='function')
def tenant_b(service, storefront_b):
    return service.resolve_tenant(ResolutionHints(explicit_slug="beta"))


@pytest.fixture(scope='function')
def product_a(db_session, storefront_a):
    """Create Product in Storefront A."""
    product = Product(storefront_id=storefront_a.id, sku="TV-A-001", name="Television A", warranty_months=24)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def product_b(db_session, storefront_b):
    """Create Product in Storefront B."""
    product = Product(storefront_id=storefront_b.id, sku="FR-B-001", name="Fridge B", warranty_months=12)
    db_session.add(product)
    db_session.commit()
    return product


@pytest.fixture(scope='function')
def customer_a(db_session, storefront_a):
    customer = Customer(storefront_id=storefront_a.id, name="Alice A", email="alice@acme.test")
    db_session.add(customer)
    db_session.commit()
    return customer


@pytest.fixture(scope='function')
def customer_b(db_session, storefront_b):
    customer = Customer(storefront_id=storefront_b.id, name="Bob B", email="bob@beta.test")
    db_session.add(customer)
    db_session.commit()
    return customer


# =============================================================================
# ACTORS
# =============================================================================

@pytest.fixture
def admin():
    return Actor("admin-1", Role.ADMIN)


@pytest.fixture
def technician():
    return Actor("tech-1", Role.TECHNICIAN)


@pytest.fixture
def qc_inspector():
    return Actor("qc-1", Role.QC)


@pytest.fixture
def scanner():
    return Actor.system("scanner")


@pytest.fixture
def customer_actor_a(customer_a):
    return Actor(str(customer_a.id), Role.CUSTOMER)


@pytest.fixture
def customer_actor_b(customer_b):
    return Actor(str(customer_b.id), Role.CUSTOMER)


# =============================================================================
# FACTORIES
# =============================================================================

@pytest.fixture
def make_barcode(db_session, service, admin):
    """
    Insert a barcode and (by default) activate it for a customer.

    Usage:
        barcode = make_barcode(tenant_a, product_a, customer_a)
    """
    def factory(tenant, product, customer=None, *, code=None, purchase_days_ago=30):
        code = code or f"TST{next(_codes):013d}"
        barcode = barcode_repository.insert(tenant, product_id=product.id, code_value=code)
        db_session.commit()
        if customer is None:
            return barcode.to_dict()
        return service.activate_barcode(
            tenant,
            admin,
            barcode.id,
            customer_id=customer.id,
            purchase_date=utcnow() - timedelta(days=purchase_days_ago),
        )

    return factory


@pytest.fixture
def claim_payload():
    def factory(barcode_id, **overrides):
        payload = {
            "barcode_id": str(barcode_id),
            "issue_description": "Screen flickers and goes black after ten minutes",
            "issue_category": "malfunction",
            "severity": "high",
            "customer_name": "Alice A",
            "customer_email": "alice@acme.test",
            "customer_phone": "+15550100",
            "pickup_address": {"street": "1 Main St", "city": "Springfield", "postal_code": "12345"},
        }
        payload.update(overrides)
        return payload

    return factory


@pytest.fixture
def submitted_claim(service, tenant_a, product_a, customer_a, customer_actor_a, make_barcode, claim_payload):
    """A claim in status submitted on a fresh activated barcode of storefront A."""
    def factory():
        barcode = make_barcode(tenant_a, product_a, customer_a)
        return service.submit_claim(tenant_a, customer_actor_a, claim_payload(barcode["id"]))

    return factory


@pytest.fixture
def drive_claim(service, tenant_a, admin, technician, qc_inspector):
    """
    Move a storefront A claim forward along the happy path until it reaches `status`.

    Usage:
        claim = drive_claim(claim["id"], "qc")
    """
    order = ["submitted", "validated", "assigned", "in_repair", "qc", "completed"]

    def ticket_id(claim_id):
        return service.get_ticket_for_claim(tenant_a, admin, claim_id)["id"]

    def factory(claim_id, status):
        claim = service.get_claim(tenant_a, admin, claim_id)
        while order.index(claim["status"]) < order.index(status):
            current = claim["status"]
            if current == "submitted":
                claim = service.validate_claim(tenant_a, admin, claim_id)
            elif current == "validated":
                claim = service.assign_technician(tenant_a, admin, claim_id, technician_id=technician.actor_id)
            elif current == "assigned":
                claim = service.start_repair(tenant_a, technician, claim_id)
            elif current == "in_repair":
                tid = ticket_id(claim_id)
                service.diagnose_ticket(tenant_a, technician, tid, diagnosis="Backlight driver failure")
                service.start_ticket_repair(tenant_a, technician, tid)
                service.submit_ticket_for_qc(
                    tenant_a, technician, tid,
                    labor_minutes=90,
                    parts_used=[{"name": "Backlight driver", "quantity": 1, "unit_cost": "24.50"}],
                    cost="74.50",
                )
                claim = service.request_qc(tenant_a, technician, claim_id)
            elif current == "qc":
                service.record_qc(tenant_a, qc_inspector, ticket_id(claim_id), passed=True, notes="All good")
                claim = service.complete_claim(tenant_a, qc_inspector, claim_id)
        return claim

    return factory


def actor_headers(actor, slug=None):
    """Gateway headers for an actor, optionally bound to a storefront slug."""
    headers = {"X-Actor-ID": actor.actor_id, "X-Actor-Role": actor.role}
    if slug:
        headers["X-Storefront-Slug"] = slug
    return headers


@pytest.fixture
def headers():
    return actor_headers
