"""
Pytest fixtures for storefront backend tests.

Provides the app on an in-memory SQLite database, a scripted payment
gateway (httpx.MockTransport), catalog factories and auth helpers.
"""

import json
import uuid

import httpx
import pytest

from storefront import create_app
from storefront.config import Config
from storefront.extensions import db
from storefront.models import InventoryItem
from storefront.services import auth_service, catalog_service, inventory_service, session_service
from storefront.services.webhook_service import SIGNATURE_HEADER, compute_signature


WEBHOOK_SECRET = "whsec_test_secret"
PASSWORD = "Password123!"


class FakeGateway:
    """In-process stand-in for the hosted payment gateway."""

    def __init__(self):
        self.reset()

    def reset(self):
        self.fail_initiate = False
        self.initiate_response = None
        self.statuses = {}
        self.requests = []

    def handler(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content or b"{}")
        self.requests.append((request.url.path, body))

        if request.url.path.endswith("/initiate"):
            if self.initiate_response is not None:
                return self.initiate_response
            if self.fail_initiate:
                return httpx.Response(503, json={"success": False, "error": "Gateway maintenance"})
            session_id = f"sess_{uuid.uuid4().hex[:12]}"
            self.statuses[session_id] = {"status": "pending"}
            return httpx.Response(200, json={
                "success": True,
                "sessionId": session_id,
                "paymentUrl": f"https://pay.test/checkout/{session_id}",
                "expiresAt": "2030-01-01T00:00:00Z",
            })

        if request.url.path.endswith("/verify"):
            state = self.statuses.get(body.get("sessionId"))
            if state is None:
                return httpx.Response(404, json={"success": False, "error": "Session not found"})
            return httpx.Response(200, json={"success": True, **state})

        return httpx.Response(404, json={"success": False, "error": "Unknown endpoint"})

    @property
    def initiated_sessions(self):
        return list(self.statuses)


_gateway = FakeGateway()


class TestConfig(Config):
    TESTING = True
    APP_ENV = "test"
    SQLALCHEMY_DATABASE_URI = "sqlite:///:memory:"
    BCRYPT_ROUNDS = 4
    PAYMENT_WEBHOOK_SECRET = WEBHOOK_SECRET
    PAYMENT_SIGNATURE_POLICY = "REQUIRED"
    PAYMENT_GATEWAY_URL = "https://gateway.test"
    PAYMENT_GATEWAY_TRANSPORT = httpx.MockTransport(_gateway.handler)
    CORS_ALLOWED_ORIGINS = {"http://localhost:3000"}


class RecordingEmailSender:
    def __init__(self):
        self.sent = []

    def send(self, message):
        self.sent.append(message)


@pytest.fixture(scope='session')
def app():
    """Create application for testing."""
    app = create_app(TestConfig)

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
        # Clear all data but keep schema
        meta = db.metadata
        for table in reversed(meta.sorted_tables):
            db.session.execute(table.delete())
        db.session.commit()
        app.extensions.pop("webhook_reconciler", None)

        yield db.session

        # Cleanup after test
        db.session.rollback()


@pytest.fixture(scope='function')
def gateway(app):
    _gateway.reset()
    yield _gateway
    _gateway.reset()


@pytest.fixture(scope='function')
def outbox(app):
    sender = RecordingEmailSender()
    previous = app.extensions.get("email_sender")
    app.extensions["email_sender"] = sender
    yield sender.sent
    if previous is None:
        app.extensions.pop("email_sender", None)
    else:
        app.extensions["email_sender"] = previous


@pytest.fixture(scope='function')
def setup_roles(db_session):
    auth_service.create_default_roles()


# =============================================================================
# CATALOG FACTORIES
# =============================================================================


def make_variant(*, price_cents=2500, stock=10, sku=None, product_name="Linen Shirt",
                 variant_name="Medium", product_active=True, variant_active=True):
    """Create product + variant and receive `stock` units through the ledger."""
    sku = sku or f"SKU-{uuid.uuid4().hex[:8].upper()}"
    product = catalog_service.create_product(
        name=product_name,
        slug=f"{catalog_service.slugify(product_name)}-{uuid.uuid4().hex[:6]}",
        is_active=product_active,
    )
    variant = catalog_service.create_variant(
        product_id=product.id,
        name=variant_name,
        sku=sku,
        price_cents=price_cents,
        is_active=variant_active,
    )
    item = inventory_item_for(variant.id)
    if stock:
        inventory_service.adjust(item.id, stock, "Initial stock", movement_type="purchase")
    return variant


def inventory_item_for(variant_id: int) -> InventoryItem:
    db.session.expire_all()
    return db.session.query(InventoryItem).filter_by(variant_id=variant_id).one()


@pytest.fixture(scope='function')
def variant(db_session):
    return make_variant()


# =============================================================================
# CHECKOUT PAYLOADS
# =============================================================================


def checkout_payload(items, *, payment_method="card", shipping_method="standard",
                     email="buyer@example.com"):
    return {
        "items": items,
        "contact": {"email": email, "phone": "0771234567"},
        "shipping": {
            "recipient_name": "Nimal Perera",
            "phone": "0771234567",
            "address_line1": "42 Galle Road",
            "city": "Colombo",
            "postal_code": "00300",
            "country": "LK",
        },
        "shipping_method": shipping_method,
        "payment_method": payment_method,
    }


def sign(body: bytes) -> dict:
    return {SIGNATURE_HEADER: compute_signature(WEBHOOK_SECRET, body), "Content-Type": "application/json"}


def webhook_body(event: str, session_id: str, **extra) -> bytes:
    payload = {"event": event, "sessionId": session_id, **extra}
    return json.dumps(payload).encode("utf-8")


# =============================================================================
# USERS / AUTH
# =============================================================================


def make_user(email: str, role: str = "customer"):
    return auth_service.create_user(email, PASSWORD, name=email.split("@")[0], roles=(role,), bcrypt_rounds=4)


def token_for(user) -> str:
    _, token = session_service.create_session(user.id)
    return token


def auth_headers(token: str) -> dict:
    """Helper to create Authorization headers."""
    return {'Authorization': f'Bearer {token}'}


@pytest.fixture(scope='function')
def customer(setup_roles):
    return make_user("customer@example.com", "customer")


@pytest.fixture(scope='function')
def customer_headers(customer):
    return auth_headers(token_for(customer))


@pytest.fixture(scope='function')
def manager(setup_roles):
    return make_user("manager@example.com", "manager")


@pytest.fixture(scope='function')
def manager_headers(manager):
    return auth_headers(token_for(manager))


@pytest.fixture(scope='function')
def support_headers(setup_roles):
    return auth_headers(token_for(make_user("support@example.com", "support")))
