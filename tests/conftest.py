import itertools
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from unittest.mock import Mock

import jwt
import pytest
from fastapi.testclient import TestClient

from main import app
from core.db import Base, get_db, make_engine, make_sessionmaker, utcnow
from core import config as core_config
from services import email as email_service
from services import stripe_client
from services import cart as cart_service
from services.cart import CartOwner
from models.user import User
from models.product import Product, ProductVariant
from models.shipping import ShippingMethod
from models.discount import DiscountCode


@pytest.fixture(scope="session", autouse=True)
def test_settings():
    core_config.settings.JWT_SECRET = "test-secret"
    core_config.settings.STRIPE_SECRET_KEY = "sk_test_dummy"
    core_config.settings.STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
    core_config.settings.TESTING = True
    yield


@pytest.fixture(autouse=True)
def no_tax(monkeypatch):
    monkeypatch.setattr(core_config.settings, "TAX_RATE", Decimal("0"))


@pytest.fixture()
def db():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    TestingSessionLocal = make_sessionmaker(engine)
    Base.metadata.create_all(bind=engine)

    session = TestingSessionLocal()

    def _get_db():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _get_db
    try:
        yield session
    finally:
        session.close()
        app.dependency_overrides.clear()
        engine.dispose()


@pytest.fixture()
def client(db):
    with TestClient(app) as c:
        yield c


@pytest.fixture(autouse=True)
def sent_emails(monkeypatch):
    sent = []

    def _fake_send(to_email: str, subject: str, body: str) -> None:
        sent.append({"to": to_email, "subject": subject, "body": body})

    monkeypatch.setattr(email_service, "send_email", _fake_send)
    return sent


class FakeStripe:
    """In-memory stand-in for the provider endpoints used by the services."""

    def __init__(self):
        self.intents = {}
        self.refunds = []
        self.refund_status = "succeeded"
        self._ids = itertools.count(1)

    def create_payment_intent(self, amount, currency, metadata=None, idempotency_key=None):
        intent_id = f"pi_test_{next(self._ids)}"
        self.intents[intent_id] = {
            "id": intent_id,
            "object": "payment_intent",
            "client_secret": f"{intent_id}_secret_abc",
            "status": "requires_payment_method",
            "amount": stripe_client.to_minor_units(amount),
            "currency": currency.lower(),
            "metadata": {key: str(value) for key, value in (metadata or {}).items()},
        }
        return dict(self.intents[intent_id])

    def get_payment_intent(self, intent_id):
        return dict(self.intents[intent_id])

    def cancel_payment_intent(self, intent_id):
        self.intents[intent_id]["status"] = "canceled"
        return dict(self.intents[intent_id])

    def create_refund(self, intent_id, amount=None, reason=None, idempotency_key=None):
        refund = {
            "id": f"re_test_{len(self.refunds) + 1}",
            "payment_intent": intent_id,
            "amount": stripe_client.to_minor_units(amount) if amount is not None else self.intents[intent_id]["amount"],
            "status": self.refund_status,
        }
        self.refunds.append(refund)
        return refund

    def succeed(self, intent_id):
        self.intents[intent_id]["status"] = "succeeded"
        return dict(self.intents[intent_id])


@pytest.fixture()
def fake_stripe(monkeypatch):
    fake = FakeStripe()
    for name in ("create_payment_intent", "get_payment_intent", "cancel_payment_intent", "create_refund"):
        monkeypatch.setattr(stripe_client, name, Mock(side_effect=getattr(fake, name)))
    return fake


def _user(db, email, is_admin=False):
    user = User(first_name="Test", last_name="User", email=email, is_admin=is_admin)
    db.add(user)
    db.commit()
    return user


@pytest.fixture()
def customer(db):
    return _user(db, "customer@example.com")


@pytest.fixture()
def other_customer(db):
    return _user(db, "other@example.com")


@pytest.fixture()
def admin(db):
    return _user(db, "admin@example.com", is_admin=True)


def bearer(user, minutes=15):
    now = datetime.now(timezone.utc)
    payload = {
        "iat": int(now.timestamp()),
        "exp": int((now + timedelta(minutes=minutes)).timestamp()),
        "sub": str(user.id),
        "type": "access",
    }
    token = jwt.encode(payload, core_config.settings.JWT_SECRET, algorithm=core_config.settings.JWT_ALG)
    return {"Authorization": f"Bearer {token}"}


@pytest.fixture()
def auth_for():
    return bearer


@pytest.fixture()
def customer_headers(customer):
    return bearer(customer)


@pytest.fixture()
def admin_headers(admin):
    return bearer(admin)


@pytest.fixture()
def widget(db):
    product = Product(
        name="Widget", slug="widget", sku="WID-1", price=Decimal("10.00"), stock=5, is_active=True
    )
    db.add(product)
    db.commit()
    return product


@pytest.fixture()
def gadget(db):
    product = Product(
        name="Gadget", slug="gadget", sku="GAD-1", price=Decimal("25.00"), stock=10, is_active=True
    )
    db.add(product)
    db.commit()
    return product


@pytest.fixture()
def shirt(db):
    product = Product(name="Shirt", slug="shirt", sku="SHIRT", price=Decimal("20.00"), stock=0, is_active=True)
    product.variants.append(
        ProductVariant(name="Large", sku="SHIRT-L", price=Decimal("22.00"), stock=3, attributes={"size": "L"})
    )
    db.add(product)
    db.commit()
    return product


@pytest.fixture()
def shipping_methods(db):
    methods = [
        ShippingMethod(id="standard", name="Standard Shipping", carrier="USPS", price=Decimal("5.00"), is_active=True),
        ShippingMethod(id="express", name="Express Shipping", carrier="FedEx", price=Decimal("15.00"), is_active=True),
        ShippingMethod(id="legacy", name="Legacy Post", carrier="Post", price=Decimal("1.00"), is_active=False),
    ]
    db.add_all(methods)
    db.commit()
    return {method.id: method for method in methods}


@pytest.fixture()
def discount_codes(db):
    codes = [
        DiscountCode(code="WELCOME10", type="percentage", value=Decimal("0.10"), description="10% off", is_active=True),
        DiscountCode(code="FLAT5", type="fixed", value=Decimal("5.00"), description="$5 off", is_active=True),
        DiscountCode(
            code="OLDSALE",
            type="percentage",
            value=Decimal("0.50"),
            is_active=True,
            expires_at=utcnow() - timedelta(days=1),
        ),
    ]
    db.add_all(codes)
    db.commit()
    return {code.code: code for code in codes}


ADDRESS = {
    "full_name": "Ada Lovelace",
    "address_line1": "12 Analytical Row",
    "city": "London",
    "state": "LDN",
    "postal_code": "N1 9GU",
    "country": "GB",
}


@pytest.fixture()
def address():
    return dict(ADDRESS)


@pytest.fixture()
def customer_cart(db, customer):
    return cart_service.get_or_create_cart(db, CartOwner(customer_id=customer.id))


@pytest.fixture()
def ready_cart(db, customer_cart, widget, shipping_methods):
    """Customer cart holding 2 widgets with standard shipping selected."""
    cart_service.add_item(db, customer_cart, widget.id, 2)
    cart_service.set_shipping_method(db, customer_cart, "standard")
    return customer_cart
