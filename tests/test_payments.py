import hashlib
import hmac
import json
import time
from decimal import Decimal

import pytest

from core.config import settings
from core.errors import (
    AlreadyRefunded,
    Forbidden,
    InvalidWebhookSignature,
    NoPaymentTransaction,
    PaymentNotSucceeded,
    ValidationFailed,
)
from models.order import Order
from models.payment import PaymentStatus, WebhookEvent
from services import cart as cart_service
from services import checkout, inventory, stripe_client
from services import orders as order_service
from services import payments as payment_service
from services.cart import CartOwner


@pytest.fixture()
def order(db, customer, ready_cart, address, fake_stripe):
    return checkout.create_order(db, ready_cart.id, customer, address, "credit_card")


@pytest.fixture()
def paid_order(db, customer, order, fake_stripe):
    fake_stripe.succeed(order.payment.transaction_id)
    return payment_service.confirm_payment(db, order.id, order.payment.transaction_id, customer)


def signed(event, secret=None, timestamp=None):
    payload = json.dumps(event).encode()
    timestamp = timestamp or int(time.time())
    key = (secret or settings.STRIPE_WEBHOOK_SECRET).encode()
    signature = hmac.new(key, f"{timestamp}.".encode() + payload, hashlib.sha256).hexdigest()
    return payload, f"t={timestamp},v1={signature}"


def intent_event(event_id, event_type, intent):
    return {"id": event_id, "type": event_type, "data": {"object": intent}}


def deliver(db, event):
    payload, header = signed(event)
    return payment_service.handle_provider_webhook(db, payload, header)


def _processing_entries(order):
    return [entry for entry in order.status_history if entry.status == "processing"]


class TestConfirmPayment:
    """Test cases for client-side payment confirmation"""

    def test_confirm_moves_order_to_processing(self, db, customer, order, fake_stripe, sent_emails):
        fake_stripe.succeed(order.payment.transaction_id)

        result = payment_service.confirm_payment(db, order.id, order.payment.transaction_id, customer)

        assert result.status == "processing"
        assert result.payment.status == PaymentStatus.COMPLETED.value
        assert result.payment.paid_at is not None
        assert len(sent_emails) == 1
        assert order.order_number in sent_emails[0]["subject"]

    def test_confirm_is_idempotent(self, db, customer, paid_order, widget, sent_emails):
        payment_service.confirm_payment(db, paid_order.id, paid_order.payment.transaction_id, customer)

        assert len(_processing_entries(paid_order)) == 1
        assert len(sent_emails) == 1
        assert inventory.current_stock(db, widget.id) == 3

    def test_unsucceeded_intent_is_declined(self, db, customer, order):
        with pytest.raises(PaymentNotSucceeded):
            payment_service.confirm_payment(db, order.id, order.payment.transaction_id, customer)

        assert order.status == "pending"
        assert order.payment.status == PaymentStatus.PENDING.value

    def test_foreign_intent_rejected(self, db, customer, order):
        with pytest.raises(ValidationFailed):
            payment_service.confirm_payment(db, order.id, "pi_someone_else", customer)

    def test_other_customer_forbidden(self, db, other_customer, order):
        with pytest.raises(Forbidden):
            payment_service.confirm_payment(db, order.id, order.payment.transaction_id, other_customer)

    def test_cash_on_delivery_order_cannot_take_another_orders_intent(
        self, db, customer, other_customer, ready_cart, address, widget, fake_stripe
    ):
        cod = checkout.create_order(db, ready_cart.id, customer, address, "cash_on_delivery")
        other_cart = cart_service.get_or_create_cart(db, CartOwner(customer_id=other_customer.id))
        cart_service.add_item(db, other_cart, widget.id, 2)
        cart_service.set_shipping_method(db, other_cart, "standard")
        card_order = checkout.create_order(db, other_cart.id, other_customer, address, "credit_card")
        fake_stripe.succeed(card_order.payment.transaction_id)

        with pytest.raises(NoPaymentTransaction):
            payment_service.confirm_payment(db, cod.id, card_order.payment.transaction_id, customer)

        db.expire_all()
        assert db.get(Order, cod.id).status == "pending"
        assert db.get(Order, cod.id).payment.transaction_id is None
        assert db.get(Order, card_order.id).payment.status == PaymentStatus.PENDING.value

    def test_intent_for_another_cart_rejected(self, db, customer, order, fake_stripe):
        intent_id = order.payment.transaction_id
        fake_stripe.intents[intent_id]["metadata"]["cart_id"] = "999"
        fake_stripe.succeed(intent_id)

        with pytest.raises(ValidationFailed):
            payment_service.confirm_payment(db, order.id, intent_id, customer)

        assert order.status == "pending"
        assert order.payment.status == PaymentStatus.PENDING.value

    def test_retry_intent_carries_order_id(self, db, customer, order, fake_stripe):
        retry = payment_service.create_payment_intent_for_order(db, order.id, customer, Decimal("25.00"), "USD")
        fake_stripe.succeed(retry["payment_intent_id"])

        result = payment_service.confirm_payment(db, order.id, retry["payment_intent_id"], customer)

        assert fake_stripe.intents[retry["payment_intent_id"]]["metadata"]["order_id"] == str(order.id)
        assert result.status == "processing"

    def test_notification_failure_does_not_fail_confirmation(self, db, customer, order, fake_stripe, monkeypatch):
        def _broken(*args, **kwargs):
            raise RuntimeError("template store down")

        monkeypatch.setattr("services.email.render_template", _broken)
        fake_stripe.succeed(order.payment.transaction_id)

        result = payment_service.confirm_payment(db, order.id, order.payment.transaction_id, customer)

        assert result.status == "processing"


class TestPaymentIntent:
    """Test cases for retrying payment on an unpaid order"""

    def test_new_intent_replaces_old(self, db, customer, order, fake_stripe):
        old_intent = order.payment.transaction_id

        result = payment_service.create_payment_intent_for_order(
            db, order.id, customer, amount=Decimal("25.00"), currency="usd"
        )

        assert result["payment_intent_id"] != old_intent
        assert order.payment.transaction_id == result["payment_intent_id"]
        assert result["client_secret"].startswith(result["payment_intent_id"])

    def test_amount_must_match_total(self, db, customer, order):
        with pytest.raises(ValidationFailed):
            payment_service.create_payment_intent_for_order(db, order.id, customer, Decimal("1.00"), "USD")

    def test_currency_must_match(self, db, customer, order):
        with pytest.raises(ValidationFailed):
            payment_service.create_payment_intent_for_order(db, order.id, customer, Decimal("25.00"), "EUR")

    def test_paid_order_rejected(self, db, customer, paid_order):
        with pytest.raises(ValidationFailed):
            payment_service.create_payment_intent_for_order(db, paid_order.id, customer, Decimal("25.00"), "USD")


class TestWebhooks:
    """Test cases for provider-driven reconciliation"""

    def test_invalid_signature_rejected_before_processing(self, db, order, fake_stripe):
        intent = fake_stripe.succeed(order.payment.transaction_id)
        payload, _ = signed(intent_event("evt_1", "payment_intent.succeeded", intent))

        with pytest.raises(InvalidWebhookSignature):
            payment_service.handle_provider_webhook(db, payload, "t=1,v1=deadbeef")

        assert order.status == "pending"
        assert db.query(WebhookEvent).count() == 0

    def test_succeeded_event_confirms_order(self, db, order, fake_stripe, sent_emails):
        intent = fake_stripe.succeed(order.payment.transaction_id)

        assert deliver(db, intent_event("evt_1", "payment_intent.succeeded", intent)) == {"received": True}

        assert order.status == "processing"
        assert order.payment.status == PaymentStatus.COMPLETED.value
        assert len(sent_emails) == 1

    def test_duplicate_event_is_acknowledged_once(self, db, order, fake_stripe, widget, sent_emails):
        intent = fake_stripe.succeed(order.payment.transaction_id)
        event = intent_event("evt_dup", "payment_intent.succeeded", intent)

        deliver(db, event)
        deliver(db, event)

        assert len(_processing_entries(order)) == 1
        assert len(sent_emails) == 1
        assert db.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_dup").count() == 1
        assert inventory.current_stock(db, widget.id) == 3

    def test_succeeded_event_after_confirmation_is_noop(self, db, paid_order, fake_stripe, sent_emails):
        intent = fake_stripe.get_payment_intent(paid_order.payment.transaction_id)

        assert deliver(db, intent_event("evt_late", "payment_intent.succeeded", intent)) == {"received": True}

        assert len(_processing_entries(paid_order)) == 1
        assert len(sent_emails) == 1

    def test_failed_event_marks_payment_failed_only(self, db, order, widget, fake_stripe):
        intent = fake_stripe.get_payment_intent(order.payment.transaction_id)
        intent["status"] = "requires_payment_method"
        intent["last_payment_error"] = {"message": "Your card was declined."}

        deliver(db, intent_event("evt_fail", "payment_intent.payment_failed", intent))

        assert order.payment.status == PaymentStatus.FAILED.value
        assert order.payment.failure_reason == "Your card was declined."
        assert order.status == "pending"
        assert inventory.current_stock(db, widget.id) == 3

    def test_failed_event_after_success_is_ignored(self, db, paid_order, fake_stripe):
        intent = fake_stripe.get_payment_intent(paid_order.payment.transaction_id)

        deliver(db, intent_event("evt_fail_late", "payment_intent.payment_failed", intent))

        assert paid_order.payment.status == PaymentStatus.COMPLETED.value
        assert paid_order.status == "processing"

    def test_failure_of_superseded_intent_is_ignored(self, db, customer, order, fake_stripe):
        old = fake_stripe.get_payment_intent(order.payment.transaction_id)
        payment_service.create_payment_intent_for_order(db, order.id, customer, Decimal("25.00"), "USD")

        deliver(db, intent_event("evt_old_fail", "payment_intent.canceled", old))

        assert order.payment.status == PaymentStatus.PENDING.value

    def test_success_for_cancelled_order_records_payment(self, db, customer, order, fake_stripe, sent_emails):
        order_service.cancel_order(db, order, note="Payment window expired")
        intent = fake_stripe.succeed(order.payment.transaction_id)

        deliver(db, intent_event("evt_after_cancel", "payment_intent.succeeded", intent))

        assert order.status == "cancelled"
        assert order.payment.status == PaymentStatus.COMPLETED.value
        assert sent_emails == []

    def test_unknown_event_type_is_acknowledged(self, db, order):
        result = deliver(db, {"id": "evt_misc", "type": "customer.created", "data": {"object": {}}})

        assert result == {"received": True}
        assert db.query(WebhookEvent).filter(WebhookEvent.event_id == "evt_misc").count() == 1

    def test_processing_error_is_acknowledged_and_not_recorded(self, db, order, fake_stripe, monkeypatch):
        def _boom(*args, **kwargs):
            raise RuntimeError("database hiccup")

        monkeypatch.setattr(payment_service, "apply_payment_succeeded", _boom)
        intent = fake_stripe.succeed(order.payment.transaction_id)

        result = deliver(db, intent_event("evt_err", "payment_intent.succeeded", intent))

        assert result == {"received": True}
        assert db.query(WebhookEvent).count() == 0
        assert db.get(Order, order.id).status == "pending"

    def test_order_located_by_metadata(self, db, order, fake_stripe):
        intent = {
            "id": "pi_unknown_to_us",
            "status": "succeeded",
            "metadata": {"order_id": str(order.id)},
        }

        deliver(db, intent_event("evt_meta", "payment_intent.succeeded", intent))

        assert order.status == "processing"
        assert order.payment.transaction_id == "pi_unknown_to_us"

    def test_charge_refunded_event(self, db, paid_order):
        charge = {"id": "ch_1", "object": "charge", "payment_intent": paid_order.payment.transaction_id}

        deliver(db, intent_event("evt_refund", "charge.refunded", charge))

        assert paid_order.status == "refunded"
        assert paid_order.payment.status == PaymentStatus.REFUNDED.value


class TestRefunds:
    """Test cases for admin refunds"""

    def test_full_refund(self, db, admin, paid_order, widget):
        result = payment_service.create_refund(db, paid_order.id, admin, reason="requested_by_customer")

        assert result["order"].status == "refunded"
        assert result["order"].payment.status == PaymentStatus.REFUNDED.value
        assert result["refund"].amount == Decimal("25.00")
        assert result["refund"].status == "succeeded"
        assert paid_order.status_history[-1].actor_id == admin.id
        # Refunds are a payment-state change only
        assert inventory.current_stock(db, widget.id) == 3

    def test_refund_twice_fails(self, db, admin, paid_order):
        payment_service.create_refund(db, paid_order.id, admin)

        with pytest.raises(AlreadyRefunded):
            payment_service.create_refund(db, paid_order.id, admin)

    def test_pending_refund_waits_for_webhook(self, db, admin, paid_order, fake_stripe):
        fake_stripe.refund_status = "pending"

        result = payment_service.create_refund(db, paid_order.id, admin)

        assert result["refund"].status == "pending"
        assert paid_order.status == "processing"
        assert paid_order.payment.status == PaymentStatus.COMPLETED.value
        with pytest.raises(AlreadyRefunded):
            payment_service.create_refund(db, paid_order.id, admin)

        charge = {"id": "ch_2", "payment_intent": paid_order.payment.transaction_id}
        deliver(db, intent_event("evt_refund_done", "charge.refunded", charge))

        assert paid_order.status == "refunded"
        assert paid_order.refunds[0].status == "succeeded"

    def test_partial_amount_is_sent_to_provider(self, db, admin, paid_order, fake_stripe):
        payment_service.create_refund(db, paid_order.id, admin, amount=Decimal("5.00"))

        assert fake_stripe.refunds[0]["amount"] == 500

    def test_refund_above_total_rejected(self, db, admin, paid_order):
        with pytest.raises(ValidationFailed):
            payment_service.create_refund(db, paid_order.id, admin, amount=Decimal("30.00"))

    def test_refund_without_transaction(self, db, admin, customer, ready_cart, address):
        order = checkout.create_order(db, ready_cart.id, customer, address, "cash_on_delivery")

        with pytest.raises(NoPaymentTransaction):
            payment_service.create_refund(db, order.id, admin)

    def test_refund_of_unpaid_order(self, db, admin, order):
        with pytest.raises(PaymentNotSucceeded):
            payment_service.create_refund(db, order.id, admin)


def test_get_payment_status(fake_stripe, order):
    status = payment_service.get_payment_status(order.payment.transaction_id)

    assert status["status"] == "requires_payment_method"
    assert status["amount"] == Decimal("25.00")
    assert status["currency"] == "USD"
