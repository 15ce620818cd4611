"""
Payment reconciliation: map provider intent/charge events onto order state.

Both entry points converge on ``apply_payment_succeeded``, which is a no-op on
an already-completed payment, so a client confirmation racing a webhook (or a
redelivered webhook) produces one ``processing`` transition and nothing more.
"""
import uuid
from decimal import Decimal
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.orm import Session

from core.db import utcnow
from core.errors import (
    AlreadyRefunded,
    NoPaymentTransaction,
    PaymentNotSucceeded,
    ProviderError,
    ValidationFailed,
)
from core.logging import get_logger
from models.order import Order, OrderStatus
from models.payment import CARD_METHODS, OrderRefund, Payment, PaymentStatus, WebhookEvent
from models.user import User
from services import orders as order_service
from services import stripe_client
from services.email import order_summary, send_order_confirmation
from services.pricing import money

logger = get_logger(__name__)

REFUND_PENDING = "pending"
REFUND_SUCCEEDED = "succeeded"
REFUND_FAILED = "failed"


def notify_order_confirmed(order: Order) -> None:
    send_order_confirmation(order.email, order_summary(order))


def _payment_for(order: Order) -> Payment:
    if order.payment is None:
        raise NoPaymentTransaction("Order has no payment record")
    return order.payment


def _find_by_transaction(db: Session, transaction_id: str) -> Order | None:
    stmt = select(Order).join(Payment, Payment.order_id == Order.id).where(Payment.transaction_id == transaction_id)
    return db.execute(stmt).scalar_one_or_none()


def _check_intent_amount(order: Order, intent: Dict[str, Any]) -> None:
    amount = intent.get("amount")
    currency = (intent.get("currency") or "").upper()
    if amount is not None and stripe_client.from_minor_units(amount) != money(order.total):
        raise ValidationFailed("Payment amount does not match order total")
    if currency and currency != order.currency.upper():
        raise ValidationFailed("Payment currency does not match order currency")


def _check_intent_owner(order: Order, intent: Dict[str, Any]) -> None:
    # Checkout intents predate the order and carry its cart instead
    metadata = intent.get("metadata") or {}
    owner = {"order_id": order.id, "cart_id": order.cart_id, "customer_id": order.customer_id}
    claimed = {key: str(metadata[key]) for key in owner if key in metadata}
    if "order_id" not in claimed and "cart_id" not in claimed:
        raise ValidationFailed("Payment intent does not belong to this order")
    if any(value != str(owner[key]) for key, value in claimed.items()):
        raise ValidationFailed("Payment intent does not belong to this order")


def apply_payment_succeeded(db: Session, order: Order, transaction_id: str) -> bool:
    """
    Record a succeeded payment and move the order to ``processing``.

    Returns False when the payment was already completed. A success arriving
    for an order that has left ``pending`` (e.g. cancelled by the expiry sweep)
    updates the payment only and is logged for an operator refund.
    """
    payment = _payment_for(order)
    if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        logger.info("Order %s: payment already %s, ignoring success", order.order_number, payment.status)
        return False

    payment.status = PaymentStatus.COMPLETED.value
    payment.transaction_id = transaction_id
    payment.paid_at = utcnow()
    payment.failure_reason = None

    if order.status == OrderStatus.PENDING.value:
        order_service.transition(order, OrderStatus.PROCESSING, note="Payment confirmed")
    else:
        logger.error(
            "Order %s is %s but payment %s succeeded; needs manual refund",
            order.order_number,
            order.status,
            transaction_id,
        )
    return True


def create_payment_intent_for_order(
    db: Session, order_id: int, requester: User, amount: Decimal, currency: str
) -> Dict[str, str]:
    order = order_service.get_order_for(db, order_id, requester)
    payment = _payment_for(order)
    if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        raise ValidationFailed("Order is already paid")
    if order.status != OrderStatus.PENDING.value:
        raise ValidationFailed(f"Order is {order.status} and cannot be paid")
    if money(amount) != money(order.total):
        raise ValidationFailed("Amount does not match order total")
    if currency.upper() != order.currency.upper():
        raise ValidationFailed("Currency does not match order currency")

    # One key per attempt: transport retries inside the client reuse it
    intent = stripe_client.create_payment_intent(
        order.total,
        order.currency,
        metadata={"order_id": order.id, "order_number": order.order_number, "customer_id": order.customer_id},
        idempotency_key=f"order-{order.id}-{uuid.uuid4().hex}",
    )
    payment.transaction_id = intent["id"]
    payment.client_secret = intent.get("client_secret")
    payment.status = PaymentStatus.PENDING.value
    payment.failure_reason = None
    order_service.commit(db)
    logger.info("Order %s: new payment intent %s", order.order_number, intent["id"])
    return {"client_secret": payment.client_secret, "payment_intent_id": payment.transaction_id}


def confirm_payment(db: Session, order_id: int, intent_id: str, requester: User) -> Order:
    order = order_service.get_order_for(db, order_id, requester)
    payment = _payment_for(order)
    if payment.status == PaymentStatus.COMPLETED.value:
        logger.info("Order %s already paid", order.order_number)
        return order
    if payment.method not in CARD_METHODS or not payment.transaction_id:
        raise NoPaymentTransaction("Order has no card payment to confirm")
    if payment.transaction_id != intent_id:
        raise ValidationFailed("Payment intent does not belong to this order")

    intent = stripe_client.get_payment_intent(intent_id)
    if intent.get("status") != "succeeded":
        raise PaymentNotSucceeded(f"Payment has not succeeded (status: {intent.get('status')})")
    _check_intent_owner(order, intent)
    _check_intent_amount(order, intent)

    applied = apply_payment_succeeded(db, order, intent_id)
    order_service.commit(db)
    if applied:
        notify_order_confirmed(order)
    return order


# Event handlers mutate the session without committing and return the order
# to send a confirmation for, if any.


def _on_intent_succeeded(db: Session, intent: Dict[str, Any]) -> Order | None:
    order = _order_for_intent(db, intent)
    if order is None:
        logger.warning("No order for succeeded intent %s", intent.get("id"))
        return None
    if not apply_payment_succeeded(db, order, intent["id"]):
        return None
    return order if order.status == OrderStatus.PROCESSING.value else None


def _on_intent_failed(db: Session, intent: Dict[str, Any]) -> None:
    order = _order_for_intent(db, intent)
    if order is None:
        logger.warning("No order for failed intent %s", intent.get("id"))
        return
    payment = order.payment
    if payment.status in (PaymentStatus.COMPLETED.value, PaymentStatus.REFUNDED.value):
        logger.info("Order %s: ignoring failure for already %s payment", order.order_number, payment.status)
        return
    if payment.transaction_id and payment.transaction_id != intent["id"]:
        logger.info("Order %s: ignoring failure for superseded intent %s", order.order_number, intent["id"])
        return

    error = intent.get("last_payment_error") or {}
    payment.status = PaymentStatus.FAILED.value
    payment.failure_reason = error.get("message") or intent.get("cancellation_reason") or "Payment failed"
    logger.info("Order %s: payment failed (%s)", order.order_number, payment.failure_reason)


def _order_for_intent(db: Session, intent: Dict[str, Any]) -> Order | None:
    order = _find_by_transaction(db, intent["id"])
    if order is not None:
        return order
    order_id = (intent.get("metadata") or {}).get("order_id")
    if order_id and str(order_id).isdigit():
        return db.get(Order, int(order_id))
    return None


def _on_charge_refunded(db: Session, charge: Dict[str, Any]) -> None:
    intent_id = charge.get("payment_intent")
    order = _find_by_transaction(db, intent_id) if intent_id else None
    if order is None:
        logger.warning("No order for refunded charge %s (intent %s)", charge.get("id"), intent_id)
        return

    for refund in order.refunds:
        if refund.status == REFUND_PENDING:
            refund.status = REFUND_SUCCEEDED
    _mark_refunded(order)


def _mark_refunded(order: Order, actor_id: int | None = None, note: str | None = None) -> None:
    order.payment.status = PaymentStatus.REFUNDED.value
    if order_service.can_transition(order.status, OrderStatus.REFUNDED.value):
        order_service.transition(order, OrderStatus.REFUNDED, actor_id=actor_id, note=note or "Payment refunded")
    elif order.status != OrderStatus.REFUNDED.value:
        logger.info("Order %s is %s; refund recorded on payment only", order.order_number, order.status)


EVENT_HANDLERS = {
    "payment_intent.succeeded": _on_intent_succeeded,
    "payment_intent.payment_failed": _on_intent_failed,
    "payment_intent.canceled": _on_intent_failed,
    "charge.refunded": _on_charge_refunded,
}


def handle_provider_webhook(db: Session, payload: bytes, signature: str | None) -> Dict[str, bool]:
    """
    Verify and apply a provider event.

    Only a bad signature propagates. Anything else is logged and acknowledged
    so the provider does not keep retrying an event we cannot apply.
    """
    event = stripe_client.construct_webhook_event(payload, signature)
    event_id = event.get("id")
    event_type = event.get("type")
    logger.info("Webhook event %s received: %s", event_id, event_type)

    if event_id and db.execute(select(WebhookEvent).where(WebhookEvent.event_id == event_id)).scalar_one_or_none():
        logger.info("Webhook event %s already processed", event_id)
        return {"received": True}

    handler = EVENT_HANDLERS.get(event_type)
    try:
        confirmed = None
        if handler is None:
            logger.info("Unhandled webhook event type: %s", event_type)
        else:
            confirmed = handler(db, event.get("data", {}).get("object", {}))
        if event_id:
            db.add(WebhookEvent(event_id=event_id, type=event_type))
        db.commit()
    except Exception:
        db.rollback()
        logger.exception("Failed to process webhook event %s (%s)", event_id, event_type)
        return {"received": True}

    if confirmed is not None:
        notify_order_confirmed(confirmed)
    return {"received": True}


def create_refund(
    db: Session, order_id: int, actor: User, amount: Decimal | None = None, reason: str | None = None
) -> Dict[str, Any]:
    order = order_service.get_order(db, order_id)
    payment = order.payment
    if payment is None or not payment.transaction_id:
        raise NoPaymentTransaction()
    if payment.status == PaymentStatus.REFUNDED.value or order.status == OrderStatus.REFUNDED.value:
        raise AlreadyRefunded()
    if any(refund.status == REFUND_PENDING for refund in order.refunds):
        raise AlreadyRefunded("A refund for this order is already in progress")
    if payment.status != PaymentStatus.COMPLETED.value:
        raise PaymentNotSucceeded("Order has not been paid")

    refund_amount = money(amount if amount is not None else order.total)
    if refund_amount <= 0 or refund_amount > money(order.total):
        raise ValidationFailed("Refund amount must be positive and at most the order total")

    provider_refund = stripe_client.create_refund(
        payment.transaction_id,
        amount=refund_amount,
        reason=reason,
        idempotency_key=f"refund-{order.id}-{len(order.refunds) + 1}",
    )
    provider_status = provider_refund.get("status")
    refund = OrderRefund(
        amount=refund_amount,
        reason=reason or "requested_by_customer",
        provider_refund_id=provider_refund.get("id"),
        status=REFUND_SUCCEEDED if provider_status == "succeeded" else (
            REFUND_PENDING if provider_status == "pending" else REFUND_FAILED
        ),
    )
    order.refunds.append(refund)

    if refund.status == REFUND_SUCCEEDED:
        _mark_refunded(order, actor_id=actor.id, note=f"Refunded {refund_amount} {order.currency}")
    elif refund.status == REFUND_PENDING:
        logger.info("Order %s: refund %s pending at provider", order.order_number, refund.provider_refund_id)
    order_service.commit(db)

    if refund.status == REFUND_FAILED:
        raise ProviderError(f"Refund was not accepted by the provider (status: {provider_status})")
    return {"refund": refund, "order": order}


def get_payment_status(intent_id: str) -> Dict[str, Any]:
    intent = stripe_client.get_payment_intent(intent_id)
    amount = intent.get("amount")
    return {
        "id": intent.get("id", intent_id),
        "status": intent.get("status"),
        "amount": stripe_client.from_minor_units(amount) if amount is not None else None,
        "currency": (intent.get("currency") or "").upper() or None,
    }
