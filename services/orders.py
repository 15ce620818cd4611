"""
Order lifecycle: explicit transition table, status history, stock restoration.

Side effects are keyed off the (old, new) pair returned by ``transition`` so a
cancellation restores stock based on the status the order was *in*, and the
``inventory_restored`` flag keeps restoration to exactly once per order.
"""
from datetime import datetime, timedelta
from typing import List

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.config import settings
from core.db import utcnow
from core.errors import (
    ConcurrentModification,
    Forbidden,
    InvalidStateTransition,
    NotFound,
    ProviderError,
    ValidationFailed,
)
from core.logging import get_logger
from models.order import Order, OrderStatus, OrderStatusHistory
from models.payment import CARD_METHODS, Payment, PaymentStatus
from models.user import User
from services import inventory, stripe_client
from services.email import send_shipping_notification

logger = get_logger(__name__)

VALID_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.PROCESSING, OrderStatus.CANCELLED},
    OrderStatus.PROCESSING: {OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.CANCELLED, OrderStatus.REFUNDED},
    OrderStatus.DELIVERED: {OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.REFUNDED: set(),
}

# Statuses a customer may cancel from; later stages need an admin
CUSTOMER_CANCELLABLE = {OrderStatus.PENDING, OrderStatus.PROCESSING}

EXPIRY_NOTE = "Payment window expired"


def can_transition(current: str, target: str) -> bool:
    return OrderStatus(target) in VALID_TRANSITIONS[OrderStatus(current)]


def transition(
    order: Order, new_status: OrderStatus | str, actor_id: int | None = None, note: str | None = None
) -> tuple[OrderStatus, OrderStatus]:
    """Move ``order`` to ``new_status`` and append a history entry; nothing is flushed."""
    try:
        target = OrderStatus(new_status)
    except ValueError as exc:
        raise ValidationFailed(f"Unknown order status: {new_status}") from exc
    current = OrderStatus(order.status)
    if target not in VALID_TRANSITIONS[current]:
        raise InvalidStateTransition(current.value, target.value)

    order.status = target.value
    order.status_history.append(OrderStatusHistory(status=target.value, note=note, actor_id=actor_id))
    logger.info("Order %s: %s -> %s (actor=%s)", order.order_number, current.value, target.value, actor_id)
    return current, target


def restore_inventory(db: Session, order: Order) -> bool:
    if order.inventory_restored:
        logger.info("Order %s: stock already restored, skipping", order.order_number)
        return False
    for item in order.items:
        inventory.increment(db, item.product_id, item.variant_id, item.quantity)
    order.inventory_restored = True
    logger.info("Order %s: stock restored for %s lines", order.order_number, len(order.items))
    return True


def commit(db: Session) -> None:
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification("Order was modified by another request, please retry") from exc
    except IntegrityError as exc:
        db.rollback()
        logger.warning("Commit rejected by a constraint: %s", exc.orig)
        raise ConcurrentModification("Order conflicts with an existing record") from exc


def get_order(db: Session, order_id: int) -> Order:
    order = db.get(Order, order_id)
    if not order:
        raise NotFound("Order not found")
    return order


def get_order_for(db: Session, order_id: int, requester: User) -> Order:
    order = get_order(db, order_id)
    if order.customer_id != requester.id and not requester.is_admin:
        raise Forbidden("Not authorized to access this order")
    return order


def list_orders(db: Session, customer: User) -> List[Order]:
    stmt = select(Order).where(Order.customer_id == customer.id).order_by(Order.created_at.desc(), Order.id.desc())
    return list(db.execute(stmt).scalars())


def list_all_orders(db: Session, status: str | None = None) -> List[Order]:
    stmt = select(Order).order_by(Order.created_at.desc(), Order.id.desc())
    if status:
        try:
            stmt = stmt.where(Order.status == OrderStatus(status).value)
        except ValueError as exc:
            raise ValidationFailed(f"Unknown order status: {status}") from exc
    return list(db.execute(stmt).scalars())


def _apply_cancellation(db: Session, order: Order, actor_id: int | None, note: str | None) -> None:
    transition(order, OrderStatus.CANCELLED, actor_id=actor_id, note=note)
    # Flush the status change first: a concurrent cancel loses on the version
    # check here, before any stock is touched.
    db.flush()
    restore_inventory(db, order)


def cancel_order(db: Session, order: Order, actor_id: int | None = None, note: str | None = None) -> Order:
    """Cancel ``order`` and release its stock. Cancelling a cancelled order is a no-op."""
    if order.status == OrderStatus.CANCELLED.value:
        logger.info("Order %s already cancelled", order.order_number)
        return order
    try:
        _apply_cancellation(db, order, actor_id, note)
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification("Order was modified by another request, please retry") from exc
    commit(db)
    return order


def cancel_own_order(db: Session, order_id: int, requester: User, note: str | None = None) -> Order:
    order = get_order_for(db, order_id, requester)
    if order.status == OrderStatus.CANCELLED.value:
        return order
    if not requester.is_admin and OrderStatus(order.status) not in CUSTOMER_CANCELLABLE:
        raise InvalidStateTransition(
            order.status, OrderStatus.CANCELLED.value, f"Order cannot be cancelled once {order.status}"
        )
    cancel_order(db, order, actor_id=requester.id, note=note or "Cancelled by customer")
    _release_intent(order)
    return order


def _release_intent(order: Order) -> None:
    payment = order.payment
    if not payment or not payment.transaction_id or payment.status != PaymentStatus.PENDING.value:
        return
    try:
        stripe_client.cancel_payment_intent(payment.transaction_id)
    except ProviderError:
        logger.warning("Order %s: could not cancel intent %s", order.order_number, payment.transaction_id)


def update_status(
    db: Session,
    order_id: int,
    new_status: str,
    actor: User,
    note: str | None = None,
    tracking_number: str | None = None,
) -> Order:
    order = get_order(db, order_id)
    try:
        target = OrderStatus(new_status)
    except ValueError as exc:
        raise ValidationFailed(f"Unknown order status: {new_status}") from exc

    if target == OrderStatus.REFUNDED:
        raise InvalidStateTransition(
            order.status, target.value, "Refunds must be issued through the order's payment refund endpoint"
        )
    if (
        target == OrderStatus.PROCESSING
        and order.status == OrderStatus.PENDING.value
        and order.payment is not None
        and order.payment.method in CARD_METHODS
    ):
        raise InvalidStateTransition(
            order.status, target.value, "Card orders move to processing when their payment is confirmed"
        )

    if target == OrderStatus.CANCELLED:
        if order.status == OrderStatus.CANCELLED.value:
            return order
        try:
            _apply_cancellation(db, order, actor.id, note)
        except StaleDataError as exc:
            db.rollback()
            raise ConcurrentModification("Order was modified by another request, please retry") from exc
    else:
        transition(order, target, actor_id=actor.id, note=note)
        if tracking_number:
            order.tracking_number = tracking_number
    commit(db)

    if target == OrderStatus.SHIPPED and order.tracking_number:
        send_shipping_notification(
            order.email,
            {
                "order_number": order.order_number,
                "carrier": order.shipping_carrier or order.shipping_method_name,
                "tracking_number": order.tracking_number,
            },
        )
    return order


def mark_delivered(db: Session, order_id: int, actor: User) -> Order:
    return update_status(db, order_id, OrderStatus.DELIVERED.value, actor, note="Delivered")


def _stale_orders(db: Session, cutoff: datetime) -> List[Order]:
    stmt = (
        select(Order)
        .join(Payment, Payment.order_id == Order.id)
        .where(
            Order.status == OrderStatus.PENDING.value,
            Order.created_at <= cutoff,
            # Cash on delivery settles at the door and never expires
            Payment.method.in_(CARD_METHODS),
            Payment.status.in_([PaymentStatus.PENDING.value, PaymentStatus.FAILED.value]),
        )
        .order_by(Order.id)
    )
    return list(db.execute(stmt).scalars())


def expire_stale_orders(db: Session, now: datetime | None = None) -> int:
    """
    Cancel unpaid orders older than the payment window and release their stock.

    An order whose intent turns out to have succeeded in the meantime is settled
    instead of cancelled, and one still processing at the provider is left for
    the next sweep.
    """
    # Imported here: payments imports this module for transitions
    from services import payments

    cutoff = (now or utcnow()) - timedelta(minutes=settings.ORDER_PAYMENT_TTL_MINUTES)
    expired = 0
    for order in _stale_orders(db, cutoff):
        payment = order.payment
        try:
            if payment.transaction_id:
                intent = stripe_client.get_payment_intent(payment.transaction_id)
                intent_status = intent.get("status")
                if intent_status == "succeeded":
                    payments.apply_payment_succeeded(db, order, payment.transaction_id)
                    commit(db)
                    payments.notify_order_confirmed(order)
                    continue
                if intent_status == "processing":
                    logger.info("Order %s: payment still processing, not expiring", order.order_number)
                    continue
                try:
                    stripe_client.cancel_payment_intent(payment.transaction_id)
                except ProviderError:
                    logger.warning("Order %s: could not cancel intent %s", order.order_number, payment.transaction_id)
            cancel_order(db, order, actor_id=None, note=EXPIRY_NOTE)
            expired += 1
        except (ProviderError, ConcurrentModification):
            db.rollback()
            logger.exception("Order %s: expiry sweep failed, will retry", order.order_number)
    if expired:
        logger.info("Expired %s unpaid orders", expired)
    return expired
