"""
Checkout: turn a cart into a pending order exactly once.

Everything that can be checked without side effects is checked first. The
provider intent (card methods only) is created before any database write, and
the database phase (order number, order snapshot, stock decrements, cart reset)
runs in a single transaction that either commits as a whole or rolls back.
"""
from typing import Any, Dict

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.errors import (
    CommerceError,
    ConcurrentModification,
    EmptyCart,
    Forbidden,
    InsufficientStock,
    InvalidShippingMethod,
    NotFound,
    ProductUnavailable,
    ProviderError,
    ValidationFailed,
)
from core.logging import get_logger
from models.cart import Cart
from models.order import Order, OrderStatus, OrderStatusHistory
from models.order_item import OrderItem
from models.payment import CARD_METHODS, Payment, PaymentMethod, PaymentStatus
from models.user import User
from services import cart as cart_service
from services import catalog, inventory, stripe_client
from services.order_numbers import next_order_number
from services.pricing import ZERO

logger = get_logger(__name__)


def _load_cart(db: Session, cart_id: int, requester: User) -> Cart:
    cart = db.get(Cart, cart_id)
    if not cart:
        raise NotFound(f"No cart found with id: {cart_id}")
    if cart.customer_id != requester.id:
        raise Forbidden("Cart does not belong to this user")
    if not cart.items:
        raise EmptyCart("Cannot create order with empty cart")
    return cart


def _validate_lines(db: Session, cart: Cart) -> None:
    for line in cart.items:
        try:
            catalog.resolve_item(db, line.product_id, line.variant_id)
        except NotFound as exc:
            raise ProductUnavailable(f"Product is no longer available: {line.name}") from exc
        available = inventory.current_stock(db, line.product_id, line.variant_id)
        if available < line.quantity:
            raise InsufficientStock(line.name, line.quantity, available)


def _resolve_shipping(db: Session, cart: Cart, shipping_method: str | None) -> None:
    if shipping_method:
        cart_service.select_shipping_method(db, cart, shipping_method)
    elif cart.shipping_method_id:
        # Re-resolve so a method disabled since it was chosen is rejected
        cart_service.select_shipping_method(db, cart, cart.shipping_method_id)
    else:
        raise InvalidShippingMethod("A shipping method is required to check out")


def _create_intent(cart: Cart, requester: User) -> Dict[str, Any]:
    if cart.total <= ZERO:
        raise ValidationFailed("Order total must be positive for card payments")
    return stripe_client.create_payment_intent(
        cart.total,
        cart.currency,
        metadata={"cart_id": cart.id, "customer_id": requester.id},
        idempotency_key=f"checkout-{cart.id}-v{cart.version}",
    )


def _build_order(
    cart: Cart,
    requester: User,
    order_number: str,
    shipping_address: Dict[str, Any],
    billing_address: Dict[str, Any] | None,
    payment_method: str,
    intent: Dict[str, Any] | None,
    carrier: str,
    notes: str | None,
) -> Order:
    order = Order(
        order_number=order_number,
        customer_id=requester.id,
        cart_id=cart.id,
        email=requester.email,
        currency=cart.currency,
        shipping_address=dict(shipping_address),
        billing_address=dict(billing_address or shipping_address),
        shipping_method_id=cart.shipping_method_id,
        shipping_method_name=cart.shipping_method_name,
        shipping_carrier=carrier,
        shipping_cost=cart.shipping_cost,
        subtotal=cart.subtotal,
        discount_code=cart.discount_code,
        discount_type=cart.discount_type,
        discount_value=cart.discount_value,
        discount_amount=cart.discount_amount,
        tax_rate=cart.tax_rate,
        tax_amount=cart.tax_amount,
        total=cart.total,
        status=OrderStatus.PENDING.value,
        notes=notes if notes is not None else cart.notes,
        inventory_restored=False,
    )
    for line in cart.items:
        order.items.append(
            OrderItem(
                product_id=line.product_id,
                variant_id=line.variant_id,
                name=line.name,
                sku=line.sku,
                image_url=line.image_url,
                unit_price=line.unit_price,
                quantity=line.quantity,
                subtotal=line.subtotal,
            )
        )
    order.payment = Payment(
        method=payment_method,
        status=PaymentStatus.PENDING.value,
        transaction_id=intent["id"] if intent else None,
        client_secret=intent.get("client_secret") if intent else None,
        amount=cart.total,
        currency=cart.currency,
    )
    order.status_history.append(
        OrderStatusHistory(status=OrderStatus.PENDING.value, note="Order created", actor_id=requester.id)
    )
    return order


def _intent_is_referenced(db: Session, intent_id: str) -> bool:
    stmt = select(Payment.id).where(Payment.transaction_id == intent_id)
    return db.execute(stmt).first() is not None


def _release_intent(db: Session, intent: Dict[str, Any] | None) -> None:
    if not intent:
        return
    # A concurrent checkout of the same cart version may have committed with
    # this intent (same idempotency key); leave it alone then.
    if _intent_is_referenced(db, intent["id"]):
        return
    try:
        stripe_client.cancel_payment_intent(intent["id"])
    except ProviderError:
        logger.warning("Could not cancel orphaned payment intent %s", intent["id"])


def create_order(
    db: Session,
    cart_id: int,
    requester: User,
    shipping_address: Dict[str, Any],
    payment_method: str,
    shipping_method: str | None = None,
    billing_address: Dict[str, Any] | None = None,
    notes: str | None = None,
) -> Order:
    try:
        method = PaymentMethod(payment_method).value
    except ValueError as exc:
        raise ValidationFailed(f"Unsupported payment method: {payment_method}") from exc

    cart = _load_cart(db, cart_id, requester)
    intent = None
    try:
        _resolve_shipping(db, cart, shipping_method)
        if cart.discount_code:
            catalog.find_discount(db, cart.discount_code)
        _validate_lines(db, cart)
        cart_service.recalculate(cart)
        carrier = catalog.find_shipping_method(db, cart.shipping_method_id).carrier or ""
        if method in CARD_METHODS:
            intent = _create_intent(cart, requester)
    except CommerceError:
        # Nothing was written; drop the in-memory shipping/totals refresh
        db.rollback()
        raise

    try:
        order_number = next_order_number(db)
        order = _build_order(
            cart, requester, order_number, shipping_address, billing_address, method, intent, carrier, notes
        )
        db.add(order)
        db.flush()

        for item in order.items:
            inventory.decrement(db, item.product_id, item.variant_id, item.quantity, product_name=item.name)

        cart_service.reset(cart)
        db.commit()
    except (StaleDataError, IntegrityError) as exc:
        db.rollback()
        _release_intent(db, intent)
        raise ConcurrentModification("Cart was checked out by another request, please retry") from exc
    except Exception:
        db.rollback()
        _release_intent(db, intent)
        raise

    logger.info(
        "Order %s created from cart %s: %s lines, total %s %s",
        order.order_number,
        cart.id,
        len(order.items),
        order.total,
        order.currency,
    )
    return order
