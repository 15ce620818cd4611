"""
Cart aggregate: line-item mutations against live catalog state.

Public operations validate, mutate, recompute totals and commit; an optimistic
version check on the cart row turns concurrent double-submits into
``ConcurrentModification`` instead of lost updates.
"""
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError

from core.config import settings
from core.db import utcnow
from core.errors import (
    ConcurrentModification,
    InsufficientStock,
    InvalidDiscountCode,
    InvalidShippingMethod,
    NotFound,
    ProductUnavailable,
    ValidationFailed,
)
from core.logging import get_logger
from models.cart import Cart
from models.cart_item import CartItem
from services import catalog, inventory
from services.pricing import calculate_totals, line_subtotal

logger = get_logger(__name__)


@dataclass(frozen=True)
class CartOwner:
    customer_id: int | None = None
    session_id: str | None = None

    def __post_init__(self):
        if (self.customer_id is None) == (self.session_id is None):
            raise ValueError("A cart belongs to exactly one of customer_id or session_id")


def _find_cart(db: Session, owner: CartOwner) -> Cart | None:
    if owner.customer_id is not None:
        stmt = select(Cart).where(Cart.customer_id == owner.customer_id)
    else:
        stmt = select(Cart).where(Cart.session_id == owner.session_id)
    return db.execute(stmt).scalar_one_or_none()


def _new_cart(owner: CartOwner) -> Cart:
    cart = Cart(
        customer_id=owner.customer_id,
        session_id=owner.session_id,
        currency=settings.DEFAULT_CURRENCY,
        tax_rate=settings.TAX_RATE if settings.TAX_RATE > 0 else None,
    )
    if owner.customer_id is None:
        cart.expires_at = utcnow() + timedelta(days=settings.GUEST_CART_TTL_DAYS)
    return cart


def get_cart(db: Session, owner: CartOwner) -> Cart | None:
    cart = _find_cart(db, owner)
    if cart and cart.expires_at and cart.expires_at <= utcnow():
        logger.info("Guest cart %s expired, discarding", cart.id)
        db.delete(cart)
        db.commit()
        return None
    return cart


def get_or_create_cart(db: Session, owner: CartOwner) -> Cart:
    cart = get_cart(db, owner)
    if cart:
        return cart

    cart = _new_cart(owner)
    db.add(cart)
    try:
        db.commit()
    except IntegrityError:
        # Another request created the cart first
        db.rollback()
        cart = _find_cart(db, owner)
        if cart is None:
            raise
        return cart
    logger.info("Created cart %s for %s", cart.id, owner)
    return cart


def recalculate(cart: Cart) -> Cart:
    for line in cart.items:
        line.subtotal = line_subtotal(line.unit_price, line.quantity)
    totals = calculate_totals(
        (line.subtotal for line in cart.items),
        discount_type=cart.discount_type,
        discount_value=cart.discount_value,
        tax_rate=cart.tax_rate,
        shipping_price=cart.shipping_method_price,
    )
    cart.subtotal = totals.subtotal
    cart.discount_amount = totals.discount_amount
    cart.tax_amount = totals.tax_amount
    cart.shipping_cost = totals.shipping_cost
    cart.total = totals.total
    return cart


def _save(db: Session, cart: Cart) -> Cart:
    recalculate(cart)
    if cart.expires_at is not None:
        cart.expires_at = utcnow() + timedelta(days=settings.GUEST_CART_TTL_DAYS)
    try:
        db.commit()
    except StaleDataError as exc:
        db.rollback()
        raise ConcurrentModification("Cart was modified by another request, please retry") from exc
    return cart


def _find_line(cart: Cart, product_id: int, variant_id: int | None) -> CartItem | None:
    for line in cart.items:
        if line.product_id == product_id and line.variant_id == variant_id:
            return line
    return None


def _get_line(cart: Cart, line_id: int) -> CartItem:
    for line in cart.items:
        if line.id == line_id:
            return line
    raise NotFound("Item not found in cart")


def _add_item(db: Session, cart: Cart, product_id: int, quantity: int, variant_id: int | None = None) -> CartItem:
    if quantity < 1:
        raise ValidationFailed("Quantity must be at least 1")

    item = catalog.resolve_item(db, product_id, variant_id)
    stock = inventory.current_stock(db, product_id, variant_id)
    line = _find_line(cart, product_id, variant_id)
    requested = quantity + (line.quantity if line else 0)
    if requested > stock:
        raise InsufficientStock(item.name, requested, stock)

    if line:
        line.quantity = requested
        line.unit_price = item.price
        line.max_quantity = stock
    else:
        line = CartItem(
            product_id=product_id,
            variant_id=variant_id,
            name=item.name,
            sku=item.sku,
            image_url=item.product.image_url,
            unit_price=item.price,
            quantity=quantity,
            max_quantity=stock,
        )
        cart.items.append(line)
    line.subtotal = line_subtotal(line.unit_price, line.quantity)
    return line


def add_item(db: Session, cart: Cart, product_id: int, quantity: int, variant_id: int | None = None) -> Cart:
    line = _add_item(db, cart, product_id, quantity, variant_id)
    logger.info("Cart %s: %s x%s", cart.id, line.name, line.quantity)
    return _save(db, cart)


def update_item_quantity(db: Session, cart: Cart, line_id: int, quantity: int) -> Cart:
    line = _get_line(cart, line_id)
    if quantity <= 0:
        return remove_item(db, cart, line_id)

    stock = inventory.current_stock(db, line.product_id, line.variant_id)
    if quantity > stock:
        raise InsufficientStock(line.name, quantity, stock)
    line.quantity = quantity
    line.max_quantity = stock
    logger.info("Cart %s: line %s quantity set to %s", cart.id, line.id, quantity)
    return _save(db, cart)


def remove_item(db: Session, cart: Cart, line_id: int) -> Cart:
    line = _get_line(cart, line_id)
    cart.items.remove(line)
    logger.info("Cart %s: removed line %s", cart.id, line_id)
    return _save(db, cart)


def reset(cart: Cart) -> Cart:
    """Empty the cart and drop discount/shipping selections without committing."""
    cart.items.clear()
    cart.discount_code = None
    cart.discount_type = None
    cart.discount_value = None
    cart.discount_description = None
    cart.shipping_method_id = None
    cart.shipping_method_name = None
    cart.shipping_method_price = None
    cart.notes = None
    return recalculate(cart)


def clear(db: Session, cart: Cart) -> Cart:
    reset(cart)
    logger.info("Cart %s cleared", cart.id)
    return _save(db, cart)


def _apply_discount(db: Session, cart: Cart, code: str) -> None:
    discount = catalog.find_discount(db, code)
    cart.discount_code = discount.code
    cart.discount_type = discount.type
    cart.discount_value = discount.value
    cart.discount_description = discount.description


def apply_discount(db: Session, cart: Cart, code: str) -> Cart:
    _apply_discount(db, cart, code)
    logger.info("Cart %s: discount %s applied", cart.id, cart.discount_code)
    return _save(db, cart)


def remove_discount(db: Session, cart: Cart) -> Cart:
    cart.discount_code = None
    cart.discount_type = None
    cart.discount_value = None
    cart.discount_description = None
    return _save(db, cart)


def select_shipping_method(db: Session, cart: Cart, method_id: str) -> Cart:
    """Resolve and attach a shipping method, recomputing totals without committing."""
    method = catalog.find_shipping_method(db, method_id)
    cart.shipping_method_id = method.id
    cart.shipping_method_name = method.name
    cart.shipping_method_price = method.price
    return recalculate(cart)


def set_shipping_method(db: Session, cart: Cart, method_id: str) -> Cart:
    select_shipping_method(db, cart, method_id)
    logger.info("Cart %s: shipping method %s", cart.id, method_id)
    return _save(db, cart)


def merge_carts(db: Session, source: Cart, destination: Cart) -> Cart:
    """
    Fold a guest cart into a customer's cart after login.

    Every guest line is re-added through the normal stock checks. A line that
    no longer fits in stock is clamped to what is left; unavailable products
    are dropped. Discount and shipping are copied best-effort.
    """
    if source.id == destination.id:
        return destination

    for line in list(source.items):
        try:
            _add_item(db, destination, line.product_id, line.quantity, line.variant_id)
        except InsufficientStock as exc:
            existing = _find_line(destination, line.product_id, line.variant_id)
            room = exc.available - (existing.quantity if existing else 0)
            if room > 0:
                _add_item(db, destination, line.product_id, room, line.variant_id)
            logger.info("Merge into cart %s: %s clamped to available stock", destination.id, line.name)
        except (ProductUnavailable, NotFound):
            logger.info("Merge into cart %s: dropped unavailable line %s", destination.id, line.name)

    if source.discount_code and not destination.discount_code:
        try:
            _apply_discount(db, destination, source.discount_code)
        except InvalidDiscountCode:
            logger.warning("Merge into cart %s: discount %s no longer valid", destination.id, source.discount_code)

    if source.shipping_method_id and not destination.shipping_method_id:
        try:
            select_shipping_method(db, destination, source.shipping_method_id)
        except InvalidShippingMethod:
            logger.warning(
                "Merge into cart %s: shipping method %s no longer valid", destination.id, source.shipping_method_id
            )

    db.delete(source)
    logger.info("Merged cart %s into cart %s", source.id, destination.id)
    return _save(db, destination)


def purge_expired_carts(db: Session, now: datetime | None = None) -> int:
    expired = select(Cart.id).where(Cart.expires_at.is_not(None), Cart.expires_at <= (now or utcnow()))
    db.execute(delete(CartItem).where(CartItem.cart_id.in_(expired)))
    result = db.execute(delete(Cart).where(Cart.id.in_(expired)))
    db.commit()
    if result.rowcount:
        logger.info("Purged %s expired guest carts", result.rowcount)
    return result.rowcount
