from decimal import Decimal

from sqlalchemy.orm import Session

from core.logging import get_logger
from models.discount import DiscountCode
from models.shipping import ShippingMethod

logger = get_logger(__name__)

DEFAULT_DISCOUNT_CODES = [
    {"code": "WELCOME10", "type": "percentage", "value": Decimal("0.10"), "description": "10% off your first order"},
    {"code": "SAVE20", "type": "percentage", "value": Decimal("0.20"), "description": "20% off your order"},
    {"code": "FLAT5", "type": "fixed", "value": Decimal("5.00"), "description": "$5 off your order"},
]

DEFAULT_SHIPPING_METHODS = [
    {"id": "standard", "name": "Standard Shipping", "carrier": "USPS", "price": Decimal("5.99"), "min_days": 3, "max_days": 5},
    {"id": "express", "name": "Express Shipping", "carrier": "FedEx", "price": Decimal("14.99"), "min_days": 1, "max_days": 2},
    {"id": "free", "name": "Free Shipping", "carrier": "USPS", "price": Decimal("0.00"), "min_days": 5, "max_days": 7},
]


def seed_reference_data(db: Session) -> None:
    """Insert the default discount codes and shipping methods that are missing."""
    added = 0
    for data in DEFAULT_DISCOUNT_CODES:
        if not db.query(DiscountCode).filter(DiscountCode.code == data["code"]).one_or_none():
            db.add(DiscountCode(is_active=True, **data))
            added += 1
    for data in DEFAULT_SHIPPING_METHODS:
        if not db.get(ShippingMethod, data["id"]):
            db.add(ShippingMethod(is_active=True, **data))
            added += 1
    db.commit()
    if added:
        logger.info("Seeded %s reference rows", added)
