"""Read access to the catalog: products, variants, discount codes and shipping methods."""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from core.db import utcnow
from core.errors import NotFound, ProductUnavailable, InvalidDiscountCode, InvalidShippingMethod
from models.product import Product, ProductVariant
from models.discount import DiscountCode
from models.shipping import ShippingMethod


@dataclass
class CatalogItem:
    product: Product
    variant: ProductVariant | None

    @property
    def name(self) -> str:
        if self.variant:
            return f"{self.product.name} ({self.variant.name})"
        return self.product.name

    @property
    def price(self) -> Decimal:
        return self.variant.price if self.variant else self.product.price

    @property
    def sku(self) -> str | None:
        return self.variant.sku if self.variant else self.product.sku


def get_product(db: Session, product_id: int) -> Product:
    product = db.get(Product, product_id)
    if not product:
        raise NotFound(f"Product not found with id: {product_id}")
    return product


def resolve_item(db: Session, product_id: int, variant_id: int | None = None) -> CatalogItem:
    """Load a purchasable product (and variant); inactive products are rejected."""
    product = get_product(db, product_id)
    if not product.is_active:
        raise ProductUnavailable(f"{product.name} is not available")

    variant = None
    if variant_id is not None:
        variant = db.execute(
            select(ProductVariant).where(ProductVariant.id == variant_id, ProductVariant.product_id == product.id)
        ).scalar_one_or_none()
        if not variant:
            raise NotFound(f"Variant {variant_id} not found for product {product.name}")
    return CatalogItem(product=product, variant=variant)


def find_discount(db: Session, code: str, now: datetime | None = None) -> DiscountCode:
    normalized = code.strip().upper()
    discount = db.execute(
        select(DiscountCode).where(func.upper(DiscountCode.code) == normalized)
    ).scalar_one_or_none()
    if not discount or not discount.is_active:
        raise InvalidDiscountCode(f"Invalid discount code: {code}")
    if discount.expires_at and discount.expires_at <= (now or utcnow()):
        raise InvalidDiscountCode(f"Discount code {discount.code} has expired")
    return discount


def find_shipping_method(db: Session, method_id: str) -> ShippingMethod:
    method = db.get(ShippingMethod, method_id)
    if not method or not method.is_active:
        raise InvalidShippingMethod(f"Invalid shipping method: {method_id}")
    return method
