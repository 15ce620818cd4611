"""
Inventory ledger.

Stock counters live on ``products.stock`` (flat inventory) and
``product_variants.stock``. Every mutation is a single conditional UPDATE
executed in the caller's transaction; nothing here commits.
"""
from sqlalchemy import select, update
from sqlalchemy.orm import Session

from core.errors import InsufficientStock
from core.logging import get_logger
from models.product import Product, ProductVariant

logger = get_logger(__name__)


def _counter(product_id: int, variant_id: int | None):
    if variant_id is None:
        return Product, [Product.id == product_id]
    return ProductVariant, [ProductVariant.id == variant_id, ProductVariant.product_id == product_id]


def current_stock(db: Session, product_id: int, variant_id: int | None = None) -> int:
    model, criteria = _counter(product_id, variant_id)
    stock = db.execute(select(model.stock).where(*criteria)).scalar_one_or_none()
    return stock or 0


def check_available(db: Session, product_id: int, variant_id: int | None, quantity: int) -> bool:
    return current_stock(db, product_id, variant_id) >= quantity


def decrement(
    db: Session, product_id: int, variant_id: int | None, quantity: int, product_name: str | None = None
) -> None:
    if quantity <= 0:
        raise ValueError("Quantity to decrement must be positive")

    model, criteria = _counter(product_id, variant_id)
    result = db.execute(
        update(model)
        .where(*criteria, model.stock >= quantity)
        .values(stock=model.stock - quantity)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        available = current_stock(db, product_id, variant_id)
        logger.info(
            "Stock decrement refused for product %s variant %s: requested %s, available %s",
            product_id, variant_id, quantity, available,
        )
        raise InsufficientStock(product_name or f"product {product_id}", quantity, available)
    logger.info("Decremented stock of product %s variant %s by %s", product_id, variant_id, quantity)


def increment(db: Session, product_id: int, variant_id: int | None, quantity: int) -> None:
    if quantity <= 0:
        raise ValueError("Quantity to increment must be positive")

    model, criteria = _counter(product_id, variant_id)
    result = db.execute(
        update(model)
        .where(*criteria)
        .values(stock=model.stock + quantity)
        .execution_options(synchronize_session="fetch")
    )
    if result.rowcount != 1:
        # Catalog row was deleted; nothing left to restore into
        logger.warning("Cannot restore %s units: product %s variant %s no longer exists", quantity, product_id, variant_id)
        return
    logger.info("Restored stock of product %s variant %s by %s", product_id, variant_id, quantity)
