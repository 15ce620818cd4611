from decimal import Decimal

from sqlalchemy import String, ForeignKey, Integer, Numeric, event
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base


class OrderItem(Base):
    __tablename__ = "order_items"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    # Plain ids, not foreign keys: the snapshot outlives the catalog row
    product_id: Mapped[int] = mapped_column(Integer, index=True)
    variant_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    name: Mapped[str] = mapped_column(String(200))
    sku: Mapped[str | None] = mapped_column(String(100), nullable=True)
    image_url: Mapped[str | None] = mapped_column(String(500), nullable=True)
    unit_price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    quantity: Mapped[int] = mapped_column(Integer, default=1)
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    order = relationship("Order", back_populates="items")


@event.listens_for(OrderItem, "before_update")
def _reject_order_item_changes(mapper, connection, target):
    raise ValueError(f"Order item {target.id} is immutable")
