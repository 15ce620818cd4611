import enum
from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, Boolean, JSON, Text, event, inspect
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


class OrderStatus(str, enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"
    REFUNDED = "refunded"


class Order(Base):
    __tablename__ = "orders"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_number: Mapped[str] = mapped_column(String(30), unique=True, index=True)
    customer_id: Mapped[int] = mapped_column(ForeignKey("users.id", ondelete="RESTRICT"), index=True)
    cart_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    email: Mapped[str] = mapped_column(String(255))
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    shipping_address: Mapped[dict] = mapped_column(JSON)
    billing_address: Mapped[dict] = mapped_column(JSON)

    shipping_method_id: Mapped[str] = mapped_column(String(50))
    shipping_method_name: Mapped[str] = mapped_column(String(100))
    shipping_carrier: Mapped[str] = mapped_column(String(100), default="")
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    discount_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2))

    status: Mapped[str] = mapped_column(String(30), default=OrderStatus.PENDING.value, index=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    tracking_number: Mapped[str | None] = mapped_column(String(100), nullable=True)
    inventory_restored: Mapped[bool] = mapped_column(Boolean, default=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "OrderItem", cascade="all, delete-orphan", back_populates="order", order_by="OrderItem.id"
    )
    payment = relationship("Payment", uselist=False, cascade="all, delete-orphan", back_populates="order")
    status_history = relationship(
        "OrderStatusHistory",
        cascade="all, delete-orphan",
        back_populates="order",
        order_by="OrderStatusHistory.id",
    )
    refunds = relationship("OrderRefund", cascade="all, delete-orphan", back_populates="order", order_by="OrderRefund.id")

    __mapper_args__ = {"version_id_col": version}


class OrderStatusHistory(Base):
    __tablename__ = "order_status_history"

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    order_id: Mapped[int] = mapped_column(ForeignKey("orders.id", ondelete="CASCADE"), index=True)
    status: Mapped[str] = mapped_column(String(30))
    note: Mapped[str | None] = mapped_column(Text, nullable=True)
    actor_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    order = relationship("Order", back_populates="status_history")


class OrderSequence(Base):
    """Per-month counter backing order numbers (ORD-YYYYMM-NNNNN)."""

    __tablename__ = "order_sequences"

    period: Mapped[str] = mapped_column(String(6), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, default=0)


FROZEN_ORDER_FIELDS = (
    "order_number",
    "customer_id",
    "cart_id",
    "email",
    "currency",
    "shipping_address",
    "billing_address",
    "shipping_method_id",
    "shipping_method_name",
    "shipping_carrier",
    "shipping_cost",
    "subtotal",
    "discount_code",
    "discount_type",
    "discount_value",
    "discount_amount",
    "tax_rate",
    "tax_amount",
    "total",
)


@event.listens_for(Order, "before_update")
def _reject_frozen_order_changes(mapper, connection, target):
    state = inspect(target)
    changed = [name for name in FROZEN_ORDER_FIELDS if state.attrs[name].history.has_changes()]
    if changed:
        raise ValueError(f"Order {target.order_number} fields are immutable: {', '.join(changed)}")
