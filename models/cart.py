from datetime import datetime
from decimal import Decimal

from sqlalchemy import String, DateTime, ForeignKey, Integer, Numeric, CheckConstraint, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from core.db import Base, utcnow


class Cart(Base):
    __tablename__ = "carts"
    __table_args__ = (
        # Exactly one owner: a customer or an anonymous session
        CheckConstraint(
            "(customer_id IS NOT NULL AND session_id IS NULL) OR (customer_id IS NULL AND session_id IS NOT NULL)",
            name="ck_carts_single_owner",
        ),
    )

    id: Mapped[int] = mapped_column(primary_key=True, index=True)
    customer_id: Mapped[int | None] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), unique=True, nullable=True, index=True
    )
    session_id: Mapped[str | None] = mapped_column(String(100), unique=True, nullable=True, index=True)
    currency: Mapped[str] = mapped_column(String(3), default="USD")

    discount_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    discount_type: Mapped[str | None] = mapped_column(String(20), nullable=True)
    discount_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 4), nullable=True)
    discount_description: Mapped[str | None] = mapped_column(String(255), nullable=True)

    tax_rate: Mapped[Decimal | None] = mapped_column(Numeric(6, 4), nullable=True)

    shipping_method_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    shipping_method_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    shipping_method_price: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)

    # Derived totals, recomputed after every mutation
    subtotal: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    discount_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    tax_amount: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    shipping_cost: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))
    total: Mapped[Decimal] = mapped_column(Numeric(12, 2), default=Decimal("0.00"))

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    expires_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    items = relationship(
        "CartItem",
        back_populates="cart",
        cascade="all, delete-orphan",
        order_by="CartItem.id",
    )

    __mapper_args__ = {"version_id_col": version}
