from datetime import datetime
from pydantic import BaseModel, EmailStr, Field
from typing import List, Optional

from models.order import OrderStatus
from models.payment import PaymentMethod


class AddressIn(BaseModel):
    full_name: str = Field(min_length=1, max_length=200)
    address_line1: str = Field(min_length=1, max_length=255)
    address_line2: Optional[str] = Field(None, max_length=255)
    city: str = Field(min_length=1, max_length=100)
    state: Optional[str] = Field(None, max_length=100)
    postal_code: str = Field(min_length=1, max_length=20)
    country: str = Field(min_length=2, max_length=100)
    phone: Optional[str] = Field(None, max_length=30)


class OrderCreate(BaseModel):
    cart_id: int
    shipping_address: AddressIn
    billing_address: Optional[AddressIn] = None
    payment_method: PaymentMethod
    shipping_method: Optional[str] = None
    notes: Optional[str] = Field(None, max_length=1000)


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: Optional[str] = Field(None, max_length=500)
    tracking_number: Optional[str] = Field(None, max_length=100)


class OrderCancel(BaseModel):
    note: Optional[str] = Field(None, max_length=500)


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    name: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    unit_price: float
    quantity: int
    subtotal: float

    class Config:
        from_attributes = True


class PaymentSummary(BaseModel):
    method: str
    status: str
    transaction_id: Optional[str] = None
    amount: float
    currency: str
    paid_at: Optional[datetime] = None
    failure_reason: Optional[str] = None

    class Config:
        from_attributes = True


class StatusHistoryOut(BaseModel):
    status: str
    note: Optional[str] = None
    actor_id: Optional[int] = None
    created_at: datetime

    class Config:
        from_attributes = True


class RefundOut(BaseModel):
    id: int
    amount: float
    reason: str
    provider_refund_id: Optional[str] = None
    status: str
    created_at: datetime

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    customer_id: int
    email: EmailStr
    currency: str
    status: str
    items: List[OrderItemOut]
    shipping_address: dict
    billing_address: dict
    shipping_method_id: str
    shipping_method_name: str
    shipping_carrier: str
    shipping_cost: float
    subtotal: float
    discount_code: Optional[str] = None
    discount_amount: float
    tax_amount: float
    total: float
    notes: Optional[str] = None
    tracking_number: Optional[str] = None
    payment: Optional[PaymentSummary] = None
    status_history: List[StatusHistoryOut]
    refunds: List[RefundOut]
    created_at: datetime

    class Config:
        from_attributes = True


class OrderCreated(OrderOut):
    # Only returned once, to the customer who placed the order
    client_secret: Optional[str] = None
