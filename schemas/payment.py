from decimal import Decimal
from pydantic import BaseModel, Field
from typing import Optional

from schemas.order import OrderOut, RefundOut


class PaymentIntentRequest(BaseModel):
    order_id: int
    amount: Decimal = Field(gt=0)
    currency: str = Field(min_length=3, max_length=3)


class PaymentIntentResponse(BaseModel):
    client_secret: Optional[str] = None
    payment_intent_id: str


class PaymentConfirmRequest(BaseModel):
    order_id: int
    payment_intent_id: str = Field(min_length=1)


class PaymentStatusOut(BaseModel):
    id: str
    status: Optional[str] = None
    amount: Optional[float] = None
    currency: Optional[str] = None


class RefundRequest(BaseModel):
    order_id: int
    amount: Optional[Decimal] = Field(None, gt=0)
    reason: Optional[str] = Field(None, max_length=100)


class RefundResponse(BaseModel):
    refund: RefundOut
    order: OrderOut


class WebhookAck(BaseModel):
    received: bool
