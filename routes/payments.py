from typing import Optional

from fastapi import APIRouter, Depends, Header, Request
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from core.db import get_db
from models.user import User
from schemas.order import OrderOut
from schemas.payment import (
    PaymentConfirmRequest,
    PaymentIntentRequest,
    PaymentIntentResponse,
    PaymentStatusOut,
    RefundRequest,
    RefundResponse,
    WebhookAck,
)
from security.deps import get_current_user, require_admin
from services import payments as payment_service

router = APIRouter(prefix="/payment", tags=["payments"])


@router.post("/create-intent", response_model=PaymentIntentResponse)
def create_payment_intent(
    data: PaymentIntentRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    """New payment attempt for an unpaid order"""
    return payment_service.create_payment_intent_for_order(
        db, data.order_id, current_user, amount=data.amount, currency=data.currency
    )


@router.post("/confirm", response_model=OrderOut)
def confirm_payment(
    data: PaymentConfirmRequest, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)
):
    return payment_service.confirm_payment(db, data.order_id, data.payment_intent_id, current_user)


@router.post("/webhook", response_model=WebhookAck)
async def stripe_webhook(
    request: Request,
    stripe_signature: Optional[str] = Header(default=None, alias="Stripe-Signature"),
    db: Session = Depends(get_db),
):
    # Signature is computed over the exact bytes received
    payload = await request.body()
    return await run_in_threadpool(payment_service.handle_provider_webhook, db, payload, stripe_signature)


@router.post("/refund", response_model=RefundResponse)
def create_refund(data: RefundRequest, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return payment_service.create_refund(db, data.order_id, admin, amount=data.amount, reason=data.reason)


@router.get("/{intent_id}", response_model=PaymentStatusOut)
def get_payment_status(intent_id: str, current_user: User = Depends(get_current_user)):
    return payment_service.get_payment_status(intent_id)
