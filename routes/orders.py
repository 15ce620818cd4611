from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from schemas.order import OrderCancel, OrderCreate, OrderCreated, OrderOut
from security.deps import get_current_user
from services import checkout
from services import orders as order_service

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/", response_model=OrderCreated, status_code=201)
def create_order(data: OrderCreate, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    order = checkout.create_order(
        db,
        cart_id=data.cart_id,
        requester=current_user,
        shipping_address=data.shipping_address.model_dump(),
        billing_address=data.billing_address.model_dump() if data.billing_address else None,
        payment_method=data.payment_method.value,
        shipping_method=data.shipping_method,
        notes=data.notes,
    )
    result = OrderCreated.model_validate(order)
    result.client_secret = order.payment.client_secret
    return result


@router.get("/", response_model=List[OrderOut])
def list_orders(current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.list_orders(db, current_user)


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: int, current_user: User = Depends(get_current_user), db: Session = Depends(get_db)):
    return order_service.get_order_for(db, order_id, current_user)


@router.put("/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    data: Optional[OrderCancel] = None,
    current_user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    return order_service.cancel_own_order(db, order_id, current_user, note=data.note if data else None)
