from typing import List, Optional

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from core.db import get_db
from models.order import OrderStatus
from models.user import User
from schemas.order import OrderOut, OrderStatusUpdate
from security.deps import require_admin
from services import orders as order_service

router = APIRouter(prefix="/admin", tags=["admin"])


@router.get("/orders", response_model=List[OrderOut])
def list_all_orders(
    status: Optional[OrderStatus] = None, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return order_service.list_all_orders(db, status.value if status else None)


@router.put("/orders/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: int, data: OrderStatusUpdate, admin: User = Depends(require_admin), db: Session = Depends(get_db)
):
    return order_service.update_status(
        db, order_id, data.status.value, admin, note=data.note, tracking_number=data.tracking_number
    )


@router.put("/orders/{order_id}/deliver", response_model=OrderOut)
def mark_delivered(order_id: int, admin: User = Depends(require_admin), db: Session = Depends(get_db)):
    return order_service.mark_delivered(db, order_id, admin)
