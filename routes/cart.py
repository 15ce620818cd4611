from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, status
from sqlalchemy.orm import Session

from core.db import get_db
from models.user import User
from schemas.cart import CartItemAdd, CartItemUpdate, CartOut, DiscountApply, ShippingMethodSelect
from security.deps import get_cart_owner, get_current_user
from services import cart as cart_service
from services.cart import CartOwner

router = APIRouter(prefix="/cart", tags=["cart"])


@router.get("/", response_model=CartOut)
def get_cart(owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    """Current cart, created on first access"""
    return cart_service.get_or_create_cart(db, owner)


@router.delete("/", response_model=CartOut)
def clear_cart(owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.clear(db, cart)


@router.post("/items", response_model=CartOut)
def add_item(data: CartItemAdd, owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.add_item(db, cart, data.product_id, data.quantity, data.variant_id)


@router.put("/items/{line_id}", response_model=CartOut)
def update_item(
    line_id: int, data: CartItemUpdate, owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)
):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.update_item_quantity(db, cart, line_id, data.quantity)


@router.delete("/items/{line_id}", response_model=CartOut)
def remove_item(line_id: int, owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.remove_item(db, cart, line_id)


@router.post("/discount", response_model=CartOut)
def apply_discount(data: DiscountApply, owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.apply_discount(db, cart, data.code)


@router.delete("/discount", response_model=CartOut)
def remove_discount(owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.remove_discount(db, cart)


@router.put("/shipping", response_model=CartOut)
def set_shipping_method(
    data: ShippingMethodSelect, owner: CartOwner = Depends(get_cart_owner), db: Session = Depends(get_db)
):
    cart = cart_service.get_or_create_cart(db, owner)
    return cart_service.set_shipping_method(db, cart, data.method_id)


@router.post("/merge", response_model=CartOut)
def merge_guest_cart(
    current_user: User = Depends(get_current_user),
    x_session_id: Optional[str] = Header(default=None, alias="X-Session-Id"),
    db: Session = Depends(get_db),
):
    """Fold the guest cart identified by X-Session-Id into the signed-in customer's cart"""
    if not x_session_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing X-Session-Id header")
    destination = cart_service.get_or_create_cart(db, CartOwner(customer_id=current_user.id))
    source = cart_service.get_cart(db, CartOwner(session_id=x_session_id))
    if source is None:
        return destination
    return cart_service.merge_carts(db, source, destination)
