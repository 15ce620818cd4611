from datetime import datetime
from pydantic import BaseModel, Field
from typing import List, Optional


class CartItemAdd(BaseModel):
    product_id: int
    quantity: int = Field(1, ge=1)
    variant_id: Optional[int] = None


class CartItemUpdate(BaseModel):
    # 0 or less removes the line
    quantity: int


class DiscountApply(BaseModel):
    code: str = Field(min_length=1, max_length=50)


class ShippingMethodSelect(BaseModel):
    method_id: str = Field(min_length=1, max_length=50)


class CartItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    name: str
    sku: Optional[str] = None
    image_url: Optional[str] = None
    unit_price: float
    quantity: int
    subtotal: float
    max_quantity: int

    class Config:
        from_attributes = True


class CartOut(BaseModel):
    id: int
    customer_id: Optional[int] = None
    session_id: Optional[str] = None
    currency: str
    items: List[CartItemOut]
    discount_code: Optional[str] = None
    discount_type: Optional[str] = None
    discount_value: Optional[float] = None
    discount_description: Optional[str] = None
    shipping_method_id: Optional[str] = None
    shipping_method_name: Optional[str] = None
    tax_rate: Optional[float] = None
    subtotal: float
    discount_amount: float
    tax_amount: float
    shipping_cost: float
    total: float
    expires_at: Optional[datetime] = None
    version: int

    class Config:
        from_attributes = True
