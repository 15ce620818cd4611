from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

PERCENTAGE = "percentage"
FIXED = "fixed"


def money(value: Decimal | int | float | str) -> Decimal:
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    discount_amount: Decimal
    tax_amount: Decimal
    shipping_cost: Decimal
    total: Decimal


def line_subtotal(unit_price: Decimal, quantity: int) -> Decimal:
    return money(unit_price * quantity)


def calculate_totals(
    line_subtotals: Iterable[Decimal],
    discount_type: str | None = None,
    discount_value: Decimal | None = None,
    tax_rate: Decimal | None = None,
    shipping_price: Decimal | None = None,
) -> Totals:
    subtotal = money(sum(line_subtotals, ZERO))

    discount_amount = ZERO
    if discount_type and discount_value is not None:
        if discount_type == PERCENTAGE:
            discount_amount = money(subtotal * discount_value)
        else:
            discount_amount = money(min(discount_value, subtotal))
        discount_amount = max(discount_amount, ZERO)

    tax_amount = ZERO
    if tax_rate:
        tax_amount = money((subtotal - discount_amount) * tax_rate)

    shipping_cost = money(shipping_price) if shipping_price is not None else ZERO
    total = subtotal - discount_amount + tax_amount + shipping_cost
    return Totals(
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        shipping_cost=shipping_cost,
        total=money(total),
    )
