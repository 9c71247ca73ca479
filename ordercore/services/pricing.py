"""Order totals computation"""
from dataclasses import dataclass
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Protocol, Union

from ordercore.services.errors import DiscountExceedsTotal, InvalidOrderRequest

Number = Union[Decimal, int, str]


class PricedLine(Protocol):
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class Line:
    unit_price: Decimal
    quantity: int


@dataclass(frozen=True)
class Totals:
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    discount_amount: Decimal
    total_amount: Decimal


def _to_decimal(value: Number, field: str) -> Decimal:
    if isinstance(value, float):
        # Binary floats cannot represent most cent values exactly
        value = repr(value)
    try:
        amount = Decimal(value)
    except ArithmeticError:
        raise InvalidOrderRequest(f"{field} is not a valid amount", {"field": field})
    if not amount.is_finite():
        raise InvalidOrderRequest(f"{field} is not a valid amount", {"field": field})
    if amount < 0:
        raise InvalidOrderRequest(f"{field} must not be negative", {"field": field})
    return amount


class OrderPricingCalculator:
    """
    Pure totals computation.

    Line terms and their sum are kept exact and the subtotal is rounded
    once. Adjustments are rounded to the currency precision before they
    are combined, so total == subtotal + shipping + tax - discount holds
    exactly on the reported figures.
    """

    def __init__(self, precision: int = 2):
        self.quantum = Decimal(1).scaleb(-precision)

    def round(self, amount: Decimal) -> Decimal:
        return amount.quantize(self.quantum, rounding=ROUND_HALF_UP)

    def line_total(self, unit_price: Number, quantity: int) -> Decimal:
        return self.round(_to_decimal(unit_price, "unit_price") * quantity)

    def compute(
        self,
        items: Iterable[PricedLine],
        shipping_cost: Number = 0,
        tax_amount: Number = 0,
        discount_amount: Number = 0,
    ) -> Totals:
        raw_subtotal = Decimal(0)
        count = 0
        for item in items:
            if isinstance(item.quantity, bool) or not isinstance(item.quantity, int) or item.quantity <= 0:
                raise InvalidOrderRequest("Item quantity must be a positive integer", {"quantity": item.quantity})
            raw_subtotal += _to_decimal(item.unit_price, "unit_price") * item.quantity
            count += 1

        if count == 0:
            raise InvalidOrderRequest("Order must contain at least one item")

        subtotal = self.round(raw_subtotal)
        shipping = self.round(_to_decimal(shipping_cost, "shipping_cost"))
        tax = self.round(_to_decimal(tax_amount, "tax_amount"))
        discount = self.round(_to_decimal(discount_amount, "discount_amount"))

        # Components are already at currency precision, so the total is exact
        gross = subtotal + shipping + tax
        total = gross - discount
        if total < 0:
            raise DiscountExceedsTotal(discount, gross)

        return Totals(
            subtotal=subtotal,
            shipping_cost=shipping,
            tax_amount=tax,
            discount_amount=discount,
            total_amount=total,
        )
