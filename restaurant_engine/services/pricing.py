"""
Pricing Calculator

Turns (price snapshot, quantity) lines plus the configured tax percentage
and delivery fee into an order's money breakdown. Pure: no I/O, no clock.

Rounding happens once, on the tax and the final total; line totals are
exact products of two-decimal prices and integer quantities.
"""

from dataclasses import dataclass
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable, Union

from restaurant_engine.core.exceptions import ValidationError

CENT = Decimal("0.01")

Amount = Union[Decimal, int, float, str]


def to_money(value: Amount) -> Decimal:
    """Coerce to Decimal without binary-float artifacts (0.1 -> 0.1, not 0.1000000000000000055)."""
    if isinstance(value, Decimal):
        result = value
    else:
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Not a monetary amount: {value!r}")
    if not result.is_finite():
        raise ValidationError(f"Not a monetary amount: {value!r}")
    return result


def quantize(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


@dataclass(frozen=True)
class PricedLine:
    unit_price: Decimal
    quantity: int

    @property
    def line_total(self) -> Decimal:
        return self.unit_price * self.quantity


@dataclass(frozen=True)
class PricingBreakdown:
    subtotal: Decimal
    tax_amount: Decimal
    delivery_fee: Decimal
    tip_amount: Decimal
    total_amount: Decimal

    def to_dict(self) -> dict[str, str]:
        """Convert to dictionary for JSON serialization."""
        return {
            "subtotal": str(self.subtotal),
            "tax_amount": str(self.tax_amount),
            "delivery_fee": str(self.delivery_fee),
            "tip_amount": str(self.tip_amount),
            "total_amount": str(self.total_amount),
        }


def price_lines(lines: Iterable[tuple[Amount, int]]) -> list[PricedLine]:
    """Validate raw (price, quantity) pairs."""
    priced = []
    for unit_price, quantity in lines:
        if isinstance(quantity, bool) or not isinstance(quantity, int):
            raise ValidationError(f"Quantity must be an integer, got {quantity!r}")
        if quantity <= 0:
            raise ValidationError(f"Quantity must be at least 1, got {quantity}")
        price = to_money(unit_price)
        if price < 0:
            raise ValidationError(f"Unit price cannot be negative, got {price}")
        priced.append(PricedLine(unit_price=price, quantity=quantity))

    if not priced:
        raise ValidationError("An order needs at least one item")
    return priced


def calculate_pricing(
    lines: Iterable[tuple[Amount, int]],
    tax_percentage: Amount,
    delivery_fee: Amount,
    tip_amount: Amount = Decimal("0"),
) -> PricingBreakdown:
    """
    Compute subtotal, tax, delivery fee, tip and total.

    Args:
        lines: (unit price snapshot, quantity) pairs in cart order
        tax_percentage: e.g. 5 for 5%
        delivery_fee: flat fee for this order
        tip_amount: optional courier tip

    Returns:
        PricingBreakdown with total = subtotal + delivery_fee + tax + tip

    Raises:
        ValidationError: empty cart, quantity <= 0 or a negative amount
    """
    priced = price_lines(lines)
    tax_rate = to_money(tax_percentage)
    fee = to_money(delivery_fee)
    tip = to_money(tip_amount)

    for name, value in (("tax_percentage", tax_rate), ("delivery_fee", fee), ("tip_amount", tip)):
        if value < 0:
            raise ValidationError(f"{name} cannot be negative, got {value}")

    subtotal = sum((line.line_total for line in priced), Decimal("0"))
    tax = quantize(subtotal * tax_rate / Decimal("100"))
    subtotal = quantize(subtotal)
    fee = quantize(fee)
    tip = quantize(tip)

    return PricingBreakdown(
        subtotal=subtotal,
        tax_amount=tax,
        delivery_fee=fee,
        tip_amount=tip,
        total_amount=subtotal + fee + tax + tip,
    )
