"""
Line item arithmetic for estimates and invoices.

Contract:
    ``line_item_total`` and ``compute_totals`` are PURE. Every stored total
    is produced here; services never accept a total from the caller.

Rounding is half-up on the product of quantity and unit price, matching how
the amounts are presented to customers.
"""

from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from fieldservice_kernel.exceptions import ValidationError

QUANTITY_PLACES = Decimal("0.01")
MAX_QUANTITY = Decimal("99999999.99")


@dataclass(frozen=True)
class LineItemInput:
    """Caller-supplied line item (no totals)."""

    description: str
    quantity: Decimal | int | str
    unit_price_cents: int
    sort_order: int = 0


@dataclass(frozen=True)
class PricedLineItem:
    description: str
    quantity: Decimal
    unit_price_cents: int
    total_cents: int
    sort_order: int


@dataclass(frozen=True)
class Totals:
    subtotal_cents: int
    tax_cents: int
    total_cents: int


def normalize_quantity(quantity: Decimal | int | str) -> Decimal:
    """Quantity as a two-place Decimal; must be positive."""
    if isinstance(quantity, float):
        quantity = repr(quantity)
    try:
        value = Decimal(quantity)
    except (InvalidOperation, TypeError, ValueError) as exc:
        raise ValidationError(
            f"Quantity must be a number: {quantity!r}", field="quantity"
        ) from exc
    if not value.is_finite() or value <= 0:
        raise ValidationError("Quantity must be greater than 0", field="quantity")
    value = value.quantize(QUANTITY_PLACES, rounding=ROUND_HALF_UP)
    if value <= 0 or value > MAX_QUANTITY:
        raise ValidationError("Quantity is out of range", field="quantity")
    return value


def line_item_total(quantity: Decimal | int | str, unit_price_cents: int) -> int:
    """round_half_up(quantity x unit price) in minor units."""
    qty = normalize_quantity(quantity)
    if isinstance(unit_price_cents, bool) or not isinstance(unit_price_cents, int):
        raise ValidationError(
            "Unit price must be an integer (cents)", field="unit_price_cents"
        )
    if unit_price_cents < 0:
        raise ValidationError(
            "Unit price must be zero or positive", field="unit_price_cents"
        )
    return int((qty * unit_price_cents).quantize(Decimal(1), rounding=ROUND_HALF_UP))


def price_line_items(items: Iterable[LineItemInput]) -> list[PricedLineItem]:
    priced: list[PricedLineItem] = []
    for index, item in enumerate(items):
        description = (item.description or "").strip()
        if not description:
            raise ValidationError(
                f"Line item {index + 1} needs a description", field="description"
            )
        qty = normalize_quantity(item.quantity)
        priced.append(
            PricedLineItem(
                description=description,
                quantity=qty,
                unit_price_cents=item.unit_price_cents,
                total_cents=line_item_total(qty, item.unit_price_cents),
                sort_order=item.sort_order or index,
            )
        )
    return priced


def compute_totals(line_totals: Iterable[int]) -> Totals:
    """Subtotal is the sum of line totals; tax is not applied."""
    subtotal = sum(line_totals)
    tax = 0
    return Totals(subtotal_cents=subtotal, tax_cents=tax, total_cents=subtotal + tax)
