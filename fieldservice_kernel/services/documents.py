"""
Line item rows shared by the estimate and invoice services.

Totals are always computed here from the priced items; callers never pass a
total in.
"""

from collections.abc import Iterable, Sequence
from typing import TYPE_CHECKING, Any

from fieldservice_kernel.domain.line_items import (
    LineItemInput,
    PricedLineItem,
    Totals,
    compute_totals,
    price_line_items,
)

if TYPE_CHECKING:
    from fieldservice_kernel.services.transactional_unit import UnitHandle


def price_items(items: Iterable[LineItemInput]) -> tuple[list[PricedLineItem], Totals]:
    priced = price_line_items(items)
    return priced, compute_totals(item.total_cents for item in priced)


def build_line_rows(
    handle: "UnitHandle",
    model: type,
    priced: Sequence[PricedLineItem],
    **parent: Any,
) -> list[Any]:
    """New line item rows for ``model``, stamped and added to the session."""
    return [
        handle.stamp_new(
            model(
                description=item.description,
                quantity=item.quantity,
                unit_price_cents=item.unit_price_cents,
                total_cents=item.total_cents,
                sort_order=item.sort_order,
                **parent,
            )
        )
        for item in priced
    ]


def apply_totals(row: Any, totals: Totals) -> None:
    row.subtotal_cents = totals.subtotal_cents
    row.tax_cents = totals.tax_cents
    row.total_cents = totals.total_cents


def totals_snapshot(row: Any) -> dict[str, int]:
    return {
        "subtotal_cents": row.subtotal_cents,
        "tax_cents": row.tax_cents,
        "total_cents": row.total_cents,
    }

