"""
Tests for line item arithmetic.

Covers:
- half-up rounding of quantity x unit price
- quantity normalization and rejection of zero, negative and non-numeric
  values
- totals are the sum of line totals with no tax
"""

from decimal import Decimal

import pytest
from hypothesis import given
from hypothesis import strategies as st

from fieldservice_kernel.domain.line_items import (
    LineItemInput,
    compute_totals,
    line_item_total,
    normalize_quantity,
    price_line_items,
)
from fieldservice_kernel.exceptions import ValidationError


class TestLineItemTotal:

    def test_integer_quantity(self):
        assert line_item_total(3, 1_250) == 3_750

    def test_rounds_half_up(self):
        # 1.5 x 333 = 499.5 -> 500
        assert line_item_total(Decimal("1.5"), 333) == 500

    def test_rounds_down_below_half(self):
        # 0.33 x 100 = 33
        assert line_item_total("0.33", 100) == 33

    def test_float_quantity_uses_its_repr(self):
        assert line_item_total(2.5, 8_000) == 20_000

    @pytest.mark.parametrize("quantity", [0, "-1", "abc", None, "NaN"])
    def test_invalid_quantity(self, quantity):
        with pytest.raises(ValidationError) as exc_info:
            line_item_total(quantity, 100)
        assert exc_info.value.field == "quantity"

    @pytest.mark.parametrize("price", [-1, 1.5, "100"])
    def test_invalid_unit_price(self, price):
        with pytest.raises(ValidationError) as exc_info:
            line_item_total(1, price)
        assert exc_info.value.field == "unit_price_cents"

    def test_quantity_rounds_to_two_places(self):
        assert normalize_quantity("1.005") == Decimal("1.01")

    def test_quantity_rounding_to_zero_rejected(self):
        with pytest.raises(ValidationError):
            normalize_quantity("0.001")


class TestPricing:

    def test_price_line_items_keeps_order(self):
        priced = price_line_items(
            [
                LineItemInput("Labor", "2", 5_000),
                LineItemInput("Parts", 1, 1_999),
            ]
        )
        assert [p.total_cents for p in priced] == [10_000, 1_999]
        assert [p.sort_order for p in priced] == [0, 1]

    def test_blank_description_rejected(self):
        with pytest.raises(ValidationError, match="Line item 2 needs a description"):
            price_line_items(
                [LineItemInput("Labor", 1, 100), LineItemInput("  ", 1, 100)]
            )

    def test_totals_sum_lines(self):
        totals = compute_totals([10_000, 1_999])
        assert (totals.subtotal_cents, totals.tax_cents, totals.total_cents) == (
            11_999,
            0,
            11_999,
        )

    def test_empty_totals(self):
        assert compute_totals([]).total_cents == 0


@given(
    quantity=st.decimals(
        min_value=Decimal("0.01"),
        max_value=Decimal("10000"),
        places=2,
        allow_nan=False,
        allow_infinity=False,
    ),
    price=st.integers(min_value=0, max_value=10**7),
)
def test_line_total_within_half_cent_of_exact_product(quantity, price):
    total = line_item_total(quantity, price)
    assert abs(Decimal(total) - quantity * price) <= Decimal("0.5")
