"""
Pure payment reconciliation rules.

Contract:
    No I/O. The reconciler service loads rows, calls these functions and
    persists the result. Balances are always recomputed from the full payment
    set, never adjusted incrementally.
"""

from __future__ import annotations

from fieldservice_kernel.domain.types import InvoiceStatus
from fieldservice_kernel.exceptions import ValidationError

PAYABLE_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.SENT, InvoiceStatus.PARTIAL, InvoiceStatus.OVERDUE}
)

TERMINAL_INVOICE_STATUSES: frozenset[InvoiceStatus] = frozenset(
    {InvoiceStatus.PAID, InvoiceStatus.VOID}
)


def derive_status(
    total_cents: int,
    paid_cents: int,
    current: InvoiceStatus = InvoiceStatus.SENT,
) -> InvoiceStatus:
    """
    Status implied by the paid amount.

    paid >= total is ``paid`` (overpayment clamps), a positive remainder is
    ``partial``. With nothing paid the status is left alone, except that a
    ``partial`` invoice whose payments were all removed returns to ``sent``.
    """
    current = InvoiceStatus(current)
    if paid_cents >= total_cents:
        return InvoiceStatus.PAID
    if paid_cents > 0:
        return InvoiceStatus.PARTIAL
    if current is InvoiceStatus.PARTIAL:
        return InvoiceStatus.SENT
    return current


def remaining_balance(total_cents: int, paid_cents: int) -> int:
    return max(total_cents - paid_cents, 0)


def validate_payment_amount(
    amount_cents: object, total_cents: int, paid_cents: int
) -> int:
    """
    Check a proposed payment against the current balance.

    Raises:
        ValidationError: amount is not a positive integer, nothing remains,
            or the amount exceeds the remaining balance (message names both).
    """
    if (
        isinstance(amount_cents, bool)
        or not isinstance(amount_cents, int)
        or amount_cents <= 0
    ):
        raise ValidationError(
            "Payment amount must be a positive integer (cents)",
            field="amount_cents",
        )
    remaining = remaining_balance(total_cents, paid_cents)
    if remaining <= 0:
        raise ValidationError("Invoice is already fully paid", field="amount_cents")
    if amount_cents > remaining:
        raise ValidationError(
            f"Payment amount ({amount_cents}) exceeds remaining balance "
            f"({remaining})",
            field="amount_cents",
        )
    return amount_cents
