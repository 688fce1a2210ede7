"""
Module: fieldservice_kernel.selectors.invoice_selector
Responsibility: Read-only view of an invoice's derived balance.

The stored ``paid_cents`` is a cache maintained by the PaymentReconciler.
``InvoiceBalance`` reports it next to the sum recomputed from the payment
rows so a reader can see that the two agree.
"""

from dataclasses import dataclass
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from fieldservice_kernel.domain.reconciliation import (
    PAYABLE_STATUSES,
    remaining_balance,
)
from fieldservice_kernel.domain.types import InvoiceStatus
from fieldservice_kernel.exceptions import NotFoundError
from fieldservice_kernel.models import Invoice, Payment
from fieldservice_kernel.selectors.base import BaseSelector


@dataclass(frozen=True)
class InvoiceBalance:
    invoice_id: UUID
    invoice_number: str
    status: InvoiceStatus
    total_cents: int
    paid_cents: int
    amount_due_cents: int
    payment_count: int
    recomputed_paid_cents: int
    due_date: datetime | None
    paid_at: datetime | None

    @property
    def is_consistent(self) -> bool:
        return self.paid_cents == self.recomputed_paid_cents


class InvoiceSelector(BaseSelector):

    def balance(self, invoice_id: UUID) -> InvoiceBalance:
        invoice = self.session.execute(
            select(Invoice).where(
                Invoice.id == invoice_id, Invoice.tenant_id == self.tenant_id
            )
        ).scalar_one_or_none()
        if invoice is None:
            raise NotFoundError("invoice", invoice_id)

        count, paid = self.session.execute(
            select(
                func.count(Payment.id),
                func.coalesce(func.sum(Payment.amount_cents), 0),
            ).where(
                Payment.tenant_id == self.tenant_id,
                Payment.invoice_id == invoice.id,
            )
        ).one()
        return InvoiceBalance(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            status=invoice.status,
            total_cents=invoice.total_cents,
            paid_cents=invoice.paid_cents,
            amount_due_cents=remaining_balance(invoice.total_cents, invoice.paid_cents),
            payment_count=int(count),
            recomputed_paid_cents=int(paid),
            due_date=invoice.due_date,
            paid_at=invoice.paid_at,
        )

    def open_balances(self) -> list[InvoiceBalance]:
        """Balances of every sent, partial or overdue invoice, oldest due first."""
        ids = self.session.execute(
            select(Invoice.id)
            .where(
                Invoice.tenant_id == self.tenant_id,
                Invoice.status.in_(sorted(PAYABLE_STATUSES)),
            )
            .order_by(Invoice.due_date, Invoice.invoice_number)
        ).scalars().all()
        return [self.balance(invoice_id) for invoice_id in ids]
