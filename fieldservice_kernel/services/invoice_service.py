"""
InvoiceService -- invoices, their line items and estimate conversion.

Responsibility:
    Create invoices directly or from an approved estimate, and keep draft
    invoice totals in line with their line items. Payments are the
    PaymentReconciler's concern.

Invariants enforced:
    - Invoice numbers are ``INV-0001``-style, sequential per tenant. The
      tenant row is locked while the next number is chosen.
    - An estimate converts at most once: a second conversion returns the
      existing invoice with ``created=False`` (``uq_invoice_estimate`` backs
      this at the database).
    - Converted line items keep ``estimate_line_item_id`` for traceability.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from sqlalchemy import func, select

from fieldservice_kernel.domain.dtos import ConversionResult, DocumentTotals
from fieldservice_kernel.domain.line_items import LineItemInput, compute_totals
from fieldservice_kernel.domain.types import (
    AuditAction,
    EntityType,
    EstimateStatus,
    InvoiceStatus,
)
from fieldservice_kernel.exceptions import (
    ImmutableEntityError,
    InvalidTransitionError,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import (
    Estimate,
    EstimateLineItem,
    Invoice,
    InvoiceLineItem,
    Job,
    Tenant,
)
from fieldservice_kernel.services.base import BaseService
from fieldservice_kernel.services.documents import (
    apply_totals,
    build_line_rows,
    price_items,
    totals_snapshot,
)

logger = get_logger("services.invoices")


def format_invoice_number(sequence: int) -> str:
    return f"INV-{sequence:04d}"


class InvoiceService(BaseService):

    def create_invoice(
        self,
        client_id: UUID,
        line_items: Sequence[LineItemInput],
        job_id: UUID | None = None,
        due_date: datetime | None = None,
        notes: str | None = None,
    ) -> DocumentTotals:
        priced, totals = price_items(line_items)
        if job_id is not None:
            self.handle.get(Job, job_id, label="job")

        invoice = self.handle.stamp_new(
            Invoice(
                client_id=client_id,
                job_id=job_id,
                invoice_number=self._next_invoice_number(),
                status=InvoiceStatus.DRAFT,
                paid_cents=0,
                due_date=due_date,
                notes=notes,
            )
        )
        apply_totals(invoice, totals)
        self.session.flush()
        build_line_rows(self.handle, InvoiceLineItem, priced, invoice_id=invoice.id)
        self.session.flush()
        self.session.expire(invoice, ["line_items"])

        self.handle.ledger.record(
            EntityType.INVOICE.value,
            invoice.id,
            AuditAction.INSERT,
            new_value={
                "invoice_number": invoice.invoice_number,
                "client_id": client_id,
                "status": invoice.status,
                "line_item_count": len(priced),
                **totals_snapshot(invoice),
            },
        )
        logger.info(
            "invoice_created",
            extra={
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
                "total_cents": invoice.total_cents,
            },
        )
        return self._totals(invoice, len(priced))

    def replace_line_items(
        self, invoice_id: UUID, line_items: Sequence[LineItemInput]
    ) -> DocumentTotals:
        invoice = self.handle.get_for_update(Invoice, invoice_id, label="invoice")
        if invoice.status is not InvoiceStatus.DRAFT:
            raise ImmutableEntityError(
                EntityType.INVOICE.value,
                invoice.id,
                "Line items can only be changed while the invoice is draft "
                f"(current status: {invoice.status.value})",
            )
        priced, totals = price_items(line_items)
        before = totals_snapshot(invoice)

        for line in list(invoice.line_items):
            self.session.delete(line)
        self.session.flush()
        build_line_rows(self.handle, InvoiceLineItem, priced, invoice_id=invoice.id)
        apply_totals(invoice, totals)
        self.handle.touch(invoice)
        self.session.flush()
        self.session.expire(invoice, ["line_items"])

        self.handle.ledger.record(
            EntityType.INVOICE.value,
            invoice.id,
            AuditAction.UPDATE,
            old_value=before,
            new_value={**totals_snapshot(invoice), "line_item_count": len(priced)},
        )
        return self._totals(invoice, len(priced))

    def convert_estimate(
        self, estimate_id: UUID, due_date: datetime | None = None
    ) -> ConversionResult:
        """
        Create a draft invoice from an approved estimate, once.

        Raises:
            NotFoundError: no such estimate in the bound tenant.
            InvalidTransitionError: the estimate is not approved.
        """
        estimate = self.handle.get_for_update(Estimate, estimate_id, label="estimate")

        existing = self.session.execute(
            select(Invoice).where(
                Invoice.tenant_id == self.context.tenant_id,
                Invoice.estimate_id == estimate.id,
            )
        ).scalar_one_or_none()
        if existing is not None:
            logger.info(
                "estimate_conversion_replayed",
                extra={"estimate_id": str(estimate.id), "invoice_id": str(existing.id)},
            )
            return ConversionResult(
                invoice_id=existing.id,
                invoice_number=existing.invoice_number,
                invoice_status=existing.status,
                total_cents=existing.total_cents,
                created=False,
            )

        if estimate.status is not EstimateStatus.APPROVED:
            raise InvalidTransitionError(
                EntityType.ESTIMATE.value,
                estimate.status.value,
                "invoiced",
                message=(
                    "Only approved estimates can be converted to invoices "
                    f"(current status: {estimate.status.value})"
                ),
            )

        source_lines = self.session.execute(
            select(EstimateLineItem)
            .where(
                EstimateLineItem.tenant_id == self.context.tenant_id,
                EstimateLineItem.estimate_id == estimate.id,
            )
            .order_by(EstimateLineItem.sort_order)
        ).scalars().all()
        totals = compute_totals(line.total_cents for line in source_lines)

        invoice = self.handle.stamp_new(
            Invoice(
                estimate_id=estimate.id,
                client_id=estimate.client_id,
                job_id=estimate.job_id,
                invoice_number=self._next_invoice_number(),
                status=InvoiceStatus.DRAFT,
                paid_cents=0,
                due_date=due_date,
                notes=estimate.notes,
            )
        )
        apply_totals(invoice, totals)
        self.session.flush()
        for line in source_lines:
            self.handle.stamp_new(
                InvoiceLineItem(
                    invoice_id=invoice.id,
                    estimate_line_item_id=line.id,
                    description=line.description,
                    quantity=line.quantity,
                    unit_price_cents=line.unit_price_cents,
                    total_cents=line.total_cents,
                    sort_order=line.sort_order,
                )
            )
        self.session.flush()

        self.handle.ledger.record(
            EntityType.INVOICE.value,
            invoice.id,
            AuditAction.INSERT,
            new_value={
                "source": "estimate_conversion",
                "estimate_id": estimate.id,
                "invoice_number": invoice.invoice_number,
                "total_cents": invoice.total_cents,
                "line_item_count": len(source_lines),
            },
        )
        logger.info(
            "estimate_converted",
            extra={
                "estimate_id": str(estimate.id),
                "invoice_id": str(invoice.id),
                "invoice_number": invoice.invoice_number,
            },
        )
        return ConversionResult(
            invoice_id=invoice.id,
            invoice_number=invoice.invoice_number,
            invoice_status=invoice.status,
            total_cents=invoice.total_cents,
            created=True,
        )

    def _next_invoice_number(self) -> str:
        # Serializes numbering per tenant; released at the end of the unit.
        self.session.execute(
            select(Tenant.id)
            .where(Tenant.id == self.context.tenant_id)
            .with_for_update()
        )
        count = self.session.execute(
            select(func.count(Invoice.id)).where(
                Invoice.tenant_id == self.context.tenant_id
            )
        ).scalar_one()
        return format_invoice_number(int(count) + 1)

    @staticmethod
    def _totals(invoice: Invoice, count: int) -> DocumentTotals:
        return DocumentTotals(
            entity_type=EntityType.INVOICE,
            entity_id=invoice.id,
            status=invoice.status.value,
            subtotal_cents=invoice.subtotal_cents,
            tax_cents=invoice.tax_cents,
            total_cents=invoice.total_cents,
            line_item_count=count,
            invoice_number=invoice.invoice_number,
        )
