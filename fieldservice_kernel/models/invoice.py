"""
Invoice, InvoiceLineItem and Payment models.

``paid_cents`` and ``status`` on an invoice are derived values: the payment
reconciler recomputes them from the full payment set on every change.
Payments are append-only; they may be deleted (never updated) while the
invoice is not terminal.
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldservice_kernel.db.base import (
    TenantScoped,
    TrackedBase,
    UUIDString,
    status_type,
)
from fieldservice_kernel.domain.types import InvoiceStatus, PaymentMethod


class Invoice(TenantScoped, TrackedBase):
    """
    A bill sent to a client.

    Contract:
        ``estimate_id`` is unique per tenant so an estimate converts at most
        once. ``invoice_number`` is unique per tenant.
    """

    __tablename__ = "invoices"

    __table_args__ = (
        UniqueConstraint("tenant_id", "invoice_number", name="uq_invoice_number"),
        UniqueConstraint("tenant_id", "estimate_id", name="uq_invoice_estimate"),
        Index("idx_invoice_tenant_status_due", "tenant_id", "status", "due_date"),
        CheckConstraint("total_cents >= 0", name="chk_invoice_total"),
        CheckConstraint("paid_cents >= 0", name="chk_invoice_paid"),
    )

    estimate_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("estimates.id"), nullable=True
    )

    client_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    job_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("jobs.id"), nullable=True
    )

    invoice_number: Mapped[str] = mapped_column(String(50), nullable=False)

    status: Mapped[InvoiceStatus] = mapped_column(
        status_type(InvoiceStatus),
        nullable=False,
        default=InvoiceStatus.DRAFT,
    )

    subtotal_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    tax_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    total_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    paid_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    due_date: Mapped[datetime | None] = mapped_column(nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    line_items: Mapped[list["InvoiceLineItem"]] = relationship(
        back_populates="invoice",
        order_by="InvoiceLineItem.sort_order",
        cascade="all, delete-orphan",
    )

    @property
    def amount_due_cents(self) -> int:
        return max(self.total_cents - self.paid_cents, 0)

    def __repr__(self) -> str:
        return f"<Invoice {self.invoice_number} {self.status.value}>"


class InvoiceLineItem(TenantScoped, TrackedBase):
    """One priced line on an invoice, optionally traced to an estimate line."""

    __tablename__ = "invoice_line_items"

    __table_args__ = (
        Index("idx_invoice_line_invoice", "invoice_id"),
        CheckConstraint("quantity > 0", name="chk_invoice_line_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="chk_invoice_line_price"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False
    )

    estimate_line_item_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("estimate_line_items.id"), nullable=True
    )

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit_price_cents: Mapped[int] = mapped_column(nullable=False)

    total_cents: Mapped[int] = mapped_column(nullable=False)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    invoice: Mapped[Invoice] = relationship(back_populates="line_items")


class Payment(TenantScoped, TrackedBase):
    """
    A received payment against an invoice.

    Contract:
        Append-only. ``idempotency_key`` is unique per invoice when present.
        ``created_at`` is stamped from the service clock and drives the
        duplicate-submission window.
    """

    __tablename__ = "payments"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "invoice_id",
            "idempotency_key",
            name="uq_payment_idempotency_key",
        ),
        Index("idx_payment_invoice_created", "invoice_id", "created_at"),
        CheckConstraint("amount_cents > 0", name="chk_payment_amount_positive"),
    )

    invoice_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("invoices.id"), nullable=False
    )

    amount_cents: Mapped[int] = mapped_column(nullable=False)

    method: Mapped[PaymentMethod] = mapped_column(
        status_type(PaymentMethod),
        nullable=False,
    )

    received_at: Mapped[datetime] = mapped_column(nullable=False)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    idempotency_key: Mapped[str | None] = mapped_column(String(128), nullable=True)

    def __repr__(self) -> str:
        return f"<Payment {self.amount_cents} {self.method.value} -> {self.invoice_id}>"
