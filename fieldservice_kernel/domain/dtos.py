"""
Result DTOs returned across the core's boundary.

All are frozen dataclasses. Services never hand ORM instances to the API
layer.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from fieldservice_kernel.domain.types import (
    AuditAction,
    EntityType,
    InvoiceStatus,
)


@dataclass(frozen=True)
class TransitionResult:
    entity_type: EntityType
    entity_id: UUID
    from_status: str
    to_status: str


@dataclass(frozen=True)
class PaymentResult:
    """Outcome of recording or deleting a payment.

    ``created`` is False when an idempotency key replayed an earlier payment
    and for deletions.
    """

    payment_id: UUID
    created: bool
    invoice_status: InvoiceStatus
    invoice_paid_cents: int
    invoice_total_cents: int

    @property
    def amount_due_cents(self) -> int:
        return max(self.invoice_total_cents - self.invoice_paid_cents, 0)


@dataclass(frozen=True)
class ConversionResult:
    invoice_id: UUID
    invoice_number: str
    invoice_status: InvoiceStatus
    total_cents: int
    created: bool


@dataclass(frozen=True)
class AuditRecord:
    """An audit entry to append.

    ``dedupe_key`` makes the entry unique per (tenant, entity type, entity
    id); ``automation_step`` carries the cadence step it represents.
    """

    tenant_id: UUID
    entity_type: str
    entity_id: UUID
    action: AuditAction
    actor_id: UUID
    old_value: dict[str, Any] | None = None
    new_value: dict[str, Any] | None = None
    trace_id: str | None = None
    dedupe_key: str | None = None
    automation_step: int | None = None
    occurred_at: datetime | None = None


@dataclass(frozen=True)
class RecordRef:
    """Identity and status of a created or updated record."""

    entity_type: EntityType
    entity_id: UUID
    status: str


@dataclass(frozen=True)
class DocumentTotals:
    """Totals of an estimate or invoice after its line items were written."""

    entity_type: EntityType
    entity_id: UUID
    status: str
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    line_item_count: int
    invoice_number: str | None = None
