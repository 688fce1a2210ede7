"""
AuditLogEntry -- the append-only audit ledger.

The ledger is both the compliance trail for record changes and the witness
the automation dispatcher consults before emitting a side effect. Automation
entries carry an explicit ``dedupe_key``; the unique constraint on
(tenant_id, entity_type, entity_id, dedupe_key) makes a second emission for
the same step fail at the database. Ordinary entries leave ``dedupe_key``
NULL, which the constraint ignores.
"""

from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import JSON, Index, Integer, String, UniqueConstraint, func
from sqlalchemy.orm import Mapped, mapped_column

from fieldservice_kernel.db.base import (
    Base,
    TenantScoped,
    UTCDateTime,
    UUIDString,
    status_type,
)
from fieldservice_kernel.domain.types import AuditAction


class AuditLogEntry(TenantScoped, Base):
    """
    One audit record.

    Contract:
        Rows are never updated or deleted (db/guards.py, db/policies.py).
    """

    __tablename__ = "audit_log_entries"

    __table_args__ = (
        UniqueConstraint(
            "tenant_id",
            "entity_type",
            "entity_id",
            "dedupe_key",
            name="uq_audit_dedupe",
        ),
        Index("idx_audit_entity", "tenant_id", "entity_type", "entity_id"),
        Index("idx_audit_created", "tenant_id", "created_at"),
        Index("idx_audit_trace", "trace_id"),
    )

    entity_type: Mapped[str] = mapped_column(String(50), nullable=False)

    entity_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    action: Mapped[AuditAction] = mapped_column(
        status_type(AuditAction),
        nullable=False,
    )

    actor_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    old_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    new_value: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    trace_id: Mapped[str | None] = mapped_column(String(64), nullable=True)

    dedupe_key: Mapped[str | None] = mapped_column(String(100), nullable=True)

    automation_step: Mapped[int | None] = mapped_column(Integer, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        UTCDateTime(),
        server_default=func.now(),
        nullable=False,
    )

    def __repr__(self) -> str:
        return f"<AuditLogEntry {self.action.value} on {self.entity_type}:{self.entity_id}>"
