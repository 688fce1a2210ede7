"""
Module: fieldservice_kernel.selectors.audit_selector
Responsibility: Read-only views over the audit ledger: per-record
    timelines, automation event feeds and automation statistics.
Architecture position: Kernel > Selectors.

Automation entries are written with the automation's id as ``actor_id``
(the dispatcher runs as a system actor per definition), so an automation's
own events are selected by actor.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any
from uuid import UUID

from sqlalchemy import func, select

from fieldservice_kernel.domain.types import AuditAction, AuditEntityType
from fieldservice_kernel.models import AuditLogEntry
from fieldservice_kernel.selectors.base import BaseSelector

AUTOMATION_EVENT_TYPES = (
    AuditEntityType.VISIT_REMINDER.value,
    AuditEntityType.INVOICE_FOLLOWUP.value,
    AuditEntityType.AUTOMATION_RUN.value,
)


@dataclass(frozen=True)
class AuditTimelineEntry:
    id: UUID
    entity_type: str
    entity_id: UUID
    action: AuditAction
    actor_id: UUID
    old_value: dict[str, Any] | None
    new_value: dict[str, Any] | None
    trace_id: str | None
    dedupe_key: str | None
    automation_step: int | None
    created_at: datetime


@dataclass(frozen=True)
class AutomationEventStats:
    visit_reminders_sent: int
    invoice_followups_sent: int
    manual_runs: int
    last_event_at: datetime | None

    @property
    def total_events(self) -> int:
        return self.visit_reminders_sent + self.invoice_followups_sent


def _to_entry(row: AuditLogEntry) -> AuditTimelineEntry:
    return AuditTimelineEntry(
        id=row.id,
        entity_type=row.entity_type,
        entity_id=row.entity_id,
        action=row.action,
        actor_id=row.actor_id,
        old_value=row.old_value,
        new_value=row.new_value,
        trace_id=row.trace_id,
        dedupe_key=row.dedupe_key,
        automation_step=row.automation_step,
        created_at=row.created_at,
    )


class AuditSelector(BaseSelector):

    def entity_timeline(self, entity_type: str, entity_id: UUID) -> list[AuditTimelineEntry]:
        """All entries for one record, oldest first."""
        rows = self.session.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.tenant_id == self.tenant_id,
                AuditLogEntry.entity_type == getattr(entity_type, "value", entity_type),
                AuditLogEntry.entity_id == entity_id,
            )
            .order_by(AuditLogEntry.created_at, AuditLogEntry.id)
        ).scalars().all()
        return [_to_entry(row) for row in rows]

    def by_trace(self, trace_id: str) -> list[AuditTimelineEntry]:
        rows = self.session.execute(
            select(AuditLogEntry)
            .where(
                AuditLogEntry.tenant_id == self.tenant_id,
                AuditLogEntry.trace_id == trace_id,
            )
            .order_by(AuditLogEntry.created_at, AuditLogEntry.id)
        ).scalars().all()
        return [_to_entry(row) for row in rows]

    def automation_events(
        self,
        automation_id: UUID | None = None,
        since: datetime | None = None,
        limit: int = 100,
    ) -> list[AuditTimelineEntry]:
        """Reminders, follow-ups and manual runs, newest first."""
        stmt = select(AuditLogEntry).where(
            AuditLogEntry.tenant_id == self.tenant_id,
            AuditLogEntry.entity_type.in_(AUTOMATION_EVENT_TYPES),
        )
        if automation_id is not None:
            stmt = stmt.where(
                (AuditLogEntry.actor_id == automation_id)
                | (AuditLogEntry.entity_id == automation_id)
            )
        if since is not None:
            stmt = stmt.where(AuditLogEntry.created_at >= since)
        rows = self.session.execute(
            stmt.order_by(AuditLogEntry.created_at.desc(), AuditLogEntry.id).limit(limit)
        ).scalars().all()
        return [_to_entry(row) for row in rows]

    def automation_stats(self, since: datetime | None = None) -> AutomationEventStats:
        stmt = select(
            AuditLogEntry.entity_type,
            func.count(AuditLogEntry.id),
            func.max(AuditLogEntry.created_at),
        ).where(
            AuditLogEntry.tenant_id == self.tenant_id,
            AuditLogEntry.entity_type.in_(AUTOMATION_EVENT_TYPES),
        )
        if since is not None:
            stmt = stmt.where(AuditLogEntry.created_at >= since)
        counts: dict[str, int] = {}
        last: datetime | None = None
        for entity_type, count, latest in self.session.execute(
            stmt.group_by(AuditLogEntry.entity_type)
        ):
            counts[entity_type] = int(count)
            if latest is not None and (last is None or latest > last):
                last = latest
        return AutomationEventStats(
            visit_reminders_sent=counts.get(AuditEntityType.VISIT_REMINDER.value, 0),
            invoice_followups_sent=counts.get(AuditEntityType.INVOICE_FOLLOWUP.value, 0),
            manual_runs=counts.get(AuditEntityType.AUTOMATION_RUN.value, 0),
            last_event_at=last,
        )
