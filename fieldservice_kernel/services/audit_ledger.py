"""
AuditLedger -- append-only audit store and automation idempotency witness.

Responsibility:
    Append audit entries for record changes, and answer "has this side
    effect already been emitted?" for the automation dispatcher.

Architecture position:
    Kernel > Services. Bound to one ``UnitHandle``; never opens its own
    transaction.

Invariants enforced:
    - Entries are only ever inserted (db/guards.py rejects UPDATE/DELETE).
    - At most one entry per (tenant, entity type, entity id, dedupe key):
      ``append_once`` relies on the ``uq_audit_dedupe`` unique constraint and
      a SAVEPOINT, so a concurrent emitter that lost the race sees None
      instead of an aborted unit.

Failure modes:
    - IntegrityError from ``append`` if a dedupe key is reused; callers that
      expect this use ``append_once``.
"""

from collections.abc import Mapping
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any
from uuid import UUID

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from fieldservice_kernel.domain.dtos import AuditRecord
from fieldservice_kernel.domain.types import AuditAction
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models.audit_log import AuditLogEntry
from fieldservice_kernel.services.base import BaseService

if TYPE_CHECKING:
    from fieldservice_kernel.services.transactional_unit import UnitHandle

logger = get_logger("services.audit")


def _jsonable(value: Any) -> Any:
    """Snapshot values as JSON-safe primitives."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (UUID, Decimal)):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set, frozenset)):
        return [_jsonable(v) for v in value]
    return str(value)


class AuditLedger(BaseService):
    """Append and query audit entries within one unit of work."""

    def __init__(self, handle: "UnitHandle"):
        super().__init__(handle)

    def exists(
        self,
        tenant_id: UUID,
        entity_type: str,
        entity_id: UUID,
        dedupe_key: str | None = None,
    ) -> bool:
        """True if an entry exists for the entity (and dedupe key, when given)."""
        stmt = select(AuditLogEntry.id).where(
            AuditLogEntry.tenant_id == tenant_id,
            AuditLogEntry.entity_type == entity_type,
            AuditLogEntry.entity_id == entity_id,
        )
        if dedupe_key is not None:
            stmt = stmt.where(AuditLogEntry.dedupe_key == dedupe_key)
        return self.session.execute(stmt.limit(1)).first() is not None

    def append(self, entry: AuditRecord) -> AuditLogEntry:
        row = AuditLogEntry(
            tenant_id=entry.tenant_id,
            entity_type=entry.entity_type,
            entity_id=entry.entity_id,
            action=AuditAction(entry.action),
            actor_id=entry.actor_id,
            old_value=_jsonable(entry.old_value),
            new_value=_jsonable(entry.new_value),
            trace_id=entry.trace_id or self.context.trace_id,
            dedupe_key=entry.dedupe_key,
            automation_step=entry.automation_step,
            created_at=entry.occurred_at or self.handle.now(),
        )
        self.session.add(row)
        self.session.flush()
        logger.info(
            "audit_entry_appended",
            extra={
                "audit_id": str(row.id),
                "entity_type": row.entity_type,
                "entity_id": str(row.entity_id),
                "action": row.action.value,
                "dedupe_key": row.dedupe_key,
            },
        )
        return row

    def record(
        self,
        entity_type: str,
        entity_id: UUID,
        action: AuditAction,
        old_value: Mapping[str, Any] | None = None,
        new_value: Mapping[str, Any] | None = None,
        *,
        dedupe_key: str | None = None,
        automation_step: int | None = None,
    ) -> AuditLogEntry:
        """Append an entry attributed to the unit's tenant, actor and trace."""
        return self.append(
            AuditRecord(
                tenant_id=self.context.tenant_id,
                entity_type=getattr(entity_type, "value", entity_type),
                entity_id=entity_id,
                action=action,
                actor_id=self.context.actor_id,
                old_value=old_value,
                new_value=new_value,
                trace_id=self.context.trace_id,
                dedupe_key=dedupe_key,
                automation_step=automation_step,
            )
        )

    def append_once(self, entry: AuditRecord) -> AuditLogEntry | None:
        """
        Append unless an entry with the same dedupe key already exists.

        Returns None when the key is taken. Only the SAVEPOINT is rolled
        back, so the rest of the unit stays intact.
        """
        if entry.dedupe_key is None:
            raise ValueError("append_once requires a dedupe_key")
        try:
            with self.session.begin_nested():
                row = self.append(entry)
        except IntegrityError:
            logger.info(
                "audit_entry_already_recorded",
                extra={
                    "entity_type": entry.entity_type,
                    "entity_id": str(entry.entity_id),
                    "dedupe_key": entry.dedupe_key,
                },
            )
            return None
        return row
