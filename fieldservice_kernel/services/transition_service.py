"""
TransitionService -- applies workflow status changes to records.

Responsibility:
    Lock the record, check the edge and its guard in the TransitionRegistry,
    write the new status with its timestamps, and append the audit entry.

Architecture position:
    Kernel > Services. The registry decides; this service only applies.

Invariants enforced:
    - An illegal edge raises before any row is written.
    - Invoice ``partial`` and ``paid`` are never set here; the guard sends
      callers to the PaymentReconciler.
"""

from typing import Any
from uuid import UUID

from fieldservice_kernel.domain.dtos import TransitionResult
from fieldservice_kernel.domain.types import (
    AuditAction,
    EntityType,
    EstimateStatus,
    InvoiceStatus,
    VisitStatus,
)
from fieldservice_kernel.domain.workflow import TRANSITION_REGISTRY
from fieldservice_kernel.exceptions import ValidationError
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Estimate, Invoice, Job, Visit
from fieldservice_kernel.services.base import BaseService

logger = get_logger("services.transition")

_MODELS = {
    EntityType.JOB: Job,
    EntityType.VISIT: Visit,
    EntityType.ESTIMATE: Estimate,
    EntityType.INVOICE: Invoice,
}

# (entity type, new status) -> timestamp column stamped on entry
_TIMESTAMPS = {
    (EntityType.VISIT, VisitStatus.ARRIVED.value): "arrived_at",
    (EntityType.VISIT, VisitStatus.COMPLETED.value): "completed_at",
    (EntityType.ESTIMATE, EstimateStatus.SENT.value): "sent_at",
    (EntityType.INVOICE, InvoiceStatus.SENT.value): "sent_at",
}


def _entity_type(value: Any) -> EntityType:
    try:
        return EntityType(value)
    except ValueError as exc:
        raise ValidationError(
            f"Unknown entity type: {value!r}", field="entity_type"
        ) from exc


class TransitionService(BaseService):
    """Status changes for jobs, visits, estimates and invoices."""

    def transition(
        self,
        entity_type: EntityType | str,
        entity_id: UUID,
        to_status: Any,
        tech_notes: str | None = None,
    ) -> TransitionResult:
        """
        Move a record to ``to_status``.

        Raises:
            NotFoundError: no such record in the bound tenant.
            ValidationError: unknown entity type or status, or tech notes on
                a non-visit record.
            InvalidTransitionError: not an edge of the record's table.
            PreconditionFailedError: the edge's guard rejected the record.
        """
        et = _entity_type(entity_type)
        workflow = TRANSITION_REGISTRY.workflow(et)
        try:
            target = workflow.status_enum(getattr(to_status, "value", to_status))
        except ValueError as exc:
            raise ValidationError(
                f"Unknown {et.value} status: {to_status!r}", field="status"
            ) from exc
        if tech_notes is not None and et is not EntityType.VISIT:
            raise ValidationError(
                "Tech notes can only be recorded on visits", field="tech_notes"
            )

        row = self.handle.get_for_update(_MODELS[et], entity_id, label=et.value)
        current = row.status
        state = {column: getattr(row, column) for column in workflow.guard_columns}
        TRANSITION_REGISTRY.require_transition(et, current, target, state)

        now = self.handle.now()
        row.status = target
        new_value: dict[str, Any] = {"status": target.value}
        column = _TIMESTAMPS.get((et, target.value))
        if column is not None:
            setattr(row, column, now)
            new_value[column] = now
        if tech_notes is not None:
            row.tech_notes = tech_notes
            new_value["tech_notes"] = tech_notes
        self.handle.touch(row)
        self.session.flush()

        self.handle.ledger.record(
            et.value,
            row.id,
            AuditAction.UPDATE,
            old_value={"status": current.value},
            new_value=new_value,
        )
        logger.info(
            "transition_applied",
            extra={
                "entity_type": et.value,
                "entity_id": str(row.id),
                "from_status": current.value,
                "to_status": target.value,
            },
        )
        return TransitionResult(
            entity_type=et,
            entity_id=row.id,
            from_status=current.value,
            to_status=target.value,
        )
