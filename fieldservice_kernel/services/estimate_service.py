"""
EstimateService -- estimates and their line items.

Invariants enforced:
    - Totals are recomputed from line items on every write, only while the
      estimate is draft.
    - A sent estimate accepts changes to ``internal_notes`` only; approved,
      declined and expired estimates accept nothing.
"""

from collections.abc import Sequence
from datetime import datetime
from uuid import UUID

from fieldservice_kernel.domain.dtos import DocumentTotals
from fieldservice_kernel.domain.line_items import LineItemInput
from fieldservice_kernel.domain.types import AuditAction, EntityType, EstimateStatus
from fieldservice_kernel.domain.workflow import TRANSITION_REGISTRY
from fieldservice_kernel.exceptions import ImmutableEntityError
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Estimate, EstimateLineItem, Job
from fieldservice_kernel.services.base import BaseService
from fieldservice_kernel.services.documents import (
    apply_totals,
    build_line_rows,
    price_items,
    totals_snapshot,
)

logger = get_logger("services.estimates")

_UNSET = object()


class EstimateService(BaseService):

    def create_estimate(
        self,
        client_id: UUID,
        line_items: Sequence[LineItemInput],
        job_id: UUID | None = None,
        notes: str | None = None,
        internal_notes: str | None = None,
        expires_at: datetime | None = None,
    ) -> DocumentTotals:
        priced, totals = price_items(line_items)
        if job_id is not None:
            self.handle.get(Job, job_id, label="job")

        estimate = self.handle.stamp_new(
            Estimate(
                client_id=client_id,
                job_id=job_id,
                status=EstimateStatus.DRAFT,
                notes=notes,
                internal_notes=internal_notes,
                expires_at=expires_at,
            )
        )
        apply_totals(estimate, totals)
        self.session.flush()
        build_line_rows(self.handle, EstimateLineItem, priced, estimate_id=estimate.id)
        self.session.flush()
        self.session.expire(estimate, ["line_items"])

        self.handle.ledger.record(
            EntityType.ESTIMATE.value,
            estimate.id,
            AuditAction.INSERT,
            new_value={
                "client_id": client_id,
                "job_id": job_id,
                "status": estimate.status,
                "line_item_count": len(priced),
                **totals_snapshot(estimate),
            },
        )
        logger.info(
            "estimate_created",
            extra={"estimate_id": str(estimate.id), "total_cents": totals.total_cents},
        )
        return self._totals(estimate, len(priced))

    def replace_line_items(
        self, estimate_id: UUID, line_items: Sequence[LineItemInput]
    ) -> DocumentTotals:
        """Swap the full set of line items and recompute totals (draft only)."""
        estimate = self.handle.get_for_update(Estimate, estimate_id, label="estimate")
        if estimate.status is not EstimateStatus.DRAFT:
            raise ImmutableEntityError(
                EntityType.ESTIMATE.value,
                estimate.id,
                "Line items can only be changed while the estimate is draft "
                f"(current status: {estimate.status.value})",
            )
        priced, totals = price_items(line_items)
        before = totals_snapshot(estimate)

        for line in list(estimate.line_items):
            self.session.delete(line)
        self.session.flush()
        build_line_rows(self.handle, EstimateLineItem, priced, estimate_id=estimate.id)
        apply_totals(estimate, totals)
        self.handle.touch(estimate)
        self.session.flush()
        self.session.expire(estimate, ["line_items"])

        self.handle.ledger.record(
            EntityType.ESTIMATE.value,
            estimate.id,
            AuditAction.UPDATE,
            old_value=before,
            new_value={**totals_snapshot(estimate), "line_item_count": len(priced)},
        )
        return self._totals(estimate, len(priced))

    def update_notes(
        self,
        estimate_id: UUID,
        notes: str | None | object = _UNSET,
        internal_notes: str | None | object = _UNSET,
    ) -> None:
        """Customer notes change in draft; internal notes in draft or sent."""
        estimate = self.handle.get_for_update(Estimate, estimate_id, label="estimate")
        if TRANSITION_REGISTRY.is_terminal(EntityType.ESTIMATE, estimate.status):
            raise ImmutableEntityError(
                EntityType.ESTIMATE.value,
                estimate.id,
                f"Cannot modify a {estimate.status.value} estimate",
            )
        if notes is not _UNSET and estimate.status is not EstimateStatus.DRAFT:
            raise ImmutableEntityError(
                EntityType.ESTIMATE.value,
                estimate.id,
                "Only internal notes can change once an estimate is sent",
            )

        old_value, new_value = {}, {}
        if notes is not _UNSET:
            old_value["notes"], new_value["notes"] = estimate.notes, notes
            estimate.notes = notes
        if internal_notes is not _UNSET:
            old_value["internal_notes"] = estimate.internal_notes
            new_value["internal_notes"] = internal_notes
            estimate.internal_notes = internal_notes
        if not new_value:
            return
        self.handle.touch(estimate)
        self.session.flush()
        self.handle.ledger.record(
            EntityType.ESTIMATE.value,
            estimate.id,
            AuditAction.UPDATE,
            old_value=old_value,
            new_value=new_value,
        )

    @staticmethod
    def _totals(estimate: Estimate, count: int) -> DocumentTotals:
        return DocumentTotals(
            entity_type=EntityType.ESTIMATE,
            entity_id=estimate.id,
            status=estimate.status.value,
            subtotal_cents=estimate.subtotal_cents,
            tax_cents=estimate.tax_cents,
            total_cents=estimate.total_cents,
            line_item_count=count,
        )
