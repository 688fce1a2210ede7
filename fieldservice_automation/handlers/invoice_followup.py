"""
Invoice follow-ups: one record per overdue invoice per crossed cadence step.

With steps (7, 14, 30) an invoice 20 days past due yields steps 7 and 14;
each is emitted once under the dedupe key ``invoice_followup:{step}``. A
step crossed while the dispatcher was down is still emitted on the next
cycle.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING

from sqlalchemy import select

from fieldservice_automation.domain.types import AutomationTarget, TargetOutcome
from fieldservice_kernel.domain.automation_config import InvoiceFollowupConfig
from fieldservice_kernel.domain.cadence import DAY, CadenceDirection, crossed_steps
from fieldservice_kernel.domain.dtos import AuditRecord
from fieldservice_kernel.domain.reconciliation import PAYABLE_STATUSES
from fieldservice_kernel.domain.types import (
    AuditAction,
    AuditEntityType,
    AutomationType,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Invoice

if TYPE_CHECKING:
    from fieldservice_kernel.models import AutomationDefinition
    from fieldservice_kernel.services.transactional_unit import UnitHandle

logger = get_logger("automation.invoice_followup")


def dedupe_key(step: int) -> str:
    return f"invoice_followup:{step}"


class InvoiceFollowupHandler:
    automation_type = AutomationType.INVOICE_FOLLOWUP

    def find_targets(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: InvoiceFollowupConfig,
    ) -> Sequence[AutomationTarget]:
        now = handle.now()
        invoices = handle.session.execute(
            select(Invoice)
            .where(
                Invoice.tenant_id == handle.context.tenant_id,
                Invoice.status.in_(sorted(PAYABLE_STATUSES)),
                Invoice.due_date.is_not(None),
                Invoice.due_date < now,
            )
            .order_by(Invoice.due_date, Invoice.id)
        ).scalars().all()

        targets = []
        for invoice in invoices:
            snapshot = {
                "invoice_number": invoice.invoice_number,
                "invoice_status": invoice.status,
                "total_cents": invoice.total_cents,
                "paid_cents": invoice.paid_cents,
                "amount_due_cents": invoice.amount_due_cents,
                "due_date": invoice.due_date,
                "client_id": invoice.client_id,
            }
            for step in crossed_steps(
                now,
                invoice.due_date,
                config.days_overdue_steps,
                unit=DAY,
                direction=CadenceDirection.ELAPSED,
            ):
                targets.append(
                    AutomationTarget(
                        entity_type="invoice",
                        entity_id=invoice.id,
                        step=step,
                        snapshot=snapshot,
                    )
                )
        return targets

    def process_target(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: InvoiceFollowupConfig,
        target: AutomationTarget,
    ) -> TargetOutcome:
        tenant_id = handle.context.tenant_id
        entity_type = AuditEntityType.INVOICE_FOLLOWUP.value
        key = dedupe_key(target.step)
        if handle.ledger.exists(tenant_id, entity_type, target.entity_id, key):
            return TargetOutcome(skipped=1)

        now = handle.now()
        entry = handle.ledger.append_once(
            AuditRecord(
                tenant_id=tenant_id,
                entity_type=entity_type,
                entity_id=target.entity_id,
                action=AuditAction.INSERT,
                actor_id=handle.context.actor_id,
                new_value={
                    "automation_id": definition.id,
                    "days_overdue_step": target.step,
                    **target.snapshot,
                    "followup_sent_at": now,
                },
                trace_id=handle.context.trace_id,
                dedupe_key=key,
                automation_step=target.step,
                occurred_at=now,
            )
        )
        if entry is None:
            return TargetOutcome(skipped=1)
        logger.info(
            "invoice_followup_emitted",
            extra={"invoice_id": str(target.entity_id), "days_overdue_step": target.step},
        )
        return TargetOutcome(sent=1)
