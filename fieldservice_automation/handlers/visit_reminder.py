"""
Visit reminders: one record per scheduled visit starting within
``hours_before`` hours of now.

A visit is reminded at most once, whatever ``hours_before`` was when the
reminder went out: any prior ``visit_reminder`` entry for the visit counts.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import timedelta
from typing import TYPE_CHECKING

from sqlalchemy import select

from fieldservice_automation.domain.types import AutomationTarget, TargetOutcome
from fieldservice_kernel.domain.automation_config import VisitReminderConfig
from fieldservice_kernel.domain.cadence import HOUR, CadenceDirection, crossed_steps
from fieldservice_kernel.domain.dtos import AuditRecord
from fieldservice_kernel.domain.types import (
    AuditAction,
    AuditEntityType,
    AutomationType,
    VisitStatus,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Job, Visit

if TYPE_CHECKING:
    from fieldservice_kernel.models import AutomationDefinition
    from fieldservice_kernel.services.transactional_unit import UnitHandle

logger = get_logger("automation.visit_reminder")

DEDUPE_KEY = "visit_reminder"


class VisitReminderHandler:
    automation_type = AutomationType.VISIT_REMINDER

    def find_targets(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: VisitReminderConfig,
    ) -> Sequence[AutomationTarget]:
        now = handle.now()
        window_end = now + timedelta(hours=config.hours_before)
        rows = handle.session.execute(
            select(Visit, Job.title)
            .join(Job, Job.id == Visit.job_id)
            .where(
                Visit.tenant_id == handle.context.tenant_id,
                Visit.status == VisitStatus.SCHEDULED,
                Visit.scheduled_start > now,
                Visit.scheduled_start <= window_end,
            )
            .order_by(Visit.scheduled_start, Visit.id)
        ).all()

        targets = []
        for visit, job_title in rows:
            steps = crossed_steps(
                visit.scheduled_start,
                now,
                [config.hours_before],
                unit=HOUR,
                direction=CadenceDirection.LEAD,
            )
            for step in steps:
                targets.append(
                    AutomationTarget(
                        entity_type="visit",
                        entity_id=visit.id,
                        step=step,
                        snapshot={
                            "visit_scheduled_start": visit.scheduled_start,
                            "job_id": visit.job_id,
                            "job_title": job_title,
                            "assigned_user_id": visit.assigned_user_id,
                        },
                    )
                )
        return targets

    def process_target(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: VisitReminderConfig,
        target: AutomationTarget,
    ) -> TargetOutcome:
        tenant_id = handle.context.tenant_id
        entity_type = AuditEntityType.VISIT_REMINDER.value
        if handle.ledger.exists(tenant_id, entity_type, target.entity_id):
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
                    **target.snapshot,
                    "reminder_sent_at": now,
                },
                trace_id=handle.context.trace_id,
                dedupe_key=DEDUPE_KEY,
                automation_step=target.step,
                occurred_at=now,
            )
        )
        if entry is None:
            return TargetOutcome(skipped=1)
        logger.info(
            "visit_reminder_emitted",
            extra={"visit_id": str(target.entity_id), "hours_before": target.step},
        )
        return TargetOutcome(sent=1)
