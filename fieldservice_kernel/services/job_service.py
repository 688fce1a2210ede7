"""
JobService -- jobs and their visits.

Status changes go through TransitionService; this service creates and
deletes jobs and manages visit scheduling, assignment and notes.
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import select

from fieldservice_kernel.domain.dtos import RecordRef
from fieldservice_kernel.domain.types import (
    AuditAction,
    EntityType,
    JobPriority,
    JobStatus,
    VisitStatus,
)
from fieldservice_kernel.domain.workflow import ASSIGNEE_PRESENT, TRANSITION_REGISTRY
from fieldservice_kernel.exceptions import (
    ImmutableEntityError,
    PreconditionFailedError,
    ValidationError,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import Job, Visit
from fieldservice_kernel.services.base import BaseService

logger = get_logger("services.jobs")

_CLOSED_JOB_STATUSES = frozenset({JobStatus.INVOICED, JobStatus.CANCELLED})


class JobService(BaseService):

    def create_job(
        self,
        client_id: UUID,
        title: str,
        description: str | None = None,
        priority: JobPriority | str = JobPriority.NORMAL,
    ) -> RecordRef:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Job title is required", field="title")
        try:
            priority = JobPriority(getattr(priority, "value", priority))
        except ValueError as exc:
            raise ValidationError(
                f"Unknown job priority: {priority!r}", field="priority"
            ) from exc

        job = self.handle.stamp_new(
            Job(
                client_id=client_id,
                title=title,
                description=description,
                priority=priority,
                status=JobStatus.DRAFT,
            )
        )
        self.session.flush()
        self.handle.ledger.record(
            EntityType.JOB.value,
            job.id,
            AuditAction.INSERT,
            new_value={
                "client_id": client_id,
                "title": title,
                "priority": priority,
                "status": job.status,
            },
        )
        logger.info("job_created", extra={"job_id": str(job.id)})
        return RecordRef(EntityType.JOB, job.id, job.status.value)

    def delete_job(self, job_id: UUID) -> None:
        """Hard-delete a draft job and any visits scheduled under it."""
        job = self.handle.get_for_update(Job, job_id, label="job")
        if job.status is not JobStatus.DRAFT:
            raise ImmutableEntityError(
                EntityType.JOB.value,
                job.id,
                f"Only draft jobs can be deleted (current status: {job.status.value})",
            )

        visits = self.session.execute(
            select(Visit).where(
                Visit.tenant_id == self.context.tenant_id, Visit.job_id == job.id
            )
        ).scalars().all()
        for visit in visits:
            self.handle.ledger.record(
                EntityType.VISIT.value,
                visit.id,
                AuditAction.DELETE,
                old_value={"job_id": job.id, "status": visit.status},
            )
            self.session.delete(visit)
        self.session.flush()

        self.handle.ledger.record(
            EntityType.JOB.value,
            job.id,
            AuditAction.DELETE,
            old_value={"title": job.title, "status": job.status},
        )
        self.session.delete(job)
        self.session.flush()
        logger.info(
            "job_deleted", extra={"job_id": str(job_id), "visit_count": len(visits)}
        )

    def schedule_visit(
        self,
        job_id: UUID,
        scheduled_start: datetime,
        scheduled_end: datetime,
        assigned_user_id: UUID | None = None,
    ) -> RecordRef:
        job = self.handle.get_for_update(Job, job_id, label="job")
        if job.status in _CLOSED_JOB_STATUSES:
            raise ImmutableEntityError(
                EntityType.JOB.value,
                job.id,
                f"Cannot schedule visits on a {job.status.value} job",
            )
        if scheduled_end <= scheduled_start:
            raise ValidationError(
                "Visit must end after it starts", field="scheduled_end"
            )

        visit = self.handle.stamp_new(
            Visit(
                job_id=job.id,
                assigned_user_id=assigned_user_id,
                scheduled_start=scheduled_start,
                scheduled_end=scheduled_end,
                status=VisitStatus.SCHEDULED,
            )
        )
        self.session.flush()
        self.handle.ledger.record(
            EntityType.VISIT.value,
            visit.id,
            AuditAction.INSERT,
            new_value={
                "job_id": job.id,
                "scheduled_start": scheduled_start,
                "scheduled_end": scheduled_end,
                "assigned_user_id": assigned_user_id,
                "status": visit.status,
            },
        )
        logger.info(
            "visit_scheduled", extra={"visit_id": str(visit.id), "job_id": str(job.id)}
        )
        return RecordRef(EntityType.VISIT, visit.id, visit.status.value)

    def assign_visit(self, visit_id: UUID, assigned_user_id: UUID | None) -> RecordRef:
        """
        Set or clear the assigned tech.

        A visit already past ``scheduled`` keeps an assignee: clearing it
        would break the condition it entered ``arrived`` under.
        """
        visit = self.handle.get_for_update(Visit, visit_id, label="visit")
        if TRANSITION_REGISTRY.is_terminal(EntityType.VISIT, visit.status):
            raise ImmutableEntityError(
                EntityType.VISIT.value,
                visit.id,
                f"Cannot reassign a {visit.status.value} visit",
            )
        if assigned_user_id is None and visit.status is not VisitStatus.SCHEDULED:
            raise PreconditionFailedError(
                ASSIGNEE_PRESENT.description, guard=ASSIGNEE_PRESENT.name
            )

        previous = visit.assigned_user_id
        visit.assigned_user_id = assigned_user_id
        self.handle.touch(visit)
        self.session.flush()
        self.handle.ledger.record(
            EntityType.VISIT.value,
            visit.id,
            AuditAction.UPDATE,
            old_value={"assigned_user_id": previous},
            new_value={"assigned_user_id": assigned_user_id},
        )
        return RecordRef(EntityType.VISIT, visit.id, visit.status.value)

    def update_visit_notes(self, visit_id: UUID, tech_notes: str | None) -> RecordRef:
        visit = self.handle.get_for_update(Visit, visit_id, label="visit")
        if visit.status is VisitStatus.CANCELLED:
            raise ImmutableEntityError(
                EntityType.VISIT.value,
                visit.id,
                "Cannot change notes on a cancelled visit",
            )
        previous = visit.tech_notes
        visit.tech_notes = tech_notes
        self.handle.touch(visit)
        self.session.flush()
        self.handle.ledger.record(
            EntityType.VISIT.value,
            visit.id,
            AuditAction.UPDATE,
            old_value={"tech_notes": previous},
            new_value={"tech_notes": tech_notes},
        )
        return RecordRef(EntityType.VISIT, visit.id, visit.status.value)
