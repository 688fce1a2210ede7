"""
Job and Visit models.

A Job is the unit of work sold to a client; Visits are the scheduled on-site
appointments under it. Both carry a workflow status validated against
``fieldservice_kernel.domain.workflow`` at flush time (db/guards.py).
"""

from datetime import datetime
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldservice_kernel.db.base import (
    TenantScoped,
    TrackedBase,
    UUIDString,
    status_type,
)
from fieldservice_kernel.domain.types import JobPriority, JobStatus, VisitStatus


class Job(TenantScoped, TrackedBase):
    """
    A client job.

    Contract:
        Hard deletion is only permitted while ``status`` is draft; every other
        status change goes through the transition service.
    """

    __tablename__ = "jobs"

    __table_args__ = (Index("idx_job_tenant_status", "tenant_id", "status"),)

    client_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    title: Mapped[str] = mapped_column(String(200), nullable=False)

    description: Mapped[str | None] = mapped_column(Text, nullable=True)

    priority: Mapped[JobPriority] = mapped_column(
        status_type(JobPriority),
        nullable=False,
        default=JobPriority.NORMAL,
    )

    status: Mapped[JobStatus] = mapped_column(
        status_type(JobStatus),
        nullable=False,
        default=JobStatus.DRAFT,
    )

    visits: Mapped[list["Visit"]] = relationship(
        back_populates="job",
        order_by="Visit.scheduled_start",
    )

    def __repr__(self) -> str:
        return f"<Job {self.title!r} {self.status.value}>"


class Visit(TenantScoped, TrackedBase):
    """
    A scheduled on-site visit.

    Contract:
        ``arrived`` requires ``assigned_user_id``. ``arrived_at`` and
        ``completed_at`` are stamped by the transition service.
    """

    __tablename__ = "visits"

    __table_args__ = (
        Index("idx_visit_tenant_status_start", "tenant_id", "status", "scheduled_start"),
        Index("idx_visit_job", "job_id"),
    )

    job_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("jobs.id"), nullable=False
    )

    assigned_user_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), nullable=True
    )

    scheduled_start: Mapped[datetime] = mapped_column(nullable=False)

    scheduled_end: Mapped[datetime] = mapped_column(nullable=False)

    status: Mapped[VisitStatus] = mapped_column(
        status_type(VisitStatus),
        nullable=False,
        default=VisitStatus.SCHEDULED,
    )

    arrived_at: Mapped[datetime | None] = mapped_column(nullable=True)

    completed_at: Mapped[datetime | None] = mapped_column(nullable=True)

    tech_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    job: Mapped[Job] = relationship(back_populates="visits")

    def __repr__(self) -> str:
        return f"<Visit {self.id} {self.status.value}>"
