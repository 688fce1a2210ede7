"""
Estimate and EstimateLineItem models.

Totals are always derived from line items (domain/line_items.py). Once an
estimate leaves draft only ``internal_notes`` may change; terminal estimates
are frozen entirely (db/guards.py).
"""

from datetime import datetime
from decimal import Decimal
from uuid import UUID

from sqlalchemy import CheckConstraint, ForeignKey, Index, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from fieldservice_kernel.db.base import (
    TenantScoped,
    TrackedBase,
    UUIDString,
    status_type,
)
from fieldservice_kernel.domain.types import EstimateStatus


class Estimate(TenantScoped, TrackedBase):
    """A priced proposal sent to a client."""

    __tablename__ = "estimates"

    __table_args__ = (
        Index("idx_estimate_tenant_status", "tenant_id", "status"),
        CheckConstraint("subtotal_cents >= 0", name="chk_estimate_subtotal"),
        CheckConstraint("total_cents >= 0", name="chk_estimate_total"),
    )

    client_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)

    job_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("jobs.id"), nullable=True
    )

    status: Mapped[EstimateStatus] = mapped_column(
        status_type(EstimateStatus),
        nullable=False,
        default=EstimateStatus.DRAFT,
    )

    subtotal_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    tax_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    total_cents: Mapped[int] = mapped_column(nullable=False, default=0)

    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    internal_notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    sent_at: Mapped[datetime | None] = mapped_column(nullable=True)

    expires_at: Mapped[datetime | None] = mapped_column(nullable=True)

    line_items: Mapped[list["EstimateLineItem"]] = relationship(
        back_populates="estimate",
        order_by="EstimateLineItem.sort_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Estimate {self.id} {self.status.value} {self.total_cents}>"


class EstimateLineItem(TenantScoped, TrackedBase):
    """One priced line on an estimate."""

    __tablename__ = "estimate_line_items"

    __table_args__ = (
        Index("idx_estimate_line_estimate", "estimate_id"),
        CheckConstraint("quantity > 0", name="chk_estimate_line_quantity"),
        CheckConstraint("unit_price_cents >= 0", name="chk_estimate_line_price"),
    )

    estimate_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("estimates.id"), nullable=False
    )

    description: Mapped[str] = mapped_column(String(500), nullable=False)

    quantity: Mapped[Decimal] = mapped_column(nullable=False)

    unit_price_cents: Mapped[int] = mapped_column(nullable=False)

    total_cents: Mapped[int] = mapped_column(nullable=False)

    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    estimate: Mapped[Estimate] = relationship(back_populates="line_items")
