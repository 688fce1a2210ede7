"""
Tenant (account) model.

Every tenant-owned row references ``tenants.id``. The tenant table itself is
not TenantScoped: provisioning happens outside a tenant's unit of work.
"""

from sqlalchemy import Boolean, String
from sqlalchemy.orm import Mapped, mapped_column

from fieldservice_kernel.db.base import TrackedBase


class Tenant(TrackedBase):
    """An isolated customer account."""

    __tablename__ = "tenants"

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    slug: Mapped[str] = mapped_column(String(100), nullable=False, unique=True)

    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    def __repr__(self) -> str:
        return f"<Tenant {self.slug}>"
