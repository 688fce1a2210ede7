"""
AutomationDefinition -- a tenant's configured background automation.

``config`` holds the JSON form of the typed variant for ``automation_type``
(domain/automation_config.py); it is validated on every flush. The dispatcher
owns ``last_run_at`` / ``next_run_at``; tenant admins own ``enabled`` and
``config``.
"""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, Boolean, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from fieldservice_kernel.db.base import TenantScoped, TrackedBase, status_type
from fieldservice_kernel.domain.automation_config import (
    AutomationConfig,
    parse_automation_config,
)
from fieldservice_kernel.domain.types import AutomationType


class AutomationDefinition(TenantScoped, TrackedBase):
    """A scheduled automation owned by one tenant."""

    __tablename__ = "automation_definitions"

    __table_args__ = (Index("idx_automation_due", "enabled", "next_run_at"),)

    name: Mapped[str] = mapped_column(String(200), nullable=False)

    automation_type: Mapped[AutomationType] = mapped_column(
        status_type(AutomationType),
        nullable=False,
    )

    enabled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    next_run_at: Mapped[datetime | None] = mapped_column(nullable=True)

    last_run_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def typed_config(
        self, defaults: dict[str, Any] | None = None
    ) -> AutomationConfig:
        return parse_automation_config(self.automation_type, self.config, defaults)

    def __repr__(self) -> str:
        return f"<AutomationDefinition {self.automation_type.value} {self.name!r}>"
