"""
AutomationService -- tenant admin operations on automation definitions.

Owners and admins create, reconfigure, enable/disable and manually trigger
automations. The dispatcher owns ``last_run_at``; ``next_run_at`` is only
touched here to make a definition due now.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any
from uuid import UUID

from fieldservice_automation.domain.types import AutomationSummary
from fieldservice_kernel.domain.automation_config import (
    AutomationConfig,
    config_for,
    parse_automation_config,
)
from fieldservice_kernel.domain.types import (
    AuditAction,
    AuditEntityType,
    AutomationType,
)
from fieldservice_kernel.exceptions import (
    InvalidAutomationConfigError,
    PermissionDeniedError,
    ValidationError,
)
from fieldservice_kernel.logging_config import get_logger
from fieldservice_kernel.models import AutomationDefinition
from fieldservice_kernel.services.base import BaseService

logger = get_logger("automation.admin")


def _summary(definition: AutomationDefinition) -> AutomationSummary:
    return AutomationSummary(
        automation_id=definition.id,
        name=definition.name,
        automation_type=definition.automation_type,
        enabled=definition.enabled,
        config=dict(definition.config),
        next_run_at=definition.next_run_at,
        last_run_at=definition.last_run_at,
    )


class AutomationService(BaseService):

    def _require_manager(self, operation: str) -> None:
        if not self.context.is_manager:
            raise PermissionDeniedError(self.context.role.value, operation)

    def _resolve_config(
        self,
        automation_type: AutomationType,
        config: AutomationConfig | Mapping[str, Any] | None,
        config_defaults: Mapping[str, Any] | None,
    ) -> AutomationConfig:
        if isinstance(config, Mapping) or config is None:
            return parse_automation_config(automation_type, config, config_defaults)
        return config_for(automation_type, config)

    def create_automation(
        self,
        name: str,
        automation_type: AutomationType | str,
        config: AutomationConfig | Mapping[str, Any] | None = None,
        enabled: bool = True,
        config_defaults: Mapping[str, Any] | None = None,
    ) -> AutomationSummary:
        """
        Create a definition, due immediately when enabled.

        Raises:
            PermissionDeniedError: caller is not an owner or admin.
            InvalidAutomationConfigError: config does not fit the type.
        """
        self._require_manager("manage automations")
        name = (name or "").strip()
        if not name:
            raise ValidationError("Automation name is required", field="name")
        try:
            atype = AutomationType(getattr(automation_type, "value", automation_type))
        except ValueError as exc:
            raise InvalidAutomationConfigError(
                str(automation_type), "unknown automation type"
            ) from exc
        typed = self._resolve_config(atype, config, config_defaults)

        definition = self.handle.stamp_new(
            AutomationDefinition(
                name=name,
                automation_type=atype,
                enabled=bool(enabled),
                config=typed.to_json(),
                next_run_at=self.handle.now(),
            )
        )
        self.session.flush()
        self.handle.ledger.record(
            AuditEntityType.AUTOMATION.value,
            definition.id,
            AuditAction.INSERT,
            new_value={
                "name": name,
                "automation_type": atype,
                "enabled": definition.enabled,
                "config": definition.config,
            },
        )
        logger.info(
            "automation_created",
            extra={"automation_id": str(definition.id), "automation_type": atype.value},
        )
        return _summary(definition)

    def update_config(
        self,
        automation_id: UUID,
        config: AutomationConfig | Mapping[str, Any],
    ) -> AutomationSummary:
        self._require_manager("manage automations")
        definition = self.handle.get_for_update(
            AutomationDefinition, automation_id, label="automation"
        )
        typed = self._resolve_config(definition.automation_type, config, None)
        previous = dict(definition.config)
        definition.config = typed.to_json()
        self.handle.touch(definition)
        self.session.flush()
        self.handle.ledger.record(
            AuditEntityType.AUTOMATION.value,
            definition.id,
            AuditAction.UPDATE,
            old_value={"config": previous},
            new_value={"config": definition.config},
        )
        return _summary(definition)

    def set_enabled(self, automation_id: UUID, enabled: bool) -> AutomationSummary:
        """Enabling a definition with no schedule makes it due at once."""
        self._require_manager("manage automations")
        definition = self.handle.get_for_update(
            AutomationDefinition, automation_id, label="automation"
        )
        previous = definition.enabled
        if previous == bool(enabled):
            return _summary(definition)
        definition.enabled = bool(enabled)
        if definition.enabled and definition.next_run_at is None:
            definition.next_run_at = self.handle.now()
        self.handle.touch(definition)
        self.session.flush()
        self.handle.ledger.record(
            AuditEntityType.AUTOMATION.value,
            definition.id,
            AuditAction.UPDATE,
            old_value={"enabled": previous},
            new_value={"enabled": definition.enabled},
        )
        logger.info(
            "automation_enabled" if definition.enabled else "automation_disabled",
            extra={"automation_id": str(definition.id)},
        )
        return _summary(definition)

    def trigger_now(self, automation_id: UUID) -> AutomationSummary:
        """
        Make the definition due on the dispatcher's next tick.

        Raises:
            ValidationError: the automation is disabled.
        """
        self._require_manager("manage automations")
        definition = self.handle.get_for_update(
            AutomationDefinition, automation_id, label="automation"
        )
        if not definition.enabled:
            raise ValidationError(
                "Cannot trigger a disabled automation", field="enabled"
            )
        now = self.handle.now()
        definition.next_run_at = now
        self.handle.touch(definition)
        self.session.flush()
        self.handle.ledger.record(
            AuditEntityType.AUTOMATION_RUN.value,
            definition.id,
            AuditAction.INSERT,
            new_value={
                "automation_id": definition.id,
                "automation_type": definition.automation_type,
                "triggered_by": "manual",
                "triggered_at": now,
            },
        )
        logger.info(
            "automation_triggered", extra={"automation_id": str(definition.id)}
        )
        return _summary(definition)
