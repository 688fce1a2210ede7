"""
AutomationHandler protocol and HandlerRegistry.

Contract:
    A handler implements one ``AutomationType``:

    * ``find_targets`` queries the definition's tenant for records whose
      cadence step has been crossed and returns one ``AutomationTarget`` per
      pending emission;
    * ``process_target`` emits ONE target through the audit ledger inside a
      SAVEPOINT owned by the dispatcher.

    Handlers never commit, never advance the schedule and never catch their
    own errors: the dispatcher counts them per target.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from fieldservice_automation.domain.types import AutomationTarget, TargetOutcome
from fieldservice_kernel.domain.automation_config import AutomationConfig
from fieldservice_kernel.domain.types import AutomationType

if TYPE_CHECKING:
    from fieldservice_kernel.models import AutomationDefinition
    from fieldservice_kernel.services.transactional_unit import UnitHandle


@runtime_checkable
class AutomationHandler(Protocol):

    @property
    def automation_type(self) -> AutomationType: ...

    def find_targets(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: AutomationConfig,
    ) -> Sequence[AutomationTarget]: ...

    def process_target(
        self,
        handle: UnitHandle,
        definition: AutomationDefinition,
        config: AutomationConfig,
        target: AutomationTarget,
    ) -> TargetOutcome: ...


class HandlerRegistry:
    """Handlers keyed by automation type; one per type."""

    def __init__(self) -> None:
        self._handlers: dict[AutomationType, AutomationHandler] = {}

    def register(self, handler: AutomationHandler) -> None:
        """
        Raises:
            ValueError: a handler for the same type is already registered.
        """
        atype = AutomationType(handler.automation_type)
        if atype in self._handlers:
            raise ValueError(f"Handler for '{atype.value}' is already registered")
        self._handlers[atype] = handler

    def get(self, automation_type: AutomationType | str) -> AutomationHandler:
        """
        Raises:
            KeyError: no handler registered for the type.
        """
        try:
            return self._handlers[AutomationType(automation_type)]
        except (KeyError, ValueError):
            raise KeyError(
                f"No handler registered for '{automation_type}'. "
                f"Available: {self.list_types()}"
            ) from None

    def list_types(self) -> tuple[str, ...]:
        return tuple(sorted(t.value for t in self._handlers))

    def __len__(self) -> int:
        return len(self._handlers)

    def __contains__(self, automation_type: object) -> bool:
        try:
            return AutomationType(automation_type) in self._handlers
        except ValueError:
            return False


def default_handler_registry() -> HandlerRegistry:
    """Registry with the visit reminder and invoice follow-up handlers."""
    from fieldservice_automation.handlers.invoice_followup import (
        InvoiceFollowupHandler,
    )
    from fieldservice_automation.handlers.visit_reminder import VisitReminderHandler

    registry = HandlerRegistry()
    registry.register(VisitReminderHandler())
    registry.register(InvoiceFollowupHandler())
    return registry
