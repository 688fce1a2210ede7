"""
Typed automation configuration.

Each automation type has exactly one config variant carrying only its own
fields. Configs are validated when written (admin service and flush guard),
so the dispatcher never meets a malformed blob.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any, ClassVar, Union

from fieldservice_kernel.domain.types import AutomationType
from fieldservice_kernel.exceptions import InvalidAutomationConfigError

DEFAULT_HOURS_BEFORE = 24
DEFAULT_DAYS_OVERDUE_STEPS: tuple[int, ...] = (7, 14, 30)

MAX_HOURS_BEFORE = 24 * 14
MAX_DAYS_OVERDUE = 365


@dataclass(frozen=True)
class VisitReminderConfig:
    automation_type: ClassVar[AutomationType] = AutomationType.VISIT_REMINDER

    hours_before: int = DEFAULT_HOURS_BEFORE

    def __post_init__(self) -> None:
        if (
            isinstance(self.hours_before, bool)
            or not isinstance(self.hours_before, int)
            or not 1 <= self.hours_before <= MAX_HOURS_BEFORE
        ):
            raise InvalidAutomationConfigError(
                self.automation_type.value,
                f"hours_before must be an integer between 1 and {MAX_HOURS_BEFORE}",
            )

    def to_json(self) -> dict[str, Any]:
        return {"hours_before": self.hours_before}


@dataclass(frozen=True)
class InvoiceFollowupConfig:
    automation_type: ClassVar[AutomationType] = AutomationType.INVOICE_FOLLOWUP

    days_overdue_steps: tuple[int, ...] = DEFAULT_DAYS_OVERDUE_STEPS

    def __post_init__(self) -> None:
        steps = self.days_overdue_steps
        if not isinstance(steps, (list, tuple)) or not steps:
            raise InvalidAutomationConfigError(
                self.automation_type.value,
                "days_overdue_steps must be a non-empty list of integers",
            )
        for step in steps:
            if (
                isinstance(step, bool)
                or not isinstance(step, int)
                or not 1 <= step <= MAX_DAYS_OVERDUE
            ):
                raise InvalidAutomationConfigError(
                    self.automation_type.value,
                    f"days_overdue_steps values must be integers between 1 and "
                    f"{MAX_DAYS_OVERDUE}",
                )
        object.__setattr__(self, "days_overdue_steps", tuple(sorted(set(steps))))

    def to_json(self) -> dict[str, Any]:
        return {"days_overdue_steps": list(self.days_overdue_steps)}


AutomationConfig = Union[VisitReminderConfig, InvoiceFollowupConfig]

_VARIANTS: dict[AutomationType, tuple[type, frozenset[str]]] = {
    AutomationType.VISIT_REMINDER: (VisitReminderConfig, frozenset({"hours_before"})),
    AutomationType.INVOICE_FOLLOWUP: (
        InvoiceFollowupConfig,
        frozenset({"days_overdue_steps"}),
    ),
}


def parse_automation_config(
    automation_type: AutomationType | str,
    raw: Mapping[str, Any] | None,
    defaults: Mapping[str, Any] | None = None,
) -> AutomationConfig:
    """
    Build the typed config for ``automation_type``.

    Missing keys fall back to ``defaults`` then to the variant's own
    defaults. Unknown keys are rejected.

    Raises:
        InvalidAutomationConfigError: unknown type, unknown keys or bad values.
    """
    try:
        atype = AutomationType(automation_type)
    except ValueError as exc:
        raise InvalidAutomationConfigError(
            str(automation_type), "unknown automation type"
        ) from exc
    if raw is not None and not isinstance(raw, Mapping):
        raise InvalidAutomationConfigError(atype.value, "config must be an object")

    variant, fields = _VARIANTS[atype]
    values = dict(raw or {})
    unknown = set(values) - fields
    if unknown:
        raise InvalidAutomationConfigError(
            atype.value, f"unknown keys: {', '.join(sorted(unknown))}"
        )
    for key, value in (defaults or {}).items():
        if key in fields:
            values.setdefault(key, value)
    if "days_overdue_steps" in values and isinstance(
        values["days_overdue_steps"], list
    ):
        values["days_overdue_steps"] = tuple(values["days_overdue_steps"])
    return variant(**values)


def config_for(
    automation_type: AutomationType | str, config: AutomationConfig
) -> AutomationConfig:
    """Reject a config variant that belongs to another automation type."""
    atype = AutomationType(automation_type)
    if config.automation_type is not atype:
        raise InvalidAutomationConfigError(
            atype.value,
            f"config is a {config.automation_type.value} variant",
        )
    return config
