"""Pure automation types and schedule math. ZERO I/O."""

from fieldservice_automation.domain.schedule import (
    AutomationPhase,
    compute_next_run,
    evaluate_phase,
    is_due,
)
from fieldservice_automation.domain.types import (
    AutomationRunResult,
    AutomationSummary,
    AutomationTarget,
    DispatchResult,
    TargetOutcome,
)

__all__ = [
    "AutomationPhase",
    "AutomationRunResult",
    "AutomationSummary",
    "AutomationTarget",
    "DispatchResult",
    "TargetOutcome",
    "compute_next_run",
    "evaluate_phase",
    "is_due",
]
