"""
fieldservice_automation.domain.types -- frozen result types for the dispatcher.

ZERO I/O. Tuples for collections so results can be logged and compared
after the unit that produced them has closed.
"""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any
from uuid import UUID

from fieldservice_kernel.domain.types import AutomationType


@dataclass(frozen=True)
class AutomationTarget:
    """
    One pending emission: a record plus the cadence step it crossed.

    ``snapshot`` carries the record fields the emitted payload needs, read
    in the same unit that emits.
    """

    entity_type: str
    entity_id: UUID
    step: int
    snapshot: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class TargetOutcome:
    sent: int = 0
    skipped: int = 0


@dataclass(frozen=True)
class AutomationRunResult:
    """Outcome of one definition's cycle.

    ``succeeded`` is False when the cycle rolled back (bookkeeping failure
    or an unhandled error); the schedule was not advanced in that case.
    """

    automation_id: UUID
    tenant_id: UUID
    automation_type: AutomationType | None
    targets: int = 0
    sent: int = 0
    skipped: int = 0
    errors: int = 0
    next_run_at: datetime | None = None
    succeeded: bool = True
    was_due: bool = True
    error_code: str | None = None
    error_message: str | None = None


@dataclass(frozen=True)
class DispatchResult:
    """Outcome of one dispatcher tick across all tenants."""

    started_at: datetime
    runs: tuple[AutomationRunResult, ...] = ()

    @property
    def due(self) -> int:
        return len(self.runs)

    @property
    def processed(self) -> int:
        return sum(1 for run in self.runs if run.succeeded and run.was_due)

    @property
    def failed(self) -> int:
        return sum(1 for run in self.runs if not run.succeeded)

    @property
    def sent(self) -> int:
        return sum(run.sent for run in self.runs)

    @property
    def skipped(self) -> int:
        return sum(run.skipped for run in self.runs)

    @property
    def errors(self) -> int:
        return sum(run.errors for run in self.runs)


@dataclass(frozen=True)
class AutomationSummary:
    """Admin-facing view of one automation definition."""

    automation_id: UUID
    name: str
    automation_type: AutomationType
    enabled: bool
    config: Mapping[str, Any]
    next_run_at: datetime | None
    last_run_at: datetime | None
