"""
Pure schedule evaluation for automation definitions.

Contract:
    ``evaluate_phase``, ``is_due`` and ``compute_next_run`` are PURE. The
    dispatcher passes the clock's ``now``; nothing here reads the time.

Each definition cycles ``idle -> due -> processing -> idle``. It becomes due
once enabled and ``next_run_at <= now``; a definition that has never been
scheduled (``next_run_at`` is None) is due immediately. After processing,
``next_run_at`` moves forward by a constant backoff: this is a steady-state
poll, not a failure-retry loop.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from enum import Enum


class AutomationPhase(str, Enum):
    IDLE = "idle"
    DUE = "due"
    PROCESSING = "processing"


def is_due(enabled: bool, next_run_at: datetime | None, now: datetime) -> bool:
    if not enabled:
        return False
    return next_run_at is None or next_run_at <= now


def evaluate_phase(
    enabled: bool,
    next_run_at: datetime | None,
    now: datetime,
    processing: bool = False,
) -> AutomationPhase:
    if processing:
        return AutomationPhase.PROCESSING
    if is_due(enabled, next_run_at, now):
        return AutomationPhase.DUE
    return AutomationPhase.IDLE


def compute_next_run(now: datetime, backoff: timedelta) -> datetime:
    """Next poll time after a completed cycle."""
    if backoff <= timedelta(0):
        raise ValueError(f"Backoff must be positive, got {backoff}")
    return now + backoff
