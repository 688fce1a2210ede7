"""
Cadence evaluation: which notification thresholds have been crossed.

Contract:
    ``crossed_steps`` is PURE. Both automation types use it:

    * invoice follow-ups look back -- ``reference`` is now, ``start`` is the
      due date, a step is crossed once ``now - due >= step days``;
    * visit reminders look ahead -- ``reference`` is the visit start,
      ``start`` is now, a step is crossed while ``0 < start_of_visit - now <=
      step hours``.
"""

from __future__ import annotations

from collections.abc import Iterable
from datetime import datetime, timedelta
from enum import Enum

DAY = timedelta(days=1)
HOUR = timedelta(hours=1)


class CadenceDirection(str, Enum):
    ELAPSED = "elapsed"
    LEAD = "lead"


def crossed_steps(
    reference: datetime,
    start: datetime,
    thresholds: Iterable[int],
    unit: timedelta = DAY,
    direction: CadenceDirection = CadenceDirection.ELAPSED,
) -> list[int]:
    """
    Return the thresholds whose condition holds, sorted ascending, unique.

    ELAPSED: ``reference - start >= threshold * unit``.
    LEAD: ``0 < reference - start <= threshold * unit``.
    """
    delta = reference - start
    crossed: set[int] = set()
    for threshold in thresholds:
        window = threshold * unit
        if direction is CadenceDirection.ELAPSED:
            if delta >= window:
                crossed.add(threshold)
        elif timedelta(0) < delta <= window:
            crossed.add(threshold)
    return sorted(crossed)
