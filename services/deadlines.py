"""Soft deadlines for time-budgeted backfill ticks."""

from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass
class Deadline:
    """Monotonic budget for one scheduled invocation.

    ``Deadline(seconds=100)`` bounds a backfill tick; check ``expired``
    between batches and stop before the request or cron timeout fires.
    A batch already running is never interrupted, so keep batches small
    relative to the budget.
    """

    seconds: float
    started: float = field(init=False)

    def __post_init__(self) -> None:
        self.started = time.monotonic()
        self._deadline = self.started + max(0.0, float(self.seconds))

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self._deadline

    def remaining(self) -> float:
        return max(0.0, self._deadline - time.monotonic())

    def elapsed(self) -> float:
        return time.monotonic() - self.started
