"""
HealthBridge Core - Clock
Injectable time source; every timestamp the core writes is naive UTC
"""

from datetime import datetime, timedelta, timezone
from typing import Optional


def utcnow() -> datetime:
    """Current time as naive UTC"""
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SystemClock:
    """Wall clock"""

    def now(self) -> datetime:
        return utcnow()


class FixedClock:
    """
    Deterministic clock for tests and replays

    Returns the configured instant; with a step, every read advances the
    clock so successive writes get strictly increasing timestamps.
    """

    def __init__(self, start: Optional[datetime] = None, step: Optional[timedelta] = None):
        self._current = start or datetime(2024, 1, 1, 8, 0, 0)
        self._step = step

    def now(self) -> datetime:
        current = self._current
        if self._step:
            self._current = self._current + self._step
        return current
