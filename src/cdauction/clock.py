"""Clocks — integer unix seconds, injectable for tests and scenarios."""

from __future__ import annotations

import time


class SystemClock:
    """Wall-clock time in whole seconds."""

    def now(self) -> int:
        return int(time.time())


class ManualClock:
    """Clock advanced explicitly by the caller."""

    def __init__(self, start: int = 1_700_000_000) -> None:
        self._now = start

    def now(self) -> int:
        return self._now

    def advance(self, seconds: int) -> int:
        if seconds < 0:
            raise ValueError("Cannot move clock backwards: {}".format(seconds))
        self._now += seconds
        return self._now

    def set(self, ts: int) -> None:
        if ts < self._now:
            raise ValueError("Cannot move clock backwards: {} < {}".format(ts, self._now))
        self._now = ts
