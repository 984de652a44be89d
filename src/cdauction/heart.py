"""Heartbeat — periodic task runner.

Implements:
- Registration of named periodic tasks (e.g. the facility yield sweep)
- beat(): run every task once; a failing task never aborts the batch
- run(): async loop that forwards failures to the alert notifier
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Callable, Dict, List, Optional

from cdauction.constants import HEARTBEAT_INTERVAL_SEC

logger = logging.getLogger(__name__)


class TaskFailure:
    """A periodic task that failed and recovered locally."""

    def __init__(self, task: str, error: BaseException) -> None:
        self.task = task
        self.error = error

    @property
    def message(self) -> str:
        return "{} failed: {}: {}".format(self.task, type(self.error).__name__, self.error)

    def __repr__(self) -> str:
        return "TaskFailure({!r}, {!r})".format(self.task, self.error)

    def to_dict(self) -> Dict[str, str]:
        return {"task": self.task, "error_type": type(self.error).__name__, "error": str(self.error)}


PeriodicTask = Callable[[], Optional[TaskFailure]]


class Heartbeat:
    """Runs registered periodic tasks in registration order."""

    def __init__(self, notifier: Any = None) -> None:
        self.notifier = notifier
        self._tasks = {}  # type: Dict[str, PeriodicTask]
        self._beats = 0
        self._failures = 0

    def add_task(self, name: str, task: PeriodicTask) -> None:
        if name in self._tasks:
            raise ValueError("Periodic task already registered: {}".format(name))
        self._tasks[name] = task
        logger.info("Periodic task registered: %s", name)

    def remove_task(self, name: str) -> None:
        if self._tasks.pop(name, None) is None:
            raise KeyError(name)
        logger.info("Periodic task removed: %s", name)

    @property
    def tasks(self) -> List[str]:
        return list(self._tasks)

    def beat(self) -> List[TaskFailure]:
        """Run every task once; returns the failures collected."""
        failures = []  # type: List[TaskFailure]
        for name, task in self._tasks.items():
            try:
                result = task()
            except Exception as e:
                logger.error("Periodic task %s raised: %s", name, e)
                result = TaskFailure(name, e)
            if result is not None:
                failures.append(result)

        self._beats += 1
        self._failures += len(failures)
        logger.info("Heartbeat %d: tasks=%d failures=%d", self._beats, len(self._tasks), len(failures))
        return failures

    async def run(
        self,
        beats: Optional[int] = None,
        interval: float = HEARTBEAT_INTERVAL_SEC,
    ) -> int:
        """Beat `beats` times (forever when None); returns the failure count."""
        failures_seen = 0
        count = 0
        while beats is None or count < beats:
            failures = self.beat()
            failures_seen += len(failures)
            for failure in failures:
                if self.notifier is not None:
                    await self.notifier.send_alert(failure.message, dedup_key=failure.task)
            count += 1
            if beats is None or count < beats:
                await asyncio.sleep(interval)
        return failures_seen

    @property
    def stats(self) -> Dict[str, int]:
        return {"tasks": len(self._tasks), "beats": self._beats, "failures": self._failures}
