"""Atomic calls and reentrancy guard.

Implements:
- Transactional participants that can snapshot and restore their state
- StateCoordinator savepoints: a failing call leaves no partial effects
- nonreentrant: a guarded entry point rejects re-entry before touching state

Every mutating entry point of the auction, ledger and facility runs inside a
savepoint, so a solvency failure detected at the end of a call unwinds the
receipt burns, vault transfers and counter updates made earlier in it.
"""

from __future__ import annotations

import copy
import functools
import logging
from contextlib import contextmanager
from typing import Any, Callable, Dict, Iterator, List, Optional, Tuple

from cdauction.errors import ReentrancyError

logger = logging.getLogger(__name__)


class Transactional:
    """Mixin for components whose state joins atomic calls.

    Subclasses list the attributes holding mutable state in _state_attrs.
    Components whose state only grows override the three hooks with a cheaper
    marker; commit_state runs when the savepoint closes without error.
    """

    _state_attrs = ()  # type: Tuple[str, ...]

    def snapshot_state(self) -> Dict[str, Any]:
        return copy.deepcopy({name: getattr(self, name) for name in self._state_attrs})

    def restore_state(self, snapshot: Dict[str, Any]) -> None:
        for name, value in snapshot.items():
            setattr(self, name, value)

    def commit_state(self, snapshot: Dict[str, Any]) -> None:
        pass


class StateCoordinator:
    """Registry of participants sharing one atomicity domain."""

    def __init__(self) -> None:
        self._participants = []  # type: List[Transactional]
        self._depth = 0

    def register(self, participant: Transactional) -> None:
        if any(p is participant for p in self._participants):
            return
        self._participants.append(participant)

    @property
    def depth(self) -> int:
        return self._depth

    @contextmanager
    def atomic(self) -> Iterator[None]:
        """Savepoint: restore every participant if the body raises."""
        saved = [(p, p.snapshot_state()) for p in self._participants]
        self._depth += 1
        try:
            yield
        except BaseException:
            for participant, snapshot in reversed(saved):
                participant.restore_state(snapshot)
            logger.debug("Rolled back %d participant(s) at depth %d", len(saved), self._depth)
            raise
        else:
            for participant, snapshot in reversed(saved):
                participant.commit_state(snapshot)
        finally:
            self._depth -= 1


def nonreentrant(method: Callable[..., Any]) -> Callable[..., Any]:
    """Guard a mutating entry point.

    The owning object must expose `coordinator` (a StateCoordinator) and keep
    its `_entered` flag out of _state_attrs.
    """

    @functools.wraps(method)
    def wrapper(self: Any, *args: Any, **kwargs: Any) -> Any:
        if getattr(self, "_entered", False):
            raise ReentrancyError(
                "{}.{} re-entered".format(type(self).__name__, method.__name__)
            )
        self._entered = True
        try:
            with self.coordinator.atomic():
                return method(self, *args, **kwargs)
        finally:
            self._entered = False

    return wrapper


def ensure_coordinator(coordinator: Optional[StateCoordinator]) -> StateCoordinator:
    return coordinator if coordinator is not None else StateCoordinator()
