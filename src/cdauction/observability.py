"""Observability — canonical protocol event log.

Implements:
- The canonical event types emitted by the auction, ledger and facility
- A transactional event log: events of a reverted call are discarded with it
- Event counting + statistics
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator

logger = logging.getLogger(__name__)

# ── Canonical event types ─────────────────────────────────────────────────────

EVENT_TYPES = frozenset({
    # Auction
    "BID",
    "AUCTION_ENABLED",
    "AUCTION_DISABLED",
    "AUCTION_PARAMETERS_UPDATED",
    "AUCTION_RESULT_RECORDED",
    "AUCTION_TRACKING_PERIOD_UPDATED",
    "TICK_STEP_UPDATED",
    "PERIOD_ENABLED",
    "PERIOD_DISABLED",
    # Ledger
    "ASSET_ADDED",
    "ASSET_PERIOD_ADDED",
    "ASSET_PERIOD_ENABLED",
    "ASSET_PERIOD_DISABLED",
    "RECLAIM_RATE_UPDATED",
    "OPERATOR_NAME_SET",
    "DEPOSIT",
    "WITHDRAW",
    "BORROW",
    "REPAY",
    "DEFAULT",
    "CLAIM_YIELD",
    # Facility
    "FACILITY_ENABLED",
    "FACILITY_DISABLED",
    "POSITION_CREATED",
    "CONVERT",
    "RECLAIM",
    "COMMIT",
    "COMMIT_CANCEL",
    "COMMIT_WITHDRAW",
    "CLAIM_YIELD_FAILED",
})

# Events that signal a recovered failure rather than a state change
FAILURE_EVENTS = frozenset({
    "CLAIM_YIELD_FAILED",
})


class EventLog(Transactional):
    """Canonical in-protocol event log."""

    def __init__(self, coordinator: Optional[StateCoordinator] = None) -> None:
        self.coordinator = ensure_coordinator(coordinator)
        self.coordinator.register(self)
        self._events = []  # type: List[Dict[str, Any]]
        self._counts = {}  # type: Dict[str, int]

    # The log only grows inside a call, so a savepoint is its length.
    def snapshot_state(self) -> Dict[str, Any]:
        return {"length": len(self._events), "counts": dict(self._counts)}

    def restore_state(self, snapshot: Dict[str, Any]) -> None:
        del self._events[snapshot["length"]:]
        self._counts = snapshot["counts"]

    def log_event(
        self,
        event_type: str,
        ts: int,
        asset: Optional[str] = None,
        operator: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        """Record a canonical event."""
        if event_type not in EVENT_TYPES:
            raise ValueError("Unknown event type: {}".format(event_type))
        event = {
            "ts": ts,
            "event_type": event_type,
            "asset": asset,
            "operator": operator,
            "details": details or {},
        }
        self._events.append(event)
        self._counts[event_type] = self._counts.get(event_type, 0) + 1

        log = logger.warning if event_type in FAILURE_EVENTS else logger.debug
        log("Event: type=%s asset=%s operator=%s", event_type, asset or "-", operator or "-")

    def events_of(self, event_type: str) -> List[Dict[str, Any]]:
        return [e for e in self._events if e["event_type"] == event_type]

    @property
    def recent_events(self) -> List[Dict[str, Any]]:
        """Last 100 events."""
        return self._events[-100:]

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "total_events": len(self._events),
            "by_type": dict(self._counts),
            "failures": sum(self._counts.get(t, 0) for t in FAILURE_EVENTS),
        }
