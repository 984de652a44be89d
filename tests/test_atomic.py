"""Tests for atomic savepoints and the reentrancy guard."""

from typing import Any, Callable, List, Optional

import pytest

from cdauction.atomic import StateCoordinator, Transactional, nonreentrant
from cdauction.auction import AuctionEngine
from cdauction.clock import ManualClock
from cdauction.errors import InvalidStateError, ReentrancyError
from cdauction.facility import DepositFacility
from cdauction.ledger import DepositLedger
from cdauction.observability import EventLog
from cdauction.positions import PositionManager
from cdauction.receipts import ReceiptTokenRegistry
from cdauction.tokens import TokenLedger
from cdauction.vault import AssetVaultAdapter, ShareVault

S = 10 ** 9


class Counter(Transactional):
    _state_attrs = ("values",)

    def __init__(self, coordinator: StateCoordinator) -> None:
        self.coordinator = coordinator
        self.coordinator.register(self)
        self._entered = False
        self.values = []  # type: List[int]

    @nonreentrant
    def append(self, value: int, callback: Optional[Callable[[], Any]] = None) -> None:
        self.values.append(value)
        if callback is not None:
            callback()


def test_atomic_restores_on_error() -> None:
    """A raising body leaves no partial effects."""
    coordinator = StateCoordinator()
    counter = Counter(coordinator)
    counter.values.append(1)

    with pytest.raises(RuntimeError):
        with coordinator.atomic():
            counter.values.append(2)
            raise RuntimeError("boom")

    assert counter.values == [1]
    assert coordinator.depth == 0


def test_nested_savepoint() -> None:
    """An inner failure caught by the caller rolls back only the inner scope."""
    coordinator = StateCoordinator()
    counter = Counter(coordinator)

    with coordinator.atomic():
        counter.values.append(1)
        try:
            with coordinator.atomic():
                counter.values.append(2)
                raise ValueError("inner")
        except ValueError:
            pass
        counter.values.append(3)

    assert counter.values == [1, 3]


def test_nonreentrant_rejects_reentry() -> None:
    """Re-entering a guarded method raises before touching state."""
    coordinator = StateCoordinator()
    counter = Counter(coordinator)

    with pytest.raises(ReentrancyError, match="re-entered"):
        counter.append(1, callback=lambda: counter.append(2))

    assert counter.values == []
    counter.append(3)
    assert counter.values == [3]


def test_reentrancy_error_is_invalid_state() -> None:
    """Reentrancy is reported as an invalid state."""
    assert issubclass(ReentrancyError, InvalidStateError)


class CallbackVault(ShareVault):
    """Vault that invokes a hook while custody is in flight."""

    hook = None  # type: Optional[Callable[[], Any]]

    def deposit(self, assets: int, payer: str, receiver: str) -> int:
        if self.hook is not None:
            self.hook()
        return super().deposit(assets, payer, receiver)


def test_reentrant_bid_through_vault_rejected() -> None:
    """A vault calling back into bid is rejected and the outer bid unwinds."""
    clock = ManualClock()
    coordinator = StateCoordinator()
    events = EventLog(coordinator)
    tokens = TokenLedger(coordinator)
    vault = CallbackVault("USDS", tokens, coordinator=coordinator)
    vaults = AssetVaultAdapter(tokens)
    vaults.add_vault(vault)
    receipts = ReceiptTokenRegistry(coordinator)
    positions = PositionManager(coordinator=coordinator)
    ledger = DepositLedger(vaults, receipts, clock, events, coordinator)
    ledger.add_asset("USDS", deposit_cap=10 ** 12)
    facility = DepositFacility(
        ledger, positions, tokens, "OHM", "cdf", clock=clock, events=events, coordinator=coordinator,
    )
    ledger.add_asset_period("USDS", 3, facility.address, 9000)
    facility.enable()
    engine = AuctionEngine("USDS", facility, clock, events=events, coordinator=coordinator)
    facility.authorize_auctioneer(engine.address)
    engine.enable(1000, 100, S)
    engine.enable_deposit_period(3)
    tokens.mint("USDS", "alice", 1000)

    vault.hook = lambda: engine.bid("alice", 3, 100)

    with pytest.raises(ReentrancyError):
        engine.bid("alice", 3, 550)

    assert tokens.balance_of("USDS", "alice") == 1000
    assert engine.get_stored_tick(3).capacity == 100
    assert engine.get_day_state().converted == 0
    assert positions.get_user_positions("alice") == []
    assert events.events_of("BID") == []

    vault.hook = None
    assert engine.bid("alice", 3, 550).output == 458


def test_event_log_rolls_back_to_length() -> None:
    """Events appended inside a failed savepoint are truncated; earlier ones stay."""
    coordinator = StateCoordinator()
    events = EventLog(coordinator)
    events.log_event("DEPOSIT", 1, asset="USDS")
    before = events.recent_events[0]

    with coordinator.atomic():
        events.log_event("WITHDRAW", 2, asset="USDS")
        with pytest.raises(RuntimeError):
            with coordinator.atomic():
                events.log_event("BORROW", 3, asset="USDS")
                events.log_event("DEPOSIT", 4, asset="USDS")
                raise RuntimeError("boom")

    assert [e["event_type"] for e in events.recent_events] == ["DEPOSIT", "WITHDRAW"]
    assert events.recent_events[0] is before
    assert events.stats["by_type"] == {"DEPOSIT": 1, "WITHDRAW": 1}


def test_position_manager_rolls_back_changes_only() -> None:
    """A failed savepoint drops new positions and restores changed deposits."""
    coordinator = StateCoordinator()
    pm = PositionManager(coordinator=coordinator)
    first = pm.mint("cdf", "alice", "USDS", 3, 1000, 2 * S, 100)
    untouched = pm.get_position(first)

    with pytest.raises(RuntimeError):
        with coordinator.atomic():
            pm.split("alice", first, 400, "bob")
            with coordinator.atomic():
                pm.set_remaining_deposit("cdf", first, 100)
            pm.mint("cdf", "carol", "USDS", 3, 50, 2 * S, 100)
            raise RuntimeError("boom")

    assert pm.get_position(first) is untouched
    assert untouched.remaining_deposit == 1000
    assert pm.get_user_positions("bob") == []
    assert pm.get_user_positions("carol") == []
    assert pm.mint("cdf", "dave", "USDS", 3, 10, 2 * S, 100) == 1

    with coordinator.atomic():
        pm.set_remaining_deposit("cdf", first, 900)
    assert pm.get_position(first).remaining_deposit == 900
