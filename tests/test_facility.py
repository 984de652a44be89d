"""Tests for the deposit facility: convert, reclaim, operator hooks, yield task."""

import pytest

from cdauction.clock import ManualClock
from cdauction.constants import SECONDS_PER_MONTH
from cdauction.deployment import Deployment
from cdauction.errors import (
    InsolventError,
    InsufficientFundsError,
    InvalidParamsError,
    InvalidStateError,
    UnauthorizedError,
)
from cdauction.heart import TaskFailure

S = 10 ** 9


@pytest.fixture
def funded(deployment: Deployment) -> Deployment:
    """Alice holds position 0: 550 deposited for 458 at the auction price."""
    deployment.tokens.mint("USDS", "alice", 1000)
    deployment.auctions["USDS"].bid("alice", 3, 550)
    return deployment


def _receipt(dep: Deployment, period: int = 3) -> int:
    return dep.ledger.get_receipt_token_id("USDS", period, dep.facility.address)


# ── Positions ─────────────────────────────────────────────────────────────────

def test_create_position_requires_auctioneer(deployment: Deployment) -> None:
    """Only authorized auctioneers open positions."""
    deployment.tokens.mint("USDS", "mallory", 100)
    with pytest.raises(UnauthorizedError, match="auctioneer"):
        deployment.facility.create_position("mallory", "mallory", "USDS", 3, 100, S)


def test_disabled_facility_rejects_bids(deployment: Deployment) -> None:
    """A disabled facility refuses positions, so bids fail atomically."""
    deployment.tokens.mint("USDS", "alice", 100)
    deployment.facility.disable()
    with pytest.raises(InvalidStateError, match="disabled"):
        deployment.auctions["USDS"].bid("alice", 3, 100)
    assert deployment.auctions["USDS"].get_day_state().converted == 0


# ── Convert ───────────────────────────────────────────────────────────────────

def test_convert_full_position(funded: Deployment) -> None:
    """Converting sends the deposit to the treasury and mints output."""
    deposit, output = funded.facility.convert("alice", [0], [550])

    assert (deposit, output) == (550, 457)
    assert funded.tokens.balance_of("OHM", "alice") == 457
    assert funded.tokens.balance_of("USDS", "treasury") == 550
    assert funded.positions.get_position(0).remaining_deposit == 0
    assert funded.receipts.balance_of(_receipt(funded), "alice") == 0
    assert funded.ledger.get_operator_liabilities("USDS", funded.facility.address) == 0


def test_preview_convert(funded: Deployment) -> None:
    """Preview does not write."""
    assert funded.facility.preview_convert("alice", [0], [400]) == (400, 333)
    assert funded.positions.get_position(0).remaining_deposit == 550


def test_convert_not_owner(funded: Deployment) -> None:
    """Only the position owner converts."""
    with pytest.raises(UnauthorizedError, match="does not own"):
        funded.facility.convert("bob", [0], [100])


def test_convert_more_than_remaining(funded: Deployment) -> None:
    """Conversion is bounded by the remaining deposit."""
    with pytest.raises(InsufficientFundsError, match="remaining deposit"):
        funded.facility.convert("alice", [0], [551])


def test_convert_length_mismatch(funded: Deployment) -> None:
    """Ids and amounts must pair up."""
    with pytest.raises(InvalidParamsError, match="differ in length"):
        funded.facility.convert("alice", [0], [100, 100])


def test_convert_expired(funded: Deployment, clock: ManualClock) -> None:
    """Expired positions cannot convert."""
    clock.advance(3 * SECONDS_PER_MONTH)
    with pytest.raises(InvalidStateError, match="expired"):
        funded.facility.convert("alice", [0], [100])


def test_split_then_convert(funded: Deployment) -> None:
    """A split conserves the deposit; the new owner converts with its own receipts."""
    new_id = funded.positions.split("alice", 0, 200, "bob")
    assert funded.positions.get_position(0).remaining_deposit + funded.positions.get_position(new_id).remaining_deposit == 550
    funded.receipts.transfer(_receipt(funded), "alice", "bob", 200)

    _deposit, output = funded.facility.convert("bob", [new_id], [200])
    assert output == 166
    assert funded.tokens.balance_of("OHM", "bob") == 166


# ── Reclaim ───────────────────────────────────────────────────────────────────

def test_reclaim_applies_rate(funded: Deployment) -> None:
    """Reclaim returns 90%; the haircut goes to the treasury."""
    assert funded.facility.preview_reclaim("USDS", 3, 100) == 90

    reclaimed = funded.facility.reclaim("alice", "USDS", 3, 100)

    assert reclaimed == 90
    assert funded.tokens.balance_of("USDS", "alice") == 540
    assert funded.tokens.balance_of("USDS", "treasury") == 10
    assert funded.receipts.balance_of(_receipt(funded), "alice") == 450


def test_reclaim_without_receipts(funded: Deployment) -> None:
    """Reclaiming claims one does not hold fails with no effects."""
    with pytest.raises(InsufficientFundsError):
        funded.facility.reclaim("bob", "USDS", 3, 100)
    assert funded.ledger.get_operator_liabilities("USDS", funded.facility.address) == 550


# ── Operator hooks ────────────────────────────────────────────────────────────

def test_commit_bounded_by_available(funded: Deployment) -> None:
    """Commitments cannot exceed uncommitted deposits."""
    facility = funded.facility
    facility.handle_commit("lender", "USDS", 500)
    assert facility.get_committed_deposits("USDS") == 500
    assert facility.get_available_deposits("USDS") == 50

    with pytest.raises(InsufficientFundsError, match="available"):
        facility.handle_commit("lender", "USDS", 100)

    facility.handle_commit_cancel("lender", "USDS", 200)
    assert facility.get_committed_deposits("USDS", "lender") == 300


def test_commit_unauthorized_operator(funded: Deployment) -> None:
    """Operator hooks are restricted to authorized operators."""
    with pytest.raises(UnauthorizedError, match="authorized operator"):
        funded.facility.handle_commit("mallory", "USDS", 10)


def test_borrow_and_repay(funded: Deployment) -> None:
    """Borrowing draws down the commitment; repay restores it."""
    facility = funded.facility
    facility.handle_commit("lender", "USDS", 500)
    facility.handle_borrow("lender", "USDS", 400, "lender")
    assert funded.tokens.balance_of("USDS", "lender") == 400
    assert facility.get_committed_deposits("USDS", "lender") == 100

    with pytest.raises(InsufficientFundsError):
        facility.handle_borrow("lender", "USDS", 200, "lender")

    facility.handle_loan_repay("lender", "USDS", 400, "lender")
    assert facility.get_committed_deposits("USDS", "lender") == 500
    assert funded.ledger.get_borrowed_amount("USDS", facility.address) == 0


def test_loan_default(funded: Deployment) -> None:
    """Default burns receipts held by the operator."""
    facility = funded.facility
    facility.handle_commit("lender", "USDS", 300)
    facility.handle_borrow("lender", "USDS", 300, "borrower")
    funded.receipts.transfer(_receipt(funded), "alice", "lender", 300)

    facility.handle_loan_default("lender", "USDS", 3, 300, "lender")

    assert funded.ledger.get_borrowed_amount("USDS", facility.address) == 0
    assert funded.ledger.get_operator_liabilities("USDS", facility.address) == 250


def test_commit_withdraw(funded: Deployment) -> None:
    """Committed deposit is released against the operator's receipts."""
    facility = funded.facility
    funded.receipts.transfer(_receipt(funded), "alice", "lender", 100)
    facility.handle_commit("lender", "USDS", 100)

    facility.handle_commit_withdraw("lender", "USDS", 3, 100, "lender")

    assert funded.tokens.balance_of("USDS", "lender") == 100
    assert facility.get_committed_deposits("USDS", "lender") == 0


# ── Yield task ────────────────────────────────────────────────────────────────

def test_execute_sweeps_yield(funded: Deployment) -> None:
    """The periodic task sweeps yield to the treasury."""
    vault = funded.vaults.get_vault("USDS")
    funded.tokens.mint("USDS", vault.address, 100)

    assert funded.facility.execute() is None
    assert funded.tokens.balance_of("USDS", "treasury") == 98


def test_execute_disabled_is_noop(funded: Deployment) -> None:
    """A disabled facility does nothing on the heartbeat."""
    vault = funded.vaults.get_vault("USDS")
    funded.tokens.mint("USDS", vault.address, 100)
    funded.facility.disable()

    assert funded.facility.execute() is None
    assert funded.tokens.balance_of("USDS", "treasury") == 0


def test_execute_failure_is_contained(funded: Deployment, monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing sweep rolls back, is recorded, and does not raise."""
    vault = funded.vaults.get_vault("USDS")
    funded.tokens.mint("USDS", vault.address, 100)

    def failing_claim(operator: str, asset: str, recipient: str, amount: int) -> int:
        funded.tokens.mint("USDS", recipient, amount)
        raise InsolventError("vault impaired")

    monkeypatch.setattr(funded.ledger, "claim_yield", failing_claim)

    failure = funded.facility.execute()

    assert isinstance(failure, TaskFailure)
    assert "vault impaired" in failure.message
    assert funded.tokens.balance_of("USDS", "treasury") == 0
    assert len(funded.events.events_of("CLAIM_YIELD_FAILED")) == 1


def test_execute_sweeps_large_yield(funded: Deployment) -> None:
    """Yield worth hundreds of units per share is swept without a failure."""
    facility = funded.facility
    vault = funded.vaults.get_vault("USDS")
    funded.tokens.mint("USDS", vault.address, 550 * 300)
    expected = funded.ledger.max_claim_yield("USDS", facility.address)

    assert expected > 0
    assert facility.execute() is None
    assert funded.tokens.balance_of("USDS", "treasury") == expected
    assert funded.events.events_of("CLAIM_YIELD_FAILED") == []
    funded.ledger.validate_operator_solvency("USDS", facility.address)


# ── Disabled facility ─────────────────────────────────────────────────────────

def test_disabled_facility_rejects_operator_hooks(funded: Deployment) -> None:
    """Commits, loans, withdrawals and yield claims all need an enabled facility."""
    facility = funded.facility
    facility.handle_commit("lender", "USDS", 300)
    facility.handle_borrow("lender", "USDS", 100, "lender")
    funded.tokens.mint("USDS", funded.vaults.get_vault("USDS").address, 100)
    facility.disable()

    calls = [
        lambda: facility.handle_commit("lender", "USDS", 10),
        lambda: facility.handle_commit_cancel("lender", "USDS", 10),
        lambda: facility.handle_commit_withdraw("lender", "USDS", 3, 10, "lender"),
        lambda: facility.handle_borrow("lender", "USDS", 10, "lender"),
        lambda: facility.handle_loan_repay("lender", "USDS", 10, "lender"),
        lambda: facility.handle_loan_default("lender", "USDS", 3, 10, "lender"),
        lambda: facility.claim_yield("USDS"),
        lambda: facility.claim_all_yield(),
    ]
    for call in calls:
        with pytest.raises(InvalidStateError, match="disabled"):
            call()

    assert facility.get_committed_deposits("USDS", "lender") == 200
    assert funded.ledger.get_borrowed_amount("USDS", facility.address) == 100
    assert funded.tokens.balance_of("USDS", "treasury") == 0


# ── Repay credit ──────────────────────────────────────────────────────────────

def test_repay_commits_credited_value(funded: Deployment) -> None:
    """Only the vault value credited for a repayment is committed again."""
    facility = funded.facility
    facility.handle_commit("lender", "USDS", 500)
    facility.handle_borrow("lender", "USDS", 400, "lender")
    funded.tokens.mint("USDS", funded.vaults.get_vault("USDS").address, 100)

    credited = facility.handle_loan_repay("lender", "USDS", 400, "lender")

    assert credited == 398
    assert facility.get_committed_deposits("USDS", "lender") == 100 + 398
    assert funded.ledger.get_borrowed_amount("USDS", facility.address) == 2
    assert facility.get_committed_deposits("USDS") <= funded.ledger.get_operator_assets("USDS", facility.address)
