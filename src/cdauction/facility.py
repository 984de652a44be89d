"""Deposit Facility — positions, conversion, reclaim and operator hooks.

Implements:
- Position creation on behalf of authorized auctioneers
- Convert: deposit released to the treasury, output minted to the owner
- Reclaim: receipt claims burned, reclaim-rate share returned, rest to treasury
- Operator hooks: commit / cancel / commit-withdraw, borrow / repay / default
- Yield sweep + periodic task that never raises

The facility is itself an operator of the deposit ledger: every ledger call
it makes carries its own address, and its 3-character name prefixes the
receipt tokens of the asset periods it runs.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional, Sequence, Set, Tuple

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator, nonreentrant
from cdauction.clock import SystemClock
from cdauction.constants import ONE_HUNDRED_PERCENT, SECONDS_PER_MONTH, TREASURY
from cdauction.errors import (
    ConvertedAmountZeroError,
    InsufficientFundsError,
    InvalidParamsError,
    InvalidStateError,
    UnauthorizedError,
)
from cdauction.fixedpoint import mul_div
from cdauction.heart import TaskFailure
from cdauction.ledger import DepositLedger
from cdauction.observability import EventLog
from cdauction.positions import PositionManager
from cdauction.tokens import TokenLedger

logger = logging.getLogger(__name__)


class DepositFacility(Transactional):
    """Convertible deposit facility, one operator of the ledger."""

    _state_attrs = ("_enabled", "_operators", "_auctioneers", "_committed")

    def __init__(
        self,
        ledger: DepositLedger,
        positions: PositionManager,
        tokens: TokenLedger,
        output_token: str,
        name: str,
        address: Optional[str] = None,
        treasury: str = TREASURY,
        clock: Any = None,
        events: Optional[EventLog] = None,
        coordinator: Optional[StateCoordinator] = None,
    ) -> None:
        self.ledger = ledger
        self.positions = positions
        self.tokens = tokens
        self.output_token = output_token
        self.name = name
        self.address = address or "facility:{}".format(name)
        self.treasury = treasury
        self.clock = clock or SystemClock()
        self.coordinator = ensure_coordinator(coordinator)
        self.events = events or EventLog(self.coordinator)
        self.coordinator.register(self)
        self._entered = False

        self._enabled = False
        self._operators = set()  # type: Set[str]
        self._auctioneers = set()  # type: Set[str]
        self._committed = {}  # type: Dict[Tuple[str, str], int]

        if self.ledger.get_operator_name(self.address) is None:
            self.ledger.set_operator_name(self.address, name)

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _emit(self, event_type: str, asset: Optional[str] = None, **details: Any) -> None:
        self.events.log_event(event_type, self.clock.now(), asset=asset, operator=self.address, details=details)

    def _require_enabled(self) -> None:
        if not self._enabled:
            raise InvalidStateError("Facility {} disabled".format(self.name))

    def _require_operator(self, operator: str) -> None:
        if operator not in self._operators:
            raise UnauthorizedError("{} is not an authorized operator of {}".format(operator, self.name))

    @staticmethod
    def _check_positive(amount: int, what: str) -> None:
        if amount <= 0:
            raise InvalidParamsError("{} must be positive: {}".format(what, amount))

    # ── Lifecycle / authorization ─────────────────────────────────────────────

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    @nonreentrant
    def enable(self) -> None:
        if self._enabled:
            raise InvalidStateError("Facility {} already enabled".format(self.name))
        self._enabled = True
        self._emit("FACILITY_ENABLED")
        logger.info("Facility enabled: %s", self.address)

    @nonreentrant
    def disable(self) -> None:
        self._require_enabled()
        self._enabled = False
        self._emit("FACILITY_DISABLED")
        logger.info("Facility disabled: %s", self.address)

    @nonreentrant
    def authorize_operator(self, operator: str) -> None:
        if operator in self._operators:
            raise InvalidStateError("Operator already authorized: {}".format(operator))
        self._operators.add(operator)
        logger.info("Operator authorized: facility=%s operator=%s", self.name, operator)

    @nonreentrant
    def deauthorize_operator(self, operator: str) -> None:
        self._require_operator(operator)
        self._operators.discard(operator)
        logger.info("Operator deauthorized: facility=%s operator=%s", self.name, operator)

    def is_authorized_operator(self, operator: str) -> bool:
        return operator in self._operators

    @nonreentrant
    def authorize_auctioneer(self, auctioneer: str) -> None:
        if auctioneer in self._auctioneers:
            raise InvalidStateError("Auctioneer already authorized: {}".format(auctioneer))
        self._auctioneers.add(auctioneer)
        logger.info("Auctioneer authorized: facility=%s auctioneer=%s", self.name, auctioneer)

    @nonreentrant
    def deauthorize_auctioneer(self, auctioneer: str) -> None:
        if auctioneer not in self._auctioneers:
            raise UnauthorizedError("{} is not an authorized auctioneer".format(auctioneer))
        self._auctioneers.discard(auctioneer)
        logger.info("Auctioneer deauthorized: facility=%s auctioneer=%s", self.name, auctioneer)

    # ── Position creation ─────────────────────────────────────────────────────

    @nonreentrant
    def create_position(
        self,
        caller: str,
        owner: str,
        asset: str,
        period_months: int,
        amount: int,
        conversion_price: int,
        wrap_position: bool = False,
    ) -> Tuple[int, int, int]:
        """Custody `amount` from owner and open a position.

        Returns (position_id, receipt_token_id, actual_amount).
        """
        self._require_enabled()
        if caller not in self._auctioneers:
            raise UnauthorizedError("{} is not an authorized auctioneer".format(caller))

        receipt_id, actual = self.ledger.deposit(self.address, asset, period_months, owner, amount)
        expiry = self.clock.now() + period_months * SECONDS_PER_MONTH
        position_id = self.positions.mint(
            self.address, owner, asset, period_months, actual, conversion_price, expiry, wrap_position,
        )
        self._emit(
            "POSITION_CREATED",
            asset,
            position_id=position_id,
            owner=owner,
            period_months=period_months,
            amount=actual,
            conversion_price=conversion_price,
        )
        return position_id, receipt_id, actual

    # ── Convert ───────────────────────────────────────────────────────────────

    def _check_conversion(
        self,
        caller: str,
        position_ids: Sequence[int],
        amounts: Sequence[int],
    ) -> Tuple[str, int, int]:
        if len(position_ids) != len(amounts):
            raise InvalidParamsError(
                "Position ids and amounts differ in length: {} != {}".format(len(position_ids), len(amounts))
            )
        if not position_ids:
            raise InvalidParamsError("No positions to convert")

        now = self.clock.now()
        asset = self.positions.get_position(position_ids[0]).asset
        total_deposit = 0
        total_output = 0
        for position_id, amount in zip(position_ids, amounts):
            position = self.positions.get_position(position_id)
            if position.owner != caller:
                raise UnauthorizedError("{} does not own position {}".format(caller, position_id))
            if position.operator != self.address:
                raise InvalidStateError("Position {} was not issued by {}".format(position_id, self.name))
            if position.is_expired(now):
                raise InvalidStateError("Position {} expired at {}".format(position_id, position.expiry))
            if position.asset != asset:
                raise InvalidParamsError("Positions span several assets: {} and {}".format(asset, position.asset))
            self._check_positive(amount, "Convert amount")
            if amount > position.remaining_deposit:
                raise InsufficientFundsError(
                    "Convert {} exceeds remaining deposit {} of position {}".format(
                        amount, position.remaining_deposit, position_id,
                    )
                )

            output = self.positions.preview_convert(position_id, amount)
            if output == 0:
                raise ConvertedAmountZeroError(
                    "Convert of {} from position {} yields zero".format(amount, position_id)
                )
            total_deposit += amount
            total_output += output

        if total_deposit > self.get_available_deposits(asset):
            raise InsufficientFundsError(
                "Convert {} exceeds available deposits {} for {}".format(
                    total_deposit, self.get_available_deposits(asset), asset,
                )
            )
        return asset, total_deposit, total_output

    def preview_convert(
        self,
        caller: str,
        position_ids: Sequence[int],
        amounts: Sequence[int],
    ) -> Tuple[int, int]:
        """Returns (total_deposit, total_output). Does not write."""
        self._require_enabled()
        _asset, total_deposit, total_output = self._check_conversion(caller, position_ids, amounts)
        return total_deposit, total_output

    @nonreentrant
    def convert(
        self,
        caller: str,
        position_ids: Sequence[int],
        amounts: Sequence[int],
    ) -> Tuple[int, int]:
        """Convert deposits at each position's fixed price.

        Returns (total_deposit, total_output).
        """
        self._require_enabled()
        asset, total_deposit, total_output = self._check_conversion(caller, position_ids, amounts)

        for position_id, amount in zip(position_ids, amounts):
            position = self.positions.get_position(position_id)
            self.positions.set_remaining_deposit(
                self.address, position_id, position.remaining_deposit - amount,
            )
            self.ledger.withdraw(
                self.address, asset, position.period_months, caller, self.treasury, amount,
            )

        self.tokens.mint(self.output_token, caller, total_output)
        self._emit(
            "CONVERT",
            asset,
            owner=caller,
            position_ids=list(position_ids),
            deposit=total_deposit,
            output=total_output,
        )
        logger.info(
            "Convert: facility=%s owner=%s asset=%s deposit=%d output=%d positions=%s",
            self.name, caller, asset, total_deposit, total_output, list(position_ids),
        )
        return total_deposit, total_output

    # ── Reclaim ───────────────────────────────────────────────────────────────

    def preview_reclaim(self, asset: str, period_months: int, amount: int) -> int:
        """Deposit returned for reclaiming `amount` of receipt claims (rounded down)."""
        self._require_enabled()
        self._check_positive(amount, "Reclaim amount")
        rate = self.ledger.get_asset_period(asset, period_months, self.address).reclaim_rate
        reclaimed = mul_div(amount, rate, ONE_HUNDRED_PERCENT)
        if reclaimed == 0:
            raise ConvertedAmountZeroError("Reclaim of {} returns zero at rate {}".format(amount, rate))
        if amount > self.get_available_deposits(asset):
            raise InsufficientFundsError(
                "Reclaim {} exceeds available deposits {} for {}".format(
                    amount, self.get_available_deposits(asset), asset,
                )
            )
        return reclaimed

    @nonreentrant
    def reclaim(self, caller: str, asset: str, period_months: int, amount: int) -> int:
        """Give up receipt claims for a discounted refund; the haircut goes to the treasury."""
        reclaimed = self.preview_reclaim(asset, period_months, amount)

        withdrawn = self.ledger.withdraw(self.address, asset, period_months, caller, self.address, amount)
        # Vault rounding comes out of the haircut first
        reclaimed = min(reclaimed, withdrawn)
        self.tokens.transfer(asset, self.address, caller, reclaimed)
        forfeited = withdrawn - reclaimed
        if forfeited > 0:
            self.tokens.transfer(asset, self.address, self.treasury, forfeited)

        self._emit(
            "RECLAIM",
            asset,
            owner=caller,
            period_months=period_months,
            amount=amount,
            reclaimed=reclaimed,
            forfeited=forfeited,
        )
        logger.info(
            "Reclaim: facility=%s owner=%s asset=%s period=%d amount=%d reclaimed=%d",
            self.name, caller, asset, period_months, amount, reclaimed,
        )
        return reclaimed

    # ── Deposit views ─────────────────────────────────────────────────────────

    def get_committed_deposits(self, asset: str, operator: Optional[str] = None) -> int:
        if operator is not None:
            return self._committed.get((asset, operator), 0)
        return sum(v for (a, _op), v in self._committed.items() if a == asset)

    def get_available_deposits(self, asset: str) -> int:
        """Vault holdings not promised to an operator."""
        holdings = self.ledger.get_operator_assets(asset, self.address)
        committed = self.get_committed_deposits(asset)
        return max(0, holdings - committed)

    # ── Operator hooks ────────────────────────────────────────────────────────

    @nonreentrant
    def handle_commit(self, operator: str, asset: str, amount: int) -> None:
        """Reserve deposits for an operator's later withdraw or borrow."""
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Commit amount")
        available = self.get_available_deposits(asset)
        if amount > available:
            raise InsufficientFundsError(
                "Commit {} exceeds available deposits {} for {}".format(amount, available, asset)
            )
        key = (asset, operator)
        self._committed[key] = self._committed.get(key, 0) + amount
        self._emit("COMMIT", asset, commit_operator=operator, amount=amount)
        logger.info("Commit: facility=%s operator=%s asset=%s amount=%d", self.name, operator, asset, amount)

    def _release_commitment(self, operator: str, asset: str, amount: int) -> None:
        key = (asset, operator)
        committed = self._committed.get(key, 0)
        if amount > committed:
            raise InsufficientFundsError(
                "Amount {} exceeds commitment {} of {} for {}".format(amount, committed, operator, asset)
            )
        self._committed[key] = committed - amount

    @nonreentrant
    def handle_commit_cancel(self, operator: str, asset: str, amount: int) -> None:
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Cancel amount")
        self._release_commitment(operator, asset, amount)
        self._emit("COMMIT_CANCEL", asset, commit_operator=operator, amount=amount)
        logger.info("Commit cancelled: facility=%s operator=%s asset=%s amount=%d", self.name, operator, asset, amount)

    @nonreentrant
    def handle_commit_withdraw(
        self,
        operator: str,
        asset: str,
        period_months: int,
        amount: int,
        recipient: str,
    ) -> int:
        """Release committed deposit against receipt claims the operator holds."""
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Withdraw amount")
        self._release_commitment(operator, asset, amount)
        withdrawn = self.ledger.withdraw(self.address, asset, period_months, operator, recipient, amount)
        self._emit("COMMIT_WITHDRAW", asset, commit_operator=operator, recipient=recipient, amount=withdrawn)
        logger.info(
            "Commit withdrawn: facility=%s operator=%s asset=%s amount=%d recipient=%s",
            self.name, operator, asset, withdrawn, recipient,
        )
        return withdrawn

    @nonreentrant
    def handle_borrow(self, operator: str, asset: str, amount: int, recipient: str) -> int:
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Borrow amount")
        self._release_commitment(operator, asset, amount)
        return self.ledger.borrowing_withdraw(self.address, asset, recipient, amount)

    @nonreentrant
    def handle_loan_repay(self, operator: str, asset: str, amount: int, payer: str) -> int:
        """Repay a loan; the value credited to the vault becomes committed again."""
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Repay amount")
        credited = self.ledger.borrowing_repay(self.address, asset, payer, amount)
        key = (asset, operator)
        self._committed[key] = self._committed.get(key, 0) + credited
        return credited

    @nonreentrant
    def handle_loan_default(
        self,
        operator: str,
        asset: str,
        period_months: int,
        amount: int,
        payer: str,
    ) -> None:
        self._require_enabled()
        self._require_operator(operator)
        self._check_positive(amount, "Default amount")
        self.ledger.borrowing_default(self.address, asset, period_months, payer, amount)

    # ── Yield ─────────────────────────────────────────────────────────────────

    def _claim_yield(self, asset: str) -> int:
        amount = self.ledger.max_claim_yield(asset, self.address)
        if amount == 0:
            return 0
        return self.ledger.claim_yield(self.address, asset, self.treasury, amount)

    @nonreentrant
    def claim_yield(self, asset: str) -> int:
        """Sweep the yield of one asset to the treasury."""
        self._require_enabled()
        return self._claim_yield(asset)

    @nonreentrant
    def claim_all_yield(self) -> Dict[str, int]:
        self._require_enabled()
        claimed = {}  # type: Dict[str, int]
        for asset in self.ledger.get_operator_asset_list(self.address):
            claimed[asset] = self._claim_yield(asset)
        return claimed

    def execute(self) -> Optional[TaskFailure]:
        """Periodic task: sweep yield, reporting failure instead of raising."""
        if not self._enabled:
            return None
        try:
            with self.coordinator.atomic():
                claimed = self.claim_all_yield()
        except Exception as e:
            logger.warning("Yield sweep failed for facility %s: %s", self.name, e)
            self._emit("CLAIM_YIELD_FAILED", error=str(e), error_type=type(e).__name__)
            return TaskFailure("{}.claim_all_yield".format(self.name), e)
        logger.info("Yield swept: facility=%s claimed=%s", self.name, claimed)
        return None

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "address": self.address,
            "enabled": self._enabled,
            "operators": sorted(self._operators),
            "auctioneers": sorted(self._auctioneers),
            "committed": {
                "{}/{}".format(asset, op): amount for (asset, op), amount in sorted(self._committed.items())
            },
        }
