"""Deposit Ledger — liabilities, borrowing and the solvency invariant.

Implements:
- Asset configuration (vault, per-operator deposit cap, minimum deposit)
- Asset periods keyed by (asset, period, operator) with receipt tokens
- Deposit / withdraw with receipt mint / burn
- Borrowing withdraw / repay / default against deposited capital
- Yield claims bounded by max_claim_yield
- Operator isolation: every entry is keyed by (asset, operator)

Solvency, checked after every mutation (never pre-checked):

    vault_assets(operator) + borrowed(operator) >= liabilities(operator)

A failed check raises InsolventError inside the call's atomic scope, which
unwinds everything the call did.
"""

from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator, nonreentrant
from cdauction.clock import SystemClock
from cdauction.constants import ONE_HUNDRED_PERCENT, OPERATOR_NAME_PATTERN
from cdauction.errors import (
    InsolventError,
    InsufficientFundsError,
    InvalidParamsError,
    InvalidStateError,
)
from cdauction.observability import EventLog
from cdauction.receipts import ReceiptTokenRegistry
from cdauction.vault import AssetVaultAdapter

logger = logging.getLogger(__name__)

_OPERATOR_NAME_RE = re.compile(OPERATOR_NAME_PATTERN)


class AssetConfig:
    """Per-asset deposit settings."""

    def __init__(
        self,
        asset: str,
        symbol: str,
        decimals: int,
        deposit_cap: int,
        minimum_deposit: int,
    ) -> None:
        self.asset = asset
        self.symbol = symbol
        self.decimals = decimals
        self.deposit_cap = deposit_cap
        self.minimum_deposit = minimum_deposit

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "symbol": self.symbol,
            "decimals": self.decimals,
            "deposit_cap": self.deposit_cap,
            "minimum_deposit": self.minimum_deposit,
        }


class AssetPeriod:
    """A depositable (asset, period, operator) combination."""

    def __init__(
        self,
        asset: str,
        period_months: int,
        operator: str,
        reclaim_rate: int,
        receipt_token_id: int,
    ) -> None:
        self.asset = asset
        self.period_months = period_months
        self.operator = operator
        self.reclaim_rate = reclaim_rate
        self.receipt_token_id = receipt_token_id
        self.is_enabled = True

    @property
    def key(self) -> Tuple[str, int, str]:
        return (self.asset, self.period_months, self.operator)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "asset": self.asset,
            "period_months": self.period_months,
            "operator": self.operator,
            "reclaim_rate": self.reclaim_rate,
            "receipt_token_id": hex(self.receipt_token_id),
            "is_enabled": self.is_enabled,
        }


class OperatorLedgerEntry:
    """Accounting for one (asset, operator) pair."""

    def __init__(self) -> None:
        self.liabilities = 0
        self.borrowed = 0
        self.shares = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "liabilities": self.liabilities,
            "borrowed": self.borrowed,
            "shares": self.shares,
        }


class DepositLedger(Transactional):
    """Custody and claim accounting for every operator."""

    _state_attrs = ("_assets", "_asset_periods", "_operator_names", "_entries")

    def __init__(
        self,
        vaults: AssetVaultAdapter,
        receipts: ReceiptTokenRegistry,
        clock: Any = None,
        events: Optional[EventLog] = None,
        coordinator: Optional[StateCoordinator] = None,
    ) -> None:
        self.vaults = vaults
        self.receipts = receipts
        self.clock = clock or SystemClock()
        self.coordinator = ensure_coordinator(coordinator)
        self.events = events or EventLog(self.coordinator)
        self.coordinator.register(self)
        self._entered = False

        self._assets = {}  # type: Dict[str, AssetConfig]
        self._asset_periods = {}  # type: Dict[Tuple[str, int, str], AssetPeriod]
        self._operator_names = {}  # type: Dict[str, str]
        self._entries = {}  # type: Dict[Tuple[str, str], OperatorLedgerEntry]

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _emit(self, event_type: str, asset: Optional[str], operator: Optional[str], **details: Any) -> None:
        self.events.log_event(event_type, self.clock.now(), asset=asset, operator=operator, details=details)

    def _get_asset(self, asset: str) -> AssetConfig:
        config = self._assets.get(asset)
        if config is None:
            raise InvalidStateError("Asset not configured: {}".format(asset))
        return config

    def _get_asset_period(self, asset: str, period_months: int, operator: str) -> AssetPeriod:
        ap = self._asset_periods.get((asset, period_months, operator))
        if ap is None:
            raise InvalidStateError(
                "Asset period not configured: asset={} period={} operator={}".format(
                    asset, period_months, operator,
                )
            )
        return ap

    def _entry(self, asset: str, operator: str) -> OperatorLedgerEntry:
        key = (asset, operator)
        entry = self._entries.get(key)
        if entry is None:
            entry = OperatorLedgerEntry()
            self._entries[key] = entry
        return entry

    @staticmethod
    def _check_positive(amount: int, what: str) -> None:
        if amount <= 0:
            raise InvalidParamsError("{} must be positive: {}".format(what, amount))

    @staticmethod
    def _check_rate(rate: int) -> None:
        if rate < 0 or rate > ONE_HUNDRED_PERCENT:
            raise InvalidParamsError(
                "Reclaim rate out of range [0, {}]: {}".format(ONE_HUNDRED_PERCENT, rate)
            )

    # ── Asset configuration ───────────────────────────────────────────────────

    @nonreentrant
    def add_asset(
        self,
        asset: str,
        deposit_cap: int,
        minimum_deposit: int = 0,
        symbol: Optional[str] = None,
        decimals: int = 18,
    ) -> None:
        if asset in self._assets:
            raise InvalidStateError("Asset already configured: {}".format(asset))
        if not self.vaults.has_vault(asset):
            raise InvalidStateError("Asset has no vault: {}".format(asset))
        if deposit_cap < 0 or minimum_deposit < 0:
            raise InvalidParamsError("Deposit cap and minimum must be non-negative")
        self._assets[asset] = AssetConfig(asset, symbol or asset, decimals, deposit_cap, minimum_deposit)
        self._emit("ASSET_ADDED", asset, None, deposit_cap=deposit_cap, minimum_deposit=minimum_deposit)
        logger.info("Asset added: %s cap=%d minimum=%d", asset, deposit_cap, minimum_deposit)

    @nonreentrant
    def set_asset_deposit_cap(self, asset: str, deposit_cap: int) -> None:
        if deposit_cap < 0:
            raise InvalidParamsError("Deposit cap must be non-negative: {}".format(deposit_cap))
        self._get_asset(asset).deposit_cap = deposit_cap

    @nonreentrant
    def set_asset_minimum_deposit(self, asset: str, minimum_deposit: int) -> None:
        if minimum_deposit < 0:
            raise InvalidParamsError("Minimum deposit must be non-negative: {}".format(minimum_deposit))
        self._get_asset(asset).minimum_deposit = minimum_deposit

    def get_asset_config(self, asset: str) -> AssetConfig:
        return self._get_asset(asset)

    @property
    def assets(self) -> List[str]:
        return sorted(self._assets)

    # ── Operator names ────────────────────────────────────────────────────────

    @nonreentrant
    def set_operator_name(self, operator: str, name: str) -> None:
        """Assign the immutable 3-character identifier used in receipt names."""
        if not isinstance(name, str) or not _OPERATOR_NAME_RE.fullmatch(name):
            raise InvalidParamsError(
                "Operator name must be 3 lowercase alphanumeric characters: {!r}".format(name)
            )
        if operator in self._operator_names:
            raise InvalidStateError(
                "Operator {} already named {}".format(operator, self._operator_names[operator])
            )
        if name in self._operator_names.values():
            raise InvalidParamsError("Operator name already taken: {}".format(name))
        self._operator_names[operator] = name
        self._emit("OPERATOR_NAME_SET", None, operator, name=name)

    def get_operator_name(self, operator: str) -> Optional[str]:
        return self._operator_names.get(operator)

    # ── Asset periods ─────────────────────────────────────────────────────────

    @nonreentrant
    def add_asset_period(
        self,
        asset: str,
        period_months: int,
        operator: str,
        reclaim_rate: int,
    ) -> int:
        """Configure a depositable asset-period; returns its receipt token id."""
        config = self._get_asset(asset)
        if period_months <= 0:
            raise InvalidParamsError("Deposit period must be positive: {}".format(period_months))
        self._check_rate(reclaim_rate)
        name = self._operator_names.get(operator)
        if name is None:
            raise InvalidStateError("Operator {} has no name".format(operator))
        if (asset, period_months, operator) in self._asset_periods:
            raise InvalidStateError(
                "Asset period exists: asset={} period={} operator={}".format(
                    asset, period_months, operator,
                )
            )

        token_id = self.receipts.create_token(
            asset, period_months, operator, name, config.symbol, config.decimals,
        )
        ap = AssetPeriod(asset, period_months, operator, reclaim_rate, token_id)
        self._asset_periods[ap.key] = ap
        self._emit("ASSET_PERIOD_ADDED", asset, operator, period_months=period_months, reclaim_rate=reclaim_rate)
        return token_id

    @nonreentrant
    def enable_asset_period(self, asset: str, period_months: int, operator: str) -> None:
        ap = self._get_asset_period(asset, period_months, operator)
        if ap.is_enabled:
            raise InvalidStateError("Asset period already enabled")
        ap.is_enabled = True
        self._emit("ASSET_PERIOD_ENABLED", asset, operator, period_months=period_months)

    @nonreentrant
    def disable_asset_period(self, asset: str, period_months: int, operator: str) -> None:
        ap = self._get_asset_period(asset, period_months, operator)
        if not ap.is_enabled:
            raise InvalidStateError("Asset period already disabled")
        ap.is_enabled = False
        self._emit("ASSET_PERIOD_DISABLED", asset, operator, period_months=period_months)

    @nonreentrant
    def set_asset_period_reclaim_rate(
        self,
        asset: str,
        period_months: int,
        operator: str,
        reclaim_rate: int,
    ) -> None:
        self._check_rate(reclaim_rate)
        ap = self._get_asset_period(asset, period_months, operator)
        ap.reclaim_rate = reclaim_rate
        self._emit("RECLAIM_RATE_UPDATED", asset, operator, period_months=period_months, reclaim_rate=reclaim_rate)

    def get_asset_period(self, asset: str, period_months: int, operator: str) -> AssetPeriod:
        return self._get_asset_period(asset, period_months, operator)

    def get_asset_periods(self, operator: Optional[str] = None) -> List[AssetPeriod]:
        return [
            ap for key, ap in sorted(self._asset_periods.items())
            if operator is None or ap.operator == operator
        ]

    def get_receipt_token_id(self, asset: str, period_months: int, operator: str) -> int:
        return self._get_asset_period(asset, period_months, operator).receipt_token_id

    # ── Views ─────────────────────────────────────────────────────────────────

    def get_operator_assets(self, asset: str, operator: str) -> int:
        """Vault assets backing the operator (shares converted, rounded down)."""
        entry = self._entries.get((asset, operator))
        if entry is None or entry.shares == 0:
            return 0
        return self.vaults.convert_to_assets(asset, entry.shares)

    def get_operator_liabilities(self, asset: str, operator: str) -> int:
        entry = self._entries.get((asset, operator))
        return entry.liabilities if entry else 0

    def get_borrowed_amount(self, asset: str, operator: str) -> int:
        entry = self._entries.get((asset, operator))
        return entry.borrowed if entry else 0

    def get_operator_shares(self, asset: str, operator: str) -> int:
        entry = self._entries.get((asset, operator))
        return entry.shares if entry else 0

    def get_borrowing_capacity(self, asset: str, operator: str) -> int:
        """Capital the operator may still lend out.

        Bounded both by unborrowed liabilities and by what the vault holds.
        """
        liabilities = self.get_operator_liabilities(asset, operator)
        borrowed = self.get_borrowed_amount(asset, operator)
        if borrowed >= liabilities:
            return 0
        return min(liabilities - borrowed, self.get_operator_assets(asset, operator))

    def max_claim_yield(self, asset: str, operator: str) -> int:
        """Yield claimable without breaking solvency, computed in vault shares.

        The operator keeps the shares (rounded up) backing its unborrowed
        liabilities plus one more. The rest converts back to assets rounded
        down, so withdrawing it never burns into the kept shares.
        """
        entry = self._entries.get((asset, operator))
        if entry is None or entry.shares == 0:
            return 0
        unborrowed = entry.liabilities - entry.borrowed
        required = self.vaults.convert_to_shares(asset, unborrowed, round_up=True) if unborrowed > 0 else 0
        excess = entry.shares - required - 1
        if excess <= 0:
            return 0
        return self.vaults.convert_to_assets(asset, excess)

    def get_operator_asset_list(self, operator: str) -> List[str]:
        return sorted({ap.asset for ap in self._asset_periods.values() if ap.operator == operator})

    def validate_operator_solvency(self, asset: str, operator: str) -> None:
        assets = self.get_operator_assets(asset, operator)
        borrowed = self.get_borrowed_amount(asset, operator)
        liabilities = self.get_operator_liabilities(asset, operator)
        if assets + borrowed < liabilities:
            logger.error(
                "Insolvent: asset=%s operator=%s assets=%d borrowed=%d liabilities=%d",
                asset, operator, assets, borrowed, liabilities,
            )
            raise InsolventError(
                "Operator {} insolvent for {}: assets={} borrowed={} liabilities={}".format(
                    operator, asset, assets, borrowed, liabilities,
                )
            )

    # ── Custody ───────────────────────────────────────────────────────────────

    @nonreentrant
    def deposit(
        self,
        operator: str,
        asset: str,
        period_months: int,
        depositor: str,
        amount: int,
    ) -> Tuple[int, int]:
        """Custody `amount` from depositor; returns (receipt_token_id, actual_amount).

        The actual amount is the vault value of the shares minted (rounded
        down), so liabilities never run ahead of backing.
        """
        self._check_positive(amount, "Deposit amount")
        ap = self._get_asset_period(asset, period_months, operator)
        if not ap.is_enabled:
            raise InvalidStateError(
                "Asset period disabled: asset={} period={} operator={}".format(
                    asset, period_months, operator,
                )
            )
        config = self._get_asset(asset)
        if amount < config.minimum_deposit:
            raise InvalidParamsError(
                "Deposit {} below minimum {}".format(amount, config.minimum_deposit)
            )
        if self.get_operator_assets(asset, operator) + amount > config.deposit_cap:
            raise InsufficientFundsError(
                "Deposit cap exceeded: asset={} operator={} amount={} cap={}".format(
                    asset, operator, amount, config.deposit_cap,
                )
            )

        shares = self.vaults.deposit(asset, amount, depositor)
        entry = self._entry(asset, operator)
        entry.shares += shares
        actual = self.vaults.convert_to_assets(asset, shares)
        if actual == 0:
            raise InvalidParamsError("Deposit of {} is worth zero after vault rounding".format(amount))

        entry.liabilities += actual
        self.receipts.mint(operator, ap.receipt_token_id, depositor, actual)

        self.validate_operator_solvency(asset, operator)
        self._emit("DEPOSIT", asset, operator, depositor=depositor, period_months=period_months, amount=actual)
        logger.info(
            "Deposit: asset=%s operator=%s period=%d depositor=%s amount=%d shares=%d",
            asset, operator, period_months, depositor, actual, shares,
        )
        return ap.receipt_token_id, actual

    @nonreentrant
    def withdraw(
        self,
        operator: str,
        asset: str,
        period_months: int,
        depositor: str,
        recipient: str,
        amount: int,
    ) -> int:
        """Burn depositor's receipt claims for `amount` and pay out their vault value.

        Returns the amount sent to recipient, which is `amount` unless vault
        rounding has to come out of the payout (see _release).
        """
        self._check_positive(amount, "Withdraw amount")
        ap = self._get_asset_period(asset, period_months, operator)
        entry = self._entry(asset, operator)

        self.receipts.burn(operator, ap.receipt_token_id, depositor, amount)
        if amount > entry.liabilities:
            raise InsolventError(
                "Withdraw {} exceeds liabilities {} of operator {}".format(amount, entry.liabilities, operator)
            )
        entry.liabilities -= amount

        paid = self._release(entry, operator, asset, amount, recipient, "Withdraw")

        self.validate_operator_solvency(asset, operator)
        self._emit("WITHDRAW", asset, operator, depositor=depositor, recipient=recipient, amount=amount, paid=paid)
        logger.info(
            "Withdraw: asset=%s operator=%s period=%d depositor=%s recipient=%s amount=%d paid=%d",
            asset, operator, period_months, depositor, recipient, amount, paid,
        )
        return paid

    def _release(
        self,
        entry: OperatorLedgerEntry,
        operator: str,
        asset: str,
        amount: int,
        recipient: str,
        what: str,
    ) -> int:
        """Send `amount` of the operator's vault value to recipient; returns what was sent.

        Called after liabilities or borrowed have been updated. Burning shares
        rounded up can cost the operator up to one share of value, so the
        exact amount is paid only when the remaining slack covers a whole
        share. Otherwise the shares `amount` covers are redeemed, rounded
        down, and recipient gets their value.
        """
        share_value = self.vaults.convert_to_assets(asset, 1, round_up=True)
        needed = entry.liabilities - entry.borrowed
        slack = self.vaults.convert_to_assets(asset, entry.shares) - amount - needed
        if slack >= share_value:
            entry.shares -= self.vaults.withdraw(asset, amount, recipient)
            return amount

        shares = self.vaults.convert_to_shares(asset, amount)
        if shares == 0:
            raise InvalidParamsError("{} of {} is worth zero vault shares".format(what, amount))
        if shares > entry.shares:
            raise InsolventError(
                "{} needs {} shares, operator {} holds {}".format(what, shares, operator, entry.shares)
            )
        entry.shares -= shares
        return self.vaults.redeem(asset, shares, recipient)

    # ── Borrowing ─────────────────────────────────────────────────────────────

    @nonreentrant
    def borrowing_withdraw(self, operator: str, asset: str, recipient: str, amount: int) -> int:
        """Lend out deposited capital without touching claim supply.

        The loan is recorded at `amount`. Returns what recipient was sent,
        which is at most `amount` (see _release).
        """
        self._check_positive(amount, "Borrow amount")
        self._get_asset(asset)
        capacity = self.get_borrowing_capacity(asset, operator)
        if amount > capacity:
            raise InsufficientFundsError(
                "Borrow {} exceeds capacity {}: asset={} operator={}".format(amount, capacity, asset, operator)
            )

        entry = self._entry(asset, operator)
        entry.borrowed += amount
        paid = self._release(entry, operator, asset, amount, recipient, "Borrow")

        self.validate_operator_solvency(asset, operator)
        self._emit("BORROW", asset, operator, recipient=recipient, amount=amount, paid=paid)
        logger.info(
            "Borrow: asset=%s operator=%s recipient=%s amount=%d paid=%d",
            asset, operator, recipient, amount, paid,
        )
        return paid

    @nonreentrant
    def borrowing_repay(self, operator: str, asset: str, payer: str, amount: int) -> int:
        """Return borrowed capital to the vault; returns the vault value credited.

        The loan shrinks by the value of the shares `amount` mints, priced
        before the deposit and rounded down, so it never exceeds `amount`.
        """
        self._check_positive(amount, "Repay amount")
        self._get_asset(asset)
        entry = self._entry(asset, operator)
        if amount > entry.borrowed:
            raise InsufficientFundsError(
                "Repay {} exceeds outstanding {}: asset={} operator={}".format(
                    amount, entry.borrowed, asset, operator,
                )
            )

        shares = self.vaults.convert_to_shares(asset, amount)
        actual = self.vaults.convert_to_assets(asset, shares)
        entry.borrowed -= actual

        entry.shares += self.vaults.deposit(asset, amount, payer)

        self.validate_operator_solvency(asset, operator)
        self._emit("REPAY", asset, operator, payer=payer, amount=amount, credited=actual)
        logger.info("Repay: asset=%s operator=%s payer=%s amount=%d credited=%d", asset, operator, payer, amount, actual)
        return actual

    @nonreentrant
    def borrowing_default(
        self,
        operator: str,
        asset: str,
        period_months: int,
        payer: str,
        amount: int,
    ) -> None:
        """Write off a loan by burning the collateral claims that secured it.

        Liabilities and borrowed drop together, so the invariant is unchanged.
        """
        self._check_positive(amount, "Default amount")
        ap = self._get_asset_period(asset, period_months, operator)
        entry = self._entry(asset, operator)
        if amount > entry.borrowed:
            raise InsufficientFundsError(
                "Default {} exceeds outstanding {}: asset={} operator={}".format(
                    amount, entry.borrowed, asset, operator,
                )
            )

        self.receipts.burn(operator, ap.receipt_token_id, payer, amount)
        entry.liabilities -= amount
        entry.borrowed -= amount

        self.validate_operator_solvency(asset, operator)
        self._emit("DEFAULT", asset, operator, payer=payer, period_months=period_months, amount=amount)
        logger.info(
            "Default: asset=%s operator=%s period=%d payer=%s amount=%d",
            asset, operator, period_months, payer, amount,
        )

    # ── Yield ─────────────────────────────────────────────────────────────────

    @nonreentrant
    def claim_yield(self, operator: str, asset: str, recipient: str, amount: int) -> int:
        self._check_positive(amount, "Claim amount")
        available = self.max_claim_yield(asset, operator)
        if amount > available:
            raise InsufficientFundsError(
                "Claim {} exceeds yield {}: asset={} operator={}".format(amount, available, asset, operator)
            )

        entry = self._entry(asset, operator)
        shares = self.vaults.withdraw(asset, amount, recipient)
        if shares > entry.shares:
            raise InsolventError(
                "Claim burns {} shares, operator {} holds {}".format(shares, operator, entry.shares)
            )
        entry.shares -= shares

        self.validate_operator_solvency(asset, operator)
        self._emit("CLAIM_YIELD", asset, operator, recipient=recipient, amount=amount)
        logger.info("Yield claimed: asset=%s operator=%s recipient=%s amount=%d", asset, operator, recipient, amount)
        return amount

    # ── Reporting ─────────────────────────────────────────────────────────────

    def get_operator_entry(self, asset: str, operator: str) -> Dict[str, int]:
        entry = self._entries.get((asset, operator)) or OperatorLedgerEntry()
        d = entry.to_dict()
        d["assets"] = self.get_operator_assets(asset, operator)
        return d

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "assets": len(self._assets),
            "asset_periods": len(self._asset_periods),
            "entries": {
                "{}/{}".format(asset, operator): self.get_operator_entry(asset, operator)
                for (asset, operator) in sorted(self._entries)
            },
        }
