"""Receipt token registry — fungible claims per (asset, period, operator).

Token ids are a deterministic hash of the triple, so the same asset-period
created by two operators yields two distinct claims. Only the operator that
created a token id may mint or burn it.
"""

from __future__ import annotations

import hashlib
import logging
from typing import Any, Dict, Optional, Tuple

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator
from cdauction.errors import (
    InsufficientFundsError,
    InvalidParamsError,
    InvalidStateError,
    UnauthorizedError,
)

logger = logging.getLogger(__name__)


def receipt_token_id(asset: str, period_months: int, operator: str) -> int:
    """SHA-256 of the canonical (asset, period, operator) triple, as int."""
    canonical = "asset={}|period={}|operator={}".format(asset, period_months, operator)
    return int.from_bytes(hashlib.sha256(canonical.encode("utf-8")).digest(), "big")


class ReceiptToken:
    """Metadata for one receipt token id."""

    def __init__(
        self,
        token_id: int,
        owner: str,
        asset: str,
        period_months: int,
        name: str,
        symbol: str,
        decimals: int,
    ) -> None:
        self.token_id = token_id
        self.owner = owner
        self.asset = asset
        self.period_months = period_months
        self.name = name
        self.symbol = symbol
        self.decimals = decimals

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token_id": hex(self.token_id),
            "owner": self.owner,
            "asset": self.asset,
            "period_months": self.period_months,
            "name": self.name,
            "symbol": self.symbol,
            "decimals": self.decimals,
        }


class ReceiptTokenRegistry(Transactional):
    """Multi-token balances for receipt claims."""

    _state_attrs = ("_tokens", "_balances", "_supply")

    def __init__(self, coordinator: Optional[StateCoordinator] = None) -> None:
        self.coordinator = ensure_coordinator(coordinator)
        self.coordinator.register(self)
        self._tokens = {}  # type: Dict[int, ReceiptToken]
        self._balances = {}  # type: Dict[Tuple[int, str], int]
        self._supply = {}  # type: Dict[int, int]

    # ── Token creation ────────────────────────────────────────────────────────

    def create_token(
        self,
        asset: str,
        period_months: int,
        operator: str,
        operator_name: str,
        asset_symbol: Optional[str] = None,
        decimals: int = 18,
    ) -> int:
        if period_months <= 0:
            raise InvalidParamsError("Deposit period must be positive: {}".format(period_months))
        token_id = receipt_token_id(asset, period_months, operator)
        if token_id in self._tokens:
            raise InvalidStateError(
                "Receipt token exists: asset={} period={} operator={}".format(
                    asset, period_months, operator,
                )
            )
        symbol = "{}{}-{}m".format(operator_name, asset_symbol or asset, period_months)
        self._tokens[token_id] = ReceiptToken(
            token_id=token_id,
            owner=operator,
            asset=asset,
            period_months=period_months,
            name="{} {} {}-month receipt".format(operator_name, asset_symbol or asset, period_months),
            symbol=symbol,
            decimals=decimals,
        )
        self._supply[token_id] = 0
        logger.info("Receipt token created: %s id=%s", symbol, hex(token_id))
        return token_id

    def get_token(self, token_id: int) -> ReceiptToken:
        token = self._tokens.get(token_id)
        if token is None:
            raise InvalidStateError("Unknown receipt token id: {}".format(hex(token_id)))
        return token

    def is_valid_token(self, token_id: int) -> bool:
        return token_id in self._tokens

    def owner_of(self, token_id: int) -> str:
        return self.get_token(token_id).owner

    def asset_of(self, token_id: int) -> str:
        return self.get_token(token_id).asset

    def period_of(self, token_id: int) -> int:
        return self.get_token(token_id).period_months

    # ── Balances ──────────────────────────────────────────────────────────────

    def balance_of(self, token_id: int, holder: str) -> int:
        return self._balances.get((token_id, holder), 0)

    def total_supply(self, token_id: int) -> int:
        return self._supply.get(token_id, 0)

    def _only_owner(self, caller: str, token_id: int) -> None:
        owner = self.owner_of(token_id)
        if caller != owner:
            raise UnauthorizedError(
                "{} is not the operator of receipt token {}".format(caller, hex(token_id))
            )

    def mint(self, caller: str, token_id: int, to: str, amount: int) -> None:
        self._only_owner(caller, token_id)
        if amount <= 0:
            raise InvalidParamsError("Mint amount must be positive: {}".format(amount))
        key = (token_id, to)
        self._balances[key] = self._balances.get(key, 0) + amount
        self._supply[token_id] += amount

    def burn(self, caller: str, token_id: int, holder: str, amount: int) -> None:
        self._only_owner(caller, token_id)
        if amount <= 0:
            raise InvalidParamsError("Burn amount must be positive: {}".format(amount))
        key = (token_id, holder)
        balance = self._balances.get(key, 0)
        if amount > balance:
            raise InsufficientFundsError(
                "Receipt burn exceeds balance: holder={} amount={} balance={}".format(
                    holder, amount, balance,
                )
            )
        self._balances[key] = balance - amount
        self._supply[token_id] -= amount

    def transfer(self, token_id: int, src: str, dst: str, amount: int) -> None:
        """Holder-initiated transfer of receipt claims."""
        self.get_token(token_id)
        if amount <= 0:
            raise InvalidParamsError("Transfer amount must be positive: {}".format(amount))
        src_key = (token_id, src)
        balance = self._balances.get(src_key, 0)
        if amount > balance:
            raise InsufficientFundsError(
                "Receipt transfer exceeds balance: holder={} amount={} balance={}".format(
                    src, amount, balance,
                )
            )
        self._balances[src_key] = balance - amount
        dst_key = (token_id, dst)
        self._balances[dst_key] = self._balances.get(dst_key, 0) + amount
