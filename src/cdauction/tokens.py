"""Token balances — in-memory stand-in for the reserve assets and output token.

Balances are keyed by token symbol, then holder. All amounts are integers
in the token's smallest unit.
"""

from __future__ import annotations

import logging
from typing import Dict, Optional

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator
from cdauction.errors import InsufficientFundsError, InvalidParamsError

logger = logging.getLogger(__name__)


class TokenLedger(Transactional):
    """Fungible balances for any number of tokens."""

    _state_attrs = ("_balances", "_supply")

    def __init__(self, coordinator: Optional[StateCoordinator] = None) -> None:
        self.coordinator = ensure_coordinator(coordinator)
        self.coordinator.register(self)
        self._balances = {}  # type: Dict[str, Dict[str, int]]
        self._supply = {}  # type: Dict[str, int]

    @staticmethod
    def _check_amount(amount: int) -> None:
        if amount < 0:
            raise InvalidParamsError("Negative token amount: {}".format(amount))

    def balance_of(self, token: str, holder: str) -> int:
        return self._balances.get(token, {}).get(holder, 0)

    def total_supply(self, token: str) -> int:
        return self._supply.get(token, 0)

    def mint(self, token: str, to: str, amount: int) -> None:
        self._check_amount(amount)
        book = self._balances.setdefault(token, {})
        book[to] = book.get(to, 0) + amount
        self._supply[token] = self._supply.get(token, 0) + amount

    def burn(self, token: str, holder: str, amount: int) -> None:
        self._check_amount(amount)
        balance = self.balance_of(token, holder)
        if amount > balance:
            raise InsufficientFundsError(
                "Burn exceeds balance: token={} holder={} amount={} balance={}".format(
                    token, holder, amount, balance,
                )
            )
        self._balances[token][holder] = balance - amount
        self._supply[token] -= amount

    def transfer(self, token: str, src: str, dst: str, amount: int) -> None:
        self._check_amount(amount)
        balance = self.balance_of(token, src)
        if amount > balance:
            raise InsufficientFundsError(
                "Transfer exceeds balance: token={} from={} amount={} balance={}".format(
                    token, src, amount, balance,
                )
            )
        if amount == 0 or src == dst:
            return
        book = self._balances[token]
        book[src] = balance - amount
        book[dst] = book.get(dst, 0) + amount
