"""Position manager — convertible deposit positions.

Implements:
- Minting a position for a deposit at its conversion price and expiry
- Remaining-deposit updates by the issuing operator only
- Split: moves part of a position to a new owner, conserving the total
- Conversion previews
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator
from cdauction.constants import OUTPUT_SCALE
from cdauction.errors import (
    InsufficientFundsError,
    InvalidParamsError,
    InvalidStateError,
    UnauthorizedError,
)
from cdauction.fixedpoint import mul_div

logger = logging.getLogger(__name__)


class Position:
    """One convertible deposit position."""

    def __init__(
        self,
        position_id: int,
        owner: str,
        asset: str,
        operator: str,
        period_months: int,
        remaining_deposit: int,
        conversion_price: int,
        expiry: int,
        wrapped: bool = False,
    ) -> None:
        self.position_id = position_id
        self.owner = owner
        self.asset = asset
        self.operator = operator
        self.period_months = period_months
        self.remaining_deposit = remaining_deposit
        self.conversion_price = conversion_price
        self.expiry = expiry
        self.wrapped = wrapped

    def is_expired(self, now: int) -> bool:
        return now >= self.expiry

    def to_dict(self) -> Dict[str, Any]:
        return {
            "position_id": self.position_id,
            "owner": self.owner,
            "asset": self.asset,
            "operator": self.operator,
            "period_months": self.period_months,
            "remaining_deposit": self.remaining_deposit,
            "conversion_price": self.conversion_price,
            "expiry": self.expiry,
            "wrapped": self.wrapped,
        }


class PositionManager(Transactional):
    """Registry of positions, indexed by id and by owner."""

    def __init__(
        self,
        output_scale: int = OUTPUT_SCALE,
        coordinator: Optional[StateCoordinator] = None,
    ) -> None:
        self.output_scale = output_scale
        self.coordinator = ensure_coordinator(coordinator)
        self.coordinator.register(self)
        self._positions = {}  # type: Dict[int, Position]
        self._next_id = 0
        # One frame per open savepoint: position id -> remaining deposit before it changed
        self._undo = []  # type: List[Dict[int, int]]

    def snapshot_state(self) -> Dict[str, Any]:
        frame = {}  # type: Dict[int, int]
        self._undo.append(frame)
        return {"next_id": self._next_id, "frame": frame}

    def restore_state(self, snapshot: Dict[str, Any]) -> None:
        for position_id in range(snapshot["next_id"], self._next_id):
            self._positions.pop(position_id, None)
        for position_id, remaining in snapshot["frame"].items():
            if position_id < snapshot["next_id"]:
                self._positions[position_id].remaining_deposit = remaining
        self._next_id = snapshot["next_id"]
        self._undo.pop()

    def commit_state(self, snapshot: Dict[str, Any]) -> None:
        self._undo.pop()

    def _set_deposit(self, position: Position, amount: int) -> None:
        for frame in self._undo:
            frame.setdefault(position.position_id, position.remaining_deposit)
        position.remaining_deposit = amount

    def mint(
        self,
        operator: str,
        owner: str,
        asset: str,
        period_months: int,
        remaining_deposit: int,
        conversion_price: int,
        expiry: int,
        wrap: bool = False,
    ) -> int:
        if not owner:
            raise InvalidParamsError("Position owner required")
        if period_months <= 0:
            raise InvalidParamsError("Deposit period must be positive: {}".format(period_months))
        if remaining_deposit <= 0:
            raise InvalidParamsError("Position deposit must be positive: {}".format(remaining_deposit))
        if conversion_price <= 0:
            raise InvalidParamsError("Conversion price must be positive: {}".format(conversion_price))

        position_id = self._next_id
        self._next_id += 1
        self._positions[position_id] = Position(
            position_id=position_id,
            owner=owner,
            asset=asset,
            operator=operator,
            period_months=period_months,
            remaining_deposit=remaining_deposit,
            conversion_price=conversion_price,
            expiry=expiry,
            wrapped=wrap,
        )
        logger.info(
            "Position minted: id=%d owner=%s asset=%s period=%d deposit=%d price=%d",
            position_id, owner, asset, period_months, remaining_deposit, conversion_price,
        )
        return position_id

    def get_position(self, position_id: int) -> Position:
        position = self._positions.get(position_id)
        if position is None:
            raise InvalidStateError("Invalid position id: {}".format(position_id))
        return position

    def get_user_positions(self, owner: str) -> List[int]:
        return sorted(pid for pid, p in self._positions.items() if p.owner == owner)

    def is_expired(self, position_id: int, now: int) -> bool:
        return self.get_position(position_id).is_expired(now)

    def set_remaining_deposit(self, operator: str, position_id: int, amount: int) -> None:
        position = self.get_position(position_id)
        if operator != position.operator:
            raise UnauthorizedError(
                "{} did not issue position {}".format(operator, position_id)
            )
        if amount < 0:
            raise InvalidParamsError("Remaining deposit cannot be negative: {}".format(amount))
        self._set_deposit(position, amount)

    def split(
        self,
        caller: str,
        position_id: int,
        amount: int,
        to: str,
        wrap: bool = False,
    ) -> int:
        """Move `amount` of a position's remaining deposit into a new position."""
        position = self.get_position(position_id)
        if caller != position.owner:
            raise UnauthorizedError("{} does not own position {}".format(caller, position_id))
        if amount <= 0:
            raise InvalidParamsError("Split amount must be positive: {}".format(amount))
        if not to:
            raise InvalidParamsError("Split recipient required")
        if amount > position.remaining_deposit:
            raise InsufficientFundsError(
                "Split amount {} exceeds remaining deposit {}".format(amount, position.remaining_deposit)
            )

        self._set_deposit(position, position.remaining_deposit - amount)
        new_id = self._next_id
        self._next_id += 1
        self._positions[new_id] = Position(
            position_id=new_id,
            owner=to,
            asset=position.asset,
            operator=position.operator,
            period_months=position.period_months,
            remaining_deposit=amount,
            conversion_price=position.conversion_price,
            expiry=position.expiry,
            wrapped=wrap,
        )
        logger.info("Position split: id=%d amount=%d → new id=%d owner=%s", position_id, amount, new_id, to)
        return new_id

    def preview_convert(self, position_id: int, amount: int) -> int:
        """Output received for converting `amount` of deposit (rounded down)."""
        position = self.get_position(position_id)
        return mul_div(amount, self.output_scale, position.conversion_price)

    @property
    def stats(self) -> Dict[str, Any]:
        return {
            "positions": len(self._positions),
            "open_deposit": sum(p.remaining_deposit for p in self._positions.values()),
        }
