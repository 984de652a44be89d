"""Tick Pricing Engine — perpetual capacity-replenishing auction.

Implements:
- Pure tick projection: capacity grows with elapsed time; every whole tick
  of growth decays the price by 1/tick_step (rounded up), clamped at min price
- Pure bid fill: consume capacity tick by tick, ratcheting the price by
  tick_step (rounded up) and shrinking the tick once the day's target is
  exceeded
- AuctionEngine: keyed tick store per deposit period, day accumulator,
  circular auction-result buffer, admin parameter changes

The stored tick is only a checkpoint. Every read or mutation first projects
it to "now"; parameter changes materialize every tick before they take
effect so new parameters never apply retroactively.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from cdauction.atomic import StateCoordinator, Transactional, ensure_coordinator, nonreentrant
from cdauction.clock import SystemClock
from cdauction.constants import (
    DEFAULT_AUCTION_TRACKING_PERIOD,
    DEFAULT_TICK_STEP,
    MIN_TICK_SIZE,
    ONE_HUNDRED_PERCENT,
    OUTPUT_SCALE,
    SECONDS_PER_DAY,
)
from cdauction.errors import (
    ConvertedAmountZeroError,
    InvalidParamsError,
    InvalidStateError,
    SlippageError,
)
from cdauction.fixedpoint import mul_div, mul_div_up
from cdauction.observability import EventLog

logger = logging.getLogger(__name__)


class Tick:
    """Price and remaining capacity at one price level."""

    def __init__(self, price: int, capacity: int, last_update: int) -> None:
        self.price = price
        self.capacity = capacity
        self.last_update = last_update

    def replace(self, **changes: int) -> Tick:
        fields = {"price": self.price, "capacity": self.capacity, "last_update": self.last_update}
        fields.update(changes)
        return Tick(**fields)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Tick):
            return NotImplemented
        return (self.price, self.capacity, self.last_update) == (other.price, other.capacity, other.last_update)

    def __repr__(self) -> str:
        return "Tick(price={}, capacity={}, last_update={})".format(self.price, self.capacity, self.last_update)

    def to_dict(self) -> Dict[str, int]:
        return {"price": self.price, "capacity": self.capacity, "last_update": self.last_update}


class AuctionParameters:
    """Daily target, standard tick size and price floor."""

    def __init__(self, target: int, tick_size: int, min_price: int) -> None:
        self.target = target
        self.tick_size = tick_size
        self.min_price = min_price

    def validate(self) -> None:
        if self.target < 0:
            raise InvalidParamsError("Target must be non-negative: {}".format(self.target))
        if self.tick_size <= 0:
            raise InvalidParamsError("Tick size must be positive: {}".format(self.tick_size))
        if self.min_price <= 0:
            raise InvalidParamsError("Min price must be positive: {}".format(self.min_price))

    def to_dict(self) -> Dict[str, int]:
        return {"target": self.target, "tick_size": self.tick_size, "min_price": self.min_price}


class DayState:
    """Output converted since the last daily reset."""

    def __init__(self, last_reset: int, converted: int = 0) -> None:
        self.last_reset = last_reset
        self.converted = converted

    def to_dict(self) -> Dict[str, int]:
        return {"last_reset": self.last_reset, "converted": self.converted}


class BidPreview:
    """Outcome of filling a deposit against a tick."""

    def __init__(self, output: int, deposit_spent: int, tick: Tick) -> None:
        self.output = output
        self.deposit_spent = deposit_spent
        self.tick = tick


class BidResult:
    """Outcome of a committed bid."""

    def __init__(
        self,
        output: int,
        deposit_spent: int,
        conversion_price: int,
        position_id: int,
        receipt_token_id: int,
        tick: Tick,
    ) -> None:
        self.output = output
        self.deposit_spent = deposit_spent
        self.conversion_price = conversion_price
        self.position_id = position_id
        self.receipt_token_id = receipt_token_id
        self.tick = tick

    def to_dict(self) -> Dict[str, Any]:
        return {
            "output": self.output,
            "deposit_spent": self.deposit_spent,
            "conversion_price": self.conversion_price,
            "position_id": self.position_id,
            "receipt_token_id": hex(self.receipt_token_id),
            "tick": self.tick.to_dict(),
        }


# ── Pure pricing functions ────────────────────────────────────────────────────

def next_tick_size(converted: int, params: AuctionParameters) -> int:
    """Tick size after `converted` output today.

    Standard size until the target is exceeded; then halved per whole
    multiple of the target, never below MIN_TICK_SIZE.
    """
    if params.target == 0 or converted <= params.target:
        return params.tick_size
    multiplier = converted // params.target
    size = params.tick_size // (2 * multiplier)
    return size if size > 0 else MIN_TICK_SIZE


def project_tick(
    tick: Tick,
    now: int,
    params: AuctionParameters,
    tick_step: int,
    enabled_count: int,
    current_tick_size: int,
) -> Tick:
    """Project a stored tick forward to `now`.

    Capacity grows by target × elapsed / day, split across enabled periods.
    Each full standard tick of growth decays the price by 1/tick_step.
    Nothing is written; last_update is carried through unchanged.
    """
    elapsed = max(0, now - tick.last_update)
    capacity_to_add = 0
    if enabled_count > 0:
        capacity_to_add = params.target * elapsed // SECONDS_PER_DAY // enabled_count
    if capacity_to_add == 0:
        if tick.capacity > current_tick_size:
            return tick.replace(capacity=current_tick_size)
        return tick

    price = tick.price
    new_capacity = tick.capacity + capacity_to_add
    while new_capacity > params.tick_size:
        new_capacity -= params.tick_size
        price = mul_div_up(price, ONE_HUNDRED_PERCENT, tick_step)
        if price < params.min_price:
            price = params.min_price
            new_capacity = params.tick_size
            break

    if new_capacity > current_tick_size:
        new_capacity = current_tick_size
    return Tick(price=price, capacity=new_capacity, last_update=tick.last_update)


def preview_fill(
    deposit: int,
    tick: Tick,
    params: AuctionParameters,
    tick_step: int,
    converted_today: int,
    output_scale: int = OUTPUT_SCALE,
) -> BidPreview:
    """Fill `deposit` against `tick`, stepping through price levels.

    Any deposit left once precision runs out is not spent.
    """
    remaining = deposit
    output = 0
    spent = 0
    price = tick.price
    capacity = tick.capacity

    while remaining > 0:
        candidate = mul_div(remaining, output_scale, price)
        if candidate == 0:
            break

        if candidate > capacity:
            tick_deposit = mul_div(capacity, price, output_scale)
            if tick_deposit == 0 and capacity > 0:
                # capacity too small to price at this level
                break
            output += capacity
            spent += tick_deposit
            remaining -= tick_deposit
            price = mul_div_up(price, tick_step, ONE_HUNDRED_PERCENT)
            capacity = next_tick_size(converted_today + output, params)
        else:
            capacity -= candidate
            output += candidate
            spent += remaining
            remaining = 0

    return BidPreview(
        output=output,
        deposit_spent=spent,
        tick=Tick(price=price, capacity=capacity, last_update=tick.last_update),
    )


# ── Auction engine ────────────────────────────────────────────────────────────

class AuctionEngine(Transactional):
    """Continuous auction for one reserve asset."""

    _state_attrs = (
        "_enabled",
        "_params",
        "_tick_step",
        "_ticks",
        "_periods",
        "_day",
        "_results",
        "_results_next_index",
    )

    def __init__(
        self,
        asset: str,
        facility: Any,
        clock: Any = None,
        output_scale: int = OUTPUT_SCALE,
        events: Optional[EventLog] = None,
        coordinator: Optional[StateCoordinator] = None,
        address: Optional[str] = None,
    ) -> None:
        self.asset = asset
        self.facility = facility
        self.clock = clock or SystemClock()
        self.output_scale = output_scale
        self.address = address or "auctioneer:{}".format(asset)
        self.coordinator = ensure_coordinator(coordinator)
        self.events = events or EventLog(self.coordinator)
        self.coordinator.register(self)
        self._entered = False

        self._enabled = False
        self._params = None  # type: Optional[AuctionParameters]
        self._tick_step = DEFAULT_TICK_STEP
        self._ticks = {}  # type: Dict[int, Tick]
        self._periods = []  # type: List[int]
        self._day = DayState(self.clock.now())
        self._results = [0] * DEFAULT_AUCTION_TRACKING_PERIOD  # type: List[int]
        self._results_next_index = 0

    # ── Internal helpers ──────────────────────────────────────────────────────

    def _emit(self, event_type: str, **details: Any) -> None:
        self.events.log_event(event_type, self.clock.now(), asset=self.asset, operator=self.address, details=details)

    def _require_params(self) -> AuctionParameters:
        if self._params is None:
            raise InvalidStateError("Auction parameters not configured for {}".format(self.asset))
        return self._params

    def _require_enabled(self) -> None:
        if not self._enabled:
            raise InvalidStateError("Auction disabled for {}".format(self.asset))

    def _require_period(self, period_months: int) -> None:
        if period_months not in self._ticks:
            raise InvalidStateError("Deposit period not enabled: {}".format(period_months))

    @staticmethod
    def _check_tick_step(tick_step: int) -> None:
        if tick_step < ONE_HUNDRED_PERCENT:
            raise InvalidParamsError(
                "Tick step must be at least {}: {}".format(ONE_HUNDRED_PERCENT, tick_step)
            )

    def _converted_today(self, now: int) -> int:
        if now >= self._day.last_reset + SECONDS_PER_DAY:
            return 0
        return self._day.converted

    def _roll_day(self, now: int) -> None:
        if now >= self._day.last_reset + SECONDS_PER_DAY:
            self._day = DayState(now)

    def _current_tick_size_at(self, now: int) -> int:
        return next_tick_size(self._converted_today(now), self._require_params())

    def _project(self, period_months: int, now: int) -> Tick:
        return project_tick(
            self._ticks[period_months],
            now,
            self._require_params(),
            self._tick_step,
            len(self._periods),
            self._current_tick_size_at(now),
        )

    def _snapshot_ticks(self, now: int) -> None:
        """Materialize every enabled period's tick at `now`."""
        for period in self._periods:
            tick = self._project(period, now).replace(last_update=now)
            logger.debug("Tick snapshot: asset=%s period=%d %r", self.asset, period, tick)
            self._ticks[period] = tick

    # ── Views ─────────────────────────────────────────────────────────────────

    @property
    def is_enabled(self) -> bool:
        return self._enabled

    def get_auction_parameters(self) -> AuctionParameters:
        params = self._require_params()
        return AuctionParameters(params.target, params.tick_size, params.min_price)

    def get_tick_step(self) -> int:
        return self._tick_step

    def get_day_state(self) -> DayState:
        now = self.clock.now()
        if now >= self._day.last_reset + SECONDS_PER_DAY:
            return DayState(self._day.last_reset, 0)
        return DayState(self._day.last_reset, self._day.converted)

    def get_deposit_periods(self) -> List[int]:
        return list(self._periods)

    def is_deposit_period_enabled(self, period_months: int) -> bool:
        return period_months in self._ticks

    def get_current_tick_size(self) -> int:
        return self._current_tick_size_at(self.clock.now())

    def get_stored_tick(self, period_months: int) -> Tick:
        self._require_period(period_months)
        return self._ticks[period_months].replace()

    def get_current_tick(self, period_months: int) -> Tick:
        """Tick projected to now. Does not write."""
        self._require_period(period_months)
        return self._project(period_months, self.clock.now())

    def get_auction_results(self) -> List[int]:
        return list(self._results)

    def get_auction_results_next_index(self) -> int:
        return self._results_next_index

    def preview_bid(self, period_months: int, deposit_amount: int) -> BidPreview:
        """Output and deposit spent for a bid placed now. Does not write."""
        self._require_enabled()
        self._require_period(period_months)
        if deposit_amount <= 0:
            raise InvalidParamsError("Deposit amount must be positive: {}".format(deposit_amount))
        now = self.clock.now()
        return preview_fill(
            deposit_amount,
            self._project(period_months, now),
            self._require_params(),
            self._tick_step,
            self._converted_today(now),
            self.output_scale,
        )

    # ── Bidding ───────────────────────────────────────────────────────────────

    @nonreentrant
    def bid(
        self,
        bidder: str,
        period_months: int,
        deposit_amount: int,
        min_output: int = 0,
        wrap_position: bool = False,
    ) -> BidResult:
        """Convert a deposit into output at the auction price.

        Only the deposit actually consumed is pulled from the bidder.
        """
        preview = self.preview_bid(period_months, deposit_amount)
        if preview.output == 0:
            raise ConvertedAmountZeroError(
                "Bid of {} converts to zero at price {}".format(deposit_amount, preview.tick.price)
            )
        if preview.output < min_output:
            raise SlippageError(
                "Output {} below minimum {}".format(preview.output, min_output)
            )

        now = self.clock.now()
        self._roll_day(now)
        self._day.converted += preview.output
        capacity = min(preview.tick.capacity, self._current_tick_size_at(now))
        self._ticks[period_months] = preview.tick.replace(capacity=capacity, last_update=now)

        conversion_price = mul_div_up(preview.deposit_spent, self.output_scale, preview.output)
        position_id, receipt_token_id, _actual = self.facility.create_position(
            self.address,
            bidder,
            self.asset,
            period_months,
            preview.deposit_spent,
            conversion_price,
            wrap_position,
        )

        self._emit(
            "BID",
            bidder=bidder,
            period_months=period_months,
            deposit_in=preview.deposit_spent,
            output=preview.output,
            conversion_price=conversion_price,
            position_id=position_id,
        )
        logger.info(
            "Bid: asset=%s period=%d bidder=%s deposit=%d output=%d price=%d tick_price=%d capacity=%d",
            self.asset, period_months, bidder, preview.deposit_spent, preview.output,
            conversion_price, preview.tick.price, capacity,
        )
        return BidResult(
            output=preview.output,
            deposit_spent=preview.deposit_spent,
            conversion_price=conversion_price,
            position_id=position_id,
            receipt_token_id=receipt_token_id,
            tick=self._ticks[period_months].replace(),
        )

    # ── Admin ─────────────────────────────────────────────────────────────────

    @nonreentrant
    def enable(
        self,
        target: int,
        tick_size: int,
        min_price: int,
        tick_step: int = DEFAULT_TICK_STEP,
        tracking_period: int = DEFAULT_AUCTION_TRACKING_PERIOD,
    ) -> None:
        """Enable the auction; every enabled period is reseeded at min price."""
        if self._enabled:
            raise InvalidStateError("Auction already enabled for {}".format(self.asset))
        params = AuctionParameters(target, tick_size, min_price)
        params.validate()
        self._check_tick_step(tick_step)
        if tracking_period <= 0:
            raise InvalidParamsError("Tracking period must be positive: {}".format(tracking_period))

        now = self.clock.now()
        self._params = params
        self._tick_step = tick_step
        self._results = [0] * tracking_period
        self._results_next_index = 0
        self._day = DayState(now)
        for period in self._periods:
            self._ticks[period] = Tick(min_price, tick_size, now)
        self._enabled = True

        self._emit("AUCTION_ENABLED", tick_step=tick_step, tracking_period=tracking_period, **params.to_dict())
        logger.info(
            "Auction enabled: asset=%s target=%d tick_size=%d min_price=%d tick_step=%d",
            self.asset, target, tick_size, min_price, tick_step,
        )

    @nonreentrant
    def disable(self) -> None:
        self._require_enabled()
        self._enabled = False
        self._emit("AUCTION_DISABLED")
        logger.info("Auction disabled: asset=%s", self.asset)

    @nonreentrant
    def enable_deposit_period(self, period_months: int) -> None:
        """Open a deposit period; its tick is seeded at (min_price, tick_size)."""
        params = self._require_params()
        if period_months <= 0:
            raise InvalidParamsError("Deposit period must be positive: {}".format(period_months))
        if period_months in self._ticks:
            raise InvalidStateError("Deposit period already enabled: {}".format(period_months))

        now = self.clock.now()
        # growth is split by the enabled count, so settle the others first
        self._snapshot_ticks(now)
        self._periods.append(period_months)
        self._ticks[period_months] = Tick(params.min_price, params.tick_size, now)
        self._emit("PERIOD_ENABLED", period_months=period_months)
        logger.info("Deposit period enabled: asset=%s period=%d", self.asset, period_months)

    @nonreentrant
    def disable_deposit_period(self, period_months: int) -> None:
        self._require_period(period_months)
        now = self.clock.now()
        self._snapshot_ticks(now)
        self._periods.remove(period_months)
        del self._ticks[period_months]
        self._emit("PERIOD_DISABLED", period_months=period_months)
        logger.info("Deposit period disabled: asset=%s period=%d", self.asset, period_months)

    @nonreentrant
    def set_auction_parameters(self, target: int, tick_size: int, min_price: int) -> None:
        """Replace target, tick size and min price.

        Ticks are materialized under the old parameters, then clamped into
        the new bounds. The day's over/under-subscription against the old
        target is recorded and the day accumulator reset.
        """
        previous = self._require_params()
        params = AuctionParameters(target, tick_size, min_price)
        params.validate()

        now = self.clock.now()
        self._snapshot_ticks(now)
        converted = self._converted_today(now)
        self._params = params

        for period in self._periods:
            tick = self._ticks[period]
            if tick.capacity > tick_size:
                tick.capacity = tick_size
            if tick.price < min_price:
                tick.price = min_price

        if self._enabled:
            result = converted - previous.target
            self._results[self._results_next_index] = result
            self._results_next_index = (self._results_next_index + 1) % len(self._results)
            self._emit("AUCTION_RESULT_RECORDED", result=result, converted=converted, target=previous.target)

        self._day = DayState(now)
        self._emit("AUCTION_PARAMETERS_UPDATED", **params.to_dict())
        logger.info(
            "Auction parameters updated: asset=%s target=%d tick_size=%d min_price=%d (day converted=%d)",
            self.asset, target, tick_size, min_price, converted,
        )

    @nonreentrant
    def set_tick_step(self, tick_step: int) -> None:
        self._check_tick_step(tick_step)
        if self._params is not None:
            self._snapshot_ticks(self.clock.now())
        self._tick_step = tick_step
        self._emit("TICK_STEP_UPDATED", tick_step=tick_step)
        logger.info("Tick step updated: asset=%s tick_step=%d", self.asset, tick_step)

    @nonreentrant
    def set_auction_tracking_period(self, days: int) -> None:
        """Resize the result buffer; previous results are discarded."""
        if days <= 0:
            raise InvalidParamsError("Tracking period must be positive: {}".format(days))
        self._results = [0] * days
        self._results_next_index = 0
        self._emit("AUCTION_TRACKING_PERIOD_UPDATED", days=days)
        logger.info("Auction tracking period updated: asset=%s days=%d", self.asset, days)

    @property
    def stats(self) -> Dict[str, Any]:
        now = self.clock.now()
        return {
            "asset": self.asset,
            "enabled": self._enabled,
            "parameters": self._params.to_dict() if self._params else None,
            "tick_step": self._tick_step,
            "day": self.get_day_state().to_dict(),
            "current_tick_size": self._current_tick_size_at(now) if self._params else None,
            "ticks": {
                str(p): self._project(p, now).to_dict() for p in self._periods
            } if self._params else {},
            "auction_results": list(self._results),
        }
