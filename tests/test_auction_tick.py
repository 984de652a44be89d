"""Tests for the pure tick projection, tick sizing and fill functions."""

from cdauction.auction import (
    AuctionParameters,
    Tick,
    next_tick_size,
    preview_fill,
    project_tick,
)
from cdauction.constants import MIN_TICK_SIZE, SECONDS_PER_DAY

S = 10 ** 9
T0 = 1_700_000_000
PARAMS = AuctionParameters(target=1000, tick_size=100, min_price=S)


# ── next_tick_size ────────────────────────────────────────────────────────────

def test_tick_size_standard_until_target() -> None:
    """Standard size while converted is at or below the target."""
    assert next_tick_size(0, PARAMS) == 100
    assert next_tick_size(1000, PARAMS) == 100


def test_tick_size_halves_per_target_multiple() -> None:
    """Above target the size shrinks by 2 × whole multiples."""
    assert next_tick_size(1001, PARAMS) == 50
    assert next_tick_size(2000, PARAMS) == 25
    assert next_tick_size(3999, PARAMS) == 16


def test_tick_size_floor() -> None:
    """Never below the minimum tick size."""
    assert next_tick_size(10 ** 9, PARAMS) == MIN_TICK_SIZE


def test_tick_size_zero_target() -> None:
    """A zero target never shrinks the tick."""
    params = AuctionParameters(target=0, tick_size=100, min_price=S)
    assert next_tick_size(10 ** 6, params) == 100


# ── project_tick ──────────────────────────────────────────────────────────────

def test_project_no_elapsed_time() -> None:
    """Zero growth returns the stored tick."""
    tick = Tick(price=2 * S, capacity=40, last_update=T0)
    assert project_tick(tick, T0, PARAMS, 11000, 1, 100) == tick


def test_project_zero_growth_caps_capacity() -> None:
    """Zero growth still caps capacity to the current tick size."""
    tick = Tick(price=2 * S, capacity=80, last_update=T0)
    projected = project_tick(tick, T0 + 10, PARAMS, 11000, 1, 50)
    assert projected.capacity == 50
    assert projected.price == 2 * S


def test_project_partial_day_decay() -> None:
    """A quarter day adds 250 capacity: two full ticks of price decay."""
    tick = Tick(price=1_464_100_000, capacity=42, last_update=T0)
    projected = project_tick(tick, T0 + SECONDS_PER_DAY // 4, PARAMS, 11000, 1, 100)
    assert projected.price == 1_210_000_000
    assert projected.capacity == 92
    assert projected.last_update == T0


def test_project_decays_to_min_price() -> None:
    """A full idle day decays to the floor and refills one standard tick."""
    tick = Tick(price=1_464_100_000, capacity=42, last_update=T0)
    projected = project_tick(tick, T0 + SECONDS_PER_DAY, PARAMS, 11000, 1, 100)
    assert projected.price == S
    assert projected.capacity == 100


def test_project_idle_days_monotone_decay() -> None:
    """With no activity the price only falls, and never below min price."""
    tick = Tick(price=3 * S, capacity=0, last_update=T0)
    last = tick.price
    for hours in range(1, 72):
        projected = project_tick(tick, T0 + hours * 3600, PARAMS, 11000, 1, 100)
        assert projected.price <= last
        assert projected.price >= PARAMS.min_price
        assert projected.capacity <= 100
        last = projected.price
    assert last == S


def test_project_growth_split_across_periods() -> None:
    """Capacity growth is divided by the enabled period count."""
    tick = Tick(price=2 * S, capacity=0, last_update=T0)
    one = project_tick(tick, T0 + SECONDS_PER_DAY // 20, PARAMS, 11000, 1, 100)
    two = project_tick(tick, T0 + SECONDS_PER_DAY // 20, PARAMS, 11000, 2, 100)
    assert one.capacity == 50
    assert two.capacity == 25


def test_project_no_enabled_periods() -> None:
    """Nothing grows when no period is enabled."""
    tick = Tick(price=2 * S, capacity=10, last_update=T0)
    assert project_tick(tick, T0 + SECONDS_PER_DAY, PARAMS, 11000, 0, 100) == tick


def test_project_zero_target_freezes_tick() -> None:
    """Target 0 adds no capacity and so never decays the price."""
    params = AuctionParameters(target=0, tick_size=100, min_price=S)
    tick = Tick(price=1_100_000_000, capacity=55, last_update=T0)
    projected = project_tick(tick, T0 + 30 * SECONDS_PER_DAY, params, 11000, 1, 100)
    assert projected == tick


# ── preview_fill ──────────────────────────────────────────────────────────────

def test_fill_partial_tick() -> None:
    """A bid smaller than the tick consumes capacity at one price."""
    tick = Tick(price=S, capacity=100, last_update=T0)
    preview = preview_fill(60, tick, PARAMS, 11000, 0)
    assert preview.output == 60
    assert preview.deposit_spent == 60
    assert preview.tick.capacity == 40
    assert preview.tick.price == S


def test_fill_ratchets_price_across_ticks() -> None:
    """550 at a 110% step: four full ticks then a partial fifth."""
    tick = Tick(price=S, capacity=100, last_update=T0)
    preview = preview_fill(550, tick, PARAMS, 11000, 0)
    assert preview.output == 458
    assert preview.deposit_spent == 550
    assert preview.tick.price == 1_464_100_000
    assert preview.tick.capacity == 42


def test_fill_flat_step_five_full_ticks() -> None:
    """At a 100% step, 550 fills five full ticks and part of a sixth."""
    tick = Tick(price=S, capacity=100, last_update=T0)
    preview = preview_fill(550, tick, PARAMS, 10000, 0)
    assert preview.output == 550
    assert preview.tick.price == S
    assert preview.tick.capacity == 50


def test_fill_shrinks_tick_above_target() -> None:
    """Once the day's output passes the target, new ticks are halved."""
    tick = Tick(price=S, capacity=100, last_update=T0)
    preview = preview_fill(1200, tick, PARAMS, 10000, 0)
    assert preview.output == 1200
    assert preview.deposit_spent == 1200
    assert preview.tick.capacity == 0


def test_fill_counts_earlier_output_today() -> None:
    """Output converted earlier in the day shrinks the next tick."""
    tick = Tick(price=S, capacity=10, last_update=T0)
    preview = preview_fill(20, tick, PARAMS, 10000, 995)
    assert preview.output == 20
    assert preview.tick.capacity == 40


def test_fill_precision_exhausted() -> None:
    """Deposit too small to buy one output unit spends nothing."""
    tick = Tick(price=3 * S, capacity=100, last_update=T0)
    preview = preview_fill(2, tick, PARAMS, 11000, 0)
    assert preview.output == 0
    assert preview.deposit_spent == 0
    assert preview.tick == tick


def test_fill_price_only_rises() -> None:
    """Within one bid the tick price never decreases."""
    tick = Tick(price=S, capacity=100, last_update=T0)
    previous = tick.price
    for amount in (1, 99, 100, 101, 550, 5000):
        preview = preview_fill(amount, tick, PARAMS, 11000, 0)
        assert preview.tick.price >= previous
        assert preview.deposit_spent <= amount
