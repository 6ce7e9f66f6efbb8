"""Tests for the adaptive interval, the copy pipeline and the poller loop."""

import asyncio
from decimal import Decimal

import pytest

from copytrade_common.enums import MovementStatus, RateSignal
from copytrade_common.errors import ExposureCapReached, UpstreamRateLimited, UpstreamUnavailable

from copy_trader.config import ServiceSettings
from copy_trader.pipeline import CopyPipeline
from copy_trader.planner import MovementPlanner
from copy_trader.poller import (
    AdaptiveInterval,
    AdaptivePoller,
    PollBounds,
    on_rate_limited,
    on_success,
)
from copy_trader.recorder import Recorder
from copy_trader.settlement import SettlementEngine
from copy_trader.types import ClosedPosition, LeaderActivity, LeaderMovement

from conftest import D, make_config, make_movement

BOUNDS = PollBounds(floor_ms=500, ceiling_ms=2000, decrease_step_ms=100, increase_step_ms=250)


# ============== Interval state machine ==============

@pytest.mark.parametrize("n", range(0, 10))
def test_interval_after_consecutive_rate_limits(n):
    state = AdaptiveInterval.initial(1000, BOUNDS)
    for _ in range(n):
        state = on_rate_limited(state, BOUNDS)

    assert state.interval_ms == min(BOUNDS.ceiling_ms, 1000 + n * 250)
    assert state.consecutive_rate_limits == n


def test_success_steps_down_to_floor():
    state = AdaptiveInterval.initial(800, BOUNDS)
    seen = []
    for _ in range(6):
        state = on_success(state, BOUNDS)
        seen.append(state.interval_ms)

    assert seen == [700, 600, 500, 500, 500, 500]
    assert state.last_signal == RateSignal.OK


def test_success_resets_rate_limit_streak():
    state = on_rate_limited(AdaptiveInterval.initial(1000, BOUNDS), BOUNDS)
    state = on_success(state, BOUNDS)

    assert state.consecutive_rate_limits == 0
    assert state.interval_ms == 1150


def test_interval_never_leaves_bounds():
    state = AdaptiveInterval.initial(5000, BOUNDS)
    assert state.interval_ms == 2000

    signals = [on_rate_limited, on_success, on_success, on_rate_limited] * 20 + [on_success] * 30
    for signal in signals:
        state = signal(state, BOUNDS)
        assert BOUNDS.floor_ms <= state.interval_ms <= BOUNDS.ceiling_ms


def test_initial_interval_clamped_to_floor():
    assert AdaptiveInterval.initial(50, BOUNDS).interval_ms == 500
    assert AdaptiveInterval.initial(50, BOUNDS).last_signal == RateSignal.NONE


def test_bounds_from_settings():
    settings = ServiceSettings()
    normal = PollBounds.from_settings(settings, make_config())
    fast = PollBounds.from_settings(settings, make_config(simulation_mode=True))

    assert normal.floor_ms == 500
    assert normal.increase_step_ms == 250
    assert fast.floor_ms == 50


# ============== Pipeline ==============

class FakeExecutor:
    def __init__(self, filled: Decimal):
        self.filled = filled
        self.calls = []

    async def execute(self, movement):
        self.calls.append(movement.movement_id)
        return self.filled


def make_pipeline(ledger, executor=None) -> CopyPipeline:
    return CopyPipeline(MovementPlanner(ledger), Recorder(ledger), executor)


def test_pipeline_dry_run_records_planned_value(ledger):
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D(100))
    result = asyncio.run(make_pipeline(ledger).process(make_config(), leader, D(25000)))

    assert result.recorded
    assert result.record.movement.copied_value == D(4)
    assert ledger.get("0xa").status == MovementStatus.RECORDED


def test_pipeline_records_executed_fill(ledger):
    executor = FakeExecutor(D("3.5"))
    config = make_config(execute_orders=True)
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D(100))

    result = asyncio.run(make_pipeline(ledger, executor).process(config, leader, D(25000)))

    assert executor.calls == ["0xa"]
    assert result.record.movement.copied_value == D("3.5")
    assert result.record.movement.diff_pct == D("-12.5")


def seed_exposure(ledger, value):
    Recorder(ledger).record(make_movement("seed", copied=value, market_id="other"))


def test_pipeline_clamps_fill_to_exposure_headroom(ledger):
    seed_exposure(ledger, "690")
    executor = FakeExecutor(D(40))
    config = make_config(execute_orders=True)
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D(1000))

    result = asyncio.run(make_pipeline(ledger, executor).process(config, leader, D(25000)))

    assert result.planned.plan.capped_size == D(10)
    assert result.record.movement.copied_value == D(10)
    assert ledger.exposure == D(700)
    assert ledger.exposure <= config.max_total_exposure_usd


class CompetingExecutor:
    """Records another movement while the order is in the market."""

    def __init__(self, ledger, config):
        self.recorder = Recorder(ledger)
        self.config = config

    async def execute(self, movement):
        self.recorder.record(make_movement("operator", copied="8"), config=self.config)
        return movement.copied_value


def test_pipeline_fill_refused_when_headroom_taken_during_execution(ledger):
    seed_exposure(ledger, "690")
    config = make_config(execute_orders=True)
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D(1000))
    pipeline = make_pipeline(ledger, CompetingExecutor(ledger, config))

    with pytest.raises(ExposureCapReached):
        asyncio.run(pipeline.process(config, leader, D(25000)))

    assert ledger.get("0xa") is None
    assert ledger.exposure == D(698)


def test_pipeline_rejection_not_recorded(ledger):
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D("12.5"))
    result = asyncio.run(make_pipeline(ledger).process(make_config(), leader, D(25000)))

    assert not result.recorded
    assert len(ledger) == 0


def test_pipeline_simulation_prefix(ledger):
    leader = LeaderMovement(movement_id="0xa", market_id="m", value=D(100))
    config = make_config(simulation_mode=True, poll_interval_ms=100)
    asyncio.run(make_pipeline(ledger).process(config, leader, D(25000)))

    assert ledger.get("sim-0xa") is not None
    assert ledger.get("0xa") is None


# ============== Poller ==============

class FakeSource:
    """Returns scripted results in order, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    async def fetch_activity(self, leader_address):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


class SlowSource:
    async def fetch_activity(self, leader_address):
        await asyncio.sleep(1)


def activity(*movements, closed=()):
    return LeaderActivity(
        positions_value=D(25000), movements=tuple(movements), closed_positions=tuple(closed)
    )


def trade(tx: str, value="100", ts=1767225600):
    return LeaderMovement(movement_id=tx, market_id="will-it-rain", value=D(value), timestamp=ts)


def make_poller(ledger, source, config=None, timeout=1.0) -> AdaptivePoller:
    return AdaptivePoller(
        source=source,
        pipeline=make_pipeline(ledger),
        settlement=SettlementEngine(ledger),
        ledger=ledger,
        config=config or make_config(),
        bounds=BOUNDS,
        fetch_timeout_seconds=timeout,
    )


def test_tick_records_new_movements_once(ledger):
    source = FakeSource(activity(trade("0xa"), trade("0xb", "500")))
    poller = make_poller(ledger, source)

    assert asyncio.run(poller.tick()) == 2
    assert asyncio.run(poller.tick()) == 0
    assert len(ledger) == 2
    assert poller.interval_ms == 800
    assert not poller.degraded


def test_tick_skips_movements_already_in_ledger(ledger):
    first = make_poller(ledger, FakeSource(activity(trade("0xa"))))
    asyncio.run(first.tick())

    restarted = make_poller(ledger, FakeSource(activity(trade("0xa"))))
    assert asyncio.run(restarted.tick()) == 0
    assert len(ledger) == 1


def test_tick_rate_limited_backs_off(ledger):
    poller = make_poller(ledger, FakeSource(UpstreamRateLimited("429")))

    for _ in range(3):
        assert asyncio.run(poller.tick()) == 0

    status = poller.status()
    assert status["interval_ms"] == 1750
    assert status["last_signal"] == "rate_limited"
    assert status["degraded"]
    assert status["warning"]
    assert len(ledger) == 0


def test_tick_unavailable_is_skipped(ledger):
    source = FakeSource(UpstreamUnavailable("boom"), activity(trade("0xa")))
    poller = make_poller(ledger, source)

    assert asyncio.run(poller.tick()) == 0
    assert poller.failed_ticks == 1
    assert poller.degraded
    assert poller.interval_ms == 1000

    assert asyncio.run(poller.tick()) == 1
    assert not poller.degraded
    assert poller.status()["warning"] is None


def test_tick_timeout_is_failed_tick(ledger):
    poller = make_poller(ledger, SlowSource(), timeout=0.01)

    assert asyncio.run(poller.tick()) == 0
    assert poller.failed_ticks == 1
    assert len(ledger) == 0


def test_tick_settles_closed_positions(ledger):
    source = FakeSource(
        activity(trade("0xa")),
        activity(closed=[ClosedPosition("will-it-rain", D(5), D(10), 0)]),
    )
    poller = make_poller(ledger, source)

    asyncio.run(poller.tick())
    asyncio.run(poller.tick())

    assert ledger.get("0xa").status == MovementStatus.SETTLED
    assert ledger.get("0xa").pnl == D(2)
    assert poller.settled == 1


def test_tick_rejections_are_not_errors(ledger):
    source = FakeSource(activity(trade("0xsmall", "12.5"), trade("0xa")))
    poller = make_poller(ledger, source)

    assert asyncio.run(poller.tick()) == 1
    assert ledger.get("0xsmall") is None


def test_run_stops_gracefully(ledger):
    source = FakeSource(activity(trade("0xa")))
    poller = make_poller(ledger, source)

    async def scenario():
        task = poller.start()
        assert poller.running
        await asyncio.sleep(0.05)
        poller.stop()
        await asyncio.wait_for(task, timeout=1)

    asyncio.run(scenario())

    assert not poller.running
    assert poller.ticks == 1
    assert len(ledger) == 1


def test_run_honours_shutdown_event(ledger):
    poller = make_poller(ledger, FakeSource(activity()))

    async def scenario():
        shutdown = asyncio.Event()
        shutdown.set()
        await asyncio.wait_for(poller.run(shutdown), timeout=1)

    asyncio.run(scenario())
    assert poller.ticks == 0
