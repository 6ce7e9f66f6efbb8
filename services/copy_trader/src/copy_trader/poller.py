"""Adaptive poller - watches the leader account and feeds the copy pipeline."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from copytrade_common.enums import RateSignal
from copytrade_common.errors import CopyTradeError, UpstreamRateLimited, UpstreamUnavailable
from copytrade_common.time import utc_now_iso
from copytrade_common.util import clamp

from .config import CopyConfig, ServiceSettings
from .ledger import LedgerStore
from .pipeline import CopyPipeline
from .settlement import SettlementEngine
from .types import LeaderActivity

logger = logging.getLogger(__name__)

# Upper bound on remembered leader trade ids; older ids fall back to the ledger check
SEEN_IDS_LIMIT = 5000


# ============== Interval state machine ==============

@dataclass(frozen=True, slots=True)
class PollBounds:
    """Limits and step sizes of the adaptive interval, in milliseconds."""
    floor_ms: int
    ceiling_ms: int
    decrease_step_ms: int = 100
    increase_step_ms: int = 250

    @classmethod
    def from_settings(cls, settings: ServiceSettings, config: CopyConfig) -> "PollBounds":
        """Realtime and simulation runs may poll below the service floor."""
        floor = settings.poll_floor_ms
        if config.realtime_mode or config.simulation_mode:
            floor = min(floor, config.min_poll_ms)
        return cls(
            floor_ms=floor,
            ceiling_ms=max(floor, settings.poll_ceiling_ms),
            decrease_step_ms=settings.poll_decrease_step_ms,
            increase_step_ms=settings.poll_increase_step_ms,
        )


@dataclass(frozen=True, slots=True)
class AdaptiveInterval:
    """Current poll interval tagged with the last upstream signal."""
    interval_ms: int
    last_signal: RateSignal = RateSignal.NONE
    consecutive_rate_limits: int = 0

    @classmethod
    def initial(cls, interval_ms: int, bounds: PollBounds) -> "AdaptiveInterval":
        return cls(interval_ms=clamp(interval_ms, bounds.floor_ms, bounds.ceiling_ms))


def on_success(state: AdaptiveInterval, bounds: PollBounds) -> AdaptiveInterval:
    """Successful poll: step down toward the floor."""
    return AdaptiveInterval(
        interval_ms=clamp(
            state.interval_ms - bounds.decrease_step_ms, bounds.floor_ms, bounds.ceiling_ms
        ),
        last_signal=RateSignal.OK,
    )


def on_rate_limited(state: AdaptiveInterval, bounds: PollBounds) -> AdaptiveInterval:
    """Rate-limit signal: grow by one fixed step, up to the ceiling."""
    return AdaptiveInterval(
        interval_ms=clamp(
            state.interval_ms + bounds.increase_step_ms, bounds.floor_ms, bounds.ceiling_ms
        ),
        last_signal=RateSignal.RATE_LIMITED,
        consecutive_rate_limits=state.consecutive_rate_limits + 1,
    )


# ============== Poller ==============

class ActivitySource(Protocol):
    async def fetch_activity(self, leader_address: str) -> LeaderActivity: ...


class AdaptivePoller:
    """
    Long-lived polling task.

    Each tick fetches leader activity, settles open movements the
    leader has closed, and hands unseen trades to the copy pipeline.
    Upstream failures skip the tick; they never stop the loop.
    """

    def __init__(
        self,
        source: ActivitySource,
        pipeline: CopyPipeline,
        settlement: SettlementEngine,
        ledger: LedgerStore,
        config: CopyConfig,
        bounds: PollBounds,
        fetch_timeout_seconds: float = 15.0,
    ):
        """
        Initialize the poller.

        Args:
            source: Leader activity source
            pipeline: Copy pipeline for new movements
            settlement: Settlement engine for closed positions
            ledger: Ledger the pipeline records into
            config: Risk parameters for this run
            bounds: Adaptive interval limits
            fetch_timeout_seconds: A slower fetch counts as a failed tick
        """
        self.source = source
        self.pipeline = pipeline
        self.settlement = settlement
        self.ledger = ledger
        self.config = config
        self.bounds = bounds
        self.fetch_timeout_seconds = fetch_timeout_seconds

        self.state = AdaptiveInterval.initial(config.poll_interval_ms, bounds)

        self._running = False
        self._wake = asyncio.Event()
        self._seen: dict[str, None] = {}

        # Status
        self._warning: Optional[str] = None
        self._last_tick_failed = False
        self._last_tick_at: Optional[str] = None
        self.ticks = 0
        self.failed_ticks = 0
        self.copied = 0
        self.settled = 0

    @property
    def running(self) -> bool:
        return self._running

    @property
    def interval_ms(self) -> int:
        return self.state.interval_ms

    @property
    def degraded(self) -> bool:
        return self._last_tick_failed or self.state.last_signal == RateSignal.RATE_LIMITED

    def _remember(self, trade_id: str) -> bool:
        """Mark a trade id as seen. Returns False if it already was."""
        if trade_id in self._seen:
            return False
        self._seen[trade_id] = None
        if len(self._seen) > SEEN_IDS_LIMIT:
            del self._seen[next(iter(self._seen))]
        return True

    async def tick(self) -> int:
        """
        Run one poll cycle.

        Returns:
            Number of movements recorded this cycle
        """
        self.ticks += 1
        self._last_tick_at = utc_now_iso()
        leader = self.config.leader_address

        try:
            activity = await asyncio.wait_for(
                self.source.fetch_activity(leader), timeout=self.fetch_timeout_seconds
            )
        except UpstreamRateLimited as e:
            self.state = on_rate_limited(self.state, self.bounds)
            self._last_tick_failed = True
            self.failed_ticks += 1
            self._warning = f"Rate limited, polling every {self.state.interval_ms} ms"
            logger.warning(f"{e}; interval -> {self.state.interval_ms} ms")
            return 0
        except UpstreamUnavailable as e:
            self._last_tick_failed = True
            self.failed_ticks += 1
            self._warning = f"Leader activity unavailable: {e}"
            logger.warning(f"Tick #{self.ticks} skipped: {e}")
            return 0
        except asyncio.TimeoutError:
            self._last_tick_failed = True
            self.failed_ticks += 1
            self._warning = f"Leader activity timed out after {self.fetch_timeout_seconds}s"
            logger.warning(f"Tick #{self.ticks} skipped: fetch timed out")
            return 0

        self.state = on_success(self.state, self.bounds)
        self._last_tick_failed = False
        self._warning = None

        if activity.closed_positions:
            settled = self.settlement.settle_from_closed_positions(activity.closed_positions)
            self.settled += len(settled)

        recorded = 0
        for movement in sorted(activity.movements, key=lambda m: m.timestamp):
            if not self._remember(movement.movement_id):
                continue
            movement_id = self.pipeline.movement_id_for(self.config, movement)
            if self.ledger.get(movement_id) is not None:
                continue
            try:
                result = await self.pipeline.process(
                    self.config, movement, activity.positions_value
                )
            except CopyTradeError as e:
                logger.warning(f"Movement {movement_id} not copied: {e}")
                continue
            if result.recorded:
                recorded += 1

        self.copied += recorded
        logger.debug(
            f"Tick #{self.ticks}: {len(activity.movements)} trades, {recorded} recorded, "
            f"next in {self.state.interval_ms} ms"
        )
        return recorded

    async def _sleep(self, seconds: float) -> None:
        """Sleep that returns early when stop() is called."""
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    def start(self, shutdown_event: Optional[asyncio.Event] = None) -> asyncio.Task:
        """Schedule the polling loop as a task; running is set before it first runs."""
        self._running = True
        self._wake.clear()
        return asyncio.create_task(self._loop(shutdown_event), name="poller")

    async def run(self, shutdown_event: Optional[asyncio.Event] = None) -> None:
        """
        Main polling loop.

        Runs until stop() or the shutdown event; the in-flight tick is
        finished before the loop exits.
        """
        self._running = True
        self._wake.clear()
        await self._loop(shutdown_event)

    async def _loop(self, shutdown_event: Optional[asyncio.Event]) -> None:
        logger.info(
            f"Poller started for {self.config.leader_address} "
            f"(interval={self.state.interval_ms} ms, "
            f"bounds=[{self.bounds.floor_ms}, {self.bounds.ceiling_ms}])"
        )

        while self._running:
            if shutdown_event and shutdown_event.is_set():
                break

            try:
                await self.tick()
            except Exception as e:
                self._last_tick_failed = True
                self.failed_ticks += 1
                self._warning = f"Tick error: {e}"
                logger.error(f"Poller error: {e}")

            if not self._running:
                break
            await self._sleep(self.state.interval_ms / 1000)

        self._running = False
        logger.info("Poller stopped")

    def stop(self) -> None:
        """Stop scheduling ticks."""
        self._running = False
        self._wake.set()

    def status(self) -> dict:
        return {
            "running": self._running,
            "leader": self.config.leader_address,
            "interval_ms": self.state.interval_ms,
            "floor_ms": self.bounds.floor_ms,
            "ceiling_ms": self.bounds.ceiling_ms,
            "last_signal": self.state.last_signal.value,
            "consecutive_rate_limits": self.state.consecutive_rate_limits,
            "degraded": self.degraded,
            "warning": self._warning,
            "ticks": self.ticks,
            "failed_ticks": self.failed_ticks,
            "copied": self.copied,
            "settled": self.settled,
            "last_tick_at": self._last_tick_at,
        }
