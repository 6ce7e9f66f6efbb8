"""Copy trader service - owns config, ledgers and the poller lifecycle."""

import asyncio
import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from copytrade_common.enums import MovementStatus, StorageMode
from copytrade_common.errors import InvalidInput
from copytrade_common.util import to_decimal

from .config import CopyConfig, ServiceSettings, load_config, save_config
from .dashboard import account_summary, dashboard
from .ledger import LedgerStore
from .pipeline import CopyPipeline, OrderExecutor
from .planner import MovementPlanner
from .poller import ActivitySource, AdaptivePoller, PollBounds
from .recorder import Recorder
from .settlement import SettlementEngine, SettlementLog
from .types import LedgerRecord, Movement, PlanResult

logger = logging.getLogger(__name__)


@dataclass
class LedgerEngine:
    """Ledger of one storage mode with the components writing to it."""
    ledger: LedgerStore
    planner: MovementPlanner
    recorder: Recorder
    settlement: SettlementEngine
    pipeline: CopyPipeline


class CopyTraderService:
    """
    Entry point for every operator command.

    Real and simulation movements live in separate ledgers; the active
    one follows the configured simulation_mode.
    """

    def __init__(
        self,
        settings: ServiceSettings,
        source: Optional[ActivitySource] = None,
        executor: Optional[OrderExecutor] = None,
    ):
        """
        Initialize the service.

        Args:
            settings: Process settings
            source: Leader activity source for the poller
            executor: Order executor used when execute_orders is on
        """
        self.settings = settings
        self.source = source
        self.executor = executor

        self.config: Optional[CopyConfig] = None
        self._engines: dict[StorageMode, LedgerEngine] = {}

        self.poller: Optional[AdaptivePoller] = None
        self._poller_task: Optional[asyncio.Task] = None

    # ---------- lifecycle ----------

    def open(self) -> None:
        """Load the saved config and replay the active ledger."""
        self.config = load_config(self.settings.config_path)
        if self.config:
            logger.info(
                f"Loaded config: leader={self.config.leader_address} "
                f"funds={self.config.allocated_funds} mode={self.mode.value}"
            )
        else:
            logger.info("No copy config yet; waiting for configure")
        self.engine()

    async def close(self) -> None:
        await self.stop_poller()
        for engine in self._engines.values():
            engine.ledger.close()
        self._engines.clear()

    @property
    def mode(self) -> StorageMode:
        return self.config.storage_mode if self.config else StorageMode.REAL

    def engine(self, mode: Optional[StorageMode] = None) -> LedgerEngine:
        """Ledger components for a mode, opened on first use."""
        mode = mode or self.mode
        engine = self._engines.get(mode)
        if engine is None:
            ledger = LedgerStore(self.settings.ledger_path(mode)).open()
            planner = MovementPlanner(ledger)
            recorder = Recorder(ledger)
            engine = LedgerEngine(
                ledger=ledger,
                planner=planner,
                recorder=recorder,
                settlement=SettlementEngine(
                    ledger, SettlementLog(self.settings.settlement_log_path, mode)
                ),
                pipeline=CopyPipeline(planner, recorder, self.executor),
            )
            self._engines[mode] = engine
        return engine

    @property
    def ledger(self) -> LedgerStore:
        return self.engine().ledger

    def _require_config(self) -> CopyConfig:
        if self.config is None:
            raise InvalidInput("copy trader is not configured")
        return self.config

    # ---------- commands ----------

    async def configure(self, data: dict) -> CopyConfig:
        """
        Validate, persist and activate a new config.

        A running poller is restarted with the new parameters.
        """
        config = CopyConfig.from_dict(data)
        config.validate()

        was_running = self.poller is not None and self.poller.running
        if was_running:
            await self.stop_poller()

        save_config(config, self.settings.config_path)
        self.config = config
        self.engine()
        logger.info(
            f"Configured: leader={config.leader_address} funds={config.allocated_funds} "
            f"max_trade={config.max_trade_pct}% max_exposure={config.max_total_exposure_pct}% "
            f"mode={self.mode.value}"
        )

        if was_running:
            await self.start_poller()
        return config

    def plan(self, leader_positions_value, leader_movement_value) -> PlanResult:
        """Size a hypothetical leader movement against current exposure."""
        config = self._require_config()
        return self.engine().planner.size(
            config,
            to_decimal(leader_positions_value, "leader_positions_value"),
            to_decimal(leader_movement_value, "leader_movement_value"),
        )

    def record(self, data: dict) -> LedgerRecord:
        """Record an operator-supplied movement."""
        config = self._require_config()
        movement = Movement.from_dict(data)
        diff_pct = data.get("diff_pct")
        return self.engine().recorder.record(
            movement,
            config=config,
            diff_pct=to_decimal(diff_pct, "diff_pct") if diff_pct is not None else None,
        )

    def settle(self, movement_id: str, pnl) -> LedgerRecord:
        if not movement_id or not isinstance(movement_id, str):
            raise InvalidInput("movement_id is required")
        return self.engine().settlement.settle(movement_id, to_decimal(pnl, "pnl"))

    async def start_poller(self) -> dict:
        """Start watching the leader. No-op if already running."""
        if self.poller is not None and self.poller.running:
            return self.poller.status()

        config = self._require_config()
        if self.source is None:
            raise InvalidInput("no leader activity source available")

        engine = self.engine()
        self.poller = AdaptivePoller(
            source=self.source,
            pipeline=engine.pipeline,
            settlement=engine.settlement,
            ledger=engine.ledger,
            config=config,
            bounds=PollBounds.from_settings(self.settings, config),
            fetch_timeout_seconds=self.settings.fetch_timeout_seconds,
        )
        self._poller_task = self.poller.start()
        return self.poller.status()

    async def stop_poller(self) -> dict:
        """Stop the poller after its in-flight tick."""
        if self.poller is None:
            return {"running": False}
        self.poller.stop()
        if self._poller_task:
            await asyncio.gather(self._poller_task, return_exceptions=True)
            self._poller_task = None
        return self.poller.status()

    # ---------- queries ----------

    def state(self) -> dict:
        """Full snapshot for the UI."""
        config = self.config
        view = self.ledger.view
        movements = view.movements()
        recent = movements[-self.settings.recent_movements_limit:]
        return {
            "latest_seq": view.seq,
            "mode": self.mode.value,
            "config": config.to_dict() if config else None,
            "exposure": view.exposure,
            "max_total_exposure": config.max_total_exposure_usd if config else None,
            "open_movements": sum(1 for m in movements if m.status == MovementStatus.RECORDED),
            "movements": [m.to_dict() for m in reversed(recent)],
            "summary": account_summary(
                movements, config.allocated_funds if config else None
            ).to_dict(),
            "poller": self.poller.status() if self.poller else {"running": False},
        }

    def updates(self, since: int, limit: Optional[int] = None) -> dict:
        """Records appended after `since`."""
        if since < 0:
            raise InvalidInput("since must be >= 0")
        latest_seq, records = self.ledger.updates_since(
            since, limit or self.settings.updates_page_limit
        )
        return {
            "latest_seq": latest_seq,
            "mode": self.mode.value,
            "updates": [r.to_dict() for r in records],
        }

    def dashboard(self) -> dict:
        config = self.config
        funds: Optional[Decimal] = config.allocated_funds if config else None
        return dashboard(self.ledger.view.movements(), funds)
