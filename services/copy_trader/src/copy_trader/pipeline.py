"""Copy pipeline: plan, optionally execute, then record one leader movement."""

import logging
from dataclasses import dataclass, replace
from decimal import Decimal
from typing import Optional, Protocol

from copytrade_common.errors import DuplicateId

from .config import CopyConfig
from .planner import MovementPlanner, PlannedMovement
from .recorder import Recorder
from .types import LeaderMovement, LedgerRecord, Movement

logger = logging.getLogger(__name__)

SIMULATION_ID_PREFIX = "sim-"


class OrderExecutor(Protocol):
    """Places the follower's trade. Returns the filled notional."""

    async def execute(self, movement: Movement) -> Decimal: ...


@dataclass(frozen=True, slots=True)
class PipelineResult:
    planned: PlannedMovement
    record: Optional[LedgerRecord] = None

    @property
    def recorded(self) -> bool:
        return self.record is not None


class CopyPipeline:
    """
    Runs one detected leader movement through planner, executor and
    recorder.

    A movement id is only in flight once; a second submission of the
    same id while the first is executing is refused as a duplicate.
    A fill larger than the exposure headroom seen at plan time is
    recorded at that headroom.
    """

    def __init__(
        self,
        planner: MovementPlanner,
        recorder: Recorder,
        executor: Optional[OrderExecutor] = None,
    ):
        self.planner = planner
        self.recorder = recorder
        self.executor = executor
        self._in_flight: set[str] = set()

    @staticmethod
    def movement_id_for(config: CopyConfig, leader: LeaderMovement) -> str:
        if config.simulation_mode:
            return f"{SIMULATION_ID_PREFIX}{leader.movement_id}"
        return leader.movement_id

    async def process(
        self,
        config: CopyConfig,
        leader: LeaderMovement,
        leader_positions_value: Decimal,
    ) -> PipelineResult:
        """
        Copy one leader movement.

        Returns:
            PipelineResult; `record` is None when risk policy rejected it

        Raises:
            DuplicateId: If the id is already recorded or in flight
            InvalidInput: From the risk governor or recorder
            ExposureCapReached: If exposure grew past the cap while the
                order was executing
        """
        movement_id = self.movement_id_for(config, leader)
        if movement_id in self._in_flight:
            raise DuplicateId(movement_id, f"movement {movement_id} is already in flight")

        self._in_flight.add(movement_id)
        try:
            planned = self.planner.plan(
                config, leader, leader_positions_value, movement_id=movement_id
            )
            if not planned.accepted:
                return PipelineResult(planned=planned)

            movement = planned.movement
            if config.execute_orders and self.executor is not None:
                filled = await self.executor.execute(movement)
                logger.info(f"Order executed for {movement_id}: filled={filled}")
                limit = min(planned.plan.available_exposure, config.max_trade_usd)
                if filled > limit:
                    logger.warning(
                        f"Fill for {movement_id} of {filled} is over the risk headroom "
                        f"{limit} at plan time; recording {limit}"
                    )
                    filled = limit
                movement = replace(movement, copied_value=filled)
            else:
                logger.debug(f"Dry run for {movement_id}: copied = planned")

            record = self.recorder.record(movement, config=config)
            return PipelineResult(planned=planned, record=record)
        finally:
            self._in_flight.discard(movement_id)
