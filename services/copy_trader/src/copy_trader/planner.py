"""Movement planner: sizes a detected leader movement against the ledger."""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from copytrade_common.enums import MovementStatus, RejectReason
from copytrade_common.errors import DuplicateId

from .config import CopyConfig
from .fees import FeeImpact, trading_fee_impact
from .ledger import LedgerStore
from .risk import RiskGovernor
from .types import LeaderMovement, Movement, PlanResult

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class PlannedMovement:
    """Planner output: a PLANNED or REJECTED movement and the sizing behind it."""
    movement: Movement
    plan: PlanResult
    fee: Optional[FeeImpact] = None

    @property
    def accepted(self) -> bool:
        return self.movement.status == MovementStatus.PLANNED


class MovementPlanner:
    """
    Reads current exposure from the ledger and asks the risk governor
    for a size.

    Side-effect free beyond the ledger read; persistence belongs to the
    recorder. Same-id calls are serialized on the ledger's movement lock.
    """

    def __init__(self, ledger: LedgerStore, governor: Optional[RiskGovernor] = None):
        self.ledger = ledger
        self.governor = governor or RiskGovernor()

    def size(
        self,
        config: CopyConfig,
        leader_positions_value: Decimal,
        leader_movement_value: Decimal,
    ) -> PlanResult:
        """Size a hypothetical movement against current exposure."""
        return self.governor.plan(
            config,
            self.ledger.exposure,
            leader_positions_value,
            leader_movement_value,
        )

    def plan(
        self,
        config: CopyConfig,
        leader: LeaderMovement,
        leader_positions_value: Decimal,
        movement_id: Optional[str] = None,
    ) -> PlannedMovement:
        """
        Plan a copy of one leader movement.

        Args:
            config: Risk parameters
            leader: The detected leader trade
            leader_positions_value: Leader's total position value this poll
            movement_id: Ledger id, defaults to the leader's id

        Returns:
            PlannedMovement in PLANNED or REJECTED status

        Raises:
            DuplicateId: If the id is already in the ledger
            InvalidInput: From the risk governor
        """
        movement_id = movement_id or leader.movement_id

        with self.ledger.movement_lock(movement_id):
            if self.ledger.get(movement_id) is not None:
                raise DuplicateId(movement_id)

            result = self.size(config, leader_positions_value, leader.value)

            movement = Movement(
                movement_id=movement_id,
                market_id=leader.market_id,
                leader_value=leader.value,
                planned_value=result.capped_size,
                copied_value=result.capped_size,
                leader_price=leader.price,
                quantity=leader.quantity,
                copy_side=leader.side,
                outcome=leader.outcome,
            )

            if not result.accepted:
                logger.info(
                    f"Movement {movement_id} ({leader.market_id}) not copied: {result.reason}"
                )
                return PlannedMovement(
                    movement=movement.with_status(
                        MovementStatus.REJECTED, reject_reason=result.rejection
                    ),
                    plan=result,
                )

            fee = trading_fee_impact(leader.market_id, result.capped_size)
            if fee is not None:
                movement = movement.with_status(
                    MovementStatus.PLANNED, estimated_total_fee_usd=fee.round_trip_fee_usd
                )
                if fee.max_net_profit_usd <= 0:
                    logger.info(
                        f"Movement {movement_id} ({leader.market_id}) discarded by fees "
                        f"({fee.fee_bps} bps): max_net_profit={fee.max_net_profit_usd}"
                    )
                    return PlannedMovement(
                        movement=movement.with_status(
                            MovementStatus.REJECTED,
                            reject_reason=RejectReason.FEES_EXCEED_PROFIT,
                        ),
                        plan=result,
                        fee=fee,
                    )

            logger.info(
                f"Movement {movement_id} ({leader.market_id}) planned: "
                f"leader_usd={leader.value} proportional={result.proportional_size} "
                f"copy={result.capped_size} reason={result.reason}"
            )
            return PlannedMovement(movement=movement, plan=result, fee=fee)
