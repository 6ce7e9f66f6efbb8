"""Risk governor for the Copy Trader."""

import logging
from decimal import Decimal

from copytrade_common.enums import RejectReason
from copytrade_common.errors import InvalidInput

from .config import CopyConfig
from .types import PlanResult

logger = logging.getLogger(__name__)

ZERO = Decimal(0)


class RiskGovernor:
    """
    Turns config, current exposure and a leader movement into an
    allowed follower trade size or a rejection.

    Stateless: every input arrives as an argument, so the same call
    always yields the same decision.
    """

    def plan(
        self,
        config: CopyConfig,
        current_exposure: Decimal,
        leader_positions_value: Decimal,
        leader_movement_value: Decimal,
    ) -> PlanResult:
        """
        Size a copy of the leader's movement.

        The follower mirrors the movement in proportion to the leader's
        total position value:
            proportional = allocated_funds * movement / positions
        then clamps to the per-trade cap and the exposure headroom.

        Args:
            config: Risk parameters
            current_exposure: Sum of open copied values
            leader_positions_value: Leader's total open position value
            leader_movement_value: Notional of the leader's movement

        Returns:
            PlanResult; `rejection` is set when policy refuses the copy

        Raises:
            InvalidInput: For non-positive positions value, negative
                movement value or negative exposure
        """
        if leader_positions_value <= ZERO:
            raise InvalidInput(
                f"leader_positions_value must be > 0, got {leader_positions_value}"
            )
        if leader_movement_value < ZERO:
            raise InvalidInput(
                f"leader_movement_value cannot be negative, got {leader_movement_value}"
            )
        if current_exposure < ZERO:
            raise InvalidInput(f"current_exposure cannot be negative, got {current_exposure}")

        proportional = config.allocated_funds * (leader_movement_value / leader_positions_value)
        max_trade = config.max_trade_usd
        headroom = max(ZERO, config.max_total_exposure_usd - current_exposure)

        if headroom <= ZERO or headroom < config.min_copy_usd:
            return PlanResult(
                proportional_size=proportional,
                capped_size=ZERO,
                available_exposure=headroom,
                reason="no exposure available",
                rejection=RejectReason.EXPOSURE_CAP_REACHED,
            )

        capped = min(proportional, max_trade, headroom)

        if capped <= ZERO or capped < config.min_copy_usd:
            return PlanResult(
                proportional_size=proportional,
                capped_size=ZERO,
                available_exposure=headroom,
                reason="below minimum copy threshold",
                rejection=RejectReason.BELOW_MINIMUM,
            )

        if proportional > max_trade and max_trade <= headroom:
            reason = "capped by max_trade_pct"
        elif proportional > headroom:
            reason = "capped by max_total_exposure_pct"
        else:
            reason = "ok"

        return PlanResult(
            proportional_size=proportional,
            capped_size=capped,
            available_exposure=headroom,
            reason=reason,
        )
