"""Recorder: validates a planned movement and appends it to the ledger."""

import logging
from dataclasses import replace
from decimal import Decimal
from typing import Optional

from copytrade_common.enums import MovementStatus, can_transition
from copytrade_common.errors import DuplicateId, InvalidInput, InvalidTransition

from .config import CopyConfig
from .ledger import LedgerStore
from .types import Movement, LedgerRecord

logger = logging.getLogger(__name__)

ZERO = Decimal(0)
HUNDRED = Decimal(100)


def compute_diff_pct(planned_value: Decimal, copied_value: Decimal) -> Decimal:
    """
    Signed deviation of the executed copy from the plan, in percent.

    Positive when the follower copied more than planned.
    """
    if planned_value <= ZERO:
        return ZERO
    return (copied_value - planned_value) / planned_value * HUNDRED


class Recorder:
    """
    Appends PLANNED movements to the ledger as RECORDED.

    The ledger checks the total exposure cap and updates the exposure
    aggregate inside the same critical section as the append.
    """

    def __init__(self, ledger: LedgerStore):
        self.ledger = ledger

    def record(
        self,
        movement: Movement,
        config: Optional[CopyConfig] = None,
        diff_pct: Optional[Decimal] = None,
    ) -> LedgerRecord:
        """
        Record a movement.

        Args:
            movement: Movement in PLANNED status; copied_value is the
                executed size
            config: When given, copied_value is checked against the
                per-trade cap and the append against the total exposure cap
            diff_pct: Caller-reported deviation; must agree in sign with
                the recomputed one

        Returns:
            The appended ledger record

        Raises:
            InvalidTransition: If the movement is not PLANNED
            DuplicateId: If the movement_id is already in the ledger
            InvalidInput: For a negative or over-cap copied_value, or a
                diff_pct with the wrong sign
            ExposureCapReached: If open exposure would pass the total cap
        """
        mid = movement.movement_id

        if not can_transition(movement.status, MovementStatus.RECORDED):
            raise InvalidTransition(
                mid, f"cannot record movement {mid} in status {movement.status.value}"
            )

        if movement.copied_value < ZERO:
            raise InvalidInput(f"copied_value cannot be negative, got {movement.copied_value}")
        if movement.leader_value < ZERO:
            raise InvalidInput(f"leader_value cannot be negative, got {movement.leader_value}")
        if config is not None and movement.copied_value > config.max_trade_usd:
            raise InvalidInput(
                f"copied_value {movement.copied_value} exceeds max trade {config.max_trade_usd}"
            )

        computed = compute_diff_pct(movement.planned_value, movement.copied_value)
        if diff_pct is not None and diff_pct != ZERO:
            if computed == ZERO:
                # No independent plan to check against; keep the reported value
                computed = diff_pct
            elif (diff_pct > ZERO) != (computed > ZERO):
                raise InvalidInput(
                    f"diff_pct {diff_pct} disagrees in sign with copied-minus-planned {computed}"
                )

        with self.ledger.movement_lock(mid):
            if self.ledger.get(mid) is not None:
                raise DuplicateId(mid)

            recorded = replace(
                movement,
                status=MovementStatus.RECORDED,
                diff_pct=computed,
                pnl=None,
                settled_at=None,
                reject_reason=None,
            )
            record = self.ledger.append(
                recorded,
                max_exposure=config.max_total_exposure_usd if config is not None else None,
            )

        logger.info(
            f"Recorded {mid} market={recorded.market_id} copied={recorded.copied_value} "
            f"diff_pct={computed} seq={record.seq}"
        )
        return record
