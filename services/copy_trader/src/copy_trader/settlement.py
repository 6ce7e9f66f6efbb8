"""Settlement engine: attaches realized PnL to recorded movements."""

import logging
from collections import defaultdict, deque
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Optional

import orjson

from copytrade_common.enums import MovementStatus, StorageMode
from copytrade_common.errors import AlreadySettled, NotFound, NotRecorded
from copytrade_common.time import epoch_seconds, utc_now_iso
from copytrade_common.util import decimal_default

from .fees import normalize_market_slug
from .ledger import LedgerStore
from .types import ClosedPosition, LedgerRecord, Movement

logger = logging.getLogger(__name__)


class SettlementLog:
    """
    Human-auditable JSONL trail of settlements, one line per settled
    movement. The ledger stays the source of truth; this file is never
    replayed.
    """

    def __init__(self, path: Path, mode: StorageMode = StorageMode.REAL):
        self.path = Path(path)
        self.mode = mode

    def write(self, movement: Movement) -> None:
        """Append one settlement line."""
        record = {
            "ts": utc_now_iso(),
            "mode": self.mode.value,
            "movement_id": movement.movement_id,
            "market": movement.market_id,
            "side": movement.copy_side,
            "outcome": movement.outcome,
            "leader_price": movement.leader_price,
            "quantity": movement.quantity,
            "copied_value": movement.copied_value,
            "estimated_total_fee_usd": movement.estimated_total_fee_usd,
            "pnl": movement.pnl,
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.path, "ab") as f:
            f.write(orjson.dumps(record, default=decimal_default) + b"\n")


class SettlementEngine:
    """
    Finalizes RECORDED movements exactly once.

    Settling appends a new ledger line with status SETTLED and the pnl;
    copied_value and the other historical fields are carried unchanged.
    """

    def __init__(self, ledger: LedgerStore, audit_log: Optional[SettlementLog] = None):
        self.ledger = ledger
        self.audit_log = audit_log

    def settle(self, movement_id: str, pnl: Decimal, settled_at: Optional[str] = None) -> LedgerRecord:
        """
        Settle one movement.

        Raises:
            NotFound: Unknown movement_id
            AlreadySettled: Movement was settled before; the first pnl stands
            NotRecorded: Movement exists but is not in RECORDED status
        """
        with self.ledger.movement_lock(movement_id):
            current = self.ledger.get(movement_id)
            if current is None:
                raise NotFound(movement_id)
            if current.status == MovementStatus.SETTLED:
                raise AlreadySettled(
                    movement_id,
                    f"movement {movement_id} already settled with pnl={current.pnl}",
                )
            if current.status != MovementStatus.RECORDED:
                raise NotRecorded(movement_id)

            settled = current.with_status(
                MovementStatus.SETTLED,
                pnl=pnl,
                settled_at=settled_at or utc_now_iso(),
            )
            record = self.ledger.append(settled)

        if self.audit_log is not None:
            try:
                self.audit_log.write(record.movement)
            except OSError as e:
                logger.warning(f"Settlement log write failed for {movement_id}: {e}")

        logger.info(
            f"Settled {movement_id} market={current.market_id} pnl={pnl} -> funds released"
        )
        return record

    def settle_from_closed_positions(
        self,
        closed_positions: Iterable[ClosedPosition],
    ) -> list[Movement]:
        """
        Settle open movements whose market the leader has closed.

        Each closed position settles at most one movement: the oldest
        open movement on that market (exact or normalized slug) whose
        creation time is not after the close. PnL is the copied value
        scaled by the leader's realized ROI.

        Returns:
            Movements settled by this call
        """
        queues: dict[str, deque] = defaultdict(deque)
        for closed in sorted(closed_positions, key=lambda c: c.timestamp):
            roi = closed.roi
            if roi is None:
                continue
            queues[closed.market_id].append((closed.timestamp, roi))
            normalized = normalize_market_slug(closed.market_id)
            if normalized != closed.market_id:
                queues[normalized].append((closed.timestamp, roi))

        if not queues:
            return []

        settled: list[Movement] = []
        open_movements = [
            m for m in self.ledger.view.movements() if m.status == MovementStatus.RECORDED
        ]

        for movement in open_movements:
            movement_ts = epoch_seconds(movement.created_at)
            if movement_ts is None:
                continue

            roi = self._pop_eligible_roi(queues.get(movement.market_id), movement_ts)
            if roi is None:
                roi = self._pop_eligible_roi(
                    queues.get(normalize_market_slug(movement.market_id)), movement_ts
                )
            if roi is None:
                continue

            try:
                record = self.settle(movement.movement_id, movement.copied_value * roi)
            except (AlreadySettled, NotRecorded):
                # Settled concurrently by an operator request
                logger.debug(f"Skipping {movement.movement_id}: no longer open")
                continue
            settled.append(record.movement)

        return settled

    @staticmethod
    def _pop_eligible_roi(queue: Optional[deque], movement_ts: int) -> Optional[Decimal]:
        """Discard closes that predate the movement, then take the next one."""
        if not queue:
            return None
        while queue and 0 < queue[0][0] < movement_ts:
            queue.popleft()
        if not queue:
            return None
        return queue.popleft()[1]
