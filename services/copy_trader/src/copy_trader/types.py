"""Type definitions for the Copy Trader service."""

from dataclasses import dataclass, field, replace, asdict
from decimal import Decimal
from typing import Optional

from copytrade_common.enums import MovementStatus, RejectReason
from copytrade_common.errors import InvalidInput
from copytrade_common.time import utc_now_iso
from copytrade_common.util import to_decimal, to_int


__all__ = [
    "MovementStatus", "RejectReason",
    "Movement", "LedgerRecord", "PlanResult",
    "LeaderMovement", "ClosedPosition", "LeaderActivity",
]


ZERO = Decimal(0)


# ============== Ledger ==============

@dataclass(frozen=True, slots=True)
class Movement:
    """
    One leader activity considered for copying.

    Frozen: every status change produces a new Movement that the
    ledger appends as a new line.
    """
    movement_id: str
    market_id: str
    leader_value: Decimal
    planned_value: Decimal = ZERO
    copied_value: Decimal = ZERO
    diff_pct: Decimal = ZERO
    status: MovementStatus = MovementStatus.PLANNED
    pnl: Optional[Decimal] = None
    created_at: str = field(default_factory=utc_now_iso)
    settled_at: Optional[str] = None

    # Audit detail of the leader trade
    leader_price: Decimal = ZERO
    quantity: Decimal = ZERO
    copy_side: str = "unknown"
    outcome: str = ""
    estimated_total_fee_usd: Decimal = ZERO

    # Only set on in-memory REJECTED results
    reject_reason: Optional[RejectReason] = None

    def with_status(self, status: MovementStatus, **changes) -> "Movement":
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict:
        data = asdict(self)
        data["status"] = self.status.value
        data["reject_reason"] = self.reject_reason.value if self.reject_reason else None
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "Movement":
        """
        Parse a movement from a ledger line or request body.

        Raises:
            InvalidInput: On missing ids, bad numbers or unknown status
        """
        movement_id = data.get("movement_id")
        market_id = data.get("market_id", data.get("market"))
        if not movement_id or not isinstance(movement_id, str):
            raise InvalidInput("movement_id is required")
        if not market_id or not isinstance(market_id, str):
            raise InvalidInput("market_id is required")

        try:
            status = MovementStatus(data.get("status", MovementStatus.PLANNED.value))
        except ValueError:
            raise InvalidInput(f"unknown status {data.get('status')!r}")

        reject_reason = None
        if data.get("reject_reason"):
            try:
                reject_reason = RejectReason(data["reject_reason"])
            except ValueError:
                raise InvalidInput(f"unknown reject_reason {data['reject_reason']!r}")

        leader_value = to_decimal(data.get("leader_value"), "leader_value")
        copied_value = to_decimal(data.get("copied_value", "0"), "copied_value")
        planned_raw = data.get("planned_value")
        planned_value = (
            to_decimal(planned_raw, "planned_value") if planned_raw is not None else copied_value
        )
        pnl_raw = data.get("pnl")

        return cls(
            movement_id=movement_id,
            market_id=market_id,
            leader_value=leader_value,
            planned_value=planned_value,
            copied_value=copied_value,
            diff_pct=to_decimal(data.get("diff_pct", "0"), "diff_pct"),
            status=status,
            pnl=to_decimal(pnl_raw, "pnl") if pnl_raw is not None else None,
            created_at=data.get("created_at") or utc_now_iso(),
            settled_at=data.get("settled_at"),
            leader_price=to_decimal(data.get("leader_price", "0"), "leader_price"),
            quantity=to_decimal(data.get("quantity", "0"), "quantity"),
            copy_side=data.get("copy_side") or "unknown",
            outcome=data.get("outcome") or "",
            estimated_total_fee_usd=to_decimal(
                data.get("estimated_total_fee_usd", "0"), "estimated_total_fee_usd"
            ),
            reject_reason=reject_reason,
        )


@dataclass(frozen=True, slots=True)
class LedgerRecord:
    """A movement as persisted on one ledger line."""
    seq: int
    movement: Movement

    def to_dict(self) -> dict:
        data = self.movement.to_dict()
        data.pop("reject_reason", None)
        data["seq"] = self.seq
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "LedgerRecord":
        seq = data.get("seq")
        if not isinstance(seq, int) or seq < 1:
            raise InvalidInput(f"ledger record has invalid seq {seq!r}")
        return cls(seq=seq, movement=Movement.from_dict(data))


# ============== Risk ==============

@dataclass(frozen=True, slots=True)
class PlanResult:
    """
    Risk governor output.

    Carries both the unclamped proportional value and the clamped
    result so the recorder can audit the deviation.
    """
    proportional_size: Decimal
    capped_size: Decimal
    available_exposure: Decimal
    reason: str
    rejection: Optional[RejectReason] = None

    @property
    def accepted(self) -> bool:
        return self.rejection is None

    def to_dict(self) -> dict:
        return {
            "proportional_size": self.proportional_size,
            "capped_size": self.capped_size,
            "available_exposure": self.available_exposure,
            "reason": self.reason,
            "rejection": self.rejection.value if self.rejection else None,
            "accepted": self.accepted,
        }


# ============== Leader activity ==============

@dataclass(frozen=True, slots=True)
class LeaderMovement:
    """A trade made by the leader, as reported by the activity source."""
    movement_id: str  # Transaction hash
    market_id: str  # Market slug
    value: Decimal  # Notional, size * price
    price: Decimal = ZERO
    quantity: Decimal = ZERO
    side: str = "unknown"
    outcome: str = ""
    asset: str = ""
    timestamp: int = 0  # Epoch seconds

    @classmethod
    def from_trade(cls, trade: dict) -> "LeaderMovement":
        """Build from a data-api trade object."""
        if not isinstance(trade, dict):
            raise InvalidInput("trade must be an object")
        tx_hash = trade.get("transactionHash") or trade.get("transaction_hash")
        if not tx_hash:
            raise InvalidInput("trade is missing transactionHash")
        size = to_decimal(trade.get("size", "0"), "size")
        price = to_decimal(trade.get("price", "0"), "price")
        return cls(
            movement_id=str(tx_hash),
            market_id=str(trade.get("slug") or trade.get("conditionId") or ""),
            value=size * price,
            price=price,
            quantity=size,
            side=str(trade.get("side") or "unknown"),
            outcome=str(trade.get("outcome") or ""),
            asset=str(trade.get("asset") or ""),
            timestamp=to_int(trade.get("timestamp") or 0, "timestamp"),
        )


@dataclass(frozen=True, slots=True)
class ClosedPosition:
    """A resolved leader position used to settle open copies."""
    market_id: str
    realized_pnl: Decimal
    total_bought: Decimal
    timestamp: int = 0  # Epoch seconds

    @property
    def roi(self) -> Optional[Decimal]:
        if self.total_bought <= 0:
            return None
        return self.realized_pnl / self.total_bought

    @classmethod
    def from_dict(cls, data: dict) -> "ClosedPosition":
        if not isinstance(data, dict):
            raise InvalidInput("closed position must be an object")
        return cls(
            market_id=str(data.get("slug") or ""),
            realized_pnl=to_decimal(data.get("realizedPnl", "0"), "realizedPnl"),
            total_bought=to_decimal(data.get("totalBought", "0"), "totalBought"),
            timestamp=to_int(data.get("timestamp") or 0, "timestamp"),
        )


@dataclass(frozen=True, slots=True)
class LeaderActivity:
    """One poll's worth of leader state."""
    positions_value: Decimal
    movements: tuple[LeaderMovement, ...] = ()
    closed_positions: tuple[ClosedPosition, ...] = ()
