"""Shared enumerations for the copy trading engine."""

from enum import Enum


class MovementStatus(Enum):
    """Lifecycle of a copied leader movement.

    PLANNED: Sized by the risk governor, not yet persisted.
    RECORDED: Appended to the ledger; counts toward open exposure.
    SETTLED: Market resolved, pnl attached. Terminal.
    REJECTED: Refused by risk policy. Terminal, never persisted.
    """
    PLANNED = "planned"
    RECORDED = "recorded"
    SETTLED = "settled"
    REJECTED = "rejected"

    @property
    def is_terminal(self) -> bool:
        return self in (MovementStatus.SETTLED, MovementStatus.REJECTED)


# Allowed status transitions; anything else is an InvalidTransition
TRANSITIONS = {
    MovementStatus.PLANNED: frozenset({MovementStatus.RECORDED, MovementStatus.REJECTED}),
    MovementStatus.RECORDED: frozenset({MovementStatus.SETTLED}),
    MovementStatus.SETTLED: frozenset(),
    MovementStatus.REJECTED: frozenset(),
}


def can_transition(current: MovementStatus, target: MovementStatus) -> bool:
    """Check whether a movement may move from current to target status."""
    return target in TRANSITIONS[current]


class RejectReason(Enum):
    """Risk-policy outcomes that stop a movement from being copied."""
    EXPOSURE_CAP_REACHED = "exposure_cap_reached"
    BELOW_MINIMUM = "below_minimum"
    FEES_EXCEED_PROFIT = "fees_exceed_profit"


class RateSignal(Enum):
    """Last upstream signal seen by the adaptive poller."""
    NONE = "none"
    OK = "ok"
    RATE_LIMITED = "rate_limited"


class RiskLevel(Enum):
    """Operator-selected risk profile."""
    CONSERVATIVE = "conservative"
    BALANCED = "balanced"
    AGGRESSIVE = "aggressive"


class StorageMode(Enum):
    """Which ledger a movement is written to."""
    REAL = "real"
    SIMULATION = "sim"
