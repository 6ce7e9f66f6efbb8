"""Dashboard aggregator - read-side PnL projections over the ledger."""

from collections import defaultdict
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, Optional

from copytrade_common.enums import MovementStatus
from copytrade_common.time import day_key, parse_iso

from .types import Movement

ZERO = Decimal(0)


def _settled(movements: Iterable[Movement]) -> list[Movement]:
    """Settled movements ordered by settlement time; unparseable times sort last."""
    settled = [m for m in movements if m.status == MovementStatus.SETTLED and m.pnl is not None]

    def key(m: Movement):
        dt = parse_iso(m.settled_at or "")
        return (dt is None, dt.timestamp() if dt else 0.0, m.settled_at or "")

    return sorted(settled, key=key)


def daily_pnl_series(movements: Iterable[Movement]) -> list[tuple[str, Decimal]]:
    """
    Sum of pnl per UTC calendar day of settlement.

    Returns:
        (day, pnl) pairs in ascending day order
    """
    by_day: dict[str, Decimal] = defaultdict(lambda: ZERO)
    for m in _settled(movements):
        by_day[day_key(m.settled_at or "")] += m.pnl
    return sorted(by_day.items())


def cumulative_pnl_series(movements: Iterable[Movement]) -> list[tuple[str, Decimal]]:
    """
    Running pnl total over settled movements ordered by settled_at.

    Returns:
        (settled_at, cumulative pnl) pairs, one per settled movement
    """
    total = ZERO
    series = []
    for m in _settled(movements):
        total += m.pnl
        series.append((m.settled_at or "", total))
    return series


@dataclass(frozen=True, slots=True)
class AccountSummary:
    initial_funds: Decimal
    realized_pnl: Decimal
    estimated_fees: Decimal
    equity: Decimal
    used_exposure: Decimal
    available_to_copy: Decimal
    open_movements: int
    settled_movements: int

    def to_dict(self) -> dict:
        return {
            "initial_funds": self.initial_funds,
            "realized_pnl": self.realized_pnl,
            "estimated_fees": self.estimated_fees,
            "equity": self.equity,
            "used_exposure": self.used_exposure,
            "available_to_copy": self.available_to_copy,
            "open_movements": self.open_movements,
            "settled_movements": self.settled_movements,
        }


def account_summary(
    movements: Iterable[Movement],
    allocated_funds: Optional[Decimal],
) -> AccountSummary:
    """
    Follower account totals.

    Equity is the allocated funds plus realized pnl minus the fees
    estimated for settled movements; available is what equity leaves
    after open exposure.
    """
    movements = list(movements)
    funds = allocated_funds or ZERO
    open_ = [m for m in movements if m.status == MovementStatus.RECORDED]
    settled = [m for m in movements if m.status == MovementStatus.SETTLED]

    realized = sum((m.pnl or ZERO for m in settled), ZERO)
    fees = sum((m.estimated_total_fee_usd for m in settled), ZERO)
    used = sum((m.copied_value for m in open_), ZERO)
    equity = funds + realized - fees

    return AccountSummary(
        initial_funds=funds,
        realized_pnl=realized,
        estimated_fees=fees,
        equity=equity,
        used_exposure=used,
        available_to_copy=max(ZERO, equity - used),
        open_movements=len(open_),
        settled_movements=len(settled),
    )


def dashboard(movements: Iterable[Movement], allocated_funds: Optional[Decimal]) -> dict:
    """All dashboard projections in one JSON-ready dict."""
    movements = list(movements)
    return {
        "summary": account_summary(movements, allocated_funds).to_dict(),
        "daily_pnl": [{"day": day, "pnl": pnl} for day, pnl in daily_pnl_series(movements)],
        "cumulative_pnl": [
            {"settled_at": ts, "pnl": pnl} for ts, pnl in cumulative_pnl_series(movements)
        ],
    }
