"""Taker-fee impact for fast crypto up/down markets."""

from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

FAST_MARKET_FEE_BPS = 70
BPS_DENOMINATOR = 10_000
FAST_MARKET_MARKERS = ("-updown-5m", "-updown-15m")

# Best case a binary share bought near 0.10 pays out 1.00
MAX_GROSS_PROFIT_RATIO = Decimal(1) - Decimal("0.100")


@dataclass(frozen=True, slots=True)
class FeeImpact:
    fee_bps: int
    entry_fee_usd: Decimal
    round_trip_fee_usd: Decimal
    max_gross_profit_usd: Decimal
    max_net_profit_usd: Decimal


def normalize_market_slug(slug: str) -> str:
    """
    Strip a trailing epoch suffix from a market slug.

    "xrp-updown-5m-1772278200" -> "xrp-updown-5m"
    """
    prefix, sep, suffix = slug.rpartition("-")
    if sep and len(suffix) >= 8 and suffix.isdigit():
        return prefix
    return slug


def is_fast_market_with_fee(slug: str) -> bool:
    normalized = normalize_market_slug(slug)
    return any(marker in normalized for marker in FAST_MARKET_MARKERS)


def trading_fee_impact(market: str, copied_value: Decimal) -> Optional[FeeImpact]:
    """
    Estimate fees for copying into a market.

    Returns:
        FeeImpact for fee-charging fast markets, None otherwise
    """
    if not is_fast_market_with_fee(market) or copied_value <= 0:
        return None

    fee_rate = Decimal(FAST_MARKET_FEE_BPS) / Decimal(BPS_DENOMINATOR)
    entry_fee = copied_value * fee_rate
    round_trip_fee = entry_fee * 2
    max_gross = copied_value * MAX_GROSS_PROFIT_RATIO

    return FeeImpact(
        fee_bps=FAST_MARKET_FEE_BPS,
        entry_fee_usd=entry_fee,
        round_trip_fee_usd=round_trip_fee,
        max_gross_profit_usd=max_gross,
        max_net_profit_usd=max_gross - round_trip_fee,
    )
