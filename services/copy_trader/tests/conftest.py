"""Shared fixtures for Copy Trader tests."""

from decimal import Decimal

import pytest

from copytrade_common.enums import MovementStatus

from copy_trader.config import CopyConfig
from copy_trader.ledger import LedgerStore
from copy_trader.types import Movement


def D(value) -> Decimal:
    return Decimal(str(value))


def make_config(**overrides) -> CopyConfig:
    fields = dict(
        leader_address="0xleader",
        allocated_funds=D(1000),
        max_trade_pct=D(5),
        max_total_exposure_pct=D(70),
        min_copy_usd=D(1),
        poll_interval_ms=1000,
    )
    fields.update(overrides)
    return CopyConfig(**fields)


def make_movement(movement_id: str = "m1", copied="4", **overrides) -> Movement:
    fields = dict(
        movement_id=movement_id,
        market_id="will-it-rain",
        leader_value=D(100),
        planned_value=D(copied),
        copied_value=D(copied),
        status=MovementStatus.PLANNED,
        created_at="2026-01-01T00:00:00+00:00",
    )
    fields.update(overrides)
    return Movement(**fields)


@pytest.fixture
def config() -> CopyConfig:
    return make_config()


@pytest.fixture
def ledger(tmp_path):
    store = LedgerStore(tmp_path / "ledger.jsonl").open()
    yield store
    store.close()
