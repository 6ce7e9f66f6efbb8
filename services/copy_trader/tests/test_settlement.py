"""Tests for the recorder and the settlement engine."""

import threading

import orjson
import pytest

from copytrade_common.enums import MovementStatus, StorageMode
from copytrade_common.errors import (
    AlreadySettled,
    DuplicateId,
    InvalidInput,
    InvalidTransition,
    NotFound,
)

from copy_trader.recorder import Recorder, compute_diff_pct
from copy_trader.settlement import SettlementEngine, SettlementLog
from copy_trader.types import ClosedPosition

from conftest import D, make_config, make_movement


class TestRecorder:
    def test_record_appends_recorded_state(self, ledger, config):
        record = Recorder(ledger).record(make_movement("m1"), config=config)

        assert record.seq == 1
        assert record.movement.status == MovementStatus.RECORDED
        assert record.movement.pnl is None
        assert ledger.exposure == D(4)

    def test_duplicate_id_leaves_ledger_unchanged(self, ledger):
        recorder = Recorder(ledger)
        recorder.record(make_movement("m1"))

        with pytest.raises(DuplicateId):
            recorder.record(make_movement("m1", copied="7"))

        assert len(ledger) == 1
        assert ledger.exposure == D(4)

    def test_non_planned_movement_is_invalid_transition(self, ledger):
        movement = make_movement("m1", status=MovementStatus.REJECTED)

        with pytest.raises(InvalidTransition):
            Recorder(ledger).record(movement)
        assert len(ledger) == 0

    def test_copied_value_over_trade_cap_is_invalid(self, ledger, config):
        with pytest.raises(InvalidInput):
            Recorder(ledger).record(make_movement("m1", copied="51"), config=config)
        assert len(ledger) == 0

    def test_negative_copied_value_is_invalid(self, ledger):
        with pytest.raises(InvalidInput):
            Recorder(ledger).record(make_movement("m1", copied="-1"))

    def test_diff_pct_follower_minus_plan(self, ledger):
        movement = make_movement("m1", planned_value=D(10), copied_value=D(9))
        record = Recorder(ledger).record(movement)

        assert record.movement.diff_pct == D(-10)

    def test_diff_pct_with_wrong_sign_is_invalid(self, ledger):
        movement = make_movement("m1", planned_value=D(10), copied_value=D(9))

        with pytest.raises(InvalidInput):
            Recorder(ledger).record(movement, diff_pct=D(10))

    def test_reported_diff_pct_kept_without_plan(self, ledger):
        record = Recorder(ledger).record(make_movement("m1"), diff_pct=D("1.5"))
        assert record.movement.diff_pct == D("1.5")

    def test_compute_diff_pct_zero_plan(self):
        assert compute_diff_pct(D(0), D(5)) == 0


class TestSettle:
    def test_settle_recorded_movement(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        record = SettlementEngine(ledger).settle("m1", D("1.25"))

        movement = record.movement
        assert movement.status == MovementStatus.SETTLED
        assert movement.pnl == D("1.25")
        assert movement.copied_value == D(4)
        assert movement.settled_at is not None
        assert ledger.exposure == 0

    def test_settle_twice_keeps_first_pnl(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        engine = SettlementEngine(ledger)
        engine.settle("m1", D(2))

        with pytest.raises(AlreadySettled):
            engine.settle("m1", D(-3))

        assert ledger.get("m1").pnl == D(2)
        assert len(ledger) == 2

    def test_settle_unknown_id(self, ledger):
        with pytest.raises(NotFound):
            SettlementEngine(ledger).settle("nope", D(1))

    def test_settle_explicit_timestamp(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        record = SettlementEngine(ledger).settle("m1", D(0), settled_at="2026-02-03T10:00:00+00:00")
        assert record.movement.settled_at == "2026-02-03T10:00:00+00:00"


# 2026-01-01T00:00:00Z
MOVEMENT_TS = 1767225600


class TestSettleFromClosedPositions:
    def test_settles_with_leader_roi(self, ledger):
        Recorder(ledger).record(make_movement("m1", copied="4"))
        closed = [ClosedPosition("will-it-rain", D(5), D(10), MOVEMENT_TS + 60)]

        settled = SettlementEngine(ledger).settle_from_closed_positions(closed)

        assert [m.movement_id for m in settled] == ["m1"]
        assert ledger.get("m1").pnl == D(2)

    def test_negative_roi_kept(self, ledger):
        Recorder(ledger).record(make_movement("m1", copied="4"))
        closed = [ClosedPosition("will-it-rain", D(-10), D(10), MOVEMENT_TS + 60)]

        SettlementEngine(ledger).settle_from_closed_positions(closed)
        assert ledger.get("m1").pnl == D(-4)

    def test_each_close_settles_one_movement_in_order(self, ledger):
        recorder = Recorder(ledger)
        recorder.record(make_movement("m1", copied="4"))
        recorder.record(make_movement("m2", copied="4"))
        closed = [
            ClosedPosition("will-it-rain", D(-5), D(10), MOVEMENT_TS + 120),
            ClosedPosition("will-it-rain", D(5), D(10), MOVEMENT_TS + 60),
        ]

        SettlementEngine(ledger).settle_from_closed_positions(closed)

        assert ledger.get("m1").pnl == D(2)
        assert ledger.get("m2").pnl == D(-2)

    def test_old_close_does_not_settle_new_movement(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        closed = [ClosedPosition("will-it-rain", D(5), D(10), MOVEMENT_TS - 3600)]

        assert SettlementEngine(ledger).settle_from_closed_positions(closed) == []
        assert ledger.get("m1").status == MovementStatus.RECORDED

    def test_unknown_close_timestamp_is_eligible(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        closed = [ClosedPosition("will-it-rain", D(5), D(10), 0)]

        assert len(SettlementEngine(ledger).settle_from_closed_positions(closed)) == 1

    def test_matches_normalized_fast_market_slug(self, ledger):
        Recorder(ledger).record(make_movement("m1", market_id="xrp-updown-5m-1772278200"))
        closed = [ClosedPosition("xrp-updown-5m-1772278500", D(1), D(4), MOVEMENT_TS + 60)]

        settled = SettlementEngine(ledger).settle_from_closed_positions(closed)

        assert len(settled) == 1
        assert ledger.get("m1").pnl == D(1)

    def test_zero_total_bought_ignored(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        closed = [ClosedPosition("will-it-rain", D(5), D(0), MOVEMENT_TS + 60)]

        assert SettlementEngine(ledger).settle_from_closed_positions(closed) == []

    def test_settled_movements_are_skipped(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        engine = SettlementEngine(ledger)
        engine.settle("m1", D(1))
        closed = [ClosedPosition("will-it-rain", D(5), D(10), MOVEMENT_TS + 60)]

        assert engine.settle_from_closed_positions(closed) == []
        assert ledger.get("m1").pnl == D(1)


def test_closed_position_from_api_dict():
    closed = ClosedPosition.from_dict(
        {"slug": "will-it-rain", "realizedPnl": 3.5, "totalBought": 7, "timestamp": 123}
    )
    assert closed.roi == D("0.5")
    assert closed.timestamp == 123


def test_recorder_cap_uses_config_funds(ledger):
    config = make_config(allocated_funds=D(100))
    with pytest.raises(InvalidInput):
        Recorder(ledger).record(make_movement("m1", copied="6"), config=config)


class TestSettlementLog:
    def test_settle_writes_audit_line(self, ledger, tmp_path):
        Recorder(ledger).record(make_movement("m1", copy_side="BUY", outcome="Yes"))
        path = tmp_path / "audit" / "settlements.log"
        engine = SettlementEngine(ledger, SettlementLog(path, StorageMode.SIMULATION))

        engine.settle("m1", D("1.25"))
        with pytest.raises(AlreadySettled):
            engine.settle("m1", D(9))

        lines = path.read_bytes().splitlines()
        assert len(lines) == 1
        entry = orjson.loads(lines[0])
        assert entry["mode"] == "sim"
        assert entry["movement_id"] == "m1"
        assert entry["side"] == "BUY"
        assert entry["pnl"] == "1.25"
        assert entry["copied_value"] == "4"

    def test_audit_failure_does_not_undo_settlement(self, ledger, tmp_path):
        Recorder(ledger).record(make_movement("m1"))
        blocker = tmp_path / "not-a-dir"
        blocker.write_bytes(b"")
        engine = SettlementEngine(ledger, SettlementLog(blocker / "settlements.log"))

        engine.settle("m1", D(1))

        assert ledger.get("m1").status == MovementStatus.SETTLED


class TestMovementLock:
    def test_settle_waits_for_holder_of_movement_lock(self, ledger):
        Recorder(ledger).record(make_movement("m1"))
        done = threading.Event()

        def settle():
            SettlementEngine(ledger).settle("m1", D(1))
            done.set()

        with ledger.movement_lock("m1"):
            worker = threading.Thread(target=settle)
            worker.start()
            assert not done.wait(0.2)
            assert ledger.get("m1").status == MovementStatus.RECORDED
        worker.join(timeout=5)

        assert done.is_set()
        assert ledger.get("m1").status == MovementStatus.SETTLED

    def test_racing_settle_and_duplicate_record(self, ledger):
        for i in range(20):
            Recorder(ledger).record(make_movement(f"m{i}"))

        errors = []
        settled = []
        barrier = threading.Barrier(8)

        def settler():
            barrier.wait()
            for i in range(20):
                try:
                    settled.append(SettlementEngine(ledger).settle(f"m{i}", D(1)).seq)
                except AlreadySettled:
                    pass

        def recorder():
            barrier.wait()
            for i in range(20):
                try:
                    Recorder(ledger).record(make_movement(f"m{i}"))
                except DuplicateId as e:
                    errors.append(e.movement_id)

        threads = [threading.Thread(target=settler) for _ in range(4)]
        threads += [threading.Thread(target=recorder) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(settled) == 20
        assert len(errors) == 80
        assert len(ledger) == 40
        assert all(m.status == MovementStatus.SETTLED for m in ledger.view.movements())
        assert ledger.exposure == 0

    def test_racing_records_of_new_id_append_once(self, ledger):
        results = []
        barrier = threading.Barrier(6)

        def worker():
            barrier.wait()
            try:
                results.append(Recorder(ledger).record(make_movement("fresh")).seq)
            except DuplicateId:
                results.append(None)

        threads = [threading.Thread(target=worker) for _ in range(6)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(None) == 5
        assert len(ledger) == 1
        assert ledger.exposure == D(4)
