"""
Append-only movement ledger.

Durable JSONL log; one self-describing record per line with a
monotonic sequence number. The ledger is the sole source of truth:
the exposure aggregate and per-movement state are derived from it
and rebuilt by replay on startup.
"""

import bisect
import logging
import os
import threading
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path
from typing import Iterable, Iterator, Optional

import orjson

from copytrade_common.enums import MovementStatus
from copytrade_common.errors import CopyTradeError, ExposureCapReached, InvalidTransition
from copytrade_common.util import decimal_default

from .locks import KeyedLock
from .types import Movement, LedgerRecord

logger = logging.getLogger(__name__)


def fold_exposure(movements: Iterable[Movement]) -> Decimal:
    """Sum copied_value over every movement currently RECORDED."""
    return sum(
        (m.copied_value for m in movements if m.status == MovementStatus.RECORDED),
        Decimal(0),
    )


@dataclass(frozen=True)
class LedgerView:
    """
    Immutable, self-consistent view of the ledger.

    Published by atomic reference swap after every append; readers
    never see a record without its matching aggregate.

    The record list, per-id history and id order are append-only and
    shared with later views. A view only looks at its first `count`
    records and `order_count` ids, so publishing one is O(1).
    """
    seq: int = 0
    count: int = 0
    order_count: int = 0
    exposure: Decimal = Decimal(0)
    _records: list = field(default_factory=list, repr=False, compare=False)
    _history: dict = field(default_factory=dict, repr=False, compare=False)
    _order: list = field(default_factory=list, repr=False, compare=False)

    def __len__(self) -> int:
        return self.count

    def get(self, movement_id: str) -> Optional[Movement]:
        """State of one movement as of this view's seq."""
        for record in reversed(self._history.get(movement_id, ())):
            if record.seq <= self.seq:
                return record.movement
        return None

    def movements(self) -> list[Movement]:
        """Current state of every movement, oldest first."""
        return [self.get(mid) for mid in self._order[:self.order_count]]

    def records(self) -> list[LedgerRecord]:
        return self._records[:self.count]

    def records_since(self, since: int, limit: Optional[int] = None) -> list[LedgerRecord]:
        """Records with seq > since, ascending."""
        start = bisect.bisect_right(self._records, since, hi=self.count, key=lambda r: r.seq)
        end = self.count if limit is None else min(self.count, start + limit)
        return self._records[start:end]

    def extend(self, record: LedgerRecord, exposure: Decimal) -> "LedgerView":
        """
        Add a record to the shared structures and return the view that
        includes it. Only the single writer may call this.
        """
        mid = record.movement.movement_id
        history = self._history.setdefault(mid, [])
        is_new = not history
        history.append(record)
        self._records.append(record)
        if is_new:
            self._order.append(mid)
        return LedgerView(
            seq=record.seq,
            count=self.count + 1,
            order_count=self.order_count + 1 if is_new else self.order_count,
            exposure=exposure,
            _records=self._records,
            _history=self._history,
            _order=self._order,
        )


class LedgerStore:
    """
    Durable append-only ledger backed by a JSONL file.

    - Single writer discipline: appends serialize on one lock
    - Readers use `view` and never block on the append lock
    - Operations on the same movement_id serialize via `movement_lock`
    """

    def __init__(self, path: Path):
        """
        Initialize the store.

        Args:
            path: Ledger file path, created if missing
        """
        self.path = Path(path)
        self._append_lock = threading.Lock()
        self._movement_locks = KeyedLock()
        self._file = None
        self._view = LedgerView()
        self._loaded = False

    # ---------- lifecycle ----------

    def open(self) -> "LedgerStore":
        """Replay the file into memory and open it for appending."""
        with self._append_lock:
            if self._loaded:
                return self
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.touch(exist_ok=True)
            self._view = self._replay()
            self._file = open(self.path, "ab")
            self._loaded = True
        logger.info(
            f"Ledger opened at {self.path}: {self._view.count} records, "
            f"seq={self._view.seq}, exposure={self._view.exposure}"
        )
        return self

    def close(self) -> None:
        with self._append_lock:
            if self._file:
                self._file.close()
                self._file = None
            self._loaded = False

    def _replay(self) -> LedgerView:
        """
        Rebuild the in-memory view from disk.

        A trailing line without newline is an interrupted write and is
        truncated. Unparseable or out-of-order lines are skipped.
        """
        raw = self.path.read_bytes()
        complete_end = raw.rfind(b"\n") + 1
        if complete_end < len(raw):
            logger.warning(
                f"Ledger {self.path}: truncating {len(raw) - complete_end} bytes "
                "of partial trailing record"
            )
            with open(self.path, "r+b") as f:
                f.truncate(complete_end)
                f.flush()
                os.fsync(f.fileno())
            raw = raw[:complete_end]

        view = LedgerView()
        latest: dict[str, Movement] = {}

        for lineno, line in enumerate(raw.split(b"\n"), start=1):
            if not line.strip():
                continue
            try:
                record = LedgerRecord.from_dict(orjson.loads(line))
            except (orjson.JSONDecodeError, CopyTradeError, TypeError, ValueError) as e:
                logger.warning(f"Ledger {self.path}: skipping line {lineno}: {e}")
                continue
            if record.seq <= view.seq:
                logger.warning(
                    f"Ledger {self.path}: skipping line {lineno}, seq {record.seq} "
                    f"not after {view.seq}"
                )
                continue

            latest[record.movement.movement_id] = record.movement
            view = view.extend(record, view.exposure)

        return LedgerView(
            seq=view.seq,
            count=view.count,
            order_count=view.order_count,
            exposure=fold_exposure(latest.values()),
            _records=view._records,
            _history=view._history,
            _order=view._order,
        )

    # ---------- reads ----------

    @property
    def view(self) -> LedgerView:
        """Latest published view; a plain attribute read."""
        return self._view

    @property
    def exposure(self) -> Decimal:
        return self._view.exposure

    @property
    def seq(self) -> int:
        return self._view.seq

    def __len__(self) -> int:
        return self._view.count

    def get(self, movement_id: str) -> Optional[Movement]:
        return self._view.get(movement_id)

    def updates_since(self, since: int, limit: Optional[int] = None) -> tuple[int, list[LedgerRecord]]:
        """
        Incremental feed.

        Returns:
            (latest_seq, records with seq > since in ascending order)
        """
        view = self._view
        return view.seq, view.records_since(since, limit)

    # ---------- writes ----------

    def movement_lock(self, movement_id: str):
        """Context manager serializing all operations on one movement_id."""
        return self._movement_locks.hold(movement_id)

    def append(self, movement: Movement, max_exposure: Optional[Decimal] = None) -> LedgerRecord:
        """
        Append a movement state.

        The line is written and fsynced before the new view is
        published, so the aggregate never runs ahead of the file.

        Args:
            movement: RECORDED or SETTLED movement
            max_exposure: Cap the resulting open exposure may not pass;
                checked against the view being extended

        Raises:
            InvalidTransition: If the ledger is not open or the status
                cannot be persisted
            ExposureCapReached: If the append would exceed max_exposure
        """
        if movement.status not in (MovementStatus.RECORDED, MovementStatus.SETTLED):
            raise InvalidTransition(
                movement.movement_id, f"cannot persist status {movement.status.value}"
            )

        mid = movement.movement_id
        with self._append_lock:
            if not self._file:
                raise InvalidTransition(mid, "ledger is not open")

            view = self._view
            previous = view.get(mid)
            exposure = view.exposure
            if previous is not None and previous.status == MovementStatus.RECORDED:
                exposure -= previous.copied_value
            if movement.status == MovementStatus.RECORDED:
                exposure += movement.copied_value

            if max_exposure is not None and exposure > max_exposure:
                raise ExposureCapReached(
                    f"recording {mid} for {movement.copied_value} would take exposure "
                    f"from {view.exposure} to {exposure}, over the cap of {max_exposure}"
                )

            record = LedgerRecord(seq=view.seq + 1, movement=movement)
            line = orjson.dumps(record.to_dict(), default=decimal_default) + b"\n"
            offset = self._file.tell()
            try:
                self._file.write(line)
                self._file.flush()
                os.fsync(self._file.fileno())
            except OSError:
                # Roll back so no half line precedes the next append
                self._file.truncate(offset)
                raise

            self._view = view.extend(record, exposure)

        logger.debug(f"Ledger append seq={record.seq} {mid} {movement.status.value}")
        return record

    def recompute_exposure(self) -> Decimal:
        """
        Drop the cached aggregate and fold it again from the records.

        Returns:
            The recomputed exposure
        """
        with self._append_lock:
            view = self._view
            exposure = fold_exposure(view.movements())
            if exposure != view.exposure:
                logger.warning(
                    f"Ledger exposure cache drifted: cached={view.exposure} folded={exposure}"
                )
            self._view = LedgerView(
                seq=view.seq,
                count=view.count,
                order_count=view.order_count,
                exposure=exposure,
                _records=view._records,
                _history=view._history,
                _order=view._order,
            )
            return exposure

    def __iter__(self) -> Iterator[LedgerRecord]:
        return iter(self._view.records())
