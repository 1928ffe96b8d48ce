"""Processing checkpoint: how far aggregation has durably progressed.

One ``pull_stats_checkpoint`` row per worker id holds a :class:`Cursor`
(watermark timestamp plus optional ordinal) and cumulative counters.

``load_checkpoint``  reads the row, creating it on first run at
                     ``now - initial_lookback``.
``save_checkpoint``  upserts the row; refuses to move the watermark backwards.
``plan_batch``       decides which records of a source batch to apply and
                     where the cursor lands once they are committed.

The checkpoint is saved only after the batch it covers has committed, never
before.  A crash in between replays that batch on the next pass.
"""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Any, NamedTuple

import duckdb

from pullstats.logging import get_logger
from pullstats.models.entry import LogRecord
from pullstats.warehouse import from_db_time, to_db_time

_log = get_logger(__name__)

# Smallest step past a timestamp when a whole batch shares it.
_TICK = timedelta(microseconds=1)


class Cursor(NamedTuple):
    """Read position in the audit log.

    With an ordinal, every entry ordered at or before ``(at, ordinal)`` is
    done.  Without one, every entry strictly before ``at`` is done and none
    at ``at`` itself: the next window is ``[at, end)``.
    """

    at: datetime
    ordinal: int | None = None

    def key(self) -> tuple[datetime, int]:
        return (self.at, -1 if self.ordinal is None else self.ordinal)

    def admits(self, record: LogRecord) -> bool:
        """Return True if *record* lies after this cursor."""
        if self.ordinal is None:
            return record.occurred_at >= self.at
        return record.sort_key() > self.key()


@dataclass(frozen=True)
class Checkpoint:
    """Durable progress record for one worker id."""

    worker_id: str
    cursor: Cursor
    processed_count: int = 0
    malformed_count: int = 0
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def watermark(self) -> datetime:
        return self.cursor.at

    def lag(self, now: datetime) -> timedelta:
        """How far the watermark trails *now*."""
        return now - self.cursor.at

    def advanced(
        self,
        cursor: Cursor,
        *,
        processed: int,
        malformed: int,
        now: datetime,
    ) -> Checkpoint:
        """Return a copy moved to *cursor* with the counters incremented.

        Raises:
            ValueError: *cursor* is behind the current position.
        """
        if cursor.key() < self.cursor.key():
            raise ValueError(
                f"checkpoint for {self.worker_id!r} cannot move backwards: "
                f"{self.cursor} -> {cursor}"
            )
        return replace(
            self,
            cursor=cursor,
            processed_count=self.processed_count + processed,
            malformed_count=self.malformed_count + malformed,
            updated_at=now,
        )


_SELECT_SQL = """
SELECT worker_id, last_processed_at, last_processed_ordinal,
       processed_count, malformed_count, created_at, updated_at
FROM pull_stats_checkpoint
WHERE worker_id = ?
"""

_UPSERT_SQL = """
INSERT INTO pull_stats_checkpoint (
    worker_id, last_processed_at, last_processed_ordinal,
    processed_count, malformed_count, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (worker_id) DO UPDATE SET
    last_processed_at      = excluded.last_processed_at,
    last_processed_ordinal = excluded.last_processed_ordinal,
    processed_count        = excluded.processed_count,
    malformed_count        = excluded.malformed_count,
    updated_at             = excluded.updated_at
"""


def get_checkpoint(conn: duckdb.DuckDBPyConnection, worker_id: str) -> Checkpoint | None:
    """Return the stored checkpoint for *worker_id*, or None if it has never run."""
    row = conn.execute(_SELECT_SQL, [worker_id]).fetchone()
    return None if row is None else _from_row(row)


def load_checkpoint(
    conn: duckdb.DuckDBPyConnection,
    worker_id: str,
    *,
    now: datetime,
    initial_lookback: timedelta,
) -> Checkpoint:
    """Return the checkpoint for *worker_id*, creating it on first run.

    A new checkpoint starts at ``now - initial_lookback`` with no ordinal.
    """
    existing = get_checkpoint(conn, worker_id)
    if existing is not None:
        return existing

    checkpoint = Checkpoint(
        worker_id=worker_id,
        cursor=Cursor(now - initial_lookback),
        created_at=now,
        updated_at=now,
    )
    save_checkpoint(conn, checkpoint)
    _log.info(
        "checkpoint created",
        watermark=checkpoint.watermark.isoformat(),
        lookback_seconds=initial_lookback.total_seconds(),
    )
    return checkpoint


def save_checkpoint(conn: duckdb.DuckDBPyConnection, checkpoint: Checkpoint) -> None:
    """Upsert *checkpoint*.

    Raises:
        ValueError: The stored cursor is already past ``checkpoint.cursor``.
    """
    stored = get_checkpoint(conn, checkpoint.worker_id)
    if stored is not None and checkpoint.cursor.key() < stored.cursor.key():
        raise ValueError(
            f"checkpoint for {checkpoint.worker_id!r} cannot move backwards: "
            f"stored {stored.cursor} > {checkpoint.cursor}"
        )

    created = checkpoint.created_at or checkpoint.updated_at or checkpoint.watermark
    updated = checkpoint.updated_at or created
    conn.execute(
        _UPSERT_SQL,
        [
            checkpoint.worker_id,
            to_db_time(checkpoint.cursor.at),
            checkpoint.cursor.ordinal,
            checkpoint.processed_count,
            checkpoint.malformed_count,
            to_db_time(created),
            to_db_time(updated),
        ],
    )


def plan_batch(
    records: tuple[LogRecord, ...],
    *,
    exhausted: bool,
    end: datetime,
) -> tuple[tuple[LogRecord, ...], Cursor]:
    """Choose the records to apply from one source batch and the cursor after them.

    Args:
        records:   Source-ordered records read after the current cursor.
        exhausted: True if the source returned everything up to *end*.
        end:       Exclusive end of the read window.

    Returns:
        ``(to_apply, next_cursor)``:

        * exhausted window — all records; cursor ``(end, None)``.
        * truncated, last record has an ordinal — all records; cursor at
          that record.
        * truncated, no ordinal — records sharing the last timestamp are held
          back and re-read next time from that timestamp.  If the whole batch
          shares one timestamp it is applied and the cursor steps one
          microsecond past it; entries at that instant beyond the batch size
          are not read.
    """
    if exhausted or not records:
        return records, Cursor(end)

    last = records[-1]
    if last.id is not None:
        return records, Cursor(last.occurred_at, last.id)

    cut = len(records)
    while cut > 0 and records[cut - 1].occurred_at == last.occurred_at:
        cut -= 1

    if cut == 0:
        _log.warning(
            "batch saturated by a single timestamp",
            timestamp=last.occurred_at.isoformat(),
            records=len(records),
        )
        return records, Cursor(last.occurred_at + _TICK)

    return records[:cut], Cursor(last.occurred_at)


def _from_row(row: tuple[Any, ...]) -> Checkpoint:
    worker_id, at, ordinal, processed, malformed, created, updated = row
    return Checkpoint(
        worker_id=worker_id,
        cursor=Cursor(from_db_time(at), None if ordinal is None else int(ordinal)),
        processed_count=int(processed),
        malformed_count=int(malformed),
        created_at=from_db_time(created),
        updated_at=from_db_time(updated),
    )
