"""Scheduler: one aggregation pass per tick, at most one pass cluster-wide.

``run_pass(open_session, worker=..., lock=...)`` runs one pass through the
state machine::

    IDLE → ACQUIRING_LOCK ─┬─ LockHeld ──────────────────────────────→ IDLE
                           └─ acquired → READING → AGGREGATING
                                       → CHECKPOINTING ─(next batch)─┐
                                       ↑─────────────────────────────┘
                                       → RELEASING_LOCK → IDLE

``open_session`` is called only once the run lock is held, and the session it
yields (warehouse connection, event source, tag resolver) is closed before the
lock is released.  DuckDB keeps an exclusive file lock for the life of a
read-write connection, so an instance holds the warehouse only while it runs
a pass; ``warehouse_session(paths, worker)`` is the production factory.

Each batch is read from the checkpoint cursor up to ``now - consistency_lag``,
applied in one transaction, and only then recorded in the checkpoint.  A
failure in READING / AGGREGATING / CHECKPOINTING jumps straight to
RELEASING_LOCK; the checkpoint stays at the last committed batch, so the next
pass re-reads the unfinished window.

``run_forever(pass_fn, interval_seconds=..., stop=...)`` drives passes on a
fixed period until *stop* is set.

The checkpoint is loaded at the start of every pass and threaded through it as
a value; nothing about progress is kept in process memory between passes.
"""

from __future__ import annotations

import enum
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import AbstractContextManager, contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Literal

import duckdb

from pullstats.aggregate import AggregateStats, PassCancelled, WriteFailure, aggregate_batch
from pullstats.checkpoint import Checkpoint, load_checkpoint, plan_batch, save_checkpoint
from pullstats.config import WorkerSettings
from pullstats.lock import LockHeld, LockLost, RunLock
from pullstats.logging import get_logger
from pullstats.paths import ProjectPaths
from pullstats.resolver import TagResolver, WarehouseTagResolver
from pullstats.sources import EventSource, SourceUnavailable, build_source, read_batch
from pullstats.warehouse import open_warehouse, run_migrations

_log = get_logger(__name__)

PassOutcome = Literal[
    "completed",
    "lock_held",
    "source_unavailable",
    "write_failed",
    "lock_lost",
    "cancelled",
    "disabled",
]


class PassState(enum.Enum):
    IDLE = "idle"
    ACQUIRING_LOCK = "acquiring_lock"
    LOCK_HELD = "lock_held"
    READING = "reading"
    AGGREGATING = "aggregating"
    CHECKPOINTING = "checkpointing"
    RELEASING_LOCK = "releasing_lock"


@dataclass(frozen=True)
class PassSession:
    """What one pass works against."""

    conn: duckdb.DuckDBPyConnection
    source: EventSource
    resolver: TagResolver


SessionFactory = Callable[[], AbstractContextManager[PassSession]]


@contextmanager
def warehouse_session(paths: ProjectPaths, worker: WorkerSettings) -> Iterator[PassSession]:
    """Open the on-disk warehouse for one pass, migrated, and close it after."""
    conn = open_warehouse(paths)
    try:
        run_migrations(conn)
        yield PassSession(
            conn=conn,
            source=build_source(
                paths.audit_log_root,
                conn,
                timeout_seconds=worker.read_timeout_seconds,
                fallback_enabled=worker.fallback_enabled,
            ),
            resolver=WarehouseTagResolver(conn),
        )
    finally:
        conn.close()


@dataclass(frozen=True)
class PassResult:
    """Outcome of one :func:`run_pass`.

    ``checkpoint_after`` is the last durably saved checkpoint; it equals
    ``checkpoint_before`` when no batch committed.
    """

    outcome: PassOutcome
    batches: int = 0
    stats: AggregateStats = AggregateStats()
    checkpoint_before: Checkpoint | None = None
    checkpoint_after: Checkpoint | None = None
    detail: str = ""


@dataclass
class _Progress:
    checkpoint: Checkpoint
    batches: int = 0
    stats: AggregateStats = field(default_factory=AggregateStats)

    def record(self, checkpoint: Checkpoint, stats: AggregateStats) -> None:
        self.checkpoint = checkpoint
        self.batches += 1
        self.stats = self.stats + stats


def run_pass(
    open_session: SessionFactory,
    *,
    worker: WorkerSettings,
    lock: RunLock,
    now: datetime | None = None,
    stop: threading.Event | None = None,
    quarantine_dir: Path | None = None,
) -> PassResult:
    """Run one aggregation pass and report how it ended.

    Expected conditions (lock contention, unreadable sources, write failures,
    lost lock, shutdown) become a :class:`PassResult` outcome.  Anything else
    propagates, after the session has been closed and the lock released.

    Args:
        open_session:   Opens the warehouse session; called only under the lock.
        worker:         Worker settings (batch size, lag, timeouts, ids).
        lock:           The shared run lock.
        now:            Pass start time; defaults to the wall clock.
        stop:           Shutdown flag; the in-flight batch is discarded.
        quarantine_dir: Where malformed entries are recorded.
    """
    if not worker.enabled:
        _log.info("pull statistics disabled, skipping cycle")
        return PassResult(outcome="disabled")

    started = now if now is not None else datetime.now(UTC)

    _enter(PassState.ACQUIRING_LOCK)
    try:
        lock.acquire()
    except LockHeld as exc:
        _enter(PassState.LOCK_HELD)
        _log.info("run lock held elsewhere, skipping cycle", detail=str(exc))
        _enter(PassState.IDLE)
        return PassResult(outcome="lock_held", detail=str(exc))

    outcome: PassOutcome = "completed"
    detail = ""
    try:
        with open_session() as session:
            before = load_checkpoint(
                session.conn,
                worker.worker_id,
                now=started,
                initial_lookback=timedelta(seconds=worker.initial_lookback_seconds),
            )
            progress = _Progress(checkpoint=before)
            try:
                _drain(
                    session,
                    progress,
                    worker=worker,
                    lock=lock,
                    now=started,
                    stop=stop,
                    quarantine_dir=quarantine_dir,
                )
            except SourceUnavailable as exc:
                outcome, detail = "source_unavailable", str(exc)
                _log.warning("audit log unavailable, will retry next cycle", detail=detail)
            except WriteFailure as exc:
                outcome, detail = "write_failed", str(exc)
                _log.error("batch rolled back", detail=detail)
            except LockLost as exc:
                outcome, detail = "lock_lost", str(exc)
                _log.error("run lock lost mid-pass", detail=detail)
            except PassCancelled as exc:
                outcome, detail = "cancelled", str(exc)
                _log.warning("pass cancelled", detail=detail)
    finally:
        _enter(PassState.RELEASING_LOCK)
        lock.release()
        _enter(PassState.IDLE)

    after = progress.checkpoint
    _log.info(
        "pass finished",
        outcome=outcome,
        batches=progress.batches,
        applied=progress.stats.applied,
        malformed=progress.stats.malformed,
        unresolved=progress.stats.unresolved,
        watermark=after.watermark.isoformat(),
        lag_seconds=round(after.lag(started).total_seconds(), 3),
    )
    return PassResult(
        outcome=outcome,
        batches=progress.batches,
        stats=progress.stats,
        checkpoint_before=before,
        checkpoint_after=after,
        detail=detail,
    )


def _drain(
    session: PassSession,
    progress: _Progress,
    *,
    worker: WorkerSettings,
    lock: RunLock,
    now: datetime,
    stop: threading.Event | None,
    quarantine_dir: Path | None,
) -> None:
    """Apply batches until the window is exhausted or the per-pass cap is hit."""
    end = now - timedelta(seconds=worker.consistency_lag_seconds)

    for _ in range(worker.max_batches_per_pass):
        checkpoint = progress.checkpoint
        if checkpoint.watermark >= end:
            return
        if stop is not None and stop.is_set():
            raise PassCancelled("shutdown requested between batches")
        lock.refresh()

        _enter(PassState.READING)
        batch = read_batch(session.source, checkpoint.cursor, end, worker.batch_size)
        records, next_cursor = plan_batch(batch.records, exhausted=batch.exhausted, end=end)

        _enter(PassState.AGGREGATING)
        stats = aggregate_batch(
            session.conn,
            records,
            session.resolver,
            now=now,
            stop=stop,
            quarantine_dir=quarantine_dir,
            source=batch.source,
            write_timeout_seconds=worker.write_timeout_seconds,
        )

        _enter(PassState.CHECKPOINTING)
        advanced = checkpoint.advanced(
            next_cursor,
            processed=stats.applied,
            malformed=stats.malformed,
            now=now,
        )
        save_checkpoint(session.conn, advanced)
        progress.record(advanced, stats)
        _log.info(
            "batch committed",
            source=batch.source,
            records=stats.total,
            applied=stats.applied,
            tag_pulls=stats.tag_pulls,
            digest_pulls=stats.digest_pulls,
            unresolved=stats.unresolved,
            malformed=stats.malformed,
            skipped_lines=batch.skipped,
            watermark=advanced.watermark.isoformat(),
        )

        if batch.exhausted:
            return


def run_forever(
    pass_fn: Callable[[], PassResult],
    *,
    interval_seconds: float,
    stop: threading.Event,
) -> int:
    """Call *pass_fn* once per *interval_seconds* until *stop* is set.

    A pass that raises is logged and the loop carries on with the next tick.

    Returns:
        Number of passes started.
    """
    passes = 0
    while not stop.is_set():
        tick = time.monotonic()
        passes += 1
        try:
            pass_fn()
        except Exception as exc:
            _log.error("aggregation pass crashed", error=repr(exc), exc_type=type(exc).__name__)
        stop.wait(max(0.0, interval_seconds - (time.monotonic() - tick)))
    _log.info("scheduler stopped", passes=passes)
    return passes


def _enter(state: PassState) -> None:
    _log.debug("pass state", state=state.value)
