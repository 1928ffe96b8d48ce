"""Event source adapter: pull entries from the audit log, for a time window.

Every backend implements :class:`EventSource`::

    read(after: Cursor, end: datetime, limit: int) -> SourceBatch | SourceFailure

returning at most *limit* pull entries that lie after *after* and before *end*,
in source order (timestamp, then ordinal).  Backend errors never escape as
exceptions: a backend that cannot answer returns a :class:`SourceFailure`.

Backends:

``JsonlLogSource``  the registry's day-partitioned JSONL log archive.  Entries
                    carry their ``id``, so ordering within one timestamp is
                    exact.
``TableLogSource``  the ``audit_log`` table queried directly.  Ordered by
                    timestamp only; records carry no ordinal.

``FallbackChain`` tries its backends in order and answers with the first batch.
:func:`read_batch` turns a final failure into :class:`SourceUnavailable`, which
callers treat as retryable: skip the cycle, leave the checkpoint alone.
"""

from __future__ import annotations

import json
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol

import duckdb
from pydantic import ValidationError

from pullstats.checkpoint import Cursor
from pullstats.discovery import discover_log_files
from pullstats.logging import get_logger
from pullstats.models.entry import PULL_KINDS, LogRecord
from pullstats.warehouse import DeadlineExceeded, from_db_time, statement_deadline, to_db_time

_log = get_logger(__name__)

# Archive lines read between two read-deadline checks within one file.
DEADLINE_CHECK_LINES = 1000


@dataclass(frozen=True)
class SourceBatch:
    """One window's worth of pull entries from a single backend.

    Attributes:
        source:    Name of the backend that served the batch.
        records:   Pull entries in source order, at most ``limit`` of them.
        exhausted: True if the window held no entries beyond ``records``.
        skipped:   Raw lines that could not be read as log entries at all
                   (no parseable timestamp), so cannot be placed in any window.
    """

    source: str
    records: tuple[LogRecord, ...]
    exhausted: bool
    skipped: int = 0


@dataclass(frozen=True)
class SourceFailure:
    """A backend could not serve the window.  Always safe to retry."""

    source: str
    reason: str
    causes: tuple[SourceFailure, ...] = ()


SourceResult = SourceBatch | SourceFailure


class SourceUnavailable(RuntimeError):
    """No backend could serve the window; retry on the next cycle."""

    def __init__(self, failure: SourceFailure) -> None:
        super().__init__(f"{failure.source}: {failure.reason}")
        self.failure = failure


class EventSource(Protocol):
    name: str

    def read(self, after: Cursor, end: datetime, limit: int) -> SourceResult:
        if not self.root.is_dir():
            return SourceFailure(self.name, f"archive root not found: {self.root}")

        deadline = None if self.timeout_seconds is None else self._clock() + self.timeout_seconds

        def check_deadline() -> None:
            if deadline is not None and self._clock() > deadline:
                raise _ReadDeadline

        matching: list[LogRecord] = []
        skipped = 0

        try:
            for partition in discover_log_files(self.root, after.at, end):
                for path in partition.files:
                    check_deadline()
                    records, bad = _read_archive_file(path, check_deadline)
                    skipped += bad
                    matching.extend(
                        r for r in records if r.is_pull and after.admits(r) and r.occurred_at < end
                    )
        except _ReadDeadline:
            return SourceFailure(self.name, f"read exceeded {self.timeout_seconds:g}s deadline")
        except (OSError, UnicodeDecodeError) as exc:
            return SourceFailure(self.name, f"cannot read archive: {exc}")

        matching.sort(key=LogRecord.sort_key)
        return SourceBatch(
            source=self.name,
            records=tuple(matching[:limit]),
            exhausted=len(matching) <= limit,
            skipped=skipped,
        )


class _ReadDeadline(Exception):
    """The archive read ran past its deadline."""


def _read_archive_file(
    path: Path,
    check_deadline: Callable[[], None],
) -> tuple[list[LogRecord], int]:
    """Return the readable entries of one archive file and the count of unreadable lines."""
    records: list[LogRecord] = []
    bad = 0
    with path.open(encoding="utf-8") as fh:
        for line_number, raw in enumerate(fh, start=1):
            if line_number % DEADLINE_CHECK_LINES == 0:
                check_deadline()
            raw = raw.strip()
            if not raw:
                continue
            try:
                records.append(LogRecord.model_validate(json.loads(raw)))
            except (json.JSONDecodeError, ValidationError) as exc:
                bad += 1
                _log.debug(
                    "unreadable archive line",
                    path=str(path),
                    line=line_number,
                    reason=type(exc).__name__,
                )
    return records, bad


# ---------------------------------------------------------------------------
# Fallback: audit_log table
# ---------------------------------------------------------------------------


class TableLogSource:
    """Queries the ``audit_log`` table directly.

    Rows come back ordered by timestamp alone and without ordinals.  A cursor
    that carries an ordinal is honoured only to the timestamp: the cursor's
    own instant is read again, which can recount entries at that instant.
    """

    name = "audit_table"

    def __init__(
        self,
        conn: duckdb.DuckDBPyConnection,
        *,
        timeout_seconds: float | None = None,
    ) -> None:
        self.conn = conn
        self.timeout_seconds = timeout_seconds

    def read(self, after: Cursor, end: datetime, limit: int) -> SourceResult:
        kinds = sorted(PULL_KINDS)
        sql = f"""
            SELECT kind, repository_id, occurred_at, metadata_json
            FROM audit_log
            WHERE kind IN ({", ".join("?" for _ in kinds)})
              AND occurred_at >= ? AND occurred_at < ?
            ORDER BY occurred_at
            LIMIT {int(limit) + 1}
        """
        params = [*kinds, to_db_time(after.at), to_db_time(end)]

        try:
            with statement_deadline(self.conn, self.timeout_seconds):
                rows = self.conn.execute(sql, params).fetchall()
        except DeadlineExceeded as exc:
            return SourceFailure(self.name, str(exc))
        except duckdb.Error as exc:
            return SourceFailure(self.name, f"audit_log query failed: {exc}")

        records = tuple(
            LogRecord(
                id=None,
                kind=kind,
                repository_id=repository_id,
                occurred_at=from_db_time(occurred_at),
                metadata=_decode_metadata(metadata_json),
            )
            for kind, repository_id, occurred_at, metadata_json in rows[:limit]
        )
        return SourceBatch(source=self.name, records=records, exhausted=len(rows) <= limit)


def _decode_metadata(raw: str | None) -> Any:
    """Parse ``metadata_json``; undecodable text is passed on for classification to reject."""
    if raw is None:
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


# ---------------------------------------------------------------------------
# Chain
# ---------------------------------------------------------------------------


class FallbackChain:
    """Ordered list of backends behind the :class:`EventSource` interface."""

    name = "chain"

    def __init__(self, strategies: Sequence[EventSource]) -> None:
        if not strategies:
            raise ValueError("FallbackChain needs at least one source")
        self.strategies = tuple(strategies)

    def read(self, after: Cursor, end: datetime, limit: int) -> SourceResult:
        failures: list[SourceFailure] = []
        for strategy in self.strategies:
            result = strategy.read(after, end, limit)
            if isinstance(result, SourceBatch):
                if failures:
                    _log.info("read served by fallback source", source=result.source)
                return result
            failures.append(result)
            _log.warning("audit-log source failed", source=result.source, reason=result.reason)

        return SourceFailure(
            self.name,
            "all sources failed: " + "; ".join(f"{f.source}: {f.reason}" for f in failures),
            causes=tuple(failures),
        )


def read_batch(source: EventSource, after: Cursor, end: datetime, limit: int) -> SourceBatch:
    """Read one batch from *source*, raising :class:`SourceUnavailable` on failure."""
    result = source.read(after, end, limit)
    if isinstance(result, SourceFailure):
        raise SourceUnavailable(result)
    return result


def build_source(
    audit_log_root: Path,
    conn: duckdb.DuckDBPyConnection,
    *,
    timeout_seconds: float | None,
    fallback_enabled: bool = True,
) -> FallbackChain:
    """Return the production chain: log archive first, then the audit table."""
    strategies: list[EventSource] = [
        JsonlLogSource(audit_log_root, timeout_seconds=timeout_seconds)
    ]
    if fallback_enabled:
        strategies.append(TableLogSource(conn, timeout_seconds=timeout_seconds))
    return FallbackChain(strategies)
