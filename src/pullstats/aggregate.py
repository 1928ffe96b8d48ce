"""Pull aggregation: fold a batch of audit entries into the statistics tables.

``aggregate_batch(conn, records, resolver, ...)`` is the single entry point.
For each record, in source order:

1. Classify it with :func:`~pullstats.validate.classify_record`.  Malformed
   entries are skipped, counted, logged and (optionally) quarantined.
2. Resolve the manifest of a tag pull that does not name one, through the
   :class:`~pullstats.resolver.TagResolver`.  An unresolvable tag is still
   counted on the tag side; the manifest side is skipped and logged.
3. Accumulate a per-(repository, tag) delta: pull count, newest pull time, and
   the digest of the newest *resolved* pull together with its pull time
   (unresolved pulls move the pull time but not the digest).
4. Accumulate a per-(repository, digest) delta for every tag pull with a
   digest and every digest pull: pull count, newest pull time, and the tag of
   the newest *tag* pull (digest pulls leave it alone).

The deltas are then upserted in one transaction.  ``ON CONFLICT DO UPDATE``
adds counts, keeps the later ``last_pull_date``, and replaces the advisory
digest only when its pull time is at least the stored ``last_pull_date``
(and the last tag only when its tag-pull time is at least the stored one).
A failure rolls the whole batch back and raises :class:`WriteFailure`; either
both sides of a pull land or neither does.

There is no per-event deduplication: re-applying records re-increments
counters.  Callers bound replays by saving the checkpoint only after this
function returns.
"""

from __future__ import annotations

import threading
from dataclasses import dataclass, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import duckdb

from pullstats.logging import get_logger
from pullstats.models.entry import LogRecord
from pullstats.models.pull import DigestPull, TagPull
from pullstats.quarantine import quarantine_record
from pullstats.resolver import TagResolver
from pullstats.validate import MalformedEventError, classify_record
from pullstats.warehouse import DeadlineExceeded, statement_deadline, to_db_time

_log = get_logger(__name__)

# Column order must match _TagDelta.as_params().
_TAG_UPSERT_SQL = """
INSERT INTO tag_pull_stats (
    repository_id, tag_name, pull_count, last_pull_date,
    current_manifest_digest, current_manifest_digest_at, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (repository_id, tag_name) DO UPDATE SET
    pull_count = pull_count + excluded.pull_count,
    current_manifest_digest = CASE
        WHEN excluded.current_manifest_digest_at IS NOT NULL
             AND excluded.current_manifest_digest_at >= last_pull_date
        THEN excluded.current_manifest_digest
        ELSE current_manifest_digest
    END,
    current_manifest_digest_at = CASE
        WHEN excluded.current_manifest_digest_at IS NOT NULL
             AND excluded.current_manifest_digest_at >= last_pull_date
        THEN excluded.current_manifest_digest_at
        ELSE current_manifest_digest_at
    END,
    last_pull_date = greatest(last_pull_date, excluded.last_pull_date),
    updated_at = excluded.updated_at
"""

# Column order must match _ManifestDelta.as_params().
_MANIFEST_UPSERT_SQL = """
INSERT INTO manifest_pull_stats (
    repository_id, manifest_digest, pull_count, last_pull_date,
    last_tag_pulled, last_tag_pull_date, created_at, updated_at
) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
ON CONFLICT (repository_id, manifest_digest) DO UPDATE SET
    pull_count = pull_count + excluded.pull_count,
    last_pull_date = greatest(last_pull_date, excluded.last_pull_date),
    last_tag_pulled = CASE
        WHEN excluded.last_tag_pull_date IS NOT NULL
             AND (last_tag_pull_date IS NULL OR excluded.last_tag_pull_date >= last_tag_pull_date)
        THEN excluded.last_tag_pulled
        ELSE last_tag_pulled
    END,
    last_tag_pull_date = CASE
        WHEN excluded.last_tag_pull_date IS NOT NULL
             AND (last_tag_pull_date IS NULL OR excluded.last_tag_pull_date >= last_tag_pull_date)
        THEN excluded.last_tag_pull_date
        ELSE last_tag_pull_date
    END,
    updated_at = excluded.updated_at
"""


class WriteFailure(RuntimeError):
    """The batch could not be committed; nothing from it was written."""


class PassCancelled(RuntimeError):
    """Shutdown was requested before the batch committed; nothing was written."""


@dataclass(frozen=True)
class AggregateStats:
    """What one call to :func:`aggregate_batch` did.

    Attributes:
        total:             Records handed in.
        applied:           Records counted (tag pulls + digest pulls).
        tag_pulls:         Records classified as tag pulls.
        digest_pulls:      Records classified as digest pulls.
        unresolved:        Tag pulls whose manifest could not be found.
        malformed:         Records skipped by classification.
        tags_touched:      Distinct (repository, tag) rows upserted.
        manifests_touched: Distinct (repository, digest) rows upserted.
    """

    total: int = 0
    applied: int = 0
    tag_pulls: int = 0
    digest_pulls: int = 0
    unresolved: int = 0
    malformed: int = 0
    tags_touched: int = 0
    manifests_touched: int = 0

    def __add__(self, other: AggregateStats) -> AggregateStats:
        return AggregateStats(
            **{f.name: getattr(self, f.name) + getattr(other, f.name) for f in fields(self)}
        )


@dataclass
class _TagDelta:
    count: int = 0
    last_pull: datetime | None = None
    digest: str | None = None
    digest_at: datetime | None = None

    def add(self, at: datetime, digest: str | None) -> None:
        self.count += 1
        if self.last_pull is None or at >= self.last_pull:
            self.last_pull = at
        if digest is not None and (self.digest_at is None or at >= self.digest_at):
            self.digest = digest
            self.digest_at = at

    def as_params(self, key: tuple[int, str], written_at: datetime) -> list[Any]:
        assert self.last_pull is not None
        stamp = to_db_time(written_at)
        digest_at = None if self.digest_at is None else to_db_time(self.digest_at)
        return [*key, self.count, to_db_time(self.last_pull), self.digest, digest_at, stamp, stamp]


@dataclass
class _ManifestDelta:
    count: int = 0
    last_pull: datetime | None = None
    last_tag: str | None = None
    last_tag_pull: datetime | None = None

    def add(self, at: datetime, tag: str | None) -> None:
        self.count += 1
        if self.last_pull is None or at > self.last_pull:
            self.last_pull = at
        if tag is not None and (self.last_tag_pull is None or at >= self.last_tag_pull):
            self.last_tag = tag
            self.last_tag_pull = at

    def as_params(self, key: tuple[int, str], written_at: datetime) -> list[Any]:
        assert self.last_pull is not None
        stamp = to_db_time(written_at)
        return [
            *key,
            self.count,
            to_db_time(self.last_pull),
            self.last_tag,
            None if self.last_tag_pull is None else to_db_time(self.last_tag_pull),
            stamp,
            stamp,
        ]


def aggregate_batch(
    conn: duckdb.DuckDBPyConnection,
    records: tuple[LogRecord, ...] | list[LogRecord],
    resolver: TagResolver,
    *,
    now: datetime | None = None,
    stop: threading.Event | None = None,
    quarantine_dir: Path | None = None,
    source: str = "unknown",
    write_timeout_seconds: float | None = None,
) -> AggregateStats:
    """Classify, resolve and upsert *records* in one transaction.

    Args:
        conn:                  Open warehouse connection (migrations applied).
        records:               Audit entries in source order.
        resolver:              Tag → manifest lookup for tag pulls without a digest.
        now:                   ``updated_at`` stamp for written rows (default: wall clock).
        stop:                  Shutdown flag, checked between records and before commit.
        quarantine_dir:        Where malformed entries are recorded; None to skip.
        source:                Backend name, used for quarantine file naming.
        write_timeout_seconds: Deadline for the whole write transaction.

    Raises:
        PassCancelled: *stop* was set before commit.
        WriteFailure:  The transaction failed or timed out and was rolled back.
    """
    tags: dict[tuple[int, str], _TagDelta] = {}
    manifests: dict[tuple[int, str], _ManifestDelta] = {}
    tag_pulls = digest_pulls = unresolved = malformed = 0

    for record in records:
        _check_stop(stop)
        try:
            event = classify_record(record)
        except MalformedEventError as exc:
            malformed += 1
            _log.warning(
                "malformed pull event skipped",
                reason=str(exc),
                source=source,
                ordinal=record.id,
                occurred_at=record.occurred_at.isoformat(),
            )
            if quarantine_dir is not None:
                quarantine_record(quarantine_dir, record, str(exc), source=source)
            continue

        if isinstance(event, TagPull):
            tag_pulls += 1
            digest = event.manifest_digest or resolver.resolve(
                event.repository_id, event.tag_name
            )
            tags.setdefault((event.repository_id, event.tag_name), _TagDelta()).add(
                event.occurred_at, digest
            )
            if digest is None:
                unresolved += 1
                _log.warning(
                    "unresolved tag manifest",
                    repository_id=event.repository_id,
                    tag=event.tag_name,
                    occurred_at=event.occurred_at.isoformat(),
                )
                continue
            manifests.setdefault((event.repository_id, digest), _ManifestDelta()).add(
                event.occurred_at, event.tag_name
            )
        elif isinstance(event, DigestPull):
            digest_pulls += 1
            manifests.setdefault(
                (event.repository_id, event.manifest_digest), _ManifestDelta()
            ).add(event.occurred_at, None)

    _check_stop(stop)

    written_at = now if now is not None else datetime.now(UTC)
    _write(
        conn,
        [delta.as_params(key, written_at) for key, delta in tags.items()],
        [delta.as_params(key, written_at) for key, delta in manifests.items()],
        timeout_seconds=write_timeout_seconds,
    )

    return AggregateStats(
        total=len(records),
        applied=tag_pulls + digest_pulls,
        tag_pulls=tag_pulls,
        digest_pulls=digest_pulls,
        unresolved=unresolved,
        malformed=malformed,
        tags_touched=len(tags),
        manifests_touched=len(manifests),
    )


def _write(
    conn: duckdb.DuckDBPyConnection,
    tag_rows: list[list[Any]],
    manifest_rows: list[list[Any]],
    *,
    timeout_seconds: float | None,
) -> None:
    """Upsert both tables atomically; raise WriteFailure after rolling back."""
    if not tag_rows and not manifest_rows:
        return

    try:
        with statement_deadline(conn, timeout_seconds):
            conn.execute("BEGIN TRANSACTION")
            try:
                if tag_rows:
                    conn.executemany(_TAG_UPSERT_SQL, tag_rows)
                if manifest_rows:
                    conn.executemany(_MANIFEST_UPSERT_SQL, manifest_rows)
                conn.execute("COMMIT")
            except BaseException:
                _rollback(conn)
                raise
    except (duckdb.Error, DeadlineExceeded) as exc:
        raise WriteFailure(f"batch write failed: {exc}") from exc


def _rollback(conn: duckdb.DuckDBPyConnection) -> None:
    try:
        conn.execute("ROLLBACK")
    except duckdb.TransactionException:
        pass  # a failed COMMIT has already ended the transaction


def _check_stop(stop: threading.Event | None) -> None:
    if stop is not None and stop.is_set():
        raise PassCancelled("shutdown requested; batch discarded")
