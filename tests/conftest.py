"""Shared pytest helpers and fixtures for the pullstats test suite.

T0                      — fixed, timezone-aware reference instant
DIGEST_A / DIGEST_B     — well-formed sha256 digests
make_record(...)        — build a LogRecord for a tag or digest pull
archive_entry(...)      — the JSONL-archive dict for the same pull
write_archive(...)      — write entries into <root>/<YYYY-MM-DD>/<name>.jsonl
insert_audit_row(...)   — add a pull to the audit_log table
bind_tag(...)           — add a tag_bindings row
StaticResolver          — dict-backed TagResolver
ListSource              — in-memory EventSource honouring cursor and limit
FailingSource           — EventSource that always fails
ExplodingConnection     — connection proxy whose manifest upsert fails
StallingConnection      — connection proxy whose manifest upsert runs long
conn                    — in-memory DuckDB with all migrations applied
"""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import duckdb
import pytest

from pullstats.checkpoint import Cursor
from pullstats.models.entry import LogRecord
from pullstats.sources import SourceBatch, SourceFailure
from pullstats.sql_runner import apply_pending_migrations
from pullstats.warehouse import SQL_SCHEMA_DIR, to_db_time

T0 = datetime(2026, 10, 19, 8, 0, 0, tzinfo=UTC)

DIGEST_A = "sha256:" + "a" * 64
DIGEST_B = "sha256:" + "b" * 64
DIGEST_C = "sha256:" + "c" * 64


def at(seconds: float) -> datetime:
    """Return ``T0 + seconds``."""
    return T0 + timedelta(seconds=seconds)


def _metadata(tag: str | None, digest: str | None) -> dict[str, Any]:
    meta: dict[str, Any] = {"namespace": "acme", "repo": "api"}
    if tag is not None:
        meta["tag"] = tag
    if digest is not None:
        meta["manifest_digest"] = digest
    return meta


def make_record(
    ordinal: int | None,
    *,
    when: datetime,
    repository_id: int | None = 1,
    tag: str | None = None,
    digest: str | None = None,
    kind: str = "pull_repo",
    metadata: Any = None,
) -> LogRecord:
    """Build a LogRecord; *metadata* overrides the tag/digest payload when given."""
    return LogRecord(
        id=ordinal,
        kind=kind,
        repository_id=repository_id,
        occurred_at=when,
        metadata=metadata if metadata is not None else _metadata(tag, digest),
    )


def archive_entry(
    ordinal: int,
    *,
    when: datetime,
    repository_id: int = 1,
    tag: str | None = None,
    digest: str | None = None,
    kind: str = "pull_repo",
) -> dict[str, Any]:
    """Return the archive JSON object for one audit entry."""
    return {
        "id": ordinal,
        "kind": kind,
        "repository_id": repository_id,
        "datetime": when.isoformat().replace("+00:00", "Z"),
        "performer": "robot$ci",
        "metadata": _metadata(tag, digest),
    }


def write_archive(root: Path, entries: list[dict[str, Any]], name: str = "registry-0") -> None:
    """Append *entries* to their day partitions under *root*."""
    for entry in entries:
        day = entry["datetime"][:10]
        day_dir = root / day
        day_dir.mkdir(parents=True, exist_ok=True)
        with (day_dir / f"{name}.jsonl").open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(entry) + "\n")


def insert_audit_row(
    conn: duckdb.DuckDBPyConnection,
    row_id: int,
    *,
    when: datetime,
    repository_id: int | None = 1,
    tag: str | None = None,
    digest: str | None = None,
    kind: str = "pull_repo",
    metadata_json: str | None = None,
) -> None:
    payload = metadata_json if metadata_json is not None else json.dumps(_metadata(tag, digest))
    conn.execute(
        "INSERT INTO audit_log (id, kind, repository_id, occurred_at, metadata_json) "
        "VALUES (?, ?, ?, ?, ?)",
        [row_id, kind, repository_id, to_db_time(when), payload],
    )


def bind_tag(
    conn: duckdb.DuckDBPyConnection,
    repository_id: int,
    tag: str,
    digest: str,
    *,
    start: datetime = T0 - timedelta(days=30),
    end: datetime | None = None,
) -> None:
    conn.execute(
        "INSERT INTO tag_bindings "
        "(repository_id, tag_name, manifest_digest, lifetime_start, lifetime_end) "
        "VALUES (?, ?, ?, ?, ?)",
        [repository_id, tag, digest, to_db_time(start), None if end is None else to_db_time(end)],
    )


class StaticResolver:
    """TagResolver backed by a dict; records every lookup."""

    def __init__(self, bindings: dict[tuple[int, str], str] | None = None) -> None:
        self.bindings = bindings or {}
        self.calls: list[tuple[int, str]] = []

    def resolve(self, repository_id: int, tag_name: str) -> str | None:
        self.calls.append((repository_id, tag_name))
        return self.bindings.get((repository_id, tag_name))


class ListSource:
    """EventSource over a fixed list of records."""

    def __init__(self, records: list[LogRecord], name: str = "memory") -> None:
        self.name = name
        self.records = sorted(records, key=LogRecord.sort_key)
        self.reads: list[tuple[Cursor, datetime, int]] = []

    def read(self, after: Cursor, end: datetime, limit: int) -> SourceBatch:
        self.reads.append((after, end, limit))
        matching = [r for r in self.records if after.admits(r) and r.occurred_at < end]
        return SourceBatch(
            source=self.name,
            records=tuple(matching[:limit]),
            exhausted=len(matching) <= limit,
        )


class ExplodingConnection:
    """Delegates to a real connection but fails the manifest upsert."""

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self._conn = conn

    def executemany(self, sql: str, params: Any) -> Any:
        if "manifest_pull_stats" in sql:
            raise duckdb.IOException("simulated disk failure")
        return self._conn.executemany(sql, params)

    def __getattr__(self, name: str) -> Any:
        return getattr(self._conn, name)


class StallingConnection(ExplodingConnection):
    """Delegates to a real connection but runs a long query in the manifest upsert."""

    def executemany(self, sql: str, params: Any) -> Any:
        if "manifest_pull_stats" in sql:
            self._conn.execute(
                "SELECT count(*) FROM range(100000000) a, range(100000000) b"
            ).fetchall()
        return self._conn.executemany(sql, params)


class FailingSource:
    """EventSource that always answers with a failure."""

    def __init__(self, name: str = "broken", reason: str = "connection refused") -> None:
        self.name = name
        self.reason = reason
        self.reads = 0

    def read(self, after: Cursor, end: datetime, limit: int) -> SourceFailure:
        self.reads += 1
        return SourceFailure(self.name, self.reason)


@pytest.fixture()
def conn():
    c = duckdb.connect(":memory:")
    apply_pending_migrations(c, SQL_SCHEMA_DIR)
    yield c
    c.close()
