"""Read-only projections over the statistics tables.

Thin lookups used by ``pullstats stats`` and by anything that needs to read
counters back (a pruning policy, a UI endpoint).  Nothing here writes.
"""

from __future__ import annotations

import duckdb

from pullstats.models.stats import (
    MANIFEST_STAT_COLUMNS,
    TAG_STAT_COLUMNS,
    ManifestStat,
    TagStat,
)

_TAG_SELECT = f"SELECT {', '.join(TAG_STAT_COLUMNS)} FROM tag_pull_stats"
_MANIFEST_SELECT = f"SELECT {', '.join(MANIFEST_STAT_COLUMNS)} FROM manifest_pull_stats"


def get_tag_stat(
    conn: duckdb.DuckDBPyConnection,
    repository_id: int,
    tag_name: str,
) -> TagStat | None:
    row = conn.execute(
        f"{_TAG_SELECT} WHERE repository_id = ? AND tag_name = ?",
        [repository_id, tag_name],
    ).fetchone()
    return None if row is None else TagStat.from_row(row)


def get_manifest_stat(
    conn: duckdb.DuckDBPyConnection,
    repository_id: int,
    manifest_digest: str,
) -> ManifestStat | None:
    row = conn.execute(
        f"{_MANIFEST_SELECT} WHERE repository_id = ? AND manifest_digest = ?",
        [repository_id, manifest_digest],
    ).fetchone()
    return None if row is None else ManifestStat.from_row(row)


def list_tag_stats(
    conn: duckdb.DuckDBPyConnection,
    repository_id: int,
    *,
    limit: int = 100,
) -> list[TagStat]:
    """Tags of *repository_id*, most recently pulled first."""
    rows = conn.execute(
        f"{_TAG_SELECT} WHERE repository_id = ? "
        f"ORDER BY last_pull_date DESC, tag_name LIMIT {int(limit)}",
        [repository_id],
    ).fetchall()
    return [TagStat.from_row(row) for row in rows]


def list_manifest_stats(
    conn: duckdb.DuckDBPyConnection,
    repository_id: int,
    *,
    limit: int = 100,
) -> list[ManifestStat]:
    """Manifests of *repository_id*, most recently pulled first."""
    rows = conn.execute(
        f"{_MANIFEST_SELECT} WHERE repository_id = ? "
        f"ORDER BY last_pull_date DESC, manifest_digest LIMIT {int(limit)}",
        [repository_id],
    ).fetchall()
    return [ManifestStat.from_row(row) for row in rows]
