"""Audit-log archive discovery for a time window.

``discover_log_files(root, start, end)`` returns the ``*.jsonl`` files in the
day partitions that can hold entries for ``[start, end)``::

    <audit_log_root>/
      2026-10-18/
        registry-0.jsonl
        registry-1.jsonl
      2026-10-19/
        registry-0.jsonl

Partition directories are named for the UTC date of the entries they hold.
Directories whose names are not ``YYYY-MM-DD`` are ignored.
"""

from __future__ import annotations

from datetime import UTC, date, datetime
from pathlib import Path
from typing import NamedTuple


class LogPartition(NamedTuple):
    """One day directory of the archive and its JSONL files, in name order."""

    day: date
    files: tuple[Path, ...]


def discover_log_files(root: Path, start: datetime, end: datetime) -> list[LogPartition]:
    """Return the partitions overlapping ``[start, end)``, oldest day first.

    Args:
        root:  Archive root (registry-owned, read-only).  A missing root
               yields an empty list, as on a registry that has not logged
               anything yet.
        start: Inclusive window start (timezone-aware).
        end:   Exclusive window end (timezone-aware).
    """
    if not root.is_dir() or end <= start:
        return []

    first = start.astimezone(UTC).date()
    last = end.astimezone(UTC).date()

    partitions = []
    for day_dir in root.iterdir():
        if not day_dir.is_dir():
            continue
        day = _partition_day(day_dir.name)
        if day is None or not first <= day <= last:
            continue
        files = tuple(sorted(p for p in day_dir.glob("*.jsonl") if p.is_file()))
        if files:
            partitions.append(LogPartition(day=day, files=files))

    return sorted(partitions)


def _partition_day(name: str) -> date | None:
    try:
        return date.fromisoformat(name)
    except ValueError:
        return None
