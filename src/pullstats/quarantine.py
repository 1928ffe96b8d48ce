"""Quarantine writer for pull entries the aggregator had to skip.

``quarantine_record(quarantine_dir, record, reason, source=...)`` appends one
JSON line to::

    <quarantine_dir>/malformed_events/<YYYY-MM-DD>/<source>.jsonl

partitioned by the UTC date of the entry itself, so a replayed window lands
next to its first occurrence.  Each line keeps the original entry under
``record`` together with the reason it was rejected; the files are plain
JSONL and can be re-fed to the registry's log tooling once fixed.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

from pullstats.models.entry import LogRecord

_SUBDIR = "malformed_events"


def quarantine_record(
    quarantine_dir: Path,
    record: LogRecord,
    reason: str,
    *,
    source: str = "unknown",
) -> Path:
    """Append *record* to the quarantine file for its day and return that path."""
    day = record.occurred_at.astimezone(UTC).strftime("%Y-%m-%d")
    day_dir = quarantine_dir / _SUBDIR / day
    day_dir.mkdir(parents=True, exist_ok=True)

    line = {
        "quarantined_at_utc": datetime.now(UTC).isoformat(timespec="seconds"),
        "source": source,
        "reason": reason,
        "record": record.model_dump(mode="json", by_alias=True),
    }
    target = day_dir / f"{source}.jsonl"
    with target.open("a", encoding="utf-8") as fh:
        fh.write(json.dumps(line, default=str) + "\n")
    return target
