"""Row models for the two statistics tables.

:class:`TagStat` and :class:`ManifestStat` mirror ``tag_pull_stats`` and
``manifest_pull_stats`` (see ``sql/schema/001_pull_stats.sql``).  They are
what :mod:`pullstats.queries` returns; ``from_row`` builds one from a
``SELECT`` in column order and converts the naive UTC timestamps back to aware
datetimes.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Any

from pullstats.warehouse import from_db_time

TAG_STAT_COLUMNS = (
    "repository_id",
    "tag_name",
    "pull_count",
    "last_pull_date",
    "current_manifest_digest",
    "created_at",
    "updated_at",
)

MANIFEST_STAT_COLUMNS = (
    "repository_id",
    "manifest_digest",
    "pull_count",
    "last_pull_date",
    "last_tag_pulled",
    "last_tag_pull_date",
    "created_at",
    "updated_at",
)


@dataclass(frozen=True)
class TagStat:
    """Pull counter for one (repository, tag)."""

    repository_id: int
    tag_name: str
    pull_count: int
    last_pull_date: datetime
    # Advisory: what the tag pointed at on its newest pull.
    current_manifest_digest: str | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> TagStat:
        """Build from a row selected in ``TAG_STAT_COLUMNS`` order."""
        repository_id, tag_name, pull_count, last_pull, digest, created, updated = row
        return cls(
            repository_id=int(repository_id),
            tag_name=tag_name,
            pull_count=int(pull_count),
            last_pull_date=from_db_time(last_pull),
            current_manifest_digest=digest,
            created_at=from_db_time(created),
            updated_at=from_db_time(updated),
        )


@dataclass(frozen=True)
class ManifestStat:
    """Pull counter for one (repository, manifest digest).

    ``pull_count`` includes pulls through any tag as well as direct digest
    pulls.  ``last_tag_pulled`` is ``None`` until the manifest has been pulled
    through a tag at least once; digest pulls never clear it.
    """

    repository_id: int
    manifest_digest: str
    pull_count: int
    last_pull_date: datetime
    last_tag_pulled: str | None
    last_tag_pull_date: datetime | None
    created_at: datetime
    updated_at: datetime

    @classmethod
    def from_row(cls, row: tuple[Any, ...]) -> ManifestStat:
        """Build from a row selected in ``MANIFEST_STAT_COLUMNS`` order."""
        (
            repository_id,
            digest,
            pull_count,
            last_pull,
            last_tag,
            last_tag_pull,
            created,
            updated,
        ) = row
        return cls(
            repository_id=int(repository_id),
            manifest_digest=digest,
            pull_count=int(pull_count),
            last_pull_date=from_db_time(last_pull),
            last_tag_pulled=last_tag,
            last_tag_pull_date=from_db_time(last_tag_pull),
            created_at=from_db_time(created),
            updated_at=from_db_time(updated),
        )
