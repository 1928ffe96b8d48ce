"""Pydantic model for one registry audit-log entry.

Both read paths produce :class:`LogRecord`: the JSONL log archive validates
each line into it, and the ``audit_log`` table fallback builds it from rows.
Only the fields needed to place an entry in time and order are strict here;
the repository id and the pull payload are checked later by
:func:`pullstats.validate.classify_record`, so a bad value there becomes a
counted, quarantined event instead of vanishing at the source.

Archive line sample (``pull_repo`` by tag, 2026-10-19)::

    {
        "id": 88213407,
        "kind": "pull_repo",
        "repository_id": 4182,
        "datetime": "2026-10-19T07:58:11.402Z",
        "performer": "robot$ci",
        "ip": "10.2.8.14",
        "metadata": {"namespace": "acme", "repo": "api",
                     "tag": "v1.0", "manifest_digest": "sha256:0b1f..."}
    }
"""

from typing import Any

from pydantic import AwareDatetime, BaseModel, ConfigDict, Field

# Audit-log kinds that represent an image pull.
PULL_KINDS: frozenset[str] = frozenset({"pull_repo"})


class LogRecord(BaseModel):
    """One audit-log entry, as read from either backend."""

    model_config = ConfigDict(extra="ignore", frozen=True, populate_by_name=True)

    # Monotonic ordinal; absent on the table fallback path.
    id: int | None = None
    kind: str
    # Checked by classify_record, like metadata.
    repository_id: Any = None
    occurred_at: AwareDatetime = Field(alias="datetime")
    # Expected to be an object; checked by classify_record so bad payloads are
    # tallied as malformed instead of dropped here.
    metadata: Any = None

    @property
    def is_pull(self) -> bool:
        return self.kind in PULL_KINDS

    def sort_key(self) -> tuple[Any, int]:
        """Source order: timestamp, then ordinal (missing ordinals sort first)."""
        return (self.occurred_at, -1 if self.id is None else self.id)
