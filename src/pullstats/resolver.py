"""Tag → manifest resolution for tag pulls whose entry lacks a digest.

``TagResolver`` is the read-only collaborator interface.  The production
implementation, :class:`WarehouseTagResolver`, looks up the tag's *active*
binding in ``tag_bindings`` (``lifetime_end IS NULL``).  A tag that has been
deleted or has no binding resolves to ``None``.
"""

from __future__ import annotations

from typing import Protocol

import duckdb

_ACTIVE_BINDING_SQL = """
SELECT manifest_digest
FROM tag_bindings
WHERE repository_id = ? AND tag_name = ? AND lifetime_end IS NULL
ORDER BY lifetime_start DESC
LIMIT 1
"""


class TagResolver(Protocol):
    def resolve(self, repository_id: int, tag_name: str) -> str | None: ...


class WarehouseTagResolver:
    """Resolves tags against ``tag_bindings``, memoising answers per instance.

    Build a fresh resolver per pass so a tag that moves between passes is seen
    at its new manifest.
    """

    def __init__(self, conn: duckdb.DuckDBPyConnection) -> None:
        self.conn = conn
        self._memo: dict[tuple[int, str], str | None] = {}

    def resolve(self, repository_id: int, tag_name: str) -> str | None:
        key = (repository_id, tag_name)
        if key not in self._memo:
            row = self.conn.execute(_ACTIVE_BINDING_SQL, [repository_id, tag_name]).fetchone()
            self._memo[key] = None if row is None else row[0]
        return self._memo[key]
