"""Forward-only SQL migrations for the pullstats warehouse.

``apply_pending_migrations(conn, sql_dir)`` bootstraps ``schema_migrations``,
then applies every ``*.sql`` file in ``sql_dir`` whose stem is not yet
recorded, in filename order.  Each file runs in its own transaction together
with its ``schema_migrations`` row, so a half-applied migration is never
recorded as done.
"""

from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

import duckdb

# Not itself a migration; runs before any file is read.
_BOOTSTRAP = """
    CREATE TABLE IF NOT EXISTS schema_migrations (
        version    TEXT PRIMARY KEY,
        applied_at TIMESTAMP NOT NULL
    )
"""


def apply_pending_migrations(
    conn: duckdb.DuckDBPyConnection,
    sql_dir: Path,
) -> int:
    """Apply pending migrations from ``sql_dir`` and return the count applied.

    Args:
        conn:    Open, writable DuckDB connection.
        sql_dir: Directory of ``NNN_name.sql`` files.

    Returns:
        Number of newly applied migrations (0 if the schema is current).
    """
    conn.execute(_BOOTSTRAP)
    applied = applied_versions(conn)
    pending = sorted(p for p in sql_dir.glob("*.sql") if p.stem not in applied)

    for sql_file in pending:
        conn.execute("BEGIN TRANSACTION")
        try:
            _execute_script(conn, sql_file.read_text(encoding="utf-8"))
            conn.execute(
                "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                [sql_file.stem, datetime.now(UTC).replace(tzinfo=None)],
            )
        except duckdb.Error:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")

    return len(pending)


def applied_versions(conn: duckdb.DuckDBPyConnection) -> set[str]:
    """Return the set of migration stems already recorded."""
    return {row[0] for row in conn.execute("SELECT version FROM schema_migrations").fetchall()}


def _execute_script(conn: duckdb.DuckDBPyConnection, sql: str) -> None:
    """Strip ``--`` comment lines, then run each semicolon-terminated statement."""
    code = "\n".join(line for line in sql.splitlines() if not line.strip().startswith("--"))
    for stmt in code.split(";"):
        stmt = stmt.strip()
        if stmt:
            conn.execute(stmt)
