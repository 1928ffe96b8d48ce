"""DuckDB warehouse: connection, migrations, time conversion and deadlines.

``open_warehouse(paths)``          opens or creates ``pullstats.duckdb``.
``run_migrations(conn)``           brings the schema up to date.
``statement_deadline(conn, secs)`` bounds a block of statements in time.

The warehouse stores naive UTC ``TIMESTAMP`` values.  Everything above this
module works with timezone-aware UTC datetimes and converts with
``to_db_time`` / ``from_db_time`` at the boundary, which also keeps DuckDB
from handing back ``TIMESTAMPTZ`` values (those need the optional pytz).
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

import duckdb

from pullstats.paths import ProjectPaths

# Filename of the warehouse database inside paths.warehouse_dir.
WAREHOUSE_FILE = "pullstats.duckdb"

SQL_SCHEMA_DIR = Path(__file__).parent / "sql" / "schema"


class DeadlineExceeded(TimeoutError):
    """A bounded statement block ran past its deadline and was interrupted."""


def open_warehouse(paths: ProjectPaths, *, read_only: bool = False) -> duckdb.DuckDBPyConnection:
    """Open (or create) the warehouse database and return a connection.

    ``paths.ensure_output_dirs()`` must have run first.  The caller closes
    the connection.  A read-write connection holds DuckDB's exclusive file
    lock until it is closed; ``read_only=True`` opens an existing warehouse
    under a shared lock instead.
    """
    return duckdb.connect(str(paths.warehouse_dir / WAREHOUSE_FILE), read_only=read_only)


def run_migrations(conn: duckdb.DuckDBPyConnection) -> int:
    """Apply any pending schema migrations and return the count applied."""
    from pullstats.sql_runner import apply_pending_migrations

    return apply_pending_migrations(conn, SQL_SCHEMA_DIR)


@contextmanager
def statement_deadline(
    conn: duckdb.DuckDBPyConnection,
    seconds: float | None,
) -> Iterator[None]:
    """Interrupt *conn* if the enclosed statements run longer than *seconds*.

    A statement cut short by the timer surfaces as :class:`DeadlineExceeded`
    (chained to DuckDB's interrupt error).  ``seconds=None`` disables the
    deadline.
    """
    if seconds is None:
        yield
        return

    fired = threading.Event()

    def _interrupt() -> None:
        fired.set()
        conn.interrupt()

    timer = threading.Timer(seconds, _interrupt)
    timer.daemon = True
    timer.start()
    try:
        yield
    except duckdb.Error as exc:
        if fired.is_set():
            raise DeadlineExceeded(f"statement exceeded {seconds:g}s deadline") from exc
        raise
    finally:
        timer.cancel()


def to_db_time(ts: datetime) -> datetime:
    """Convert an aware datetime to the naive UTC value stored in the warehouse."""
    if ts.tzinfo is None:
        raise ValueError(f"expected a timezone-aware datetime, got {ts!r}")
    return ts.astimezone(UTC).replace(tzinfo=None)


def from_db_time(ts: datetime | None) -> datetime | None:
    """Attach UTC to a naive warehouse timestamp (``None`` passes through)."""
    if ts is None:
        return None
    return ts.replace(tzinfo=UTC)
