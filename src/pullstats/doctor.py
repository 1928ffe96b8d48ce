"""Worker health checks for ``pullstats doctor``.

The aggregation worker never touches the pull path, so its failures show up
only as staleness.  These checks read the checkpoint and the lock file and
report how far behind aggregation is and why.

Each check returns a ``CheckResult``; all are safe on an empty warehouse.

Exit-code contract (enforced by the CLI):
  0 — all checks passed
  1 — one or more warnings, no failures
  2 — one or more failures
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Literal

import duckdb

from pullstats.checkpoint import get_checkpoint
from pullstats.config import Settings
from pullstats.lock import RunLock

Status = Literal["pass", "warn", "fail"]


@dataclass(frozen=True)
class CheckResult:
    name: str
    status: Status
    message: str
    hint: str = ""


@dataclass(frozen=True)
class CheckContext:
    """Everything a check may look at."""

    conn: duckdb.DuckDBPyConnection
    settings: Settings
    state_dir: Path
    now: datetime


# ---------------------------------------------------------------------------
# Individual checks
# ---------------------------------------------------------------------------


def check_watermark_lag(ctx: CheckContext) -> CheckResult:
    """The checkpoint watermark must trail the clock by only a few polls.

    Expected lag is one poll interval plus the consistency lag.

    PASS  — lag ≤ 3 × poll interval + consistency lag
    WARN  — lag ≤ 10 × poll interval + consistency lag
    FAIL  — beyond that, or the worker has never run
    """
    worker = ctx.settings.worker
    checkpoint = get_checkpoint(ctx.conn, worker.worker_id)
    if checkpoint is None:
        return CheckResult(
            name="watermark_lag",
            status="fail",
            message=f"no checkpoint for worker {worker.worker_id!r}",
            hint="run `pullstats run-once` or start `pullstats run`",
        )

    lag = checkpoint.lag(ctx.now).total_seconds()
    base = worker.consistency_lag_seconds
    poll = worker.poll_interval_seconds
    detail = f"watermark {checkpoint.watermark.isoformat(timespec='seconds')} ({lag:.0f} s behind)"

    if lag <= base + 3 * poll:
        return CheckResult(name="watermark_lag", status="pass", message=detail)
    if lag <= base + 10 * poll:
        return CheckResult(
            name="watermark_lag",
            status="warn",
            message=detail,
            hint="passes are being skipped or truncated; check the worker log",
        )
    return CheckResult(
        name="watermark_lag",
        status="fail",
        message=detail,
        hint="look for source_unavailable / write_failed pass outcomes",
    )


def check_malformed_rate(ctx: CheckContext) -> CheckResult:
    """Share of pull entries skipped as malformed.

    PASS  — ≤ 1 %
    WARN  — 1 % – 5 %
    FAIL  — > 5 %
    """
    checkpoint = get_checkpoint(ctx.conn, ctx.settings.worker.worker_id)
    if checkpoint is None:
        return CheckResult(name="malformed_rate", status="pass", message="no events yet — skipping")

    bad = checkpoint.malformed_count
    total = checkpoint.processed_count + bad
    if total == 0:
        return CheckResult(name="malformed_rate", status="pass", message="no events yet — skipping")

    rate = 100.0 * bad / total
    message = f"{rate:.2f}% of pull events malformed ({bad}/{total})"
    if rate <= 1.0:
        return CheckResult(name="malformed_rate", status="pass", message=message)
    if rate <= 5.0:
        return CheckResult(
            name="malformed_rate",
            status="warn",
            message=message,
            hint="inspect quarantine/malformed_events",
        )
    return CheckResult(
        name="malformed_rate",
        status="fail",
        message=message,
        hint="the registry is emitting pull entries without repository or tag/digest",
    )


def check_run_lock(ctx: CheckContext) -> CheckResult:
    """The run lock must be free or held by a live (unexpired) claim.

    PASS  — no lock file, or an unexpired claim
    WARN  — an expired or unreadable lock file is lingering
    """
    worker = ctx.settings.worker
    lock = RunLock(ctx.state_dir, worker.lock_name, ttl_seconds=worker.lock_ttl_seconds)
    if not lock.path.exists():
        return CheckResult(name="run_lock", status="pass", message="lock is free")

    info = lock.inspect()
    if info is None:
        return CheckResult(
            name="run_lock",
            status="warn",
            message=f"unreadable lock file {lock.path}",
            hint="it will be taken over once older than lock_ttl_seconds",
        )
    if info.expired(ctx.now.timestamp()):
        return CheckResult(
            name="run_lock",
            status="warn",
            message=f"expired lock left by {info.holder}",
            hint="a worker crashed mid-pass; the next pass takes the lock over",
        )
    return CheckResult(name="run_lock", status="pass", message=f"held by {info.holder}")


# ---------------------------------------------------------------------------
# Registry and runner
# ---------------------------------------------------------------------------

_ALL_CHECKS: dict[str, Callable[[CheckContext], CheckResult]] = {
    "watermark_lag": check_watermark_lag,
    "malformed_rate": check_malformed_rate,
    "run_lock": check_run_lock,
}


def run_checks(
    conn: duckdb.DuckDBPyConnection,
    *,
    settings: Settings,
    state_dir: Path,
    only: str = "",
    now: datetime | None = None,
) -> list[CheckResult]:
    """Run all registered checks (or just ``only`` if named) and return results.

    Raises:
        ValueError: If ``only`` names a check that does not exist.
    """
    ctx = CheckContext(
        conn=conn,
        settings=settings,
        state_dir=state_dir,
        now=now if now is not None else datetime.now(UTC),
    )
    if only:
        if only not in _ALL_CHECKS:
            raise ValueError(f"unknown check: {only!r}.  Known: {sorted(_ALL_CHECKS)}")
        return [_ALL_CHECKS[only](ctx)]
    return [check(ctx) for check in _ALL_CHECKS.values()]
