"""CLI root — entry point for all pullstats subcommands.

Entry points:
  pullstats             (console script)
  python -m pullstats

Command surface:
  pullstats init              create directories and migrate the warehouse
  pullstats run               aggregate continuously, one pass per poll interval
  pullstats run-once          run a single aggregation pass and exit
  pullstats doctor            check watermark lag, malformed rate and lock state
  pullstats stats tags        show tag pull counters for a repository
  pullstats stats manifests   show manifest pull counters for a repository
  pullstats config show       print resolved configuration
"""

import typer

from pullstats import __version__
from pullstats.logging import get_logger

app = typer.Typer(
    name="pullstats",
    help="Tag and manifest pull statistics from the registry audit log.",
    no_args_is_help=True,
)

_log = get_logger(__name__)

# run-once exit codes per pass outcome.
_EXIT_CODES = {
    "completed": 0,
    "lock_held": 0,
    "disabled": 0,
    "source_unavailable": 1,
    "write_failed": 2,
    "lock_lost": 2,
    "cancelled": 2,
}


# ---------------------------------------------------------------------------
# Global callback — runs before every subcommand
# ---------------------------------------------------------------------------


def _version_callback(value: bool) -> None:
    if value:
        typer.echo(f"pullstats {__version__}")
        raise typer.Exit()


@app.callback()
def _main(
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        callback=_version_callback,
        is_eager=True,
        help="Print version and exit.",
    ),
) -> None:
    """Tag and manifest pull statistics from the registry audit log."""
    from pullstats.logging import configure_logging

    configure_logging()


def _paths(settings):
    from pullstats.paths import ProjectPaths

    paths = ProjectPaths.from_settings(settings)
    paths.ensure_output_dirs()
    return paths


def _open_read_only(settings):
    """Open the warehouse read-only for reporting; return (paths, conn).

    A missing warehouse is created and migrated first.  While another process
    holds the warehouse for a pass the open fails and the command exits 1.
    """
    import duckdb

    from pullstats.warehouse import WAREHOUSE_FILE, open_warehouse, run_migrations

    paths = _paths(settings)
    if not (paths.warehouse_dir / WAREHOUSE_FILE).exists():
        conn = open_warehouse(paths)
        run_migrations(conn)
        conn.close()
    try:
        return paths, open_warehouse(paths, read_only=True)
    except duckdb.IOException as exc:
        typer.echo(f"Error: warehouse is busy, a pass is probably running ({exc})", err=True)
        raise typer.Exit(1) from exc


def _make_lock(settings, paths):
    from pullstats.lock import RunLock

    worker = settings.worker
    return RunLock(paths.state_dir, worker.lock_name, ttl_seconds=worker.lock_ttl_seconds)


def _one_pass(settings, paths, lock, stop=None):
    from pullstats.scheduler import run_pass, warehouse_session

    return run_pass(
        lambda: warehouse_session(paths, settings.worker),
        worker=settings.worker,
        lock=lock,
        stop=stop,
        quarantine_dir=paths.quarantine_dir,
    )


# ---------------------------------------------------------------------------
# init
# ---------------------------------------------------------------------------


@app.command("init")
def init() -> None:
    """Create the output directories and migrate the warehouse.

    Safe to re-run: already-applied migrations are skipped.
    """
    from pullstats.config import get_settings
    from pullstats.paths import ProjectPaths
    from pullstats.warehouse import open_warehouse, run_migrations

    settings = get_settings()
    paths = ProjectPaths.from_settings(settings)
    paths.ensure_output_dirs()
    _log.info("output directories ready", data_root=str(paths.data_root))

    conn = open_warehouse(paths)
    n = run_migrations(conn)
    conn.close()

    if n:
        _log.info("schema migrations applied", count=n)
    else:
        _log.info("schema is up to date")


# ---------------------------------------------------------------------------
# run / run-once
# ---------------------------------------------------------------------------


@app.command("run-once")
def run_once() -> None:
    """Run a single aggregation pass and exit.

    Exit codes: 0 = completed (or lock held elsewhere, or disabled),
    1 = audit log unavailable, 2 = write failure / lock lost / cancelled.
    """
    from pullstats.config import get_settings

    settings = get_settings()
    paths = _paths(settings)
    result = _one_pass(settings, paths, _make_lock(settings, paths))

    typer.echo(f"Pass {result.outcome} — {result.batches} batch(es)")
    typer.echo(f"  events applied:     {result.stats.applied}")
    typer.echo(f"  unresolved tags:    {result.stats.unresolved}")
    typer.echo(f"  malformed skipped:  {result.stats.malformed}")
    if result.checkpoint_after is not None:
        typer.echo(f"  watermark:          {result.checkpoint_after.watermark.isoformat()}")
    if result.detail:
        typer.echo(f"  detail:             {result.detail}")

    code = _EXIT_CODES[result.outcome]
    if code:
        raise typer.Exit(code)


@app.command("run")
def run() -> None:
    """Aggregate continuously: one pass per poll interval until SIGINT/SIGTERM.

    Every instance of the worker may run this; the shared run lock lets only
    one pass execute at a time, and the warehouse is opened only inside a
    pass.  On shutdown the in-flight batch is rolled back and the checkpoint
    is left at the last committed batch.
    """
    import signal
    import threading

    from pullstats.config import get_settings
    from pullstats.scheduler import run_forever

    settings = get_settings()
    paths = _paths(settings)
    lock = _make_lock(settings, paths)
    stop = threading.Event()

    def _request_stop(signum: int, _frame: object) -> None:
        _log.info("shutdown requested", signal=signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _request_stop)
    signal.signal(signal.SIGTERM, _request_stop)

    _log.info(
        "worker started",
        holder=lock.holder,
        poll_interval_seconds=settings.worker.poll_interval_seconds,
    )
    run_forever(
        lambda: _one_pass(settings, paths, lock, stop=stop),
        interval_seconds=settings.worker.poll_interval_seconds,
        stop=stop,
    )


# ---------------------------------------------------------------------------
# doctor
# ---------------------------------------------------------------------------


@app.command("doctor")
def doctor(
    check: str = typer.Option(
        "",
        "--check",
        "-c",
        help="Run only this named check.  Empty = run all checks.",
    ),
) -> None:
    """Check aggregation health: watermark lag, malformed rate, run lock.

    Exit codes: 0 = all pass, 1 = one or more warnings, 2 = one or more failures.
    """
    from pullstats.config import get_settings
    from pullstats.doctor import run_checks

    settings = get_settings()
    paths, conn = _open_read_only(settings)

    try:
        results = run_checks(conn, settings=settings, state_dir=paths.state_dir, only=check)
    except ValueError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(2) from exc
    finally:
        conn.close()

    _STATUS_LABEL = {"pass": "PASS", "warn": "WARN", "fail": "FAIL"}
    name_width = max(len(r.name) for r in results)
    for r in results:
        typer.echo(f"  {r.name.ljust(name_width)}  {_STATUS_LABEL[r.status]:4}  {r.message}")
        if r.hint:
            typer.echo(f"  {''.ljust(name_width)}        hint: {r.hint}")

    n_warn = sum(1 for r in results if r.status == "warn")
    n_fail = sum(1 for r in results if r.status == "fail")
    typer.echo()
    if n_fail:
        typer.echo(f"  {n_warn} warning(s) — {n_fail} failure(s)")
        _log.warning("doctor finished with failures", warnings=n_warn, failures=n_fail)
        raise typer.Exit(2)
    if n_warn:
        typer.echo(f"  {n_warn} warning(s) — 0 failures")
        _log.warning("doctor finished with warnings", warnings=n_warn)
        raise typer.Exit(1)
    typer.echo("  all checks passed")
    _log.info("doctor finished", status="pass")


# ---------------------------------------------------------------------------
# stats subcommands
# ---------------------------------------------------------------------------

_stats_app = typer.Typer(help="Show aggregated pull counters.")
app.add_typer(_stats_app, name="stats")


@_stats_app.command("tags")
def stats_tags(
    repository: int = typer.Option(..., "--repository", "-r", help="Repository id."),
    tag: str = typer.Option("", "--tag", "-t", help="Show only this tag."),
    limit: int = typer.Option(50, "--limit", help="Maximum rows to print."),
) -> None:
    """Print per-tag pull counters, most recently pulled first."""
    from pullstats.config import get_settings
    from pullstats.queries import get_tag_stat, list_tag_stats

    _, conn = _open_read_only(get_settings())
    try:
        if tag:
            found = get_tag_stat(conn, repository, tag)
            rows = [found] if found is not None else []
        else:
            rows = list_tag_stats(conn, repository, limit=limit)
    finally:
        conn.close()

    if not rows:
        typer.echo(f"no tag pulls recorded for repository {repository}")
        return
    width = max(len(r.tag_name) for r in rows)
    for r in rows:
        typer.echo(
            f"  {r.tag_name.ljust(width)}  {r.pull_count:>10}  "
            f"{r.last_pull_date.isoformat(timespec='seconds')}  {r.current_manifest_digest or '-'}"
        )


@_stats_app.command("manifests")
def stats_manifests(
    repository: int = typer.Option(..., "--repository", "-r", help="Repository id."),
    digest: str = typer.Option("", "--digest", "-d", help="Show only this manifest digest."),
    limit: int = typer.Option(50, "--limit", help="Maximum rows to print."),
) -> None:
    """Print per-manifest pull counters, most recently pulled first."""
    from pullstats.config import get_settings
    from pullstats.queries import get_manifest_stat, list_manifest_stats

    _, conn = _open_read_only(get_settings())
    try:
        if digest:
            found = get_manifest_stat(conn, repository, digest)
            rows = [found] if found is not None else []
        else:
            rows = list_manifest_stats(conn, repository, limit=limit)
    finally:
        conn.close()

    if not rows:
        typer.echo(f"no manifest pulls recorded for repository {repository}")
        return
    for r in rows:
        typer.echo(
            f"  {r.manifest_digest}  {r.pull_count:>10}  "
            f"{r.last_pull_date.isoformat(timespec='seconds')}  {r.last_tag_pulled or '-'}"
        )


# ---------------------------------------------------------------------------
# config subcommands
# ---------------------------------------------------------------------------

_config_app = typer.Typer(help="Inspect resolved configuration.")
app.add_typer(_config_app, name="config")


@_config_app.command("show")
def config_show() -> None:
    """Print the fully-resolved configuration and exit.

    Shows which config file was loaded and the final value of every setting
    after PULLSTATS_* environment overrides are applied.
    """
    from pullstats.config import _config_file, get_settings

    settings = get_settings()

    typer.echo(f"\n  config : {_config_file()}\n")

    for section_name, section in settings.model_dump().items():
        typer.echo(f"  [{section_name}]")
        width = max(len(k) for k in section)
        for key, val in section.items():
            typer.echo(f"  {key.ljust(width)} = {val}")
        typer.echo()
