"""Run lock: at most one aggregation pass at a time, across every instance.

``RunLock(state_dir, name, ttl_seconds=...)`` guards a lock file
``<state_dir>/<name>.lock`` on storage shared by all worker instances.  The
lock is keyed by worker class (``name``), not by instance; each instance
identifies itself with a ``holder`` token.

The file holds JSON ``{"holder", "acquired_at", "expires_at"}`` (Unix
seconds).  A holder that crashes never releases, so the lock carries a TTL:
once ``expires_at`` has passed, the next ``acquire()`` takes it over.  A long
pass keeps its claim alive with ``refresh()``.

Usage::

    from pullstats.lock import LockHeld, RunLock

    lock = RunLock(paths.state_dir, "pullstats", ttl_seconds=300)
    try:
        with lock:
            ...  # one aggregation pass
    except LockHeld:
        log.info("run lock held elsewhere, skipping cycle")

``acquire()`` never blocks: contention raises ``LockHeld`` immediately and the
caller skips the cycle.
"""

from __future__ import annotations

import json
import os
import socket
import time
import uuid
from collections.abc import Callable
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path

LOCK_SUFFIX = ".lock"


class LockError(RuntimeError):
    """Base class for run-lock failures."""


class LockHeld(LockError):
    """Another holder owns an unexpired lock.  Expected contention, not a fault."""


class LockLost(LockError):
    """The lock expired and was taken over (or removed) while we held it."""


@dataclass(frozen=True)
class LockInfo:
    """Decoded contents of a lock file."""

    holder: str
    acquired_at: float
    expires_at: float

    def expired(self, now: float) -> bool:
        return now >= self.expires_at

    def to_json(self) -> str:
        return json.dumps(asdict(self))


def default_holder() -> str:
    """Return a token unique to this process: ``<hostname>:<pid>:<random>``."""
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class RunLock:
    """TTL-bound lock file shared by all instances of one worker class.

    Args:
        state_dir:   Shared state directory (``paths.state_dir``).
        name:        Worker-class name; the lock file is ``<name>.lock``.
        ttl_seconds: Lifetime of a claim; must outlast one pass.
        holder:      Identity token for this instance (default: host:pid:random).
        clock:       Returns the current Unix time; override in tests.
    """

    def __init__(
        self,
        state_dir: Path,
        name: str = "pullstats",
        *,
        ttl_seconds: float,
        holder: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        if ttl_seconds <= 0:
            raise ValueError(f"ttl_seconds must be positive, got {ttl_seconds}")
        self.name = name
        self.ttl_seconds = ttl_seconds
        self.holder = holder or default_holder()
        self._lock_path = state_dir / f"{name}{LOCK_SUFFIX}"
        self._clock = clock

    @property
    def path(self) -> Path:
        return self._lock_path

    def acquire(self) -> None:
        """Claim the lock or raise ``LockHeld``.

        The first claim is an atomic ``O_CREAT | O_EXCL`` create.  An existing
        file is taken over only if it has expired (or is unreadable and older
        than one TTL).  Takeover renames the stale file to a private tombstone
        and then creates a fresh claim with ``O_EXCL``; of several instances
        racing for the same stale claim exactly one rename moves it, and an
        instance whose rename moved anything else puts it back and backs off.
        """
        now = self._clock()
        claim = LockInfo(holder=self.holder, acquired_at=now, expires_at=now + self.ttl_seconds)
        if self._create(claim):
            return

        current = self.inspect()
        if current is None:
            if self._is_fresh_unreadable(now):
                # Another instance is between create and write.
                raise LockHeld(f"run lock {self.name!r} is being claimed")
        elif current.holder != self.holder and not current.expired(now):
            raise LockHeld(
                f"run lock {self.name!r} is held by {current.holder} "
                f"until {_iso(current.expires_at)}.  Lock file: {self._lock_path}"
            )

        if not self._evict(current):
            raise LockHeld(f"run lock {self.name!r} was taken over concurrently")
        if not self._create(claim):
            raise LockHeld(f"run lock {self.name!r} was claimed concurrently")

    def refresh(self) -> None:
        """Push our expiry out by one TTL; raise ``LockLost`` if no longer ours.

        An expired claim is never rewritten, even if nobody has taken it over
        yet: from the moment it expires another instance may be evicting it.
        """
        current = self.inspect()
        if current is None or current.holder != self.holder:
            raise LockLost(
                f"run lock {self.name!r} is no longer held by {self.holder} "
                f"(now: {current.holder if current else 'nobody'})"
            )
        now = self._clock()
        if current.expired(now):
            raise LockLost(f"run lock {self.name!r} expired at {_iso(current.expires_at)}")
        self._replace(
            LockInfo(holder=self.holder, acquired_at=current.acquired_at, expires_at=now + self.ttl_seconds)
        )

    def release(self) -> None:
        """Remove the lock file if it still holds our unexpired claim."""
        current = self.inspect()
        if current is None or current.holder != self.holder or current.expired(self._clock()):
            return
        self._evict(current)

    def inspect(self) -> LockInfo | None:
        """Return the decoded lock file, or None if missing or unreadable."""
        return _read(self._lock_path)

    def __enter__(self) -> RunLock:
        self.acquire()
        return self

    def __exit__(self, *_: object) -> None:
        self.release()

    def _create(self, claim: LockInfo) -> bool:
        try:
            fd = os.open(str(self._lock_path), os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(claim.to_json())
        return True

    def _evict(self, expected: LockInfo | None) -> bool:
        """Move the lock file aside if it still holds *expected*.

        Returns False when the file is gone or turned out to hold a different
        claim; a different claim is linked back into place.
        """
        tomb = self._lock_path.with_name(f"{self._lock_path.name}.{uuid.uuid4().hex[:8]}.stale")
        try:
            os.rename(self._lock_path, tomb)
        except FileNotFoundError:
            return False
        try:
            if _read(tomb) == expected:
                return True
            try:
                os.link(tomb, self._lock_path)
            except FileExistsError:
                pass
            return False
        finally:
            tomb.unlink(missing_ok=True)

    def _replace(self, info: LockInfo) -> None:
        tmp = self._lock_path.with_name(f"{self._lock_path.name}.{uuid.uuid4().hex[:8]}.tmp")
        tmp.write_text(info.to_json(), encoding="utf-8")
        os.replace(tmp, self._lock_path)

    def _is_fresh_unreadable(self, now: float) -> bool:
        try:
            mtime = self._lock_path.stat().st_mtime
        except FileNotFoundError:
            return False
        return now - mtime < self.ttl_seconds


def _read(path: Path) -> LockInfo | None:
    try:
        raw = json.loads(path.read_text(encoding="utf-8"))
        return LockInfo(
            holder=str(raw["holder"]),
            acquired_at=float(raw["acquired_at"]),
            expires_at=float(raw["expires_at"]),
        )
    except (FileNotFoundError, ValueError, KeyError, TypeError):
        return None


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, UTC).isoformat(timespec="seconds")
