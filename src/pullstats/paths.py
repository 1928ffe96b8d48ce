"""Filesystem locations used by pullstats, derived from settings.

Layout under data_root:
  warehouse/                       ← pullstats.duckdb (stats, checkpoint, audit tables)
  state/                           ← run lock files shared by all worker instances
  quarantine/malformed_events/     ← pull entries that could not be classified

The audit-log archive (``audit_log_root``) is written by the registry and is
only ever read here.
"""

from dataclasses import dataclass
from pathlib import Path

from pullstats.config import Settings


@dataclass(frozen=True)
class ProjectPaths:
    """All filesystem paths used by pullstats.

    Build with ``ProjectPaths.from_settings(settings)``.
    """

    # Registry-owned, read-only.
    audit_log_root: Path

    # Everything pullstats writes lives under here.
    data_root: Path

    warehouse_dir: Path
    state_dir: Path  # must be on storage shared by every worker instance
    quarantine_dir: Path

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProjectPaths":
        """Derive all paths from the resolved settings."""
        data = settings.paths.data_root
        return cls(
            audit_log_root=settings.paths.audit_log_root,
            data_root=data,
            warehouse_dir=data / "warehouse",
            state_dir=data / "state",
            quarantine_dir=data / "quarantine",
        )

    def ensure_output_dirs(self) -> None:
        """Create the managed output directories (idempotent).

        Leaves ``audit_log_root`` alone; the registry owns it.
        """
        for path in (self.warehouse_dir, self.state_dir, self.quarantine_dir):
            path.mkdir(parents=True, exist_ok=True)
