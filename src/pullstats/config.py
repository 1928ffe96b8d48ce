"""Typed configuration — single source of truth for all pullstats runtime settings.

Loading priority (highest to lowest):
  1. Explicit init kwargs (programmatic overrides, tests)
  2. Environment variables: PULLSTATS_<SECTION>__<KEY>  (double-underscore separator)
  3. Config file: PULLSTATS_CONFIG_FILE env var, or conf/settings.toml at project root
  4. Model field defaults

Example env overrides:
  PULLSTATS_PATHS__AUDIT_LOG_ROOT=/mnt/logs/audit
  PULLSTATS_WORKER__POLL_INTERVAL_SECONDS=30
  PULLSTATS_LOGGING__LEVEL=DEBUG
"""

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, field_validator, model_validator
from pydantic_settings import (
    BaseSettings,
    PydanticBaseSettingsSource,
    SettingsConfigDict,
    TomlConfigSettingsSource,
)

# Derive project root from this file's location: src/pullstats/config.py → ../../..
_PROJECT_ROOT = Path(__file__).parent.parent.parent
_DEFAULT_CONFIG = _PROJECT_ROOT / "conf" / "settings.toml"


def _config_file() -> Path:
    """Resolve the config file path.

    Returns PULLSTATS_CONFIG_FILE if set (raises FileNotFoundError if missing),
    otherwise returns the bundled default at conf/settings.toml.
    """
    if env_val := os.environ.get("PULLSTATS_CONFIG_FILE"):
        p = Path(env_val)
        if not p.is_file():
            raise FileNotFoundError(f"PULLSTATS_CONFIG_FILE not found: {p}")
        return p
    return _DEFAULT_CONFIG


# ---------------------------------------------------------------------------
# Section models — each maps to a [section] in conf/settings.toml
# ---------------------------------------------------------------------------


class PathsSettings(BaseModel):
    """Audit-log archive location and pullstats-managed output."""

    # Day-partitioned JSONL export of the registry audit log (read-only).
    audit_log_root: Path = Path("/var/lib/registry/audit-log")
    data_root: Path = Path("/var/lib/pullstats")


class WorkerSettings(BaseModel):
    """Aggregation worker schedule, batching and coordination."""

    enabled: bool = True
    # Checkpoint row key.  Shared by every instance of the worker class.
    worker_id: str = "pullstats"
    lock_name: str = "pullstats"

    poll_interval_seconds: float = Field(60.0, gt=0)
    lock_ttl_seconds: float = Field(300.0, gt=0)

    batch_size: int = Field(5000, gt=0)
    max_batches_per_pass: int = Field(20, gt=0)

    # First run starts this far in the past.
    initial_lookback_seconds: float = Field(86400.0, ge=0)
    # Entries younger than this are left for the next pass; the log store is
    # only eventually consistent.
    consistency_lag_seconds: float = Field(30.0, ge=0)

    read_timeout_seconds: float = Field(30.0, gt=0)
    write_timeout_seconds: float = Field(60.0, gt=0)

    fallback_enabled: bool = True

    @model_validator(mode="after")
    def _ttl_covers_two_periods(self) -> "WorkerSettings":
        if self.lock_ttl_seconds < 2 * self.poll_interval_seconds:
            raise ValueError(
                "lock_ttl_seconds must be at least 2 × poll_interval_seconds "
                f"(got ttl={self.lock_ttl_seconds}, poll={self.poll_interval_seconds})"
            )
        return self


class LoggingSettings(BaseModel):
    """Logging verbosity and output format."""

    level: str = "INFO"
    format: Literal["json", "text"] = "json"

    @field_validator("level", mode="before")
    @classmethod
    def _normalise_level(cls, v: str) -> str:
        valid = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in valid:
            raise ValueError(f"level must be one of {sorted(valid)}, got {v!r}")
        return v.upper()


# ---------------------------------------------------------------------------
# Root settings class
# ---------------------------------------------------------------------------


class Settings(BaseSettings):
    """All pullstats runtime settings, fully resolved and validated."""

    paths: PathsSettings = PathsSettings()
    worker: WorkerSettings = WorkerSettings()
    logging: LoggingSettings = LoggingSettings()

    model_config = SettingsConfigDict(
        env_prefix="PULLSTATS_",
        env_nested_delimiter="__",  # PULLSTATS_PATHS__DATA_ROOT → paths.data_root
    )

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls: type[BaseSettings],
        init_settings: PydanticBaseSettingsSource,
        env_settings: PydanticBaseSettingsSource,
        dotenv_settings: PydanticBaseSettingsSource,
        file_secret_settings: PydanticBaseSettingsSource,
    ) -> tuple[PydanticBaseSettingsSource, ...]:
        # Exclude dotenv and file-secret sources; pullstats uses TOML + env only.
        return (
            init_settings,
            env_settings,
            TomlConfigSettingsSource(settings_cls, toml_file=_config_file()),
        )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Return the process-wide Settings instance (loaded once, cached thereafter).

    Tests should call ``get_settings.cache_clear()`` before each test that
    patches environment variables or the config file.
    """
    return Settings()
