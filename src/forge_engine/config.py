"""Runtime configuration for job, trigger and workflow stores."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_CRON_LOOKAHEAD_DAYS = 366 * 5
_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def default_data_dir() -> Path:
    return Path.home() / ".local" / "share" / "forge"


@dataclass(slots=True)
class SchedulerSettings:
    """Cron scheduling settings."""

    cron_lookahead_days: int = DEFAULT_CRON_LOOKAHEAD_DAYS

    @property
    def cron_lookahead_minutes(self) -> int:
        return self.cron_lookahead_days * 24 * 60


@dataclass(slots=True)
class Settings:
    """Application settings grouped by storage and runtime concerns."""

    data_dir: Path = field(default_factory=default_data_dir)
    jobs_dir: Path | None = None
    workflow_runs_dir: Path | None = None
    workflows_dir: Path | None = None
    log_level: str = "WARNING"
    scheduler: SchedulerSettings = field(default_factory=SchedulerSettings)

    @classmethod
    def from_env(cls, data_dir: Path | None = None) -> Settings:
        """Load settings from ``FORGE_*`` environment variables."""

        resolved_data_dir = data_dir or _env_path("FORGE_DATA_DIR") or default_data_dir()
        return cls(
            data_dir=resolved_data_dir,
            jobs_dir=_env_path("FORGE_JOBS_DIR"),
            workflow_runs_dir=_env_path("FORGE_WORKFLOW_RUNS_DIR"),
            workflows_dir=_env_path("FORGE_WORKFLOWS_DIR"),
            log_level=os.getenv("FORGE_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
            scheduler=SchedulerSettings(
                cron_lookahead_days=_env_int(
                    "FORGE_CRON_LOOKAHEAD_DAYS",
                    DEFAULT_CRON_LOOKAHEAD_DAYS,
                ),
            ),
        )

    @property
    def resolved_jobs_dir(self) -> Path:
        return self.jobs_dir or self.data_dir / "jobs"

    @property
    def resolved_workflow_runs_dir(self) -> Path:
        return self.workflow_runs_dir or self.data_dir / "workflow-runs"

    @property
    def resolved_workflows_dir(self) -> Path:
        return self.workflows_dir or self.data_dir / "workflows"

    @property
    def logging_level(self) -> int:
        level = logging.getLevelName(self.log_level)
        return level if isinstance(level, int) else logging.WARNING

    def validate(self) -> None:
        """Raise configuration error for invalid values."""

        if self.log_level not in _LOG_LEVELS:
            raise ValueError(
                f"Invalid FORGE_LOG_LEVEL: {self.log_level!r}. "
                f"Expected one of {', '.join(sorted(_LOG_LEVELS))}.",
            )
        if self.scheduler.cron_lookahead_days <= 0:
            raise ValueError("FORGE_CRON_LOOKAHEAD_DAYS must be > 0.")


def _env_path(name: str) -> Path | None:
    value = os.getenv(name, "").strip()
    if not value:
        return None
    return Path(value).expanduser()


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return int(value.strip())
    except ValueError as error:
        raise ValueError(f"Invalid integer value for {name}: {value!r}") from error
