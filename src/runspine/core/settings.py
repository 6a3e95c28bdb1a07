"""Environment-driven settings for runspine.

Operational knobs that are not part of a job configuration file (where the
ledger lives, how long a single external process may run, log format) are
read from ``RUNSPINE_*`` environment variables or a ``.env`` file.

Precedence for the knobs that exist in more than one place::

    CLI option  >  config file  >  RUNSPINE_* env / .env  >  defaults

Examples:
    >>> settings = RunspineSettings(database="/tmp/ledger.db", max_concurrent=2)
    >>> settings.resolved_max_concurrent()
    2
"""

from __future__ import annotations

import os
from functools import lru_cache
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class RunspineSettings(BaseSettings):
    """Settings shared by the CLI and the engine.

    Fields
    ──────
    database             : SQLite file backing the completion ledger
    log_level            : Structlog log level
    log_format           : ``console``, ``json`` or ``auto`` (json when not a tty)
    max_concurrent       : Worker pool size; ``None`` means processor count
    job_timeout_seconds  : Deadline for one external process; ``None`` disables
    kill_timeout_seconds : Grace period between SIGTERM and SIGKILL
    verify_interrupted   : Call a job's verify action for interrupted records
    track_attempts       : Write a started-marker before running a job
    work_dir             : Working directory for spawned processes
    """

    model_config = SettingsConfigDict(
        env_prefix="RUNSPINE_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    database: Path = Field(
        default_factory=lambda: Path.home() / ".runspine" / "ledger.db",
        description="Completion ledger database file",
    )

    log_level: str = "INFO"
    log_format: Literal["console", "json", "auto"] = "auto"

    max_concurrent: int | None = Field(default=None, ge=1)
    job_timeout_seconds: float | None = Field(default=None, gt=0)
    kill_timeout_seconds: float = Field(default=5.0, gt=0)

    verify_interrupted: bool = True
    track_attempts: bool = False

    work_dir: Path | None = None

    def resolved_max_concurrent(self) -> int:
        return self.max_concurrent or os.cpu_count() or 1

    def json_logs(self) -> bool | None:
        if self.log_format == "auto":
            return None
        return self.log_format == "json"


@lru_cache(maxsize=1)
def get_settings() -> RunspineSettings:
    """Return the process-wide settings (cached)."""
    return RunspineSettings()


def clear_settings_cache() -> None:
    """Forget cached settings (for tests)."""
    get_settings.cache_clear()
