"""
Command source - a fixed list of commands, each run at most once.

Every entry under ``Jobs`` becomes one job. The job completes when its
command exits 0 and is never run again after that. An optional ``verify``
command is used to confirm an attempt that was started but never recorded
as finished.

Configuration::

    {
      "name": "nightly",
      "type": "command",
      "properties": {
        "Jobs": [
          {"id": "backup-2024-06", "name": "June backup",
           "command": ["rsync", "-a", "/data/", "/backup/2024-06/"],
           "verify": ["test", "-d", "/backup/2024-06"]}
        ]
      }
    }

Job ids are ``command:<source name>:<id>``.
"""

from __future__ import annotations

from functools import partial

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from runspine.core.config import SourceConfig
from runspine.core.errors import ConfigurationError, ErrorContext
from runspine.core.logging import get_logger
from runspine.execution.models import Job, JobResult, dedupe_jobs, utcnow
from runspine.sources.protocol import SourceContext

logger = get_logger(__name__)

UNIQUE_ID_PREFIX = "command"


class CommandJobSpec(BaseModel):
    """One configured command."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    id: str = Field(min_length=1)
    name: str | None = None
    command: list[str] = Field(min_length=1)
    verify: list[str] | None = None


class CommandSource:
    """Runs each configured command once."""

    required_binaries: tuple[str, ...] = ()

    def __init__(self, config: SourceConfig, context: SourceContext):
        self._config = config
        self._context = context
        raw_jobs = config.require_property("Jobs")
        if not isinstance(raw_jobs, list):
            raise ConfigurationError(
                f'Property Jobs of source "{config.name}" must be a list',
                context=ErrorContext(source_name=config.name, source_type=config.type),
            )
        try:
            self.specs = [CommandJobSpec.model_validate(item) for item in raw_jobs]
        except ValidationError as exc:
            raise ConfigurationError(
                f'Invalid Jobs for source "{config.name}": {exc}',
                context=ErrorContext(source_name=config.name, source_type=config.type),
                cause=exc,
            ) from exc

    @property
    def name(self) -> str:
        return self._config.name

    def get_all_jobs(self) -> list[Job]:
        return dedupe_jobs(self._make_job(spec) for spec in self.specs)

    def _make_job(self, spec: CommandJobSpec) -> Job:
        return Job(
            unique_id=f"{UNIQUE_ID_PREFIX}:{self.name}:{spec.id}",
            display_name=spec.name or spec.id,
            source_name=self.name,
            run_action=partial(self._run, spec.command),
            verify_action=partial(self._run, spec.verify) if spec.verify else None,
        )

    def _run(self, argv: list[str]) -> JobResult:
        start = utcnow()
        result = self._context.runner.run(argv[0], argv[1:])
        if result.is_err():
            logger.warning("command.failed", source=self.name, binary=argv[0], error=str(result.error))
            return JobResult.failed(result.error, start_time=start)
        return JobResult.completed(start, utcnow())
