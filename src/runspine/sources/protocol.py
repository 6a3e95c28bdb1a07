"""
Job source protocol.

A job source turns one configured source into the list of jobs for this run.
Sources may call external tools while doing so (the yt-dlp source lists a
playlist) and report their own failures as ``RunspineError`` subclasses so
the engine can skip a misbehaving source and keep the others.

Usage:
    from runspine.sources import create_source, discover_jobs

    source = create_source(source_config, context)
    jobs = source.get_all_jobs()
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from runspine.execution.models import Job
from runspine.execution.process import Capabilities, ProcessRunner


@dataclass(frozen=True)
class SourceContext:
    """
    Everything a source needs from the engine.

    Built once per run; sources never read global state.
    """

    runner: ProcessRunner = field(default_factory=ProcessRunner)
    capabilities: Capabilities = field(default_factory=Capabilities)
    work_dir: Path | None = None

    @property
    def cwd(self) -> Path:
        """Directory spawned processes write their files to."""
        return self.work_dir or Path.cwd()


@runtime_checkable
class JobSource(Protocol):
    """
    Protocol for all job sources.

    Implementations must provide:
    - name: the configured source name (used as ``Job.source_name``)
    - get_all_jobs(): every job this source knows about, completed or not
    """

    @property
    def name(self) -> str:
        """Configured source name."""
        ...

    def get_all_jobs(self) -> Sequence[Job]:
        """
        Discover the jobs for this run.

        Raises:
            RunspineError: The source could not produce its jobs.
        """
        ...
