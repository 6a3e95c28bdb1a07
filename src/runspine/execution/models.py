"""Job execution models.

Defines the core data structures of the engine:

- ``Job``: one unit of work with a stable unique id and the actions that
  run or verify it.
- ``JobResult``: the outcome of one job in one run.
- ``CompletionRecord``: the persisted ledger row for a job id.
- ``ProcessOutcome``: exit code and captured lines of an external process.

Architecture:

    .. code-block:: text

        Job lifecycle (per run)
        ┌────────────────────────────────────────────────────────┐
        │                                                        │
        │            ┌──────────────► COMPLETED_NOT_RUN          │
        │  PENDING ──┼──────────────► COMPLETED                  │
        │            └──────────────► FAILED                     │
        │                                                        │
        │  result is set exactly once by the scheduler           │
        └────────────────────────────────────────────────────────┘

Example:
    >>> job = Job(
    ...     unique_id="command:nightly:backup",
    ...     display_name="backup",
    ...     source_name="nightly",
    ...     run_action=lambda: JobResult.completed(utcnow(), utcnow()),
    ... )
    >>> job == Job("command:nightly:backup", "other", "other", job.run_action)
    True
"""

from __future__ import annotations

import threading
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    """Return timezone-aware UTC datetime."""
    return datetime.now(UTC)


class JobStatus(str, Enum):
    """Outcome of a job in a single run."""

    NOT_RUN = "not_run"
    COMPLETED = "completed"
    COMPLETED_NOT_RUN = "completed_not_run"
    FAILED = "failed"


@dataclass(frozen=True)
class JobResult:
    """Result of executing (or skipping) one job.

    ``end_time`` is only present for COMPLETED results and ``error`` only
    for FAILED results; use the class constructors rather than building
    instances by hand.
    """

    status: JobStatus
    start_time: datetime | None = None
    end_time: datetime | None = None
    error: BaseException | None = None

    @classmethod
    def completed(cls, start_time: datetime, end_time: datetime | None = None) -> JobResult:
        end_time = end_time or utcnow()
        if end_time < start_time:
            raise ValueError("end_time must not be earlier than start_time")
        return cls(status=JobStatus.COMPLETED, start_time=start_time, end_time=end_time)

    @classmethod
    def failed(cls, error: BaseException, start_time: datetime | None = None) -> JobResult:
        return cls(status=JobStatus.FAILED, start_time=start_time, error=error)

    @classmethod
    def completed_not_run(cls, record: CompletionRecord | None = None) -> JobResult:
        return cls(
            status=JobStatus.COMPLETED_NOT_RUN,
            start_time=record.start_time if record else None,
        )

    @classmethod
    def not_run(cls) -> JobResult:
        return cls(status=JobStatus.NOT_RUN)

    @property
    def succeeded(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.COMPLETED_NOT_RUN)

    @property
    def duration_seconds(self) -> float | None:
        if self.start_time and self.end_time:
            return (self.end_time - self.start_time).total_seconds()
        return None

    @property
    def error_message(self) -> str | None:
        if self.error is None:
            return None
        return str(self.error) or type(self.error).__name__

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "duration_seconds": self.duration_seconds,
            "error": self.error_message,
            "error_type": type(self.error).__name__ if self.error else None,
        }


JobAction = Callable[[], JobResult]


@dataclass(eq=False)
class Job:
    """One unit of schedulable work.

    Equality and hashing use ``unique_id`` only, so a set of jobs
    deduplicates on the id. ``result`` is written once by the scheduler.
    """

    unique_id: str
    display_name: str
    source_name: str
    run_action: JobAction = field(repr=False)
    verify_action: JobAction | None = field(default=None, repr=False)
    _result: JobResult | None = field(default=None, init=False, repr=False)
    _result_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def __post_init__(self) -> None:
        if not self.unique_id:
            raise ValueError("Job.unique_id must be a non-empty string")

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Job):
            return NotImplemented
        return self.unique_id == other.unique_id

    def __hash__(self) -> int:
        return hash(self.unique_id)

    @property
    def result(self) -> JobResult | None:
        return self._result

    def set_result(self, result: JobResult) -> None:
        """Store the job's result. Raises ``RuntimeError`` if already set."""
        with self._result_lock:
            if self._result is not None:
                raise RuntimeError(f"Result for job {self.unique_id} was already set")
            self._result = result

    @property
    def status(self) -> JobStatus | None:
        """Terminal status, or ``None`` while the job is still pending."""
        return self._result.status if self._result else None


def dedupe_jobs(jobs: Iterable[Job]) -> list[Job]:
    """Return jobs with duplicate ids removed, keeping the first occurrence."""
    seen: dict[str, Job] = {}
    for job in jobs:
        seen.setdefault(job.unique_id, job)
    return list(seen.values())


@dataclass(frozen=True)
class CompletionRecord:
    """Persisted ledger row.

    A NULL ``end_time`` marks an attempt that was started but never
    confirmed complete.
    """

    id: str
    start_time: datetime
    end_time: datetime | None = None

    @property
    def is_complete(self) -> bool:
        return self.end_time is not None

    @property
    def is_interrupted(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "start_time": self.start_time.isoformat(),
            "end_time": self.end_time.isoformat() if self.end_time else None,
        }


@dataclass(frozen=True)
class ProcessOutcome:
    """Exit code plus the non-empty, right-trimmed lines a process wrote."""

    exit_code: int
    stdout: tuple[str, ...] = ()
    stderr: tuple[str, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0
