"""Concurrency scheduler - run jobs against the completion ledger.

Runs every job at most once per run, skips jobs the ledger already knows
are complete, and records completions so later runs skip them too.

Architecture:

    .. code-block:: text

        ConcurrencyScheduler.run(jobs)
        ┌──────────────────────────────────────────────────────────────┐
        │ ThreadPoolExecutor(max_concurrent)                           │
        │   per job (independent, any order across jobs):              │
        │                                                              │
        │   1. acquire slot (BoundedSemaphore) + open ledger session   │
        │   2. lookup ── complete record ──────► COMPLETED_NOT_RUN     │
        │   3. interrupted record + verify ── confirmed ─► backfill    │
        │   4. run action (started-marker first if track_attempts)     │
        │   5. exception ──────────────────────► FAILED                │
        │   6. COMPLETED ─► insert / backfill   FAILED ─► no record    │
        │                                                              │
        │ returns when every job has a result ─► RunReport             │
        └──────────────────────────────────────────────────────────────┘

A failed job leaves no completed record, which is what makes it run again
next time. A ``DuplicateRecordError`` from the ledger is an engine defect:
the job is reported FAILED and the error is kept in ``RunReport.defects``
so the caller can re-raise it with ``raise_for_defects()``.

Example:
    >>> scheduler = ConcurrencyScheduler(ledger, max_concurrent=4)
    >>> report = scheduler.run(jobs)
    >>> print(f"{report.completed} completed, {report.failed} failed")
"""

from __future__ import annotations

import concurrent.futures
import os
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, NamedTuple

from runspine.core.errors import DuplicateRecordError
from runspine.core.logging import LogContext, get_logger
from runspine.execution.ledger import CompletionLedger, LedgerSession
from runspine.execution.models import (
    CompletionRecord,
    Job,
    JobAction,
    JobResult,
    JobStatus,
    dedupe_jobs,
    utcnow,
)

logger = get_logger(__name__)


class ReportEntry(NamedTuple):
    """One row of a run report."""

    source_name: str
    job: Job
    result: JobResult


@dataclass
class RunReport:
    """Outcome of one scheduler run."""

    entries: list[ReportEntry]
    started_at: datetime
    completed_at: datetime | None = None
    peak_concurrency: int = 0
    defects: list[DuplicateRecordError] = field(default_factory=list)

    @property
    def total(self) -> int:
        return len(self.entries)

    def count(self, status: JobStatus) -> int:
        return sum(1 for entry in self.entries if entry.result.status == status)

    @property
    def completed(self) -> int:
        return self.count(JobStatus.COMPLETED)

    @property
    def completed_not_run(self) -> int:
        return self.count(JobStatus.COMPLETED_NOT_RUN)

    @property
    def failed(self) -> int:
        return self.count(JobStatus.FAILED)

    @property
    def failed_entries(self) -> list[ReportEntry]:
        return [entry for entry in self.entries if entry.result.status == JobStatus.FAILED]

    @property
    def succeeded(self) -> bool:
        """True when no job failed."""
        return self.failed == 0

    @property
    def duration_seconds(self) -> float | None:
        if self.completed_at is None:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def raise_for_defects(self) -> None:
        """Re-raise the first ledger defect seen during the run, if any."""
        if self.defects:
            raise self.defects[0]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "total": self.total,
            "completed": self.completed,
            "completed_not_run": self.completed_not_run,
            "failed": self.failed,
            "peak_concurrency": self.peak_concurrency,
            "duration_seconds": self.duration_seconds,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "defects": [defect.to_dict() for defect in self.defects],
            "jobs": [
                {
                    "id": entry.job.unique_id,
                    "name": entry.job.display_name,
                    "source": entry.source_name,
                    **entry.result.to_dict(),
                }
                for entry in self.entries
            ],
        }


class ConcurrencyScheduler:
    """Runs jobs with bounded concurrency, consulting the completion ledger.

    Args:
        ledger: Initialized completion ledger.
        max_concurrent: Default number of jobs in flight; processor count
            when omitted.
        verify_interrupted: Call a job's ``verify_action`` when the ledger
            holds an unfinished record for it.
        track_attempts: Write a started-marker before invoking a run action
            and remove it again if the job fails.
    """

    def __init__(
        self,
        ledger: CompletionLedger,
        *,
        max_concurrent: int | None = None,
        verify_interrupted: bool = True,
        track_attempts: bool = False,
    ):
        self._ledger = ledger
        self._max_concurrent = max_concurrent or os.cpu_count() or 1
        self._verify_interrupted = verify_interrupted
        self._track_attempts = track_attempts

        self._state_lock = threading.Lock()
        self._active = 0
        self._peak = 0
        self._defects: list[DuplicateRecordError] = []

    def run(self, jobs: Iterable[Job], max_concurrent: int | None = None) -> RunReport:
        """Run ``jobs`` and wait until every one of them has a result.

        Jobs with the same ``unique_id`` are collapsed to the first one. Job
        objects carry their result, so each run needs fresh ``Job`` instances.
        """
        limit = max_concurrent or self._max_concurrent
        if limit < 1:
            raise ValueError("max_concurrent must be at least 1")

        job_list = list(jobs)
        unique = dedupe_jobs(job_list)
        if len(unique) != len(job_list):
            logger.warning("scheduler.duplicate_jobs_dropped", dropped=len(job_list) - len(unique))

        already_run = [job.unique_id for job in unique if job.result is not None]
        if already_run:
            raise ValueError(f"Jobs already carry a result from an earlier run: {', '.join(already_run)}")

        with self._state_lock:
            self._active = 0
            self._peak = 0
            self._defects = []

        started_at = utcnow()
        logger.info("scheduler.run_started", jobs=len(unique), max_concurrent=limit)

        slots = threading.BoundedSemaphore(limit)
        with concurrent.futures.ThreadPoolExecutor(
            max_workers=limit, thread_name_prefix="runspine-job"
        ) as executor:
            futures = [executor.submit(self._execute_job, job, slots) for job in unique]
            concurrent.futures.wait(futures)

        for future in futures:
            future.result()

        with self._state_lock:
            peak = self._peak
            defects = list(self._defects)

        report = RunReport(
            entries=[ReportEntry(job.source_name, job, job.result) for job in unique],
            started_at=started_at,
            completed_at=utcnow(),
            peak_concurrency=peak,
            defects=defects,
        )
        logger.info(
            "scheduler.run_finished",
            completed=report.completed,
            completed_not_run=report.completed_not_run,
            failed=report.failed,
            peak_concurrency=peak,
            duration_seconds=report.duration_seconds,
        )
        return report

    # =========================================================================
    # PER-JOB FLOW
    # =========================================================================

    def _execute_job(self, job: Job, slots: threading.BoundedSemaphore) -> None:
        with self._slot(slots), LogContext(job_id=job.unique_id, source=job.source_name):
            try:
                with self._ledger.session() as session:
                    result = self._process(job, session)
            except DuplicateRecordError as exc:
                logger.error("scheduler.ledger_defect", error=str(exc))
                with self._state_lock:
                    self._defects.append(exc)
                result = JobResult.failed(exc)
            except Exception as exc:
                # Ledger I/O failures fail the job, never the run.
                logger.error("scheduler.job_crashed", error=str(exc), error_type=type(exc).__name__)
                result = JobResult.failed(exc)
            job.set_result(result)

    def _process(self, job: Job, session: LedgerSession) -> JobResult:
        record = session.lookup(job.unique_id)

        if record is not None and record.is_complete:
            logger.debug("scheduler.job_already_completed", completed_at=record.end_time.isoformat())
            return JobResult.completed_not_run(record)

        if record is not None and self._verify_interrupted and job.verify_action is not None:
            verified = self._invoke(job, job.verify_action, "verify")
            if verified.status == JobStatus.COMPLETED:
                if not session.complete_interrupted(job.unique_id, verified.end_time):
                    raise DuplicateRecordError(job.unique_id)
                logger.info("scheduler.interrupted_job_confirmed")
                return verified
            logger.info("scheduler.interrupted_job_unconfirmed")

        marker: CompletionRecord | None = None
        if record is None and self._track_attempts:
            marker = session.mark_interrupted(job.unique_id, utcnow())

        result = self._invoke(job, job.run_action, "run")

        if result.status == JobStatus.COMPLETED:
            if record is not None or marker is not None:
                if not session.complete_interrupted(job.unique_id, result.end_time):
                    raise DuplicateRecordError(job.unique_id)
            else:
                session.record_completion(job.unique_id, result.start_time, result.end_time)
            logger.info("scheduler.job_completed", duration_seconds=result.duration_seconds)
        elif marker is not None:
            session.clear_interrupted(job.unique_id)

        return result

    def _invoke(self, job: Job, action: JobAction, kind: str) -> JobResult:
        start = utcnow()
        logger.debug("scheduler.action_started", action=kind, job=job.display_name)
        try:
            result = action()
        except Exception as exc:
            logger.warning("scheduler.job_failed", action=kind, error=str(exc), error_type=type(exc).__name__)
            return JobResult.failed(exc, start_time=start)

        if not isinstance(result, JobResult) or result.status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            error = TypeError(f"{kind} action for {job.unique_id} returned {result!r}")
            logger.warning("scheduler.job_failed", action=kind, error=str(error), error_type="TypeError")
            return JobResult.failed(error, start_time=start)

        if result.status == JobStatus.FAILED:
            logger.warning("scheduler.job_failed", action=kind, error=result.error_message)
        return result

    @contextmanager
    def _slot(self, slots: threading.BoundedSemaphore) -> Iterator[None]:
        with slots:
            with self._state_lock:
                self._active += 1
                self._peak = max(self._peak, self._active)
            try:
                yield
            finally:
                with self._state_lock:
                    self._active -= 1
