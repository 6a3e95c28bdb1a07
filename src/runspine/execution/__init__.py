"""runspine execution - running jobs and remembering which ones finished.

ARCHITECTURE
────────────
::

    Job (what to run, from a source)
      │
      ▼
    ConcurrencyScheduler (bounded worker pool)
      ├── CompletionLedger ─ completed / interrupted records (SQLite)
      └── run_action       ─ usually a ProcessRunner call
      │
      ▼
    RunReport (source, job, result) per job

MODULE MAP
──────────
  1. models.py     ─ Job, JobResult, JobStatus, CompletionRecord
  2. process.py    ─ ProcessRunner, probe_capabilities
  3. migrations.py ─ MigrationRunner, numbered files in schema/
  4. ledger.py     ─ CompletionLedger, LedgerSession
  5. scheduler.py  ─ ConcurrencyScheduler, RunReport
"""

from runspine.execution.ledger import CompletionLedger, LedgerSession
from runspine.execution.models import (
    CompletionRecord,
    Job,
    JobAction,
    JobResult,
    JobStatus,
    ProcessOutcome,
    dedupe_jobs,
    utcnow,
)
from runspine.execution.process import Capabilities, ProcessRunner, probe_capabilities
from runspine.execution.scheduler import ConcurrencyScheduler, ReportEntry, RunReport

__all__ = [
    "Capabilities",
    "CompletionLedger",
    "CompletionRecord",
    "ConcurrencyScheduler",
    "Job",
    "JobAction",
    "JobResult",
    "JobStatus",
    "LedgerSession",
    "ProcessOutcome",
    "ProcessRunner",
    "ReportEntry",
    "RunReport",
    "dedupe_jobs",
    "probe_capabilities",
    "utcnow",
]
