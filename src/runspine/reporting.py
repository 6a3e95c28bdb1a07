"""
Run reporting.

A reporter receives the ``(source_name, job, result)`` entries of a finished
run. Two reporters ship with runspine:

- ``LogReporter``: one structlog summary event plus one event per failed job
  carrying its error text and captured stderr.
- ``ConsoleReporter``: a rich table of the jobs that did something this run
  and a summary line.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from runspine.core.errors import ProcessError
from runspine.core.logging import get_logger
from runspine.execution.models import JobStatus
from runspine.execution.scheduler import ReportEntry

logger = get_logger(__name__)

_STATUS_STYLES = {
    JobStatus.COMPLETED: "green",
    JobStatus.COMPLETED_NOT_RUN: "dim",
    JobStatus.FAILED: "bold red",
    JobStatus.NOT_RUN: "yellow",
}


@runtime_checkable
class Reporter(Protocol):
    """Receives the results of a run."""

    def report(self, entries: Sequence[ReportEntry]) -> None:
        ...


def summarize(entries: Sequence[ReportEntry]) -> dict[str, int]:
    """Count entries per status (every status present, zero if unused)."""
    counts = Counter(entry.result.status for entry in entries)
    return {status.value: counts.get(status, 0) for status in JobStatus}


class LogReporter:
    """Report through structured logging."""

    def report(self, entries: Sequence[ReportEntry]) -> None:
        counts = summarize(entries)
        logger.info("report.summary", total=len(entries), **counts)

        for source_name, job, result in entries:
            if result.status != JobStatus.FAILED:
                continue
            fields = {
                "job_id": job.unique_id,
                "job": job.display_name,
                "source": source_name,
                "error": result.error_message,
            }
            if isinstance(result.error, ProcessError) and result.error.stderr:
                fields["stderr"] = result.error.stderr
            logger.error("report.job_failed", **fields)


class ConsoleReporter:
    """Render a rich table of the run.

    Args:
        console: Target console (stdout by default).
        show_skipped: Also list jobs that were already completed in an
            earlier run.
    """

    def __init__(self, console: Console | None = None, *, show_skipped: bool = False):
        self.console = console or Console()
        self.show_skipped = show_skipped

    def report(self, entries: Sequence[ReportEntry]) -> None:
        rows = [
            entry for entry in entries
            if self.show_skipped or entry.result.status != JobStatus.COMPLETED_NOT_RUN
        ]

        if rows:
            table = Table(title="Run results", show_lines=False, pad_edge=False)
            table.add_column("Source", overflow="fold")
            table.add_column("Job", overflow="fold")
            table.add_column("Status")
            table.add_column("Duration", justify="right")
            table.add_column("Error", overflow="fold")
            for source_name, job, result in rows:
                style = _STATUS_STYLES.get(result.status, "")
                duration = result.duration_seconds
                table.add_row(
                    escape(source_name),
                    escape(job.display_name),
                    f"[{style}]{result.status.value}[/{style}]" if style else result.status.value,
                    f"{duration:.1f}s" if duration is not None else "",
                    escape(result.error_message or ""),
                )
            self.console.print(table)
        else:
            self.console.print("[dim]Nothing to do.[/dim]")

        counts = summarize(entries)
        self.console.print(
            f"[bold]{len(entries)}[/bold] jobs: "
            f"[green]{counts[JobStatus.COMPLETED.value]} completed[/green], "
            f"{counts[JobStatus.COMPLETED_NOT_RUN.value]} already done, "
            f"[red]{counts[JobStatus.FAILED.value]} failed[/red]"
        )


__all__ = ["ConsoleReporter", "LogReporter", "ReportEntry", "Reporter", "summarize"]
