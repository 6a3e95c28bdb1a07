"""
Engine - one complete run, from configuration to report.

    .. code-block:: text

        run_config(config, settings)
        ┌─────────────────────────────────────────────────────────┐
        │ 1. CompletionLedger.initialize()   (fatal on failure)   │
        │ 2. probe_capabilities()            (once per run)       │
        │ 3. discover_jobs()                 (broken sources are  │
        │                                     skipped)            │
        │ 4. ConcurrencyScheduler.run()                           │
        │ 5. reporters                                            │
        └─────────────────────────────────────────────────────────┘

The returned ``RunReport`` may carry ledger defects; callers decide when to
call ``raise_for_defects()`` (the CLI does it after printing the report).
"""

from __future__ import annotations

from collections.abc import Sequence

from runspine.core.config import AppConfig
from runspine.core.logging import get_logger
from runspine.core.settings import RunspineSettings
from runspine.execution.ledger import CompletionLedger
from runspine.execution.process import ProcessRunner, probe_capabilities
from runspine.execution.scheduler import ConcurrencyScheduler, RunReport
from runspine.reporting import LogReporter, Reporter
from runspine.sources.protocol import SourceContext
from runspine.sources.registry import discover_jobs, required_binaries

logger = get_logger(__name__)


def resolve_max_concurrent(
    config: AppConfig,
    settings: RunspineSettings,
    override: int | None = None,
) -> int:
    """CLI override, then the config file, then settings (processor count)."""
    return override or config.max_concurrent_jobs or settings.resolved_max_concurrent()


def build_context(settings: RunspineSettings) -> SourceContext:
    """Probe external binaries and build the context handed to sources."""
    capabilities = probe_capabilities(sorted(required_binaries()))
    if capabilities.missing:
        logger.warning("engine.binaries_missing", binaries=capabilities.missing)

    runner = ProcessRunner(
        timeout_seconds=settings.job_timeout_seconds,
        kill_timeout_seconds=settings.kill_timeout_seconds,
        cwd=settings.work_dir,
    )
    return SourceContext(runner=runner, capabilities=capabilities, work_dir=settings.work_dir)


def run_config(
    config: AppConfig,
    settings: RunspineSettings,
    *,
    reporters: Sequence[Reporter] | None = None,
    max_concurrent: int | None = None,
    context: SourceContext | None = None,
) -> RunReport:
    """Run every job of ``config`` once.

    Args:
        config: Loaded job configuration.
        settings: Operational settings (ledger path, timeouts).
        reporters: Receive the report entries; ``LogReporter`` by default.
        max_concurrent: Overrides the config file and settings.
        context: Prebuilt source context (skips the binary probe).

    Raises:
        LedgerInitError: The ledger could not be opened or migrated.
    """
    ledger = CompletionLedger(settings.database)
    ledger.initialize()

    context = context or build_context(settings)
    jobs = discover_jobs(config.sources, context)

    scheduler = ConcurrencyScheduler(
        ledger,
        max_concurrent=resolve_max_concurrent(config, settings, max_concurrent),
        verify_interrupted=settings.verify_interrupted,
        track_attempts=settings.track_attempts,
    )
    report = scheduler.run(jobs)

    for reporter in reporters if reporters is not None else [LogReporter()]:
        try:
            reporter.report(report.entries)
        except Exception as exc:
            logger.exception("engine.reporter_failed", reporter=type(reporter).__name__, error=str(exc))

    return report
