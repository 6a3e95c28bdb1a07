"""
Shared pytest fixtures for runspine tests.

This module provides:
- Quiet structlog configuration (and reset) for test isolation
- Settings cache cleanup
- Ledger fixtures backed by a temporary SQLite file
- Helpers for building jobs and Python-subprocess commands

Usage:
    Fixtures are auto-discovered by pytest.

    def test_something(ledger, make_job):
        job = make_job("a")
        ...
"""

from __future__ import annotations

import logging
import sys
from collections.abc import Callable, Generator
from pathlib import Path

import pytest
import structlog

# Ensure runspine package is importable
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from runspine.core.settings import clear_settings_cache
from runspine.execution.ledger import CompletionLedger
from runspine.execution.models import Job, JobResult, utcnow


# =============================================================================
# Isolation Fixtures
# =============================================================================


@pytest.fixture(autouse=True)
def quiet_structlog() -> Generator[None, None, None]:
    """
    Route structlog output nowhere for the duration of a test.

    Tests that assert on log events use ``structlog.testing.capture_logs``.
    """
    structlog.configure(
        processors=[structlog.processors.KeyValueRenderer()],
        wrapper_class=structlog.make_filtering_bound_logger(logging.DEBUG),
        logger_factory=structlog.ReturnLoggerFactory(),
        cache_logger_on_first_use=False,
    )
    yield
    structlog.reset_defaults()
    structlog.contextvars.clear_contextvars()


@pytest.fixture(autouse=True)
def clean_settings(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> Generator[None, None, None]:
    """Fresh settings per test; the ledger defaults into the test's tmp dir."""
    monkeypatch.setenv("RUNSPINE_DATABASE", str(tmp_path / "default-ledger.db"))
    clear_settings_cache()
    yield
    clear_settings_cache()


# =============================================================================
# Ledger Fixtures
# =============================================================================


@pytest.fixture
def db_path(tmp_path: Path) -> Path:
    return tmp_path / "ledger.db"


@pytest.fixture
def ledger(db_path: Path) -> CompletionLedger:
    """Initialized ledger on a temporary file."""
    led = CompletionLedger(db_path)
    led.initialize()
    return led


# =============================================================================
# Job Helpers
# =============================================================================


def completed_action() -> JobResult:
    start = utcnow()
    return JobResult.completed(start, utcnow())


@pytest.fixture
def make_job() -> Callable[..., Job]:
    """Factory for jobs with a simple completing run action."""

    def _make(
        unique_id: str,
        run_action: Callable[[], JobResult] | None = None,
        *,
        verify_action: Callable[[], JobResult] | None = None,
        source_name: str = "test-source",
        display_name: str | None = None,
    ) -> Job:
        return Job(
            unique_id=unique_id,
            display_name=display_name or unique_id,
            source_name=source_name,
            run_action=run_action or completed_action,
            verify_action=verify_action,
        )

    return _make


@pytest.fixture
def python() -> Callable[[str], tuple[str, list[str]]]:
    """``python("print(1)")`` -> ``(sys.executable, ["-c", "print(1)"])``."""

    def _cmd(code: str) -> tuple[str, list[str]]:
        return sys.executable, ["-c", code]

    return _cmd

