"""End-to-end tests for run_config with command sources."""

from __future__ import annotations

import sys
from pathlib import Path

import pytest
from structlog.testing import capture_logs

from runspine.core.config import AppConfig, SourceConfig
from runspine.core.errors import LedgerInitError
from runspine.core.settings import RunspineSettings
from runspine.engine import build_context, resolve_max_concurrent, run_config
from runspine.execution.ledger import CompletionLedger
from runspine.execution.models import JobStatus
from runspine.execution.process import Capabilities, ProcessRunner
from runspine.sources.protocol import SourceContext


def _settings(db_path: Path, **kwargs) -> RunspineSettings:
    return RunspineSettings(database=db_path, **kwargs)


def _config(*jobs: dict, max_concurrent: int | None = None) -> AppConfig:
    return AppConfig(
        max_concurrent_jobs=max_concurrent,
        sources=[SourceConfig(name="cmds", type="command", properties={"Jobs": list(jobs)})],
    )


def _job(job_id: str, code: str = "pass") -> dict:
    return {"id": job_id, "command": [sys.executable, "-c", code]}


@pytest.fixture
def context() -> SourceContext:
    return SourceContext(runner=ProcessRunner(timeout_seconds=30), capabilities=Capabilities())


class RecordingReporter:
    def __init__(self):
        self.calls = []

    def report(self, entries):
        self.calls.append(list(entries))


class TestResolveMaxConcurrent:
    def test_precedence(self):
        settings = RunspineSettings(max_concurrent=3)
        config = AppConfig(max_concurrent_jobs=2)
        assert resolve_max_concurrent(config, settings, 5) == 5
        assert resolve_max_concurrent(config, settings) == 2
        assert resolve_max_concurrent(AppConfig(), settings) == 3

    def test_falls_back_to_processor_count(self):
        assert resolve_max_concurrent(AppConfig(), RunspineSettings()) >= 1


class TestRunConfig:
    def test_second_run_skips_completed(self, db_path, context):
        config = _config(_job("a"), _job("b"), _job("c", "raise SystemExit(1)"))
        settings = _settings(db_path)

        first = run_config(config, settings, reporters=[], context=context)
        assert first.completed == 2
        assert first.failed == 1

        second = run_config(config, settings, reporters=[], context=context)
        assert second.completed_not_run == 2
        assert second.failed == 1
        assert CompletionLedger(db_path).count() == 2

    def test_reporters_receive_entries(self, db_path, context):
        reporter = RecordingReporter()
        run_config(_config(_job("a")), _settings(db_path), reporters=[reporter], context=context)
        assert len(reporter.calls) == 1
        [(source_name, job, result)] = reporter.calls[0]
        assert source_name == "cmds"
        assert job.unique_id == "command:cmds:a"
        assert result.status == JobStatus.COMPLETED

    def test_failing_reporter_does_not_abort(self, db_path, context):
        class Broken:
            def report(self, entries):
                raise RuntimeError("printer on fire")

        after = RecordingReporter()
        with capture_logs() as logs:
            report = run_config(_config(_job("a")), _settings(db_path), reporters=[Broken(), after], context=context)

        assert report.completed == 1
        assert len(after.calls) == 1
        assert any(e["event"] == "engine.reporter_failed" for e in logs)

    def test_default_reporter_logs_summary(self, db_path, context):
        with capture_logs() as logs:
            run_config(_config(_job("a")), _settings(db_path), context=context)
        summary = next(e for e in logs if e["event"] == "report.summary")
        assert summary["completed"] == 1

    def test_ledger_init_failure(self, tmp_path, context):
        with pytest.raises(LedgerInitError):
            run_config(_config(_job("a")), _settings(tmp_path), reporters=[], context=context)

    def test_no_sources(self, db_path, context):
        report = run_config(AppConfig(), _settings(db_path), reporters=[], context=context)
        assert report.total == 0
        assert report.succeeded

    def test_settings_flow_into_scheduler(self, db_path, context):
        settings = _settings(db_path, track_attempts=True)
        report = run_config(_config(_job("a", "raise SystemExit(2)")), settings, reporters=[], context=context)
        assert report.failed == 1
        assert CompletionLedger(db_path).lookup("command:cmds:a") is None


class TestBuildContext:
    def test_runner_uses_settings(self, tmp_path):
        settings = RunspineSettings(
            database=tmp_path / "l.db",
            job_timeout_seconds=12,
            kill_timeout_seconds=2,
            work_dir=tmp_path,
        )
        context = build_context(settings)
        assert context.work_dir == tmp_path
        assert context.cwd == tmp_path
        assert "yt-dlp" in context.capabilities.binaries
