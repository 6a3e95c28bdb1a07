"""Tests for the command source, using the running Python interpreter as the command."""

from __future__ import annotations

import sys

import pytest

from runspine.core.config import SourceConfig
from runspine.core.errors import ConfigurationError, ProcessFailure
from runspine.execution.models import JobStatus
from runspine.execution.process import ProcessRunner
from runspine.sources.command import CommandSource
from runspine.sources.protocol import JobSource, SourceContext


def _config(jobs, name: str = "nightly") -> SourceConfig:
    return SourceConfig(name=name, type="command", properties={"Jobs": jobs})


def _source(jobs, **kwargs) -> CommandSource:
    return CommandSource(_config(jobs, **kwargs), SourceContext(runner=ProcessRunner(timeout_seconds=30)))


class TestConfiguration:
    def test_requires_jobs(self):
        with pytest.raises(ConfigurationError, match="Jobs"):
            CommandSource(SourceConfig(name="n", type="command"), SourceContext())

    def test_jobs_must_be_a_list(self):
        with pytest.raises(ConfigurationError, match="must be a list"):
            _source({"id": "a", "command": ["true"]})

    def test_invalid_entry(self):
        with pytest.raises(ConfigurationError, match="Invalid Jobs"):
            _source([{"id": "a", "command": []}])

    def test_satisfies_protocol(self):
        assert isinstance(_source([]), JobSource)


class TestJobs:
    def test_ids_and_names(self):
        source = _source(
            [
                {"id": "a", "name": "First", "command": [sys.executable, "-c", "pass"]},
                {"id": "b", "command": [sys.executable, "-c", "pass"]},
                {"id": "a", "command": [sys.executable, "-c", "raise SystemExit(1)"]},
            ]
        )
        jobs = source.get_all_jobs()

        assert [j.unique_id for j in jobs] == ["command:nightly:a", "command:nightly:b"]
        assert [j.display_name for j in jobs] == ["First", "b"]
        assert all(j.source_name == "nightly" for j in jobs)

    def test_successful_command(self):
        job = _source([{"id": "ok", "command": [sys.executable, "-c", "print('hi')"]}]).get_all_jobs()[0]
        result = job.run_action()
        assert result.status == JobStatus.COMPLETED
        assert result.end_time >= result.start_time

    def test_failing_command(self):
        code = "import sys; sys.stderr.write('disk full\\n'); sys.exit(3)"
        job = _source([{"id": "bad", "command": [sys.executable, "-c", code]}]).get_all_jobs()[0]
        result = job.run_action()

        assert result.status == JobStatus.FAILED
        assert isinstance(result.error, ProcessFailure)
        assert result.error.exit_code == 3
        assert result.error.stderr == ["disk full"]

    def test_verify_action(self):
        source = _source(
            [
                {"id": "v", "command": [sys.executable, "-c", "pass"], "verify": [sys.executable, "-c", "pass"]},
                {"id": "nv", "command": [sys.executable, "-c", "pass"]},
            ]
        )
        with_verify, without_verify = source.get_all_jobs()
        assert with_verify.verify_action is not None
        assert with_verify.verify_action().status == JobStatus.COMPLETED
        assert without_verify.verify_action is None
