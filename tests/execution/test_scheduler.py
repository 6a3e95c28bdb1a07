"""Tests for ConcurrencyScheduler - ledger-aware bounded-concurrency runs."""

from __future__ import annotations

import threading
import time
from datetime import timedelta

import pytest
from structlog.testing import capture_logs

from runspine.core.errors import DuplicateRecordError, ProcessFailure
from runspine.execution.models import Job, JobResult, JobStatus, utcnow
from runspine.execution.process import ProcessRunner
from runspine.execution.scheduler import ConcurrencyScheduler, RunReport


def _completing(calls: list[str] | None = None, key: str = "", delay: float = 0.0):
    def action() -> JobResult:
        start = utcnow()
        if calls is not None:
            calls.append(key)
        if delay:
            time.sleep(delay)
        return JobResult.completed(start, utcnow())

    return action


def _raising(message: str = "kaput"):
    def action() -> JobResult:
        raise RuntimeError(message)

    return action


def _process_job(unique_id: str, binary: str, args: list[str], runner: ProcessRunner) -> Job:
    def action() -> JobResult:
        start = utcnow()
        result = runner.run(binary, args)
        if result.is_err():
            return JobResult.failed(result.error, start_time=start)
        return JobResult.completed(start, utcnow())

    return Job(unique_id, unique_id, "proc", action)


# ── Idempotency / retry ──────────────────────────────────────────────────


class TestIdempotency:
    def test_second_run_does_not_invoke_actions(self, ledger, make_job):
        calls: list[str] = []
        scheduler = ConcurrencyScheduler(ledger, max_concurrent=2)

        first = scheduler.run([make_job(k, _completing(calls, k)) for k in ("a", "b", "c")])
        assert first.completed == 3
        assert sorted(calls) == ["a", "b", "c"]

        second = scheduler.run([make_job(k, _completing(calls, k)) for k in ("a", "b", "c")])
        assert second.completed_not_run == 3
        assert second.completed == 0
        assert len(calls) == 3
        assert ledger.count() == 3

    def test_reused_job_objects_are_rejected(self, ledger, make_job):
        calls: list[str] = []
        scheduler = ConcurrencyScheduler(ledger)
        jobs = [make_job(k, _completing(calls, k)) for k in ("a", "b")]
        scheduler.run(jobs)

        with pytest.raises(ValueError, match="a, b"):
            scheduler.run(jobs)
        assert sorted(calls) == ["a", "b"]
        assert [job.status for job in jobs] == [JobStatus.COMPLETED, JobStatus.COMPLETED]

    def test_worker_exception_is_raised(self, ledger, make_job, monkeypatch):
        scheduler = ConcurrencyScheduler(ledger)

        def broken(job, slots):
            raise RuntimeError("worker blew up")

        monkeypatch.setattr(scheduler, "_execute_job", broken)
        with pytest.raises(RuntimeError, match="worker blew up"):
            scheduler.run([make_job("a")])

    def test_failed_job_leaves_no_record_and_is_retried(self, ledger, make_job):
        scheduler = ConcurrencyScheduler(ledger, max_concurrent=1)

        failed = scheduler.run([make_job("flaky", _raising())])
        assert failed.failed == 1
        assert ledger.lookup("flaky") is None

        calls: list[str] = []
        retried = scheduler.run([make_job("flaky", _completing(calls, "flaky"))])
        assert calls == ["flaky"]
        assert retried.completed == 1
        assert ledger.lookup("flaky").is_complete

    def test_failed_result_returned_by_action(self, ledger, make_job):
        job = make_job("f", lambda: JobResult.failed(ValueError("nope")))
        report = ConcurrencyScheduler(ledger).run([job])
        assert job.status == JobStatus.FAILED
        assert report.entries[0].result.error_message == "nope"
        assert ledger.lookup("f") is None

    def test_record_times_come_from_result(self, ledger, make_job):
        start = utcnow() - timedelta(minutes=5)
        end = start + timedelta(minutes=2)
        ConcurrencyScheduler(ledger).run([make_job("t", lambda: JobResult.completed(start, end))])
        record = ledger.lookup("t")
        assert record.start_time == start
        assert record.end_time == end


# ── Concurrency ──────────────────────────────────────────────────────────


class TestBoundedConcurrency:
    def test_peak_never_exceeds_limit(self, ledger, make_job):
        active = 0
        peak = 0
        lock = threading.Lock()

        def blocking() -> JobResult:
            nonlocal active, peak
            start = utcnow()
            with lock:
                active += 1
                peak = max(peak, active)
            time.sleep(0.1)
            with lock:
                active -= 1
            return JobResult.completed(start, utcnow())

        jobs = [make_job(f"j{i}", blocking) for i in range(6)]
        report = ConcurrencyScheduler(ledger, max_concurrent=2).run(jobs)

        assert report.completed == 6
        assert peak <= 2
        assert report.peak_concurrency <= 2
        assert report.peak_concurrency >= 1

    def test_run_level_override(self, ledger, make_job):
        jobs = [make_job(f"j{i}", _completing(delay=0.05)) for i in range(4)]
        report = ConcurrencyScheduler(ledger, max_concurrent=4).run(jobs, max_concurrent=1)
        assert report.peak_concurrency == 1

    def test_invalid_limit(self, ledger, make_job):
        with pytest.raises(ValueError):
            ConcurrencyScheduler(ledger).run([make_job("a")], max_concurrent=-1)

    def test_empty_run(self, ledger):
        report = ConcurrencyScheduler(ledger).run([])
        assert report.total == 0
        assert report.succeeded


# ── Isolation ────────────────────────────────────────────────────────────


class TestIsolation:
    def test_one_raising_job_does_not_affect_others(self, ledger, make_job):
        jobs = [
            make_job("ok-1"),
            make_job("bad", _raising("kaput")),
            make_job("ok-2"),
        ]
        report = ConcurrencyScheduler(ledger, max_concurrent=3).run(jobs)

        statuses = {e.job.unique_id: e.result.status for e in report.entries}
        assert statuses == {
            "ok-1": JobStatus.COMPLETED,
            "bad": JobStatus.FAILED,
            "ok-2": JobStatus.COMPLETED,
        }
        bad = next(e for e in report.entries if e.job.unique_id == "bad")
        assert isinstance(bad.result.error, RuntimeError)
        assert "kaput" in bad.result.error_message
        assert not report.succeeded

    def test_non_result_return_is_failure(self, ledger, make_job):
        report = ConcurrencyScheduler(ledger).run([make_job("weird", lambda: "done")])
        assert report.failed == 1
        assert isinstance(report.entries[0].result.error, TypeError)

    def test_every_job_gets_a_result(self, ledger, make_job):
        jobs = [make_job(f"j{i}", _raising() if i % 2 else None) for i in range(10)]
        ConcurrencyScheduler(ledger, max_concurrent=3).run(jobs)
        assert all(job.result is not None for job in jobs)

    def test_duplicate_ids_collapse(self, ledger, make_job):
        calls: list[str] = []
        report = ConcurrencyScheduler(ledger).run(
            [make_job("same", _completing(calls, "1")), make_job("same", _completing(calls, "2"))]
        )
        assert report.total == 1
        assert calls == ["1"]


# ── Process-backed scenario ──────────────────────────────────────────────


class TestProcessScenario:
    def test_success_and_failure(self, ledger, python):
        runner = ProcessRunner(timeout_seconds=30)
        x = _process_job("x", *python("print('{\"id\":\"x\"}')"), runner)
        y = _process_job("y", *python("import sys; sys.stderr.write('boom\\n'); sys.exit(1)"), runner)

        report = ConcurrencyScheduler(ledger, max_concurrent=2).run([x, y])

        assert x.status == JobStatus.COMPLETED
        record = ledger.lookup("x")
        assert record is not None
        assert record.start_time <= record.end_time

        assert y.status == JobStatus.FAILED
        assert isinstance(y.result.error, ProcessFailure)
        assert "boom" in y.result.error_message
        assert ledger.lookup("y") is None
        assert report.failed == 1 and report.completed == 1

    def test_timeout_fails_job(self, ledger, python):
        runner = ProcessRunner(timeout_seconds=0.3, kill_timeout_seconds=0.5)
        job = _process_job("sleepy", *python("import time; time.sleep(60)"), runner)
        ConcurrencyScheduler(ledger).run([job])
        assert job.status == JobStatus.FAILED
        assert "timed out" in job.result.error_message
        assert ledger.lookup("sleepy") is None


# ── Interrupted records / verify ─────────────────────────────────────────


class TestVerify:
    def test_confirmed_interrupted_job_is_backfilled(self, ledger, make_job):
        start = utcnow() - timedelta(hours=1)
        ledger.mark_interrupted("v", start)
        run_calls: list[str] = []

        job = make_job("v", _completing(run_calls, "run"), verify_action=_completing())
        ConcurrencyScheduler(ledger).run([job])

        assert run_calls == []
        assert job.status == JobStatus.COMPLETED
        record = ledger.lookup("v")
        assert record.is_complete
        assert record.start_time == start

    def test_refuted_interrupted_job_runs_again(self, ledger, make_job):
        ledger.mark_interrupted("v", utcnow())
        run_calls: list[str] = []
        job = make_job(
            "v",
            _completing(run_calls, "run"),
            verify_action=lambda: JobResult.failed(RuntimeError("not there")),
        )
        ConcurrencyScheduler(ledger).run([job])

        assert run_calls == ["run"]
        assert job.status == JobStatus.COMPLETED
        assert ledger.lookup("v").is_complete
        assert ledger.count() == 1

    def test_raising_verify_falls_back_to_run(self, ledger, make_job):
        ledger.mark_interrupted("v", utcnow())
        job = make_job("v", verify_action=_raising("verify broke"))
        ConcurrencyScheduler(ledger).run([job])
        assert job.status == JobStatus.COMPLETED

    def test_interrupted_without_verify_runs(self, ledger, make_job):
        ledger.mark_interrupted("v", utcnow())
        calls: list[str] = []
        ConcurrencyScheduler(ledger).run([make_job("v", _completing(calls, "run"))])
        assert calls == ["run"]
        assert ledger.lookup("v").is_complete

    def test_verify_disabled(self, ledger, make_job):
        ledger.mark_interrupted("v", utcnow())
        verify_calls: list[str] = []
        job = make_job("v", verify_action=_completing(verify_calls, "verify"))
        ConcurrencyScheduler(ledger, verify_interrupted=False).run([job])
        assert verify_calls == []
        assert ledger.lookup("v").is_complete

    def test_failed_run_keeps_preexisting_marker(self, ledger, make_job):
        ledger.mark_interrupted("v", utcnow())
        ConcurrencyScheduler(ledger).run([make_job("v", _raising())])
        assert ledger.lookup("v").is_interrupted


class TestTrackAttempts:
    def test_marker_written_before_run(self, ledger, make_job):
        seen = {}

        def action() -> JobResult:
            start = utcnow()
            seen["record"] = ledger.lookup("t")
            return JobResult.completed(start, utcnow())

        ConcurrencyScheduler(ledger, track_attempts=True).run([make_job("t", action)])
        assert seen["record"].is_interrupted
        assert ledger.lookup("t").is_complete

    def test_marker_cleared_on_failure(self, ledger, make_job):
        ConcurrencyScheduler(ledger, track_attempts=True).run([make_job("t", _raising())])
        assert ledger.lookup("t") is None


# ── Defects ──────────────────────────────────────────────────────────────


class TestDefects:
    def test_duplicate_record_is_surfaced(self, ledger, make_job):
        def sneaky() -> JobResult:
            # Another writer completes the same id while this job runs.
            start = utcnow()
            ledger.record_completion("dup", start, start)
            return JobResult.completed(start, utcnow())

        with capture_logs() as logs:
            report = ConcurrencyScheduler(ledger).run([make_job("dup", sneaky)])

        entry = report.entries[0]
        assert entry.result.status == JobStatus.FAILED
        assert isinstance(entry.result.error, DuplicateRecordError)
        assert len(report.defects) == 1
        assert any(log["event"] == "scheduler.ledger_defect" for log in logs)
        with pytest.raises(DuplicateRecordError):
            report.raise_for_defects()

    def test_no_defects(self, ledger, make_job):
        report = ConcurrencyScheduler(ledger).run([make_job("a")])
        report.raise_for_defects()
        assert report.defects == []


# ── Report ───────────────────────────────────────────────────────────────


class TestRunReport:
    def test_to_dict(self, ledger, make_job):
        report = ConcurrencyScheduler(ledger).run(
            [make_job("a", source_name="s1"), make_job("b", _raising("x"), source_name="s2")]
        )
        d = report.to_dict()
        assert d["total"] == 2
        assert d["completed"] == 1
        assert d["failed"] == 1
        assert d["completed_at"] is not None
        jobs = {j["id"]: j for j in d["jobs"]}
        assert jobs["a"]["source"] == "s1"
        assert jobs["b"]["status"] == "failed"
        assert jobs["b"]["error"] == "x"

    def test_entries_preserve_input_order(self, ledger, make_job):
        ids = [f"j{i}" for i in range(8)]
        report = ConcurrencyScheduler(ledger, max_concurrent=4).run([make_job(i) for i in ids])
        assert [e.job.unique_id for e in report.entries] == ids
        assert [e.source_name for e in report.entries] == ["test-source"] * 8
        assert isinstance(report, RunReport)
        assert report.failed_entries == []
