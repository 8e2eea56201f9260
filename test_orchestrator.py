"""
Tests for the job runner: retries, backoff, timeouts and progress metadata.
"""

import asyncio

import pytest

from watchcore.config import TaskSettings
from watchcore.models import ErrorCode, MonitoringContext, TaskResult, WorkItem
from watchcore.orchestrator import JobRunner


class ScriptedTask:
    name = "scripted"

    def __init__(self, *outcomes, delay=0.0):
        self.outcomes = list(outcomes)
        self.delay = delay
        self.calls = 0

    async def run(self, item, progress=None):
        self.calls += 1
        if progress is not None:
            progress["step"] = "extract"
        if self.delay:
            await asyncio.sleep(self.delay)
        outcome = self.outcomes[min(self.calls, len(self.outcomes)) - 1]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


OK = TaskResult(success=True, snapshot_id=1)


def failed(code):
    return TaskResult(success=False, code=code, error=code.value)


@pytest.fixture
def item():
    return WorkItem(
        target_id="t-1",
        target_url="https://acme.test/pricing",
        target_name="Acme",
        user_id="u-1",
        context=MonitoringContext(id="ctx-us", key="us", name="United States"),
    )


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def runner(sleeps):
    async def sleep(seconds):
        sleeps.append(seconds)
    return JobRunner(max_attempts=2, backoff_seconds=5.0, timeout_seconds=1.0, sleep=sleep)


class TestRetries:
    @pytest.mark.parametrize("code", [ErrorCode.TIMEOUT, ErrorCode.API_ERROR])
    async def test_transient_failures_are_retried(self, runner, item, sleeps, code):
        task = ScriptedTask(failed(code), OK)
        result = await runner.run(task, item)
        assert result.success
        assert task.calls == 2
        assert sleeps == [5.0]

    @pytest.mark.parametrize("code", [ErrorCode.BLOCKED, ErrorCode.EMPTY, ErrorCode.UNKNOWN])
    async def test_permanent_failures_are_not_retried(self, runner, item, sleeps, code):
        task = ScriptedTask(failed(code), OK)
        result = await runner.run(task, item)
        assert not result.success
        assert result.code == code
        assert task.calls == 1
        assert sleeps == []

    async def test_gives_up_after_max_attempts(self, runner, item):
        task = ScriptedTask(failed(ErrorCode.TIMEOUT))
        result = await runner.run(task, item)
        assert not result.success
        assert task.calls == 2

    async def test_exceptions_are_retried_then_reported(self, runner, item):
        task = ScriptedTask(RuntimeError("boom"))
        result = await runner.run(task, item)
        assert task.calls == 2
        assert result.code == ErrorCode.UNKNOWN
        assert result.error == "boom"

    async def test_slow_task_times_out(self, item):
        """Should cut off an invocation at the timeout and report the step it was on."""
        runner = JobRunner(max_attempts=1, timeout_seconds=0.05)
        result = await runner.run(ScriptedTask(OK, delay=1.0), item)
        assert result.code == ErrorCode.TIMEOUT
        assert "extract" in result.error

    def test_rejects_zero_attempts(self):
        with pytest.raises(ValueError):
            JobRunner(max_attempts=0)


class TestMetadata:
    async def test_progress_is_tracked_per_job(self, runner, item):
        await runner.run(ScriptedTask(failed(ErrorCode.API_ERROR), OK), item)
        progress = runner.metadata["t-1:us:pricing"]
        assert progress["attempt"] == 2
        assert progress["progress"] == 1.0
        assert progress["step"] == "done"
        assert progress["success"] is True

    async def test_failed_job_is_marked(self, runner, item):
        await runner.run(ScriptedTask(failed(ErrorCode.BLOCKED)), item)
        assert runner.metadata[JobRunner.job_id(item)]["step"] == "failed"

    async def test_tracked_jobs_are_bounded(self, item):
        """Should forget the least recently run jobs beyond the tracking limit."""
        runner = JobRunner(max_attempts=1, max_tracked_jobs=2)
        for target_id in ("t-1", "t-2", "t-3", "t-2"):
            await runner.run(ScriptedTask(OK), item.model_copy(update={"target_id": target_id}))
        assert list(runner.metadata) == ["t-3:us:pricing", "t-2:us:pricing"]

    def test_from_settings(self):
        runner = JobRunner.from_settings(TaskSettings(max_attempts=3, backoff_seconds=1.5, timeout_seconds=60))
        assert (runner.max_attempts, runner.backoff_seconds, runner.timeout_seconds) == (3, 1.5, 60)
