"""
Job runner that owns retries, backoff, the per-invocation timeout and progress
metadata for task invocations.
"""

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Protocol, Tuple

from .models import ErrorCode, TaskResult, WorkItem

logger = logging.getLogger(__name__)

RETRYABLE_CODES = {ErrorCode.TIMEOUT, ErrorCode.API_ERROR}


class Task(Protocol):
    name: str

    async def run(self, item: WorkItem, progress: Optional[Dict[str, Any]] = None) -> TaskResult:
        ...


class JobRunner:
    """Run a task with bounded attempts, fixed backoff and a hard timeout."""

    def __init__(
        self,
        *,
        max_attempts: int = 2,
        backoff_seconds: float = 5.0,
        timeout_seconds: float = 120.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        max_tracked_jobs: int = 1000,
    ):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.max_attempts = max_attempts
        self.backoff_seconds = backoff_seconds
        self.timeout_seconds = timeout_seconds
        self._sleep = sleep
        self.max_tracked_jobs = max_tracked_jobs
        # job id -> progress of its latest run, oldest first
        self.metadata: Dict[str, Dict[str, Any]] = {}

    @classmethod
    def from_settings(cls, settings) -> "JobRunner":
        return cls(
            max_attempts=settings.max_attempts,
            backoff_seconds=settings.backoff_seconds,
            timeout_seconds=settings.timeout_seconds,
        )

    @staticmethod
    def job_id(item: WorkItem) -> str:
        return f"{item.target_id}:{item.context.key}:{item.signal.value}"

    async def _attempt(
        self, task: Task, item: WorkItem, progress: Dict[str, Any]
    ) -> Tuple[TaskResult, bool]:
        """One invocation; returns the result and whether it may be retried."""
        try:
            result = await asyncio.wait_for(task.run(item, progress), timeout=self.timeout_seconds)
        except asyncio.TimeoutError:
            return TaskResult(
                success=False,
                code=ErrorCode.TIMEOUT,
                error=f"Timed out after {self.timeout_seconds:.0f}s at step {progress.get('step')}",
            ), True
        except Exception as e:
            logger.error(f"Task {task.name} raised for {self.job_id(item)}: {e}", exc_info=True)
            return TaskResult(success=False, code=ErrorCode.UNKNOWN, error=str(e)), True
        return result, result.code in RETRYABLE_CODES

    def _track(self, job_id: str, progress: Dict[str, Any]) -> None:
        self.metadata.pop(job_id, None)
        self.metadata[job_id] = progress
        while len(self.metadata) > self.max_tracked_jobs:
            del self.metadata[next(iter(self.metadata))]

    async def run(self, task: Task, item: WorkItem) -> TaskResult:
        """Run ``task`` for ``item`` and wait for its final result."""
        job_id = self.job_id(item)
        progress: Dict[str, Any] = {"step": "queued", "attempt": 0, "progress": 0.0}
        self._track(job_id, progress)

        result = TaskResult(success=False, code=ErrorCode.UNKNOWN, error="not run")
        for attempt in range(1, self.max_attempts + 1):
            progress["attempt"] = attempt
            result, retryable = await self._attempt(task, item, progress)
            if result.success or not retryable or attempt == self.max_attempts:
                break

            logger.warning(
                f"Task {task.name} failed for {job_id} "
                f"(attempt {attempt}/{self.max_attempts} - retrying in {self.backoff_seconds:.1f}s): "
                f"{result.error}"
            )
            await self._sleep(self.backoff_seconds)

        progress["progress"] = 1.0
        progress["step"] = "done" if result.success else "failed"
        progress["success"] = result.success
        return result
