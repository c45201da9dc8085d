"""
Task scheduling for epochs and voice sessions.

The campaign controller runs each epoch through trigger_and_wait() and the
dispatcher fans sessions out through batch_trigger_and_wait(). Both go through
the TaskScheduler interface so a durable queue can replace the in-process
asyncio implementation without touching the orchestration code.
"""

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Tuple

import logging
logger = logging.getLogger(__name__)


TaskFn = Callable[[Any], Awaitable[Any]]


@dataclass
class TaskResult:
    """Outcome of one scheduled task.

    Attributes:
        ok: True if the task returned without raising
        output: The task's return value (None when it failed)
        error: The exception the task raised (None when it succeeded)
    """
    ok: bool
    output: Any = None
    error: Optional[BaseException] = None


class TaskScheduler(ABC):

    @abstractmethod
    def trigger(self, task: TaskFn, payload: Any) -> asyncio.Task:
        """Start a task without waiting for it."""

    @abstractmethod
    async def trigger_and_wait(self, task: TaskFn, payload: Any) -> TaskResult:
        """Run a task to completion and wrap its outcome."""

    @abstractmethod
    async def batch_trigger_and_wait(self, items: Sequence[Tuple[TaskFn, Any]], concurrency: int) -> List[TaskResult]:
        """Run many tasks with at most `concurrency` in flight; results keep input order."""


class LocalTaskScheduler(TaskScheduler):
    """In-process scheduler built on asyncio tasks."""

    def trigger(self, task: TaskFn, payload: Any) -> asyncio.Task:
        return asyncio.create_task(task(payload))

    async def trigger_and_wait(self, task: TaskFn, payload: Any) -> TaskResult:
        try:
            output = await self.trigger(task, payload)
            return TaskResult(ok=True, output=output)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            return TaskResult(ok=False, error=e)

    async def batch_trigger_and_wait(self, items: Sequence[Tuple[TaskFn, Any]], concurrency: int) -> List[TaskResult]:
        if concurrency < 1:
            raise ValueError("concurrency must be >= 1")

        semaphore = asyncio.Semaphore(concurrency)

        async def _guarded(task: TaskFn, payload: Any):
            async with semaphore:
                return await task(payload)

        tasks = [asyncio.create_task(_guarded(task, payload)) for task, payload in items]
        logger.info(f"Dispatching {len(tasks)} tasks (max concurrent: {concurrency})")

        try:
            outcomes = await asyncio.gather(*tasks, return_exceptions=True)
        except asyncio.CancelledError:
            for t in tasks:
                t.cancel()
            raise

        results: List[TaskResult] = []
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                results.append(TaskResult(ok=False, error=outcome))
            else:
                results.append(TaskResult(ok=True, output=outcome))
        return results


# Scheduler instance
_scheduler: Optional[TaskScheduler] = None


def get_scheduler() -> TaskScheduler:
    global _scheduler
    if _scheduler is None:
        _scheduler = LocalTaskScheduler()
    return _scheduler
