"""Asyncio worker that claims and executes queued task runs"""

import asyncio
import logging
import time
from typing import Callable, Dict, List, Mapping, Optional

from sqlalchemy.orm import Session

from bank_sync_gateway.domain.exceptions import RateLimited, TaskTimeoutError
from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.infrastructure.observability.logging import log_task_outcome
from bank_sync_gateway.infrastructure.observability.metrics import task_duration_histogram, task_runs_counter
from bank_sync_gateway.infrastructure.queue.task_queue import ClaimedRun, TaskQueue
from bank_sync_gateway.tasks.base import TaskContext, TaskDefinition, TaskServices


class TaskWorker:
    """
    Polls the task_run table and executes due runs.

    `concurrency` is the global limit on RUNNING rows; per-key exclusion and
    per-task limits are enforced at claim time by TaskQueue.
    """

    def __init__(
        self,
        registry: Mapping[str, TaskDefinition],
        session_factory: Callable[[], Session],
        services: TaskServices,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
    ):
        self.registry = dict(registry)
        self.session_factory = session_factory
        self.services = services
        self.concurrency = concurrency or services.settings.worker_concurrency
        self.poll_interval = poll_interval if poll_interval is not None else services.settings.worker_poll_interval_seconds
        self._in_flight: Dict[str, asyncio.Task] = {}
        self._stopping = asyncio.Event()

    def claim(self) -> List[ClaimedRun]:
        free = self.concurrency - len(self._in_flight)
        if free <= 0:
            return []
        with session_scope(self.session_factory) as db:
            return TaskQueue(db).claim(self.registry, limit=free, global_limit=self.concurrency)

    async def run_once(self) -> int:
        """Claim what is due and wait for those runs to finish. Returns the number executed."""
        claimed = self.claim()
        if claimed:
            await asyncio.gather(*(self.execute(run) for run in claimed))
        return len(claimed)

    async def run_until_idle(self, max_rounds: int = 100) -> int:
        """Drain due work, including retries scheduled with no delay. Used by tests and one-shot runs."""
        total = 0
        for _ in range(max_rounds):
            executed = await self.run_once()
            if executed == 0:
                break
            total += executed
        return total

    async def run_forever(self) -> None:
        logging.info("Task worker started", extra={"concurrency": self.concurrency})
        while not self._stopping.is_set():
            try:
                for run in self.claim():
                    self._in_flight[run.id] = asyncio.create_task(self._execute_tracked(run))
            except Exception as e:
                logging.error(f"Failed to claim task runs: {e}", exc_info=True)

            try:
                await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass

        if self._in_flight:
            await asyncio.gather(*self._in_flight.values(), return_exceptions=True)
        logging.info("Task worker stopped")

    def stop(self) -> None:
        self._stopping.set()

    async def _execute_tracked(self, run: ClaimedRun) -> None:
        try:
            await self.execute(run)
        finally:
            self._in_flight.pop(run.id, None)

    async def execute(self, run: ClaimedRun) -> None:
        """
        Run one attempt and record its outcome.

        Failures are rescheduled only when the exception is `retryable` and
        attempts remain. A provider Retry-After stretches the backoff.
        """
        task = self.registry[run.task_id]
        context = TaskContext(
            run_id=run.id,
            attempt=run.attempt,
            services=self.services,
            session_factory=self.session_factory,
        )
        start_time = time.time()

        try:
            payload = task.parse(run.payload)
            try:
                result = await asyncio.wait_for(task.run(payload, context), timeout=task.max_duration_seconds)
            except asyncio.TimeoutError as e:
                raise TaskTimeoutError(
                    f"Task {task.id} exceeded {task.max_duration_seconds}s"
                ) from e
        except Exception as e:
            retryable = getattr(e, "retryable", True)
            retry_in = None
            if retryable and task.retry.should_retry(run.attempt):
                retry_in = task.retry.delay_seconds(run.attempt)
                if isinstance(e, RateLimited) and e.retry_after:
                    retry_in = max(retry_in, e.retry_after)

            outcome = "retrying" if retry_in is not None else "failed"
            with session_scope(self.session_factory) as db:
                TaskQueue(db).fail(run.id, f"{type(e).__name__}: {e}", retry_in_seconds=retry_in)

            task_runs_counter.labels(task=task.id, outcome=outcome).inc()
            log_task_outcome(task.id, run.id, outcome, run.attempt, error=str(e))
            return
        finally:
            task_duration_histogram.labels(task=task.id).observe(time.time() - start_time)

        with session_scope(self.session_factory) as db:
            TaskQueue(db).complete(run.id, result)

        task_runs_counter.labels(task=task.id, outcome="completed").inc()
        log_task_outcome(task.id, run.id, "completed", run.attempt)
