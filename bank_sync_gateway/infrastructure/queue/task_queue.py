"""Database-backed task queue with retry tracking and per-key concurrency"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bank_sync_gateway.infrastructure.database.models import TaskRun
from bank_sync_gateway.tasks.base import TaskDefinition
from bank_sync_gateway.utils.date_utils import as_utc, utcnow

PENDING = "PENDING"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"


@dataclass
class ClaimedRun:
    """Detached view of a claimed run, safe to use after the session closes"""

    id: str
    task_id: str
    payload: Dict[str, Any]
    concurrency_key: str
    attempt: int
    max_attempts: int


class TaskQueue:
    """
    Queue operations over the task_run table.

    `enqueue` only adds to the caller's session, so the run commits together
    with whatever business write scheduled it. The other operations commit
    on their own.
    """

    def __init__(self, db: Session):
        self.db = db

    def enqueue(
        self,
        task: TaskDefinition,
        payload: Any,
        concurrency_key: Optional[str] = None,
        dedupe: bool = True,
        delay_seconds: float = 0,
    ) -> TaskRun:
        """
        Schedule a run. With `dedupe`, an identical run that has not started
        yet is reused, so at-least-once triggers do not pile up.
        """
        parsed = task.parse(payload)
        data = task.serialize(parsed)
        key = concurrency_key or task.concurrency_key(parsed)

        if dedupe:
            for run in (
                self.db.query(TaskRun)
                .filter(TaskRun.task_id == task.id, TaskRun.concurrency_key == key, TaskRun.status == PENDING)
                .all()
            ):
                if run.payload == data:
                    return run

        run = TaskRun(
            task_id=task.id,
            payload=data,
            concurrency_key=key,
            status=PENDING,
            attempts=0,
            max_attempts=task.retry.max_attempts,
            run_at=utcnow() + timedelta(seconds=delay_seconds),
        )
        self.db.add(run)
        self.db.flush()
        logging.info(
            f"Enqueued task {task.id}",
            extra={"task_id": task.id, "run_id": run.id, "concurrency_key": key},
        )
        return run

    def claim(
        self,
        registry: Mapping[str, TaskDefinition],
        limit: int,
        global_limit: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> List[ClaimedRun]:
        """
        Move up to `limit` due runs to RUNNING.

        A run is skipped while another run with the same concurrency key is
        RUNNING (unique active_key), or while its task id is at its
        concurrency limit. `global_limit` caps RUNNING rows across all workers.
        """
        now = now or utcnow()
        if global_limit is not None:
            running_total = self.db.query(func.count(TaskRun.id)).filter(TaskRun.status == RUNNING).scalar() or 0
            limit = min(limit, global_limit - running_total)
        if limit <= 0:
            return []

        running_by_task: Dict[str, int] = dict(
            self.db.query(TaskRun.task_id, func.count(TaskRun.id))
            .filter(TaskRun.status == RUNNING)
            .group_by(TaskRun.task_id)
            .all()
        )

        candidates = (
            self.db.query(TaskRun)
            .filter(TaskRun.status == PENDING, TaskRun.run_at <= now)
            .order_by(TaskRun.run_at)
            .limit(limit * 4)
            .with_for_update(skip_locked=True)
            .all()
        )

        claimed: List[ClaimedRun] = []
        for run in candidates:
            if len(claimed) >= limit:
                break

            task = registry.get(run.task_id)
            if task is None:
                run.status = FAILED
                run.finished_at = now
                run.last_error = f"Unknown task id {run.task_id}"
                continue

            if running_by_task.get(run.task_id, 0) >= task.concurrency_limit:
                continue

            try:
                with self.db.begin_nested():
                    run.status = RUNNING
                    run.active_key = run.concurrency_key
                    run.attempts = run.attempts + 1
                    run.locked_at = now
                    self.db.flush()
            except IntegrityError:
                # Key already held by a running task
                continue

            running_by_task[run.task_id] = running_by_task.get(run.task_id, 0) + 1
            claimed.append(
                ClaimedRun(
                    id=run.id,
                    task_id=run.task_id,
                    payload=dict(run.payload),
                    concurrency_key=run.concurrency_key,
                    attempt=run.attempts,
                    max_attempts=run.max_attempts,
                )
            )

        self.db.commit()
        return claimed

    def complete(self, run_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        run = self.db.get(TaskRun, run_id)
        if run is None:
            return
        run.status = COMPLETED
        run.active_key = None
        run.finished_at = utcnow()
        run.result = result
        run.last_error = None
        self.db.commit()

    def fail(self, run_id: str, error: str, retry_in_seconds: Optional[float] = None) -> None:
        """Reschedule when `retry_in_seconds` is given, otherwise mark FAILED"""
        run = self.db.get(TaskRun, run_id)
        if run is None:
            return
        run.active_key = None
        run.last_error = error
        if retry_in_seconds is not None:
            run.status = PENDING
            run.run_at = utcnow() + timedelta(seconds=retry_in_seconds)
            run.locked_at = None
        else:
            run.status = FAILED
            run.finished_at = utcnow()
        self.db.commit()

    def release_expired(self, lease_seconds: float, now: Optional[datetime] = None) -> int:
        """Return RUNNING runs whose worker vanished to PENDING (or FAILED when out of attempts)"""
        now = now or utcnow()
        released = 0
        for run in self.db.query(TaskRun).filter(TaskRun.status == RUNNING).all():
            locked_at = as_utc(run.locked_at)
            if locked_at is not None and locked_at > now - timedelta(seconds=lease_seconds):
                continue
            run.active_key = None
            run.locked_at = None
            run.last_error = "Lease expired"
            if run.attempts < run.max_attempts:
                run.status = PENDING
                run.run_at = now
            else:
                run.status = FAILED
                run.finished_at = now
            released += 1
        self.db.commit()
        return released
