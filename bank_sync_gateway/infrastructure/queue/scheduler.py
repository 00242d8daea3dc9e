"""Cron schedules that feed periodic tasks into the queue"""

import logging
from typing import Callable, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.base import TaskDefinition


class TaskScheduler:
    """
    Enqueues scheduled tasks on their cron expression.

    The scheduler only writes queue rows; the worker runs them. A tick that
    finds an identical PENDING run reuses it, so several scheduler processes
    do not multiply the work.
    """

    def __init__(self, session_factory: Callable[[], Session], config: Settings = default_settings):
        self.session_factory = session_factory
        self.config = config
        self.scheduler = AsyncIOScheduler(timezone="UTC")

    def add(self, task: TaskDefinition, cron: str) -> None:
        self.scheduler.add_job(
            self.enqueue,
            CronTrigger.from_crontab(cron, timezone="UTC"),
            args=[task],
            id=task.id,
            replace_existing=True,
            coalesce=True,
            max_instances=1,
        )
        logging.info(f"Scheduled {task.id}", extra={"task_id": task.id, "cron": cron})

    def enqueue(self, task: TaskDefinition) -> Optional[str]:
        try:
            with session_scope(self.session_factory) as db:
                run = TaskQueue(db).enqueue(task, {})
                db.commit()
                return run.id
        except Exception as e:
            logging.error(f"Failed to enqueue scheduled task {task.id}: {e}", exc_info=True)
            return None

    def start(self) -> None:
        self.scheduler.start()

    def shutdown(self) -> None:
        self.scheduler.shutdown(wait=False)
