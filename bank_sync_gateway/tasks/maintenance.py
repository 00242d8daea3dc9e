"""Stale-state reaper"""

import logging
from datetime import timedelta

from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.base import SINGLE_ATTEMPT, TaskContext, TaskDefinition
from bank_sync_gateway.tasks.payloads import EmptyPayload
from bank_sync_gateway.utils.date_utils import utcnow


async def reap_stale_state(payload: EmptyPayload, ctx: TaskContext):
    """
    Clear what a crashed worker leaves behind: connections stuck in SYNCING
    past the sync time limit, and RUNNING queue rows past their lease.
    """
    now = utcnow()
    max_duration = max(ctx.settings.sync_max_duration_seconds, ctx.settings.delete_max_duration_seconds)

    with session_scope(ctx.session_factory) as db:
        reset = ConnectionRepository(db).reset_stale_syncing(
            started_before=now - timedelta(seconds=ctx.settings.sync_max_duration_seconds)
        )
        db.commit()
        released = TaskQueue(db).release_expired(max_duration + ctx.settings.queue_lease_grace_seconds, now=now)

    if reset or released:
        logging.warning(
            "Reaped stale state",
            extra={"connections_reset": reset, "runs_released": released},
        )
    return {"connectionsReset": reset, "runsReleased": released}


REAP_STALE_STATE = TaskDefinition(
    id="reap-stale-state",
    schema=EmptyPayload,
    run=reap_stale_state,
    retry=SINGLE_ATTEMPT,
    concurrency_key=lambda p: "reaper",
    concurrency_limit=1,
)
