"""Sync tasks: single connection, removed transactions, and the scheduled sync-all sweep"""

import logging

from bank_sync_gateway.config import settings
from bank_sync_gateway.domain.exceptions import ConnectionNotFoundError
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.services.reconciler import TransactionReconciler
from bank_sync_gateway.services.sync_orchestrator import SyncOrchestrator
from bank_sync_gateway.tasks.base import SINGLE_ATTEMPT, TaskContext, TaskDefinition, policy_from_settings
from bank_sync_gateway.tasks.payloads import EmptyPayload, RemoveTransactionsPayload, SyncConnectionPayload
from bank_sync_gateway.utils.date_utils import utcnow


def connection_key(connection_id: str) -> str:
    return f"connection:{connection_id}"


async def sync_connection(payload: SyncConnectionPayload, ctx: TaskContext):
    with session_scope(ctx.session_factory) as db:
        orchestrator = SyncOrchestrator(db, ctx.services.provider_client, ctx.settings)
        result = await orchestrator.sync(payload.connection_id, manual_sync=payload.manual_sync)
    return result.to_dict()


async def remove_transactions(payload: RemoveTransactionsPayload, ctx: TaskContext):
    """Delete transactions the provider withdrew, then re-derive statistics"""
    with session_scope(ctx.session_factory) as db:
        repo = ConnectionRepository(db)
        if repo.find_by_id(payload.connection_id) is None:
            raise ConnectionNotFoundError(f"Connection {payload.connection_id} not found")

        removed = repo.delete_transactions(payload.connection_id, payload.transaction_ids)
        accounts = repo.find_accounts_by_connection(payload.connection_id)
        TransactionReconciler(repo, window_days=ctx.settings.statistics_window_days).recompute_statistics(
            accounts, as_of=utcnow().date()
        )
        db.commit()

    logging.info(
        "Removed provider transactions",
        extra={"connection_id": payload.connection_id, "removed": removed, "requested": len(payload.transaction_ids)},
    )
    return {"connectionId": payload.connection_id, "removed": removed}


async def sync_all_connections(payload: EmptyPayload, ctx: TaskContext):
    """Queue a standard sync for every connection a sync can still help"""
    enqueued = 0
    failures = 0
    with session_scope(ctx.session_factory) as db:
        queue = TaskQueue(db)
        connection_ids = [c.id for c in ConnectionRepository(db).find_connections_for_sync()]
        for connection_id in connection_ids:
            try:
                queue.enqueue(SYNC_CONNECTION, {"connectionId": connection_id, "manualSync": False})
                db.commit()
                enqueued += 1
            except Exception as e:
                db.rollback()
                failures += 1
                logging.error(
                    f"Failed to queue sync for connection {connection_id}: {e}",
                    extra={"connection_id": connection_id},
                    exc_info=True,
                )
    return {"enqueued": enqueued, "failures": failures}


SYNC_CONNECTION = TaskDefinition(
    id="sync-connection",
    schema=SyncConnectionPayload,
    run=sync_connection,
    retry=policy_from_settings(settings.sync_max_attempts),
    concurrency_key=lambda p: connection_key(p.connection_id),
    max_duration_seconds=settings.sync_max_duration_seconds,
    concurrency_limit=settings.worker_concurrency,
)

REMOVE_TRANSACTIONS = TaskDefinition(
    id="remove-transactions",
    schema=RemoveTransactionsPayload,
    run=remove_transactions,
    retry=policy_from_settings(settings.sync_max_attempts),
    concurrency_key=lambda p: connection_key(p.connection_id),
    max_duration_seconds=settings.sync_max_duration_seconds,
)

SYNC_ALL_CONNECTIONS = TaskDefinition(
    id="sync-all-connections",
    schema=EmptyPayload,
    run=sync_all_connections,
    retry=SINGLE_ATTEMPT,
    concurrency_key=lambda p: "sync-all",
    concurrency_limit=1,
)
