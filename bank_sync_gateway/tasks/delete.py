"""Delete-connection task"""

from bank_sync_gateway.config import settings
from bank_sync_gateway.infrastructure.database.models import TaskRun
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.services.connection_deletion import delete_connection
from bank_sync_gateway.tasks.base import TaskContext, TaskDefinition, policy_from_settings
from bank_sync_gateway.tasks.payloads import DeleteConnectionPayload
from bank_sync_gateway.tasks.sync import connection_key


async def run_delete_connection(payload: DeleteConnectionPayload, ctx: TaskContext):
    with session_scope(ctx.session_factory) as db:
        return await delete_connection(
            db,
            ctx.services.provider_client,
            reference_id=payload.reference_id,
            provider=payload.provider,
            access_token=payload.access_token,
        )


DELETE_CONNECTION = TaskDefinition(
    id="delete-connection",
    schema=DeleteConnectionPayload,
    run=run_delete_connection,
    retry=policy_from_settings(settings.delete_max_attempts),
    # Shares the sync's key only when referenceId is the connection id; see enqueue_delete
    concurrency_key=lambda p: connection_key(p.reference_id),
    max_duration_seconds=settings.delete_max_duration_seconds,
)


def enqueue_delete(queue: TaskQueue, reference_id: str, provider: str, access_token: str) -> TaskRun:
    """
    Queue a delete under the connection's own concurrency key.

    `reference_id` may be the connection id or the provider item id. An item
    id is resolved to the connection id first, so the delete never runs
    alongside a sync of the same connection. A reference with no local
    connection is queued as given; the task still revokes at the provider.
    """
    connection = ConnectionRepository(queue.db).find_by_reference(reference_id)
    connection_id = connection.id if connection is not None else reference_id
    return queue.enqueue(
        DELETE_CONNECTION,
        {"referenceId": connection_id, "provider": provider, "accessToken": access_token},
        concurrency_key=connection_key(connection_id),
    )
