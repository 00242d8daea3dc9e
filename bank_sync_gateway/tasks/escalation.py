"""Daily health and consent-expiration scans"""

from bank_sync_gateway.infrastructure.database.session import session_scope
from bank_sync_gateway.services.expiration_monitor import ExpirationMonitor
from bank_sync_gateway.services.health_monitor import HealthMonitor
from bank_sync_gateway.tasks.base import SINGLE_ATTEMPT, TaskContext, TaskDefinition
from bank_sync_gateway.tasks.payloads import EmptyPayload


async def health_scan(payload: EmptyPayload, ctx: TaskContext):
    with session_scope(ctx.session_factory) as db:
        report = HealthMonitor(db, config=ctx.settings).run()
    return report.to_dict()


HEALTH_SCAN = TaskDefinition(
    id="health-scan",
    schema=EmptyPayload,
    run=health_scan,
    retry=SINGLE_ATTEMPT,
    concurrency_key=lambda p: "health-scan",
    concurrency_limit=1,
)


async def connection_expiration(payload: EmptyPayload, ctx: TaskContext):
    with session_scope(ctx.session_factory) as db:
        report = ExpirationMonitor(db, config=ctx.settings).run()
    return report.to_dict()


CONNECTION_EXPIRATION = TaskDefinition(
    id="connection-expiration",
    schema=EmptyPayload,
    run=connection_expiration,
    retry=SINGLE_ATTEMPT,
    concurrency_key=lambda p: "connection-expiration",
    concurrency_limit=1,
)
