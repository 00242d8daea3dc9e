"""Connection notification delivery: disconnected and expiring consent"""

from bank_sync_gateway.config import settings
from bank_sync_gateway.tasks.base import TaskContext, TaskDefinition, policy_from_settings
from bank_sync_gateway.tasks.payloads import DisconnectedNotificationPayload, ExpiringNotificationPayload

DISCONNECTED_EVENT = "BANK_CONNECTION_DISCONNECTED"
EXPIRING_EVENT = "BANK_CONNECTION_EXPIRING"


async def send_disconnected_notification(payload: DisconnectedNotificationPayload, ctx: TaskContext):
    await ctx.services.notification_client.send_event(
        DISCONNECTED_EVENT,
        payload.model_dump(mode="json", by_alias=True),
    )
    return {"delivered": True, "connectionId": payload.connection_id}


async def send_expiring_notification(payload: ExpiringNotificationPayload, ctx: TaskContext):
    await ctx.services.notification_client.send_event(
        EXPIRING_EVENT,
        payload.model_dump(mode="json", by_alias=True),
    )
    return {"delivered": True, "connectionId": payload.connection_id, "level": payload.level}


SEND_DISCONNECTED_NOTIFICATION = TaskDefinition(
    id="send-disconnected-notification",
    schema=DisconnectedNotificationPayload,
    run=send_disconnected_notification,
    retry=policy_from_settings(settings.sync_max_attempts),
    concurrency_key=lambda p: f"notify:{p.connection_id}",
    max_duration_seconds=60,
)

SEND_EXPIRING_NOTIFICATION = TaskDefinition(
    id="send-expiring-notification",
    schema=ExpiringNotificationPayload,
    run=send_expiring_notification,
    retry=policy_from_settings(settings.sync_max_attempts),
    concurrency_key=lambda p: f"notify:{p.connection_id}",
    max_duration_seconds=60,
)
