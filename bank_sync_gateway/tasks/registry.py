"""Task registry shared by the API (enqueue side) and the worker (execute side)"""

from typing import Dict, Iterable

from bank_sync_gateway.tasks.base import TaskDefinition
from bank_sync_gateway.tasks.delete import DELETE_CONNECTION
from bank_sync_gateway.tasks.escalation import CONNECTION_EXPIRATION, HEALTH_SCAN
from bank_sync_gateway.tasks.maintenance import REAP_STALE_STATE
from bank_sync_gateway.tasks.notifications import SEND_DISCONNECTED_NOTIFICATION, SEND_EXPIRING_NOTIFICATION
from bank_sync_gateway.tasks.sync import REMOVE_TRANSACTIONS, SYNC_ALL_CONNECTIONS, SYNC_CONNECTION

ALL_TASKS = (
    SYNC_CONNECTION,
    REMOVE_TRANSACTIONS,
    DELETE_CONNECTION,
    SEND_DISCONNECTED_NOTIFICATION,
    SEND_EXPIRING_NOTIFICATION,
    HEALTH_SCAN,
    CONNECTION_EXPIRATION,
    SYNC_ALL_CONNECTIONS,
    REAP_STALE_STATE,
)


def build_registry(tasks: Iterable[TaskDefinition] = ALL_TASKS) -> Dict[str, TaskDefinition]:
    registry: Dict[str, TaskDefinition] = {}
    for task in tasks:
        if task.id in registry:
            raise ValueError(f"Duplicate task id {task.id}")
        registry[task.id] = task
    return registry
