"""Worker process: executes queued tasks and feeds the cron schedules"""

import asyncio
import logging
import signal

from bank_sync_gateway.config import settings
from bank_sync_gateway.infrastructure.clients.notifications import NotificationClient
from bank_sync_gateway.infrastructure.clients.provider import ProviderClient
from bank_sync_gateway.infrastructure.database.session import SessionLocal
from bank_sync_gateway.infrastructure.observability.logging import setup_logging
from bank_sync_gateway.infrastructure.queue.scheduler import TaskScheduler
from bank_sync_gateway.infrastructure.queue.worker import TaskWorker
from bank_sync_gateway.tasks.base import TaskServices
from bank_sync_gateway.tasks.escalation import CONNECTION_EXPIRATION, HEALTH_SCAN
from bank_sync_gateway.tasks.maintenance import REAP_STALE_STATE
from bank_sync_gateway.tasks.registry import build_registry
from bank_sync_gateway.tasks.sync import SYNC_ALL_CONNECTIONS


async def run_worker() -> None:
    services = TaskServices(
        provider_client=ProviderClient(),
        notification_client=NotificationClient(),
        settings=settings,
    )
    worker = TaskWorker(build_registry(), SessionLocal, services)

    scheduler = TaskScheduler(SessionLocal, settings)
    scheduler.add(HEALTH_SCAN, settings.health_scan_cron)
    scheduler.add(CONNECTION_EXPIRATION, settings.expiration_scan_cron)
    scheduler.add(SYNC_ALL_CONNECTIONS, settings.sync_all_cron)
    scheduler.add(REAP_STALE_STATE, settings.reaper_cron)
    scheduler.start()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run_forever()
    finally:
        scheduler.shutdown()


def main() -> None:
    setup_logging(settings.log_level)
    logging.info("Starting task worker", extra={"service": settings.service_name})
    asyncio.run(run_worker())


if __name__ == "__main__":
    main()
