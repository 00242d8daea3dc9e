"""Escalation for unhealthy connections: throttled notifications, then auto-disable"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.domain.models import EscalationReport
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.observability.metrics import (
    connections_disabled_counter,
    notification_counter,
)
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.notifications import SEND_DISCONNECTED_NOTIFICATION
from bank_sync_gateway.utils.date_utils import utcnow


class HealthMonitor:
    """
    Two passes over unhealthy connections (ERROR, LOGIN_REQUIRED, REQUIRES_ATTENTION).

    Notify: past the cool-down and with an enabled account, claim the
    notification slot (stamp lastNotifiedAt, bump notificationCount) and queue
    the event in the same transaction.

    Auto-disable: unhealthy for `auto_disable_after_days` AND notified at
    least `auto_disable_min_notifications` times. Terminal.

    Each connection commits on its own; a failure is counted and logged and
    the loop moves on.
    """

    def __init__(self, db: Session, queue: Optional[TaskQueue] = None, config: Settings = default_settings):
        self.db = db
        self.repo = ConnectionRepository(db)
        self.queue = queue or TaskQueue(db)
        self.config = config

    def run(self, now: Optional[datetime] = None) -> EscalationReport:
        now = now or utcnow()
        report = EscalationReport()
        self._notify(now, report)
        self._disable_abandoned(now, report)

        logging.info("Health scan finished", extra=report.to_dict())
        return report

    def _notify(self, now: datetime, report: EscalationReport) -> None:
        notified_before = now - timedelta(days=self.config.notify_cooldown_days)
        candidate_ids = [c.id for c in self.repo.find_stale_unhealthy_connections(notified_before)]

        for connection_id in candidate_ids:
            report.connections_processed += 1
            try:
                if not self.repo.claim_notification(connection_id, notified_before, now=now):
                    # Another scan got there first
                    self.db.rollback()
                    continue

                connection = self.repo.find_by_id(connection_id)
                accounts = self.repo.find_accounts_by_connection(connection_id, enabled_only=True)
                self.queue.enqueue(
                    SEND_DISCONNECTED_NOTIFICATION,
                    {
                        "connectionId": connection.id,
                        "userId": connection.user_id,
                        "teamId": connection.team_id,
                        "institutionName": connection.institution_name,
                        "status": connection.status,
                        "accountCount": len(accounts),
                        "notificationCount": connection.notification_count,
                    },
                    dedupe=False,
                )
                self.db.commit()

                report.notifications_sent += 1
                notification_counter.inc()
            except Exception as e:
                self.db.rollback()
                report.failures += 1
                logging.error(
                    f"Failed to notify for connection {connection_id}: {e}",
                    extra={"connection_id": connection_id},
                    exc_info=True,
                )

    def _disable_abandoned(self, now: datetime, report: EscalationReport) -> None:
        status_changed_before = now - timedelta(days=self.config.auto_disable_after_days)
        min_notifications = self.config.auto_disable_min_notifications
        abandoned_ids = [
            c.id for c in self.repo.find_abandoned_connections(status_changed_before, min_notifications)
        ]

        for connection_id in abandoned_ids:
            try:
                if not self.repo.disable_connection(connection_id, status_changed_before, min_notifications, now=now):
                    # Recovered since it was selected
                    self.db.rollback()
                    continue
                self.db.commit()

                report.disabled_count += 1
                connections_disabled_counter.inc()
                logging.warning(
                    "Connection auto-disabled",
                    extra={"connection_id": connection_id, "step": "auto_disable"},
                )
            except Exception as e:
                self.db.rollback()
                report.failures += 1
                logging.error(
                    f"Failed to disable connection {connection_id}: {e}",
                    extra={"connection_id": connection_id},
                    exc_info=True,
                )
