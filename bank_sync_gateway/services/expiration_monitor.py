"""Advance notice for connections whose provider consent is about to lapse"""

import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.domain.expiration import days_until, expiry_level
from bank_sync_gateway.domain.models import ExpirationReport, ExpiryLevel
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.observability.metrics import expiry_notice_counter
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.notifications import SEND_EXPIRING_NOTIFICATION
from bank_sync_gateway.utils.date_utils import as_utc, utcnow


class ExpirationMonitor:
    """
    Daily pass over ACTIVE connections with a known consent expiry.

    Within `expiration_warning_days` of expiry a connection gets a WARNING
    notice, within `expiration_critical_days` a CRITICAL one. Each level goes
    out once per expiry; a new expiry (re-link or provider refresh) re-arms
    both. The level is claimed and the event queued in one transaction.
    """

    def __init__(self, db: Session, queue: Optional[TaskQueue] = None, config: Settings = default_settings):
        self.db = db
        self.repo = ConnectionRepository(db)
        self.queue = queue or TaskQueue(db)
        self.config = config

    def run(self, now: Optional[datetime] = None) -> ExpirationReport:
        now = now or utcnow()
        report = ExpirationReport()

        horizon = now + timedelta(days=self.config.expiration_warning_days + 1)
        candidates = [(c.id, as_utc(c.expires_at)) for c in self.repo.find_expiring_connections(horizon)]

        for connection_id, expires_at in candidates:
            report.connections_checked += 1
            days_remaining = days_until(expires_at, now)
            level = expiry_level(
                days_remaining,
                warning_days=self.config.expiration_warning_days,
                critical_days=self.config.expiration_critical_days,
            )
            if level is None:
                continue

            try:
                if not self.repo.claim_expiry_notice(connection_id, level, now=now):
                    # Already sent for this expiry
                    self.db.rollback()
                    continue

                connection = self.repo.find_by_id(connection_id)
                self.queue.enqueue(
                    SEND_EXPIRING_NOTIFICATION,
                    {
                        "connectionId": connection.id,
                        "userId": connection.user_id,
                        "teamId": connection.team_id,
                        "institutionName": connection.institution_name,
                        "level": level.value,
                        "daysRemaining": days_remaining,
                        "expiresAt": expires_at,
                    },
                    dedupe=False,
                )
                self.db.commit()

                if level == ExpiryLevel.CRITICAL:
                    report.critical_count += 1
                else:
                    report.warning_count += 1
                expiry_notice_counter.labels(level=level.value.lower()).inc()
            except Exception as e:
                self.db.rollback()
                report.failures += 1
                logging.error(
                    f"Failed to queue expiry notice for connection {connection_id}: {e}",
                    extra={"connection_id": connection_id},
                    exc_info=True,
                )

        logging.info("Expiration scan finished", extra=report.to_dict())
        return report
