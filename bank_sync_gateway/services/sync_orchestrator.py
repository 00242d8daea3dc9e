"""Connection sync pipeline: item status -> accounts -> transactions -> statistics"""

import logging
import time
from typing import Optional

from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.domain.exceptions import AuthError, ConnectionNotFoundError, SyncInProgressError
from bank_sync_gateway.domain.models import ConnectionStatus, SyncResult
from bank_sync_gateway.domain.webhooks import is_auth_error_code
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.observability.logging import log_sync_outcome
from bank_sync_gateway.infrastructure.observability.metrics import sync_counter
from bank_sync_gateway.services.reconciler import TransactionReconciler
from bank_sync_gateway.utils.date_utils import trailing_date_range


class SyncOrchestrator:
    """
    Runs one sync of one connection.

    The connection enters SYNCING before the first provider call and always
    leaves it: ACTIVE on success, LOGIN_REQUIRED on auth failure, ERROR for a
    provider-reported item error, FAILED when a provider call throws (the
    exception is re-raised so the task queue retries). A status the provider
    pushed by webhook while the sync ran replaces any of these but
    LOGIN_REQUIRED.

    Each stage commits before the next provider call so no database
    transaction is held open across network I/O.
    """

    def __init__(self, db: Session, provider_client, config: Settings = default_settings):
        self.db = db
        self.provider = provider_client
        self.config = config
        self.repo = ConnectionRepository(db)
        self.reconciler = TransactionReconciler(self.repo, window_days=config.statistics_window_days)

    async def sync(self, connection_id: str, manual_sync: bool = False) -> SyncResult:
        start_time = time.time()

        connection = self.repo.find_by_id(connection_id)
        if connection is None:
            raise ConnectionNotFoundError(f"Connection {connection_id} not found")
        provider = connection.provider
        access_token = connection.access_token

        if connection.disabled:
            result = SyncResult(connection_id=connection_id, status="error", error="Connection is disabled")
            self._record(result, provider, "error", start_time, manual_sync)
            return result

        baseline = self.repo.begin_sync(connection_id)
        if baseline is None:
            raise SyncInProgressError(f"Connection {connection_id} is already syncing")
        self.db.commit()

        resolved = False
        try:
            # 1. Item health
            item = await self.provider.get_item_status(access_token)
            if not item.ok:
                status = (
                    ConnectionStatus.LOGIN_REQUIRED
                    if is_auth_error_code(item.error_code)
                    else ConnectionStatus.ERROR
                )
                status = self.repo.resolve_sync(connection_id, status, baseline=baseline, error_message=item.error)
                self.db.commit()
                resolved = True
                result = SyncResult(connection_id=connection_id, status="error", error=item.error)
                self._record(result, provider, status.value.lower(), start_time, manual_sync)
                return result

            if item.consent_expires_at is not None:
                self.repo.update_expiration(connection_id, item.consent_expires_at)
                self.db.commit()

            # 2. Accounts and balances
            snapshots = await self.provider.get_accounts(access_token)
            connection = self.repo.find_by_id(connection_id)
            accounts_updated = self.repo.update_account_balances(connection, snapshots)
            self.db.commit()

            # 3. Transactions over the standard or historical window
            days = self.config.historical_sync_lookback_days if manual_sync else self.config.sync_lookback_days
            start_date, end_date = trailing_date_range(days)
            account_ids = [
                account.plaid_account_id
                for account in self.repo.find_accounts_by_connection(connection_id, enabled_only=True)
            ]
            self.db.commit()
            records = await self.provider.get_transactions(access_token, account_ids, start_date, end_date)

            # 4. Reconcile and resolve
            connection = self.repo.find_by_id(connection_id)
            accounts = self.repo.find_accounts_by_connection(connection_id, enabled_only=True)
            reconciled = self.reconciler.reconcile(connection, accounts, records, as_of=end_date)
            self.repo.mark_synced(connection_id, baseline=baseline)
            self.db.commit()
            resolved = True

            result = SyncResult(
                connection_id=connection_id,
                status="success",
                accounts_updated=accounts_updated,
                transactions=reconciled,
            )
            self._record(result, provider, "success", start_time, manual_sync)
            return result

        except AuthError as e:
            # Not transient: the user has to re-link
            self.db.rollback()
            self.repo.resolve_sync(
                connection_id, ConnectionStatus.LOGIN_REQUIRED, baseline=baseline, error_message=str(e)
            )
            self.db.commit()
            resolved = True
            result = SyncResult(connection_id=connection_id, status="error", error=str(e))
            self._record(result, provider, "login_required", start_time, manual_sync)
            return result

        except Exception as e:
            self.db.rollback()
            self.repo.resolve_sync(connection_id, ConnectionStatus.FAILED, baseline=baseline, error_message=str(e))
            self.db.commit()
            resolved = True
            result = SyncResult(connection_id=connection_id, status="error", error=str(e))
            self._record(result, provider, "failed", start_time, manual_sync)
            raise

        finally:
            if not resolved:
                # Cancelled (timeout or shutdown) mid-flight
                self._park_failed(connection_id, baseline)

    def _park_failed(self, connection_id: str, baseline: Optional[ConnectionStatus]) -> None:
        try:
            self.db.rollback()
            self.repo.resolve_sync(
                connection_id, ConnectionStatus.FAILED, baseline=baseline, error_message="Sync interrupted"
            )
            self.db.commit()
        except Exception as e:
            logging.error(
                f"Could not clear SYNCING for connection {connection_id}: {e}",
                extra={"connection_id": connection_id},
                exc_info=True,
            )

    def _record(self, result: SyncResult, provider: str, outcome: str, start_time: float, manual_sync: bool) -> None:
        sync_counter.labels(outcome=outcome).inc()
        log_sync_outcome(
            connection_id=result.connection_id,
            provider=provider,
            status=result.status,
            duration_ms=(time.time() - start_time) * 1000,
            manual_sync=manual_sync,
            error=result.error,
        )
