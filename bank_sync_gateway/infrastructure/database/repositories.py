"""Data access layer for bank connections, accounts and transactions"""

from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import case, exists, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from bank_sync_gateway.domain.models import (
    AccountSnapshot,
    AccountStatistics,
    ConnectionStatus,
    ExpiryLevel,
    UNHEALTHY_STATUSES,
)
from bank_sync_gateway.infrastructure.database.models import BankAccount, BankConnection, Transaction
from bank_sync_gateway.utils.date_utils import as_utc, utcnow

# Transaction fields a later sync may change; the identity key never changes
MUTABLE_TRANSACTION_FIELDS = (
    "amount",
    "currency",
    "date",
    "pending",
    "category",
    "sub_category",
    "merchant_name",
    "name",
)


def _status_values(statuses: Iterable[ConnectionStatus]) -> List[str]:
    return [ConnectionStatus(s).value for s in statuses]


class ConnectionRepository:
    """
    Repository for connections and everything they own.

    Writes are flushed, not committed; the calling service decides the
    transaction boundary. Conditional updates (sync guard, notification
    claim) run as single UPDATE statements so concurrent workers cannot both
    win.
    """

    def __init__(self, db: Session):
        self.db = db

    # Connections

    def find_by_id(self, connection_id: str) -> Optional[BankConnection]:
        return self.db.query(BankConnection).filter(BankConnection.id == connection_id).first()

    def find_by_item_id(self, item_id: str) -> Optional[BankConnection]:
        return self.db.query(BankConnection).filter(BankConnection.item_id == item_id).first()

    def find_by_reference(self, reference_id: str) -> Optional[BankConnection]:
        """Resolve a connection by local id or provider item id"""
        return (
            self.db.query(BankConnection)
            .filter(or_(BankConnection.id == reference_id, BankConnection.item_id == reference_id))
            .first()
        )

    def upsert_connection(self, item_id: str, fields: Dict[str, Any]) -> Tuple[BankConnection, bool]:
        """Create the connection for item_id, or refresh its fields. Returns (connection, created)."""
        connection = self.find_by_item_id(item_id)
        if connection is not None:
            for key, value in fields.items():
                setattr(connection, key, value)
            self.db.flush()
            return connection, False

        now = utcnow()
        connection = BankConnection(
            item_id=item_id,
            status=ConnectionStatus.ACTIVE.value,
            last_status_changed_at=now,
            notification_count=0,
            **fields,
        )
        try:
            with self.db.begin_nested():
                self.db.add(connection)
                self.db.flush()
            return connection, True
        except IntegrityError:
            # Lost a race against a concurrent link of the same item
            connection = self.find_by_item_id(item_id)
            for key, value in fields.items():
                setattr(connection, key, value)
            self.db.flush()
            return connection, False

    def begin_sync(self, connection_id: str) -> Optional[ConnectionStatus]:
        """
        Move the connection into SYNCING unless a sync already holds it.

        Returns the status the connection had before, or None when the
        connection is already SYNCING, disabled or missing.
        """
        connection = self.find_by_id(connection_id)
        if connection is None or connection.disabled:
            return None
        previous = connection.status

        updated = (
            self.db.query(BankConnection)
            .filter(
                BankConnection.id == connection_id,
                BankConnection.status == previous,
                BankConnection.status != ConnectionStatus.SYNCING.value,
                BankConnection.disabled.is_(False),
            )
            .update(
                {BankConnection.status: ConnectionStatus.SYNCING.value, BankConnection.sync_started_at: utcnow()},
                synchronize_session=False,
            )
        )
        self.db.expire_all()
        if updated != 1:
            return None
        return ConnectionStatus(previous)

    def update_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        baseline: Optional[ConnectionStatus] = None,
        error_message: Optional[str] = None,
    ) -> None:
        """
        Set the connection status.

        `last_status_changed_at` moves only when the new status differs from
        `baseline` (the status before the current sync), or from the stored
        status when no baseline is given. SYNCING never moves it.
        """
        connection = self.find_by_id(connection_id)
        if connection is None:
            return
        now = utcnow()
        reference = (baseline or ConnectionStatus(connection.status)).value

        if status != ConnectionStatus.SYNCING and status.value != reference:
            connection.last_status_changed_at = now
        connection.status = status.value
        connection.error_message = error_message
        connection.last_checked_at = now
        if status != ConnectionStatus.SYNCING:
            connection.sync_started_at = None
        self.db.flush()

    def mark_synced(self, connection_id: str, baseline: Optional[ConnectionStatus] = None) -> ConnectionStatus:
        """
        Resolve a sync to ACTIVE, unless the provider reported a problem while
        it ran. A recovery from an unhealthy status restarts escalation.
        Returns the status the connection ends up in.
        """
        status = self.resolve_sync(connection_id, ConnectionStatus.ACTIVE, baseline=baseline)
        connection = self.find_by_id(connection_id)
        connection.last_synced_at = utcnow()
        if status == ConnectionStatus.ACTIVE and baseline in UNHEALTHY_STATUSES:
            connection.notification_count = 0
        self.db.flush()
        return status

    def record_provider_status(
        self,
        connection_id: str,
        status: ConnectionStatus,
        error_message: Optional[str] = None,
    ) -> bool:
        """
        Apply a status the provider pushed to us.

        A running sync owns the status column, so while the connection is
        SYNCING the value is parked in `pending_status` and the sync applies
        it when it resolves. Returns True when the write was deferred.
        """
        connection = self._lock(connection_id)
        if connection is None:
            return False
        if connection.status == ConnectionStatus.SYNCING.value:
            connection.pending_status = status.value
            connection.pending_error_message = error_message
            self.db.flush()
            return True
        self.update_status(connection_id, status, error_message=error_message)
        return False

    def resolve_sync(
        self,
        connection_id: str,
        status: ConnectionStatus,
        baseline: Optional[ConnectionStatus] = None,
        error_message: Optional[str] = None,
    ) -> ConnectionStatus:
        """
        Move a connection out of SYNCING.

        A status recorded by `record_provider_status` during the sync takes
        precedence over the sync's own outcome, except LOGIN_REQUIRED, which
        nothing overrides. Returns the status written.
        """
        connection = self._lock(connection_id)
        if connection is None:
            return status
        if connection.pending_status and status != ConnectionStatus.LOGIN_REQUIRED:
            status = ConnectionStatus(connection.pending_status)
            error_message = connection.pending_error_message
        connection.pending_status = None
        connection.pending_error_message = None
        self.update_status(connection_id, status, baseline=baseline, error_message=error_message)
        return status

    def _lock(self, connection_id: str) -> Optional[BankConnection]:
        return (
            self.db.query(BankConnection)
            .filter(BankConnection.id == connection_id)
            .with_for_update()
            .first()
        )

    def find_connections_for_sync(self) -> List[BankConnection]:
        """Connections a scheduled sync can still help"""
        skipped = _status_values(
            [ConnectionStatus.LOGIN_REQUIRED, ConnectionStatus.DISCONNECTED, ConnectionStatus.SYNCING]
        )
        return (
            self.db.query(BankConnection)
            .filter(BankConnection.disabled.is_(False), BankConnection.status.notin_(skipped))
            .order_by(BankConnection.created_at)
            .all()
        )

    def reset_stale_syncing(self, started_before: datetime) -> int:
        """
        Park connections stuck in SYNCING (crashed or timed-out worker) as
        FAILED, or in the status the provider reported while they were stuck.
        """
        has_pending = BankConnection.pending_status.is_not(None)
        count = (
            self.db.query(BankConnection)
            .filter(
                BankConnection.status == ConnectionStatus.SYNCING.value,
                or_(BankConnection.sync_started_at.is_(None), BankConnection.sync_started_at < started_before),
            )
            .update(
                {
                    BankConnection.status: func.coalesce(BankConnection.pending_status, ConnectionStatus.FAILED.value),
                    BankConnection.error_message: case(
                        (has_pending, BankConnection.pending_error_message),
                        else_="Sync exceeded its time limit",
                    ),
                    BankConnection.last_status_changed_at: case(
                        (has_pending, utcnow()),
                        else_=BankConnection.last_status_changed_at,
                    ),
                    BankConnection.sync_started_at: None,
                    BankConnection.pending_status: None,
                    BankConnection.pending_error_message: None,
                },
                synchronize_session=False,
            )
        )
        self.db.expire_all()
        return count

    def delete_connection_cascade(self, connection_id: str) -> bool:
        """Delete the connection with its accounts and transactions"""
        connection = self.find_by_id(connection_id)
        if connection is None:
            return False
        self.db.delete(connection)
        self.db.flush()
        return True

    # Escalation

    def find_stale_unhealthy_connections(
        self,
        notified_before: datetime,
        statuses: Sequence[ConnectionStatus] = UNHEALTHY_STATUSES,
    ) -> List[BankConnection]:
        """Unhealthy connections past the notification cool-down with at least one enabled account"""
        has_enabled_account = exists().where(
            BankAccount.bank_connection_id == BankConnection.id,
            BankAccount.enabled.is_(True),
        )
        return (
            self.db.query(BankConnection)
            .filter(
                BankConnection.status.in_(_status_values(statuses)),
                BankConnection.disabled.is_(False),
                or_(BankConnection.last_notified_at.is_(None), BankConnection.last_notified_at < notified_before),
                has_enabled_account,
            )
            .order_by(BankConnection.created_at)
            .all()
        )

    def claim_notification(self, connection_id: str, notified_before: datetime, now: Optional[datetime] = None) -> bool:
        """
        Stamp last_notified_at and bump notification_count, but only if the
        cool-down has elapsed. Returns False when another run already claimed it.
        """
        updated = (
            self.db.query(BankConnection)
            .filter(
                BankConnection.id == connection_id,
                or_(BankConnection.last_notified_at.is_(None), BankConnection.last_notified_at < notified_before),
            )
            .update(
                {
                    BankConnection.last_notified_at: now or utcnow(),
                    BankConnection.notification_count: BankConnection.notification_count + 1,
                },
                synchronize_session=False,
            )
        )
        self.db.expire_all()
        return updated == 1

    def find_abandoned_connections(
        self,
        status_changed_before: datetime,
        min_notifications: int,
        statuses: Sequence[ConnectionStatus] = UNHEALTHY_STATUSES,
    ) -> List[BankConnection]:
        return (
            self.db.query(BankConnection)
            .filter(
                BankConnection.status.in_(_status_values(statuses)),
                BankConnection.disabled.is_(False),
                BankConnection.last_status_changed_at < status_changed_before,
                BankConnection.notification_count >= min_notifications,
            )
            .order_by(BankConnection.created_at)
            .all()
        )

    def disable_connection(
        self,
        connection_id: str,
        status_changed_before: datetime,
        min_notifications: int,
        statuses: Sequence[ConnectionStatus] = UNHEALTHY_STATUSES,
        now: Optional[datetime] = None,
    ) -> bool:
        """
        Terminal transition: the user has to re-link.

        The abandonment criteria are re-checked in the UPDATE itself, so a
        connection that recovered after it was selected is left alone.
        Returns False when nothing was disabled.
        """
        now = now or utcnow()
        updated = (
            self.db.query(BankConnection)
            .filter(
                BankConnection.id == connection_id,
                BankConnection.status.in_(_status_values(statuses)),
                BankConnection.disabled.is_(False),
                BankConnection.last_status_changed_at < status_changed_before,
                BankConnection.notification_count >= min_notifications,
            )
            .update(
                {
                    BankConnection.status: ConnectionStatus.DISCONNECTED.value,
                    BankConnection.disabled: True,
                    BankConnection.last_status_changed_at: now,
                    BankConnection.last_checked_at: now,
                    BankConnection.sync_started_at: None,
                },
                synchronize_session=False,
            )
        )
        if updated == 1:
            (
                self.db.query(BankAccount)
                .filter(BankAccount.bank_connection_id == connection_id)
                .update({BankAccount.enabled: False}, synchronize_session=False)
            )
        self.db.expire_all()
        return updated == 1

    # Consent expiry

    def update_expiration(self, connection_id: str, expires_at: Optional[datetime]) -> None:
        """Store a new consent expiry; a changed expiry re-arms both notices"""
        connection = self.find_by_id(connection_id)
        if connection is None or as_utc(connection.expires_at) == as_utc(expires_at):
            return
        connection.expires_at = expires_at
        connection.expiry_notice_level = None
        connection.last_expiry_notified_at = None
        self.db.flush()

    def find_expiring_connections(self, expires_before: datetime) -> List[BankConnection]:
        return (
            self.db.query(BankConnection)
            .filter(
                BankConnection.status == ConnectionStatus.ACTIVE.value,
                BankConnection.disabled.is_(False),
                BankConnection.expires_at.is_not(None),
                BankConnection.expires_at < expires_before,
            )
            .order_by(BankConnection.expires_at)
            .all()
        )

    def claim_expiry_notice(self, connection_id: str, level: ExpiryLevel, now: Optional[datetime] = None) -> bool:
        """
        Record that `level` was sent for the current expiry. A WARNING is
        claimed once; a CRITICAL once, whether or not a WARNING preceded it.
        Returns False when the notice was already claimed.
        """
        previous = [BankConnection.expiry_notice_level.is_(None)]
        if level == ExpiryLevel.CRITICAL:
            previous.append(BankConnection.expiry_notice_level == ExpiryLevel.WARNING.value)
        updated = (
            self.db.query(BankConnection)
            .filter(
                BankConnection.id == connection_id,
                BankConnection.status == ConnectionStatus.ACTIVE.value,
                BankConnection.disabled.is_(False),
                or_(*previous),
            )
            .update(
                {
                    BankConnection.expiry_notice_level: level.value,
                    BankConnection.last_expiry_notified_at: now or utcnow(),
                },
                synchronize_session=False,
            )
        )
        self.db.expire_all()
        return updated == 1

    # Accounts

    def find_accounts_by_connection(self, connection_id: str, enabled_only: bool = False) -> List[BankAccount]:
        query = self.db.query(BankAccount).filter(BankAccount.bank_connection_id == connection_id)
        if enabled_only:
            query = query.filter(BankAccount.enabled.is_(True))
        return query.order_by(BankAccount.name).all()

    def update_account_balances(self, connection: BankConnection, snapshots: Iterable[AccountSnapshot]) -> int:
        """Upsert accounts by (user_id, plaid_account_id) and refresh balances. Returns accounts touched."""
        now = utcnow()
        touched = 0
        for snapshot in snapshots:
            account = (
                self.db.query(BankAccount)
                .filter(
                    BankAccount.user_id == connection.user_id,
                    BankAccount.plaid_account_id == snapshot.plaid_account_id,
                )
                .first()
            )
            if account is None:
                account = BankAccount(
                    bank_connection_id=connection.id,
                    user_id=connection.user_id,
                    plaid_account_id=snapshot.plaid_account_id,
                    enabled=True,
                )
                self.db.add(account)
            account.bank_connection_id = connection.id
            account.name = snapshot.name
            account.type = snapshot.type
            account.subtype = snapshot.subtype
            account.mask = snapshot.mask
            account.currency = snapshot.currency
            account.current_balance = snapshot.current_balance
            account.available_balance = snapshot.available_balance
            account.limit = snapshot.limit
            account.balance_last_updated = now
            touched += 1
        self.db.flush()
        return touched

    def update_account_statistics(self, account_id: str, stats: AccountStatistics) -> None:
        account = self.db.query(BankAccount).filter(BankAccount.id == account_id).first()
        if account is None:
            return
        account.monthly_income = stats.monthly_income
        account.monthly_spending = stats.monthly_spending
        account.average_balance = stats.average_balance
        self.db.flush()

    # Transactions

    def find_transaction(self, plaid_transaction_id: str) -> Optional[Transaction]:
        return (
            self.db.query(Transaction)
            .filter(Transaction.plaid_transaction_id == plaid_transaction_id)
            .first()
        )

    def upsert_transaction(
        self,
        plaid_transaction_id: str,
        connection: BankConnection,
        account: BankAccount,
        fields: Dict[str, Any],
    ) -> bool:
        """
        Create-if-absent else update, atomic per plaid_transaction_id.

        The insert runs inside a SAVEPOINT; a unique-key violation from a
        concurrent delivery falls back to updating the winner's row.
        The `notified` flag is never passed through here, so once set it stays set.

        Returns True when a row was created.
        """
        existing = self.find_transaction(plaid_transaction_id)
        if existing is not None:
            self._apply_transaction_fields(existing, fields)
            return False

        transaction = Transaction(
            plaid_transaction_id=plaid_transaction_id,
            bank_account_id=account.id,
            bank_connection_id=connection.id,
            user_id=connection.user_id,
            notified=False,
            **{key: fields[key] for key in MUTABLE_TRANSACTION_FIELDS if key in fields},
        )
        try:
            with self.db.begin_nested():
                self.db.add(transaction)
                self.db.flush()
            return True
        except IntegrityError:
            existing = self.find_transaction(plaid_transaction_id)
            if existing is None:
                raise
            self._apply_transaction_fields(existing, fields)
            return False

    def _apply_transaction_fields(self, transaction: Transaction, fields: Dict[str, Any]) -> None:
        for key in MUTABLE_TRANSACTION_FIELDS:
            if key in fields:
                setattr(transaction, key, fields[key])
        self.db.flush()

    def delete_transactions(self, connection_id: str, plaid_transaction_ids: Sequence[str]) -> int:
        if not plaid_transaction_ids:
            return 0
        count = (
            self.db.query(Transaction)
            .filter(
                Transaction.bank_connection_id == connection_id,
                Transaction.plaid_transaction_id.in_(list(plaid_transaction_ids)),
            )
            .delete(synchronize_session=False)
        )
        self.db.expire_all()
        return count

    def account_transaction_amounts(self, account_id: str, since: date) -> List[Tuple[date, Decimal]]:
        rows = (
            self.db.query(Transaction.date, Transaction.amount)
            .filter(Transaction.bank_account_id == account_id, Transaction.date >= since)
            .all()
        )
        return [(row.date, Decimal(row.amount)) for row in rows]
