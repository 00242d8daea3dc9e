"""Merge provider transactions into local storage and re-derive account statistics"""

import logging
from datetime import date, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Iterable, Mapping, Sequence

from sqlalchemy.exc import SQLAlchemyError

from bank_sync_gateway.domain.exceptions import InvalidTransactionDataError
from bank_sync_gateway.domain.models import ReconcileResult, SkippedRecord, TransactionRecord
from bank_sync_gateway.domain.statistics import compute_account_statistics
from bank_sync_gateway.infrastructure.database.models import BankAccount, BankConnection
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.observability.metrics import record_reconciliation
from bank_sync_gateway.utils.date_utils import parse_date

# Numeric(14, 2) holds at most 12 integer digits
MAX_ABS_AMOUNT = Decimal(10) ** 12

TEXT_FIELDS = ("currency", "category", "sub_category", "merchant_name", "name")


class TransactionReconciler:
    """
    Idempotent upsert of provider transactions keyed by plaid_transaction_id.

    Re-running a batch, or an overlapping date range, updates rows in place
    and never inserts a duplicate. A record that fails validation, or that the
    database refuses, is reported in `skipped` and the rest of the batch
    continues.
    """

    def __init__(self, repo: ConnectionRepository, window_days: int = 30):
        self.repo = repo
        self.window_days = window_days

    def reconcile(
        self,
        connection: BankConnection,
        accounts: Sequence[BankAccount],
        records: Iterable[TransactionRecord],
        as_of: date,
    ) -> ReconcileResult:
        accounts_by_plaid_id: Mapping[str, BankAccount] = {a.plaid_account_id: a for a in accounts}
        connection_id = connection.id
        result = ReconcileResult()

        for record in records:
            try:
                account, fields = self._validate(record, accounts_by_plaid_id)
            except InvalidTransactionDataError as e:
                self._skip(result, connection_id, record, str(e))
                continue

            # Each write gets its own SAVEPOINT so a refused row leaves the batch intact
            try:
                with self.repo.db.begin_nested():
                    created = self.repo.upsert_transaction(record.plaid_transaction_id, connection, account, fields)
            except SQLAlchemyError as e:
                self._skip(result, connection_id, record, f"storage error: {type(e).__name__}")
                continue

            if created:
                result.created += 1
            else:
                result.updated += 1

        self.recompute_statistics(accounts, as_of)
        record_reconciliation(result.created, result.updated, len(result.skipped))
        return result

    def recompute_statistics(self, accounts: Iterable[BankAccount], as_of: date) -> None:
        """Re-aggregate income/spending over the trailing window for each account"""
        since = as_of - timedelta(days=self.window_days)
        for account in accounts:
            stats = compute_account_statistics(
                self.repo.account_transaction_amounts(account.id, since),
                current_balance=account.current_balance,
                as_of=as_of,
                window_days=self.window_days,
            )
            self.repo.update_account_statistics(account.id, stats)

    def _skip(self, result: ReconcileResult, connection_id: str, record: TransactionRecord, reason: str) -> None:
        logging.warning(
            f"Skipping transaction: {reason}",
            extra={"connection_id": connection_id, "transaction_id": record.plaid_transaction_id},
        )
        result.skipped.append(SkippedRecord(transaction_id=record.plaid_transaction_id, reason=reason))

    def _validate(self, record: TransactionRecord, accounts: Mapping[str, BankAccount]):
        if not record.plaid_transaction_id or not isinstance(record.plaid_transaction_id, str):
            raise InvalidTransactionDataError("missing transaction id")

        account = accounts.get(record.plaid_account_id) if isinstance(record.plaid_account_id, str) else None
        if account is None:
            raise InvalidTransactionDataError(f"unknown account {record.plaid_account_id!r}")

        if record.amount is None or isinstance(record.amount, bool):
            raise InvalidTransactionDataError("missing amount")
        try:
            amount = Decimal(str(record.amount))
        except (InvalidOperation, ValueError):
            raise InvalidTransactionDataError(f"invalid amount {record.amount!r}")
        if not amount.is_finite() or abs(amount) >= MAX_ABS_AMOUNT:
            raise InvalidTransactionDataError(f"invalid amount {record.amount!r}")

        try:
            txn_date = parse_date(record.date)
        except (TypeError, ValueError):
            raise InvalidTransactionDataError(f"invalid date {record.date!r}")

        for name in TEXT_FIELDS:
            value = getattr(record, name)
            if value is not None and not isinstance(value, str):
                raise InvalidTransactionDataError(f"invalid {name} {value!r}")

        fields: Dict[str, Any] = {
            "amount": amount,
            "currency": record.currency,
            "date": txn_date,
            "pending": bool(record.pending),
            "category": record.category,
            "sub_category": record.sub_category,
            "merchant_name": record.merchant_name,
            "name": record.name,
        }
        return account, fields
