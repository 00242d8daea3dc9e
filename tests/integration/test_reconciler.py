"""Integration tests for transaction reconciliation against the test database"""

from datetime import date, timedelta
from decimal import Decimal

from bank_sync_gateway.domain.models import TransactionRecord
from bank_sync_gateway.infrastructure.database.models import BankAccount, Transaction
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.services.reconciler import TransactionReconciler

AS_OF = date.today()


def _record(txn_id="t1", amount=-50, pending=True, **overrides) -> TransactionRecord:
    fields = dict(
        plaid_transaction_id=txn_id,
        plaid_account_id="acc_checking",
        amount=amount,
        date=(AS_OF - timedelta(days=1)).isoformat(),
        currency="USD",
        pending=pending,
        category="Transfer",
        merchant_name="ACME",
        name="ACME payroll",
    )
    fields.update(overrides)
    return TransactionRecord(**fields)


def _reconcile(db, connection_id, records):
    repo = ConnectionRepository(db)
    connection = repo.find_by_id(connection_id)
    accounts = repo.find_accounts_by_connection(connection_id)
    result = TransactionReconciler(repo).reconcile(connection, accounts, records, as_of=AS_OF)
    db.commit()
    return result


def test_pending_transaction_posts_in_place(db, make_connection):
    """Two successive syncs of t1 leave one row: amount -55, posted"""
    connection_id = make_connection()

    first = _reconcile(db, connection_id, [_record(amount=-50, pending=True)])
    second = _reconcile(db, connection_id, [_record(amount=-55, pending=False)])

    assert (first.created, first.updated) == (1, 0)
    assert (second.created, second.updated) == (0, 1)

    rows = db.query(Transaction).filter(Transaction.plaid_transaction_id == "t1").all()
    assert len(rows) == 1
    assert rows[0].amount == Decimal("-55.00")
    assert rows[0].pending is False


def test_overlapping_batches_never_duplicate(db, make_connection):
    connection_id = make_connection()
    batch = [_record(txn_id=f"t{i}", amount=10 * i) for i in range(1, 6)]

    _reconcile(db, connection_id, batch)
    _reconcile(db, connection_id, batch[2:] + [_record(txn_id="t6", amount=5)])

    assert db.query(Transaction).count() == 6


def test_notified_flag_survives_update(db, make_connection):
    connection_id = make_connection()
    _reconcile(db, connection_id, [_record(amount=-50)])

    db.query(Transaction).filter(Transaction.plaid_transaction_id == "t1").update({Transaction.notified: True})
    db.commit()

    _reconcile(db, connection_id, [_record(amount=-60, pending=False)])

    row = db.query(Transaction).filter(Transaction.plaid_transaction_id == "t1").one()
    assert row.notified is True
    assert row.amount == Decimal("-60.00")


def test_malformed_records_are_skipped_not_fatal(db, make_connection):
    connection_id = make_connection()
    records = [
        _record(txn_id="good_1", amount=12.5),
        _record(txn_id=None),
        _record(txn_id="bad_amount", amount="twelve"),
        _record(txn_id="bad_date", date="not-a-date"),
        _record(txn_id="nan_amount", amount="NaN"),
        _record(txn_id="other_account", plaid_account_id="acc_unknown"),
        _record(txn_id="good_2", amount=-40),
    ]

    result = _reconcile(db, connection_id, records)

    assert result.created == 2
    assert len(result.skipped) == 5
    assert {s.transaction_id for s in result.skipped} == {None, "bad_amount", "bad_date", "nan_amount", "other_account"}
    assert result.to_dict()["skipped"][0]["reason"] == "missing transaction id"


def test_wrongly_typed_text_fields_are_skipped(db, make_connection):
    connection_id = make_connection()
    records = [
        _record(txn_id="good_1"),
        _record(txn_id="bad_merchant", merchant_name={"nested": 1}),
        _record(txn_id="bad_currency", currency=840),
        _record(txn_id="huge_amount", amount="1e15"),
        _record(txn_id="good_2"),
    ]

    result = _reconcile(db, connection_id, records)

    assert result.created == 2
    assert {s.transaction_id for s in result.skipped} == {"bad_merchant", "bad_currency", "huge_amount"}
    reasons = {s.transaction_id: s.reason for s in result.skipped}
    assert reasons["bad_merchant"].startswith("invalid merchant_name")
    assert {t.plaid_transaction_id for t in db.query(Transaction)} == {"good_1", "good_2"}


def test_storage_error_skips_only_that_record(db, make_connection, monkeypatch):
    """A row the database refuses is skipped; its neighbours still land"""
    connection_id = make_connection()
    original = ConnectionRepository.upsert_transaction

    def upsert(self, plaid_transaction_id, connection, account, fields):
        if plaid_transaction_id == "refused":
            fields = {**fields, "merchant_name": {"nested": 1}}
        return original(self, plaid_transaction_id, connection, account, fields)

    monkeypatch.setattr(ConnectionRepository, "upsert_transaction", upsert)

    result = _reconcile(
        db,
        connection_id,
        [_record(txn_id="good_1"), _record(txn_id="refused"), _record(txn_id="good_2")],
    )

    assert result.created == 2
    assert [s.transaction_id for s in result.skipped] == ["refused"]
    assert result.skipped[0].reason.startswith("storage error")
    assert {t.plaid_transaction_id for t in db.query(Transaction)} == {"good_1", "good_2"}


def test_statistics_are_recomputed_from_stored_rows(db, make_connection):
    connection_id = make_connection()
    _reconcile(
        db,
        connection_id,
        [
            _record(txn_id="salary", amount=-2000),
            _record(txn_id="rent", amount=1500),
            _record(txn_id="old", amount=999, date=(AS_OF - timedelta(days=45)).isoformat()),
        ],
    )
    # Re-running the same batch must not double the figures
    _reconcile(db, connection_id, [_record(txn_id="salary", amount=-2000)])

    account = db.query(BankAccount).filter(BankAccount.bank_connection_id == connection_id).one()
    assert account.monthly_income == Decimal("2000.00")
    assert account.monthly_spending == Decimal("1500.00")
    assert account.average_balance == Decimal("1200.00")
