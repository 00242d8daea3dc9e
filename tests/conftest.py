"""Pytest fixtures for testing"""

import pytest
from datetime import timedelta
from decimal import Decimal
from typing import Callable, Generator, List, Optional
from unittest.mock import AsyncMock
from fastapi.testclient import TestClient
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker, Session

from bank_sync_gateway.api.main import create_app
from bank_sync_gateway.config import Settings
from bank_sync_gateway.domain.models import AccountSnapshot, DeleteAccountResult, ItemStatus
from bank_sync_gateway.infrastructure.database.models import Base, BankAccount, BankConnection
from bank_sync_gateway.infrastructure.database.session import get_db
from bank_sync_gateway.infrastructure.queue.worker import TaskWorker
from bank_sync_gateway.tasks.base import TaskServices
from bank_sync_gateway.tasks.registry import build_registry
from bank_sync_gateway.utils.date_utils import utcnow


@pytest.fixture
def engine(tmp_path):
    """File-backed SQLite per test; WAL so worker sessions and assertions can overlap"""
    engine = create_engine(f"sqlite:///{tmp_path / 'test.db'}", connect_args={"check_same_thread": False})

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        # Let SQLAlchemy issue BEGIN itself so SAVEPOINTs behave
        dbapi_connection.isolation_level = None
        dbapi_connection.execute("PRAGMA journal_mode=WAL")

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN")

    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine) -> Callable[[], Session]:
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory) -> Generator[Session, None, None]:
    """Create test database session"""
    db = session_factory()
    try:
        yield db
    finally:
        db.close()


@pytest.fixture
def client(session_factory) -> TestClient:
    """Create FastAPI test client with test database"""
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    return TestClient(app)


@pytest.fixture
def test_settings() -> Settings:
    return Settings(
        database_url="sqlite://",
        worker_poll_interval_seconds=0.01,
    )


@pytest.fixture
def account_snapshots() -> List[AccountSnapshot]:
    return [
        AccountSnapshot(
            plaid_account_id="acc_checking",
            name="Everyday Checking",
            type="depository",
            subtype="checking",
            currency="USD",
            current_balance=Decimal("1200.00"),
            available_balance=Decimal("1100.00"),
        )
    ]


@pytest.fixture
def provider_client(account_snapshots) -> AsyncMock:
    """Fake provider: healthy item, one account, no transactions"""
    provider = AsyncMock()
    provider.get_item_status.return_value = ItemStatus(ok=True)
    provider.get_accounts.return_value = account_snapshots
    provider.get_transactions.return_value = []
    provider.delete_account.return_value = DeleteAccountResult(success=True)
    return provider


@pytest.fixture
def notification_client() -> AsyncMock:
    notifier = AsyncMock()
    notifier.send_event.return_value = None
    return notifier


@pytest.fixture
def services(provider_client, notification_client, test_settings) -> TaskServices:
    return TaskServices(
        provider_client=provider_client,
        notification_client=notification_client,
        settings=test_settings,
    )


@pytest.fixture
def worker(services, session_factory) -> TaskWorker:
    return TaskWorker(build_registry(), session_factory, services, concurrency=5, poll_interval=0.01)


@pytest.fixture
def make_connection(session_factory) -> Callable[..., str]:
    """Insert a connection (and optionally accounts) and return its id"""

    def _make(
        item_id: str = "item_1",
        status: str = "ACTIVE",
        age: timedelta = timedelta(days=10),
        accounts: Optional[List[str]] = None,
        **fields,
    ) -> str:
        now = utcnow()
        db = session_factory()
        try:
            connection = BankConnection(
                user_id=fields.pop("user_id", "user_1"),
                item_id=item_id,
                provider=fields.pop("provider", "plaid"),
                access_token=fields.pop("access_token", f"access-{item_id}"),
                institution_name=fields.pop("institution_name", "Test Bank"),
                status=status,
                created_at=now - age,
                last_status_changed_at=fields.pop("last_status_changed_at", now - age),
                notification_count=fields.pop("notification_count", 0),
                **fields,
            )
            db.add(connection)
            db.flush()
            for plaid_account_id in accounts if accounts is not None else ["acc_checking"]:
                db.add(
                    BankAccount(
                        bank_connection_id=connection.id,
                        user_id=connection.user_id,
                        plaid_account_id=plaid_account_id,
                        name=plaid_account_id,
                        current_balance=Decimal("1200.00"),
                        enabled=True,
                    )
                )
            db.commit()
            return connection.id
        finally:
            db.close()

    return _make
