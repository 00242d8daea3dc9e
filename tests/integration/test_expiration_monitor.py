"""Integration tests for consent expiration notices"""

from datetime import timedelta

from bank_sync_gateway.config import Settings
from bank_sync_gateway.infrastructure.database.models import BankConnection, TaskRun
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.services.expiration_monitor import ExpirationMonitor
from bank_sync_gateway.utils.date_utils import as_utc, utcnow


def _scan(session_factory, now=None, config=None):
    db = session_factory()
    try:
        return ExpirationMonitor(db, config=config or Settings(database_url="sqlite://")).run(now=now)
    finally:
        db.close()


def _connection(session_factory, connection_id) -> BankConnection:
    db = session_factory()
    try:
        connection = db.get(BankConnection, connection_id)
        db.expunge(connection)
        return connection
    finally:
        db.close()


def _notices(session_factory):
    db = session_factory()
    try:
        return [r.payload for r in db.query(TaskRun).filter(TaskRun.task_id == "send-expiring-notification")]
    finally:
        db.close()


def test_warning_then_critical_once_each(session_factory, make_connection):
    now = utcnow()
    connection_id = make_connection(expires_at=now + timedelta(days=10, hours=1), team_id="team_1")

    first = _scan(session_factory, now=now)
    again = _scan(session_factory, now=now + timedelta(days=1))
    critical = _scan(session_factory, now=now + timedelta(days=8))
    after = _scan(session_factory, now=now + timedelta(days=9))

    assert (first.warning_count, first.critical_count) == (1, 0)
    assert (again.warning_count, again.critical_count) == (0, 0)
    assert (critical.warning_count, critical.critical_count) == (0, 1)
    assert (after.warning_count, after.critical_count) == (0, 0)

    assert len(_notices(session_factory)) == 2
    notices = {n["level"]: n for n in _notices(session_factory)}
    assert set(notices) == {"WARNING", "CRITICAL"}
    assert notices["WARNING"]["connectionId"] == connection_id
    assert notices["WARNING"]["teamId"] == "team_1"
    assert notices["WARNING"]["daysRemaining"] == 10
    assert notices["CRITICAL"]["daysRemaining"] == 2
    assert _connection(session_factory, connection_id).expiry_notice_level == "CRITICAL"


def test_first_sighting_inside_critical_window_skips_warning(session_factory, make_connection):
    now = utcnow()
    make_connection(expires_at=now + timedelta(days=2, hours=3))

    report = _scan(session_factory, now=now)

    assert (report.warning_count, report.critical_count) == (0, 1)
    assert [n["level"] for n in _notices(session_factory)] == ["CRITICAL"]


def test_far_lapsed_and_unhealthy_connections_are_left_alone(session_factory, make_connection):
    now = utcnow()
    make_connection(item_id="item_far", expires_at=now + timedelta(days=40))
    make_connection(item_id="item_lapsed", expires_at=now - timedelta(days=1))
    make_connection(item_id="item_broken", status="LOGIN_REQUIRED", expires_at=now + timedelta(days=2))
    make_connection(item_id="item_unknown")

    report = _scan(session_factory, now=now)

    assert report.warning_count == report.critical_count == 0
    assert report.connections_checked == 1  # only the lapsed one is inside the horizon
    assert _notices(session_factory) == []


def test_thresholds_are_configurable(session_factory, make_connection):
    now = utcnow()
    make_connection(expires_at=now + timedelta(days=25, hours=1))
    config = Settings(database_url="sqlite://", expiration_warning_days=30, expiration_critical_days=7)

    report = _scan(session_factory, now=now, config=config)

    assert report.warning_count == 1


def test_new_expiry_rearms_notices(session_factory, make_connection):
    now = utcnow()
    connection_id = make_connection(expires_at=now + timedelta(days=2, hours=1))
    assert _scan(session_factory, now=now).critical_count == 1

    db = session_factory()
    try:
        ConnectionRepository(db).update_expiration(connection_id, now + timedelta(days=12, hours=1))
        db.commit()
    finally:
        db.close()

    connection = _connection(session_factory, connection_id)
    assert connection.expiry_notice_level is None
    assert abs((as_utc(connection.expires_at) - (now + timedelta(days=12, hours=1))).total_seconds()) < 1

    assert _scan(session_factory, now=now).warning_count == 1


def test_one_bad_connection_does_not_block_others(session_factory, make_connection, monkeypatch):
    now = utcnow()
    first = make_connection(item_id="item_a", expires_at=now + timedelta(days=5, hours=1))
    second = make_connection(item_id="item_b", expires_at=now + timedelta(days=6, hours=1))

    original = ConnectionRepository.claim_expiry_notice

    def flaky_claim(self, connection_id, level, now=None):
        if connection_id == first:
            raise RuntimeError("deadlock detected")
        return original(self, connection_id, level, now=now)

    monkeypatch.setattr(ConnectionRepository, "claim_expiry_notice", flaky_claim)

    report = _scan(session_factory, now=now)

    assert report.failures == 1
    assert report.warning_count == 1
    assert _connection(session_factory, first).expiry_notice_level is None
    assert _connection(session_factory, second).expiry_notice_level == "WARNING"
