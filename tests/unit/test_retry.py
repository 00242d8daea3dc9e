"""Unit tests for task retry policy and definitions"""

import pytest

from bank_sync_gateway.domain.exceptions import AuthError, ConnectionNotFoundError, ProviderError, RateLimited, TaskPayloadError, TransientError
from bank_sync_gateway.domain.retry import RetryPolicy
from bank_sync_gateway.tasks.delete import DELETE_CONNECTION
from bank_sync_gateway.tasks.registry import build_registry
from bank_sync_gateway.tasks.sync import SYNC_CONNECTION


def test_backoff_grows_by_factor_and_caps():
    policy = RetryPolicy(max_attempts=10, factor=1.8, min_timeout_ms=500, max_timeout_ms=30_000)

    assert policy.delay_seconds(1) == pytest.approx(0.5)
    assert policy.delay_seconds(2) == pytest.approx(0.9)
    assert policy.delay_seconds(3) == pytest.approx(1.62)
    assert policy.delay_seconds(20) == pytest.approx(30.0)


def test_attempts_are_bounded():
    policy = RetryPolicy(max_attempts=3)

    assert policy.should_retry(1) is True
    assert policy.should_retry(2) is True
    assert policy.should_retry(3) is False


def test_retryable_flags():
    assert AuthError("expired").retryable is False
    assert ConnectionNotFoundError("gone").retryable is False
    assert TaskPayloadError("bad").retryable is False
    assert TransientError("timeout").retryable is True
    assert RateLimited("slow down", retry_after=5).retryable is True
    assert ProviderError("boom").retryable is True


def test_sync_payload_uses_camel_case_and_connection_key():
    payload = SYNC_CONNECTION.parse({"connectionId": "conn_1", "manualSync": True})

    assert SYNC_CONNECTION.serialize(payload) == {"connectionId": "conn_1", "manualSync": True}
    assert SYNC_CONNECTION.concurrency_key(payload) == "connection:conn_1"


def test_invalid_payload_raises_task_payload_error():
    with pytest.raises(TaskPayloadError):
        SYNC_CONNECTION.parse({"manualSync": True})

    with pytest.raises(TaskPayloadError):
        DELETE_CONNECTION.parse({"referenceId": "conn_1", "provider": "mx", "accessToken": "tok"})


def test_delete_policy_allows_more_attempts_than_sync():
    assert DELETE_CONNECTION.retry.max_attempts == 10
    assert SYNC_CONNECTION.retry.max_attempts == 3


def test_registry_contains_every_task():
    registry = build_registry()

    assert set(registry) == {
        "sync-connection",
        "remove-transactions",
        "delete-connection",
        "send-disconnected-notification",
        "send-expiring-notification",
        "health-scan",
        "connection-expiration",
        "sync-all-connections",
        "reap-stale-state",
    }


def test_registry_rejects_duplicate_ids():
    with pytest.raises(ValueError):
        build_registry([SYNC_CONNECTION, SYNC_CONNECTION])
