"""Integration tests for the provider client against the mock provider"""

from datetime import date, datetime, timedelta, timezone

import httpx
import pytest

from bank_sync_gateway.domain.exceptions import AuthError, ProviderError, RateLimited, TransientError
from bank_sync_gateway.infrastructure.clients.provider import ProviderClient
from mocks.provider_server.main import ITEMS, _seed
from mocks.provider_server.main import app as provider_app


@pytest.fixture(autouse=True)
def reset_provider():
    ITEMS.clear()
    ITEMS.update(_seed())
    yield
    ITEMS.clear()
    ITEMS.update(_seed())


def _client(page_size=100) -> ProviderClient:
    return ProviderClient(
        base_url="http://provider",
        client_id="test",
        secret="test",
        page_size=page_size,
        transport=httpx.ASGITransport(app=provider_app),
    )


def _stub(handler) -> ProviderClient:
    return ProviderClient(base_url="http://provider", client_id="test", secret="test", transport=httpx.MockTransport(handler))


def _window():
    today = date.today()
    return today - timedelta(days=30), today


async def test_healthy_item_status():
    status = await _client().get_item_status("access-good")
    assert status.ok is True


async def test_item_error_is_returned_not_raised():
    status = await _client().get_item_status("access-login-required")
    assert status.ok is False
    assert status.error_code == "ITEM_LOGIN_REQUIRED"
    assert status.error == "the login details of this item have changed"


async def test_revoked_token_raises_auth_error():
    with pytest.raises(AuthError) as exc_info:
        await _client().get_item_status("access-revoked")
    assert exc_info.value.error_code == "INVALID_ACCESS_TOKEN"
    assert exc_info.value.retryable is False


async def test_consent_expiration_is_parsed():
    ITEMS["access-good"]["item"]["consent_expiration_time"] = "2026-11-01T09:30:00Z"

    status = await _client().get_item_status("access-good")

    assert status.consent_expires_at == datetime(2026, 11, 1, 9, 30, tzinfo=timezone.utc)


async def test_unreadable_consent_expiration_is_ignored():
    ITEMS["access-good"]["item"]["consent_expiration_time"] = "next tuesday"

    status = await _client().get_item_status("access-good")

    assert status.ok is True
    assert status.consent_expires_at is None


async def test_accounts_are_mapped():
    accounts = await _client().get_accounts("access-good")

    by_id = {a.plaid_account_id: a for a in accounts}
    assert set(by_id) == {"acc_checking", "acc_credit"}
    assert str(by_id["acc_checking"].current_balance) == "3200.55"
    assert by_id["acc_credit"].limit is not None
    assert by_id["acc_checking"].currency == "USD"


async def test_transactions_follow_pagination():
    start, end = _window()

    records = await _client(page_size=2).get_transactions("access-good", ["acc_checking", "acc_credit"], start, end)

    assert len(records) == 5
    assert len({r.plaid_transaction_id for r in records}) == 5
    coffee = next(r for r in records if r.plaid_transaction_id == "txn_coffee")
    assert coffee.pending is True
    assert coffee.category == "Food and Drink"
    assert coffee.sub_category == "Coffee"


async def test_transactions_filtered_by_account():
    start, end = _window()

    records = await _client().get_transactions("access-good", ["acc_credit"], start, end)

    assert [r.plaid_transaction_id for r in records] == ["txn_card"]


async def test_transactions_for_broken_item_raise_auth_error():
    start, end = _window()
    with pytest.raises(AuthError):
        await _client().get_transactions("access-login-required", [], start, end)


async def test_delete_account_revokes_item():
    client = _client()

    result = await client.delete_account("item_good", "plaid", "access-good")

    assert result.success is True
    assert "access-good" not in ITEMS


async def test_delete_unknown_item_counts_as_revoked():
    result = await _client().delete_account("item_gone", "plaid", "access-unknown")
    assert result.success is True


async def test_rate_limit_carries_retry_after():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, headers={"Retry-After": "30"}, json={"error_code": "RATE_LIMIT_EXCEEDED"})

    with pytest.raises(RateLimited) as exc_info:
        await _stub(handler).get_accounts("access-good")
    assert exc_info.value.retry_after == 30
    assert exc_info.value.retryable is True


async def test_server_error_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(503, text="upstream unavailable")

    with pytest.raises(TransientError) as exc_info:
        await _stub(handler).get_item_status("access-good")
    assert exc_info.value.status_code == 503


async def test_network_failure_is_transient():
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    with pytest.raises(TransientError):
        await _stub(handler).get_item_status("access-good")


async def test_unauthorized_status_is_auth_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error_message": "bad credentials"})

    with pytest.raises(AuthError):
        await _stub(handler).get_accounts("access-good")


async def test_invalid_json_is_provider_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, text="<html>oops</html>")

    with pytest.raises(ProviderError):
        await _stub(handler).get_accounts("access-good")


async def test_delete_server_failure_is_reported_not_raised():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error_code": "INTERNAL_SERVER_ERROR"})

    result = await _stub(handler).delete_account("item_good", "plaid", "access-good")

    assert result.success is False
    assert "500" in result.error


async def test_credentials_are_sent_with_every_call():
    seen = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(200, json={"item": {}, "error": None})

    await ProviderClient(
        base_url="http://provider", client_id="cid", secret="sec", transport=httpx.MockTransport(handler)
    ).get_item_status("access-good")

    assert seen[0].url.path == "/item/get"
    body = seen[0].read()
    assert b'"client_id":"cid"' in body.replace(b" ", b"")
    assert b'"secret":"sec"' in body.replace(b" ", b"")
