"""Unit tests for webhook dispatch rules and payload validation"""

import pytest
from datetime import datetime, timedelta, timezone
from pydantic import ValidationError
from fastapi import Request

from bank_sync_gateway.api.dependencies import get_client_ip
from bank_sync_gateway.domain.models import ConnectionStatus
from bank_sync_gateway.domain.webhooks import (
    WebhookAction,
    decide_item_webhook,
    decide_transactions_webhook,
    is_auth_error_code,
)
from bank_sync_gateway.services.webhook_ingress import ProviderWebhook

NOW = datetime(2024, 6, 30, 12, 0, tzinfo=timezone.utc)


@pytest.mark.parametrize("code", ["SYNC_UPDATES_AVAILABLE", "DEFAULT_UPDATE", "INITIAL_UPDATE"])
def test_standard_codes_trigger_standard_sync(code):
    decision = decide_transactions_webhook(code, NOW - timedelta(hours=1), NOW)

    assert decision.action == WebhookAction.SYNC
    assert decision.manual_sync is False


def test_historical_update_on_young_connection_is_manual():
    """Connection 2 hours old: deep historical fetch"""
    decision = decide_transactions_webhook("HISTORICAL_UPDATE", NOW - timedelta(hours=2), NOW)

    assert decision.action == WebhookAction.SYNC
    assert decision.manual_sync is True


def test_historical_update_on_old_connection_is_routine():
    """Connection 10 days old: treated as a routine update"""
    decision = decide_transactions_webhook("HISTORICAL_UPDATE", NOW - timedelta(days=10), NOW)

    assert decision.action == WebhookAction.SYNC
    assert decision.manual_sync is False


def test_historical_update_age_boundary():
    decision = decide_transactions_webhook("HISTORICAL_UPDATE", NOW - timedelta(hours=24), NOW)
    assert decision.manual_sync is False


def test_transactions_removed_is_distinct():
    decision = decide_transactions_webhook("TRANSACTIONS_REMOVED", NOW, NOW)
    assert decision.action == WebhookAction.REMOVE_TRANSACTIONS


def test_item_error_with_auth_code_requires_login():
    decision = decide_item_webhook("ERROR", "ITEM_LOGIN_REQUIRED")

    assert decision.action == WebhookAction.SET_STATUS
    assert decision.status == ConnectionStatus.LOGIN_REQUIRED


def test_item_error_with_other_code_is_error():
    decision = decide_item_webhook("ERROR", "INSTITUTION_DOWN")
    assert decision.status == ConnectionStatus.ERROR


def test_item_lifecycle_codes():
    assert decide_item_webhook("PENDING_EXPIRATION").status == ConnectionStatus.REQUIRES_ATTENTION
    assert decide_item_webhook("USER_PERMISSION_REVOKED").status == ConnectionStatus.LOGIN_REQUIRED
    assert decide_item_webhook("LOGIN_REPAIRED").action == WebhookAction.SYNC
    assert decide_item_webhook("SOMETHING_NEW").action == WebhookAction.IGNORE


def test_is_auth_error_code():
    assert is_auth_error_code("INVALID_ACCESS_TOKEN") is True
    assert is_auth_error_code("RATE_LIMIT_EXCEEDED") is False
    assert is_auth_error_code(None) is False


def test_webhook_schema_accepts_null_error_fields():
    webhook = ProviderWebhook.model_validate(
        {
            "webhook_type": "TRANSACTIONS",
            "webhook_code": "DEFAULT_UPDATE",
            "item_id": "item_1",
            "error": {
                "error_type": "ITEM_ERROR",
                "error_code": "ITEM_LOGIN_REQUIRED",
                "error_code_reason": None,
                "error_message": "login required",
                "display_message": None,
                "request_id": "req_1",
                "causes": [],
                "status": 400,
            },
            "new_transactions": 3,
            "environment": "production",
        }
    )

    assert webhook.error.error_code == "ITEM_LOGIN_REQUIRED"
    assert webhook.new_transactions == 3


def test_webhook_schema_rejects_code_of_other_type():
    with pytest.raises(ValidationError):
        ProviderWebhook.model_validate(
            {
                "webhook_type": "ITEM",
                "webhook_code": "DEFAULT_UPDATE",
                "item_id": "item_1",
                "error": None,
                "environment": "sandbox",
            }
        )


def test_webhook_schema_rejects_unknown_environment():
    with pytest.raises(ValidationError):
        ProviderWebhook.model_validate(
            {
                "webhook_type": "TRANSACTIONS",
                "webhook_code": "DEFAULT_UPDATE",
                "item_id": "item_1",
                "error": None,
                "environment": "development",
            }
        )


def _request(forwarded=None):
    headers = [(b"x-forwarded-for", forwarded.encode())] if forwarded is not None else []
    return Request({"type": "http", "headers": headers, "client": ("10.0.0.9", 43512)})


@pytest.mark.parametrize(
    "forwarded, proxies, expected",
    [
        ("52.21.26.131", 1, "52.21.26.131"),
        ("52.21.26.131, 203.0.113.5", 1, "203.0.113.5"),
        ("52.21.26.131, 203.0.113.5, 10.0.0.2", 2, "203.0.113.5"),
        ("203.0.113.5", 2, "10.0.0.9"),
        (None, 1, "10.0.0.9"),
        ("52.21.26.131", 0, "10.0.0.9"),
    ],
)
def test_client_ip_comes_from_trusted_hop(forwarded, proxies, expected):
    assert get_client_ip(_request(forwarded), trusted_proxy_count=proxies) == expected
