"""Webhook code dispatch rules"""

import enum
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from bank_sync_gateway.domain.models import ConnectionStatus

# Standard transaction update codes
SYNC_CODES = frozenset({"SYNC_UPDATES_AVAILABLE", "DEFAULT_UPDATE", "INITIAL_UPDATE"})

# Provider error codes meaning the user has to re-authenticate
AUTH_ERROR_CODES = frozenset(
    {
        "ITEM_LOGIN_REQUIRED",
        "INVALID_ACCESS_TOKEN",
        "ACCESS_NOT_GRANTED",
        "USER_PERMISSION_REVOKED",
        "ITEM_LOCKED",
    }
)


class WebhookAction(str, enum.Enum):
    SYNC = "sync"
    REMOVE_TRANSACTIONS = "remove_transactions"
    SET_STATUS = "set_status"
    IGNORE = "ignore"


@dataclass
class WebhookDecision:
    action: WebhookAction
    manual_sync: bool = False
    status: Optional[ConnectionStatus] = None


def is_auth_error_code(error_code: Optional[str]) -> bool:
    return bool(error_code) and error_code in AUTH_ERROR_CODES


def decide_transactions_webhook(
    webhook_code: str,
    connection_created_at: datetime,
    now: datetime,
    historical_max_age_hours: int = 24,
) -> WebhookDecision:
    """
    Map a TRANSACTIONS webhook code to an action.

    HISTORICAL_UPDATE asks for a deep fetch only while the connection is young
    (< historical_max_age_hours); afterwards it is treated as a routine update.
    """
    if webhook_code in SYNC_CODES:
        return WebhookDecision(WebhookAction.SYNC, manual_sync=False)

    if webhook_code == "HISTORICAL_UPDATE":
        is_young = connection_created_at > now - timedelta(hours=historical_max_age_hours)
        return WebhookDecision(WebhookAction.SYNC, manual_sync=is_young)

    if webhook_code == "TRANSACTIONS_REMOVED":
        return WebhookDecision(WebhookAction.REMOVE_TRANSACTIONS)

    return WebhookDecision(WebhookAction.IGNORE)


def decide_item_webhook(webhook_code: str, error_code: Optional[str] = None) -> WebhookDecision:
    """Map an ITEM webhook code to a connection status change (or a sync after repair)"""
    if webhook_code == "ERROR":
        status = ConnectionStatus.LOGIN_REQUIRED if is_auth_error_code(error_code) else ConnectionStatus.ERROR
        return WebhookDecision(WebhookAction.SET_STATUS, status=status)

    if webhook_code == "PENDING_EXPIRATION":
        return WebhookDecision(WebhookAction.SET_STATUS, status=ConnectionStatus.REQUIRES_ATTENTION)

    if webhook_code == "USER_PERMISSION_REVOKED":
        return WebhookDecision(WebhookAction.SET_STATUS, status=ConnectionStatus.LOGIN_REQUIRED)

    if webhook_code == "LOGIN_REPAIRED":
        return WebhookDecision(WebhookAction.SYNC, manual_sync=False)

    return WebhookDecision(WebhookAction.IGNORE)
