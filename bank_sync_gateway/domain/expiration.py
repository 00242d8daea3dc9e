"""Consent expiry windows"""

from datetime import datetime
from typing import Optional

from bank_sync_gateway.domain.models import ExpiryLevel


def days_until(expires_at: datetime, now: datetime) -> int:
    """Whole days left before expires_at; partial days are dropped"""
    seconds = (expires_at - now).total_seconds()
    return int(seconds // 86400) if seconds >= 0 else -int(-seconds // 86400)


def expiry_level(days_remaining: int, warning_days: int = 14, critical_days: int = 3) -> Optional[ExpiryLevel]:
    """
    Notice due for a connection with `days_remaining` days of consent left.

    CRITICAL inside (0, critical_days], WARNING inside (critical_days,
    warning_days]. Nothing for an already lapsed consent or one still far out.
    """
    if days_remaining <= 0:
        return None
    if days_remaining <= critical_days:
        return ExpiryLevel.CRITICAL
    if days_remaining <= warning_days:
        return ExpiryLevel.WARNING
    return None
