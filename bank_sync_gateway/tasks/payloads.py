"""Pydantic schemas for task payloads"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field


class TaskPayload(BaseModel):
    """Payloads are stored with camelCase keys"""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class SyncConnectionPayload(TaskPayload):
    connection_id: str = Field(..., min_length=1, alias="connectionId")
    manual_sync: bool = Field(False, alias="manualSync")


class DeleteConnectionPayload(TaskPayload):
    reference_id: str = Field(..., min_length=1, alias="referenceId")
    provider: Literal["teller", "plaid", "gocardless", "stripe"]
    access_token: str = Field(..., min_length=1, alias="accessToken")


class RemoveTransactionsPayload(TaskPayload):
    connection_id: str = Field(..., min_length=1, alias="connectionId")
    transaction_ids: List[str] = Field(default_factory=list, alias="transactionIds")


class DisconnectedNotificationPayload(TaskPayload):
    connection_id: str = Field(..., alias="connectionId")
    user_id: str = Field(..., alias="userId")
    team_id: Optional[str] = Field(None, alias="teamId")
    institution_name: Optional[str] = Field(None, alias="institutionName")
    status: str
    account_count: int = Field(..., alias="accountCount")
    notification_count: int = Field(..., alias="notificationCount")


class ExpiringNotificationPayload(TaskPayload):
    connection_id: str = Field(..., alias="connectionId")
    user_id: str = Field(..., alias="userId")
    team_id: Optional[str] = Field(None, alias="teamId")
    institution_name: Optional[str] = Field(None, alias="institutionName")
    level: Literal["WARNING", "CRITICAL"]
    days_remaining: int = Field(..., alias="daysRemaining")
    expires_at: datetime = Field(..., alias="expiresAt")


class EmptyPayload(TaskPayload):
    pass
