"""Pydantic schemas for API request/response validation"""

from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, Field

from bank_sync_gateway.domain.models import Provider


class LinkConnectionRequest(BaseModel):
    """Request body for POST /v1/connections"""

    user_id: str = Field(..., min_length=1, description="Owning user")
    team_id: Optional[str] = Field(None, description="Owning team")
    item_id: str = Field(..., min_length=1, description="Provider item identifier")
    access_token: str = Field(..., min_length=1, description="Provider access token")
    provider: Provider = Provider.PLAID
    institution_id: Optional[str] = None
    institution_name: Optional[str] = None
    expires_at: Optional[datetime] = Field(None, description="When the provider consent lapses, if known")


class SyncRequest(BaseModel):
    """Request body for POST /v1/connections/{connection_id}/sync"""

    manual_sync: bool = False


class TaskAccepted(BaseModel):
    """Response for endpoints that hand work to the task queue"""

    connection_id: str
    task_run_id: str
    status: Literal["queued"] = "queued"


class AccountSchema(BaseModel):
    account_id: str
    plaid_account_id: str
    name: str
    type: Optional[str] = None
    currency: Optional[str] = None
    enabled: bool
    current_balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    limit: Optional[Decimal] = None
    monthly_income: Optional[Decimal] = None
    monthly_spending: Optional[Decimal] = None
    average_balance: Optional[Decimal] = None
    balance_last_updated: Optional[str] = None


class ConnectionResponse(BaseModel):
    """Response for GET /v1/connections/{connection_id}"""

    connection_id: str
    item_id: str
    provider: str
    institution_name: Optional[str] = None
    status: str
    disabled: bool
    error_message: Optional[str] = None
    last_synced_at: Optional[str] = None
    last_status_changed_at: Optional[str] = None
    last_notified_at: Optional[str] = None
    notification_count: int
    expires_at: Optional[str] = None
    expiry_notice_level: Optional[str] = None
    accounts: List[AccountSchema]
