"""Domain models - pure Python dataclasses representing business entities"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional


class ConnectionStatus(str, enum.Enum):
    """Persisted connection status. Values are stable for dashboards/alerts."""

    ACTIVE = "ACTIVE"
    SYNCING = "SYNCING"
    ERROR = "ERROR"
    LOGIN_REQUIRED = "LOGIN_REQUIRED"
    REQUIRES_ATTENTION = "REQUIRES_ATTENTION"
    DISCONNECTED = "DISCONNECTED"
    FAILED = "FAILED"


# Statuses the health monitor escalates on
UNHEALTHY_STATUSES = (
    ConnectionStatus.ERROR,
    ConnectionStatus.LOGIN_REQUIRED,
    ConnectionStatus.REQUIRES_ATTENTION,
)


class ExpiryLevel(str, enum.Enum):
    """Advance notice sent before a connection's consent lapses"""

    WARNING = "WARNING"
    CRITICAL = "CRITICAL"


class Provider(str, enum.Enum):
    TELLER = "teller"
    PLAID = "plaid"
    GOCARDLESS = "gocardless"
    STRIPE = "stripe"


@dataclass
class ItemStatus:
    """Provider-reported health of an item"""

    ok: bool
    error: Optional[str] = None
    error_code: Optional[str] = None
    consent_expires_at: Optional[datetime] = None


@dataclass
class AccountSnapshot:
    """Account and balances as reported by the provider"""

    plaid_account_id: str
    name: str
    type: Optional[str] = None
    subtype: Optional[str] = None
    mask: Optional[str] = None
    currency: Optional[str] = None
    current_balance: Optional[Decimal] = None
    available_balance: Optional[Decimal] = None
    limit: Optional[Decimal] = None


@dataclass
class TransactionRecord:
    """
    Provider transaction as received. Fields are not validated here; the
    reconciler validates each record so one bad record cannot sink a batch.
    """

    plaid_transaction_id: Optional[str]
    plaid_account_id: Optional[str]
    amount: Any  # positive = outflow, negative = inflow
    date: Any
    currency: Optional[str] = None
    pending: bool = False
    category: Optional[str] = None
    sub_category: Optional[str] = None
    merchant_name: Optional[str] = None
    name: Optional[str] = None

    @classmethod
    def from_provider(cls, raw: Dict[str, Any]) -> "TransactionRecord":
        categories = raw.get("category") or []
        if not isinstance(categories, (list, tuple)):
            categories = [categories]
        return cls(
            plaid_transaction_id=raw.get("transaction_id"),
            plaid_account_id=raw.get("account_id"),
            amount=raw.get("amount"),
            date=raw.get("date"),
            currency=raw.get("iso_currency_code"),
            pending=bool(raw.get("pending", False)),
            category=categories[0] if categories else None,
            sub_category=categories[1] if len(categories) > 1 else None,
            merchant_name=raw.get("merchant_name"),
            name=raw.get("name"),
        )


@dataclass
class DeleteAccountResult:
    success: bool
    error: Optional[str] = None


@dataclass
class SkippedRecord:
    transaction_id: Optional[str]
    reason: str


@dataclass
class ReconcileResult:
    """Outcome of merging one batch of provider transactions"""

    created: int = 0
    updated: int = 0
    skipped: List[SkippedRecord] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "created": self.created,
            "updated": self.updated,
            "skipped": [{"transactionId": s.transaction_id, "reason": s.reason} for s in self.skipped],
        }


@dataclass
class AccountStatistics:
    """Derived per-account figures over the trailing window"""

    monthly_income: Decimal
    monthly_spending: Decimal
    average_balance: Optional[Decimal]


@dataclass
class SyncResult:
    connection_id: str
    status: str  # "success" | "error"
    accounts_updated: Optional[int] = None
    transactions: Optional[ReconcileResult] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        result: Dict[str, Any] = {"connectionId": self.connection_id, "status": self.status}
        if self.accounts_updated is not None:
            result["accountsUpdated"] = self.accounts_updated
        if self.transactions is not None:
            result["transactions"] = self.transactions.to_dict()
        if self.error is not None:
            result["error"] = self.error
        return result


@dataclass
class EscalationReport:
    connections_processed: int = 0
    notifications_sent: int = 0
    disabled_count: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "connectionsProcessed": self.connections_processed,
            "notificationsSent": self.notifications_sent,
            "disabledCount": self.disabled_count,
            "failures": self.failures,
        }


@dataclass
class ExpirationReport:
    connections_checked: int = 0
    warning_count: int = 0
    critical_count: int = 0
    failures: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "connectionsChecked": self.connections_checked,
            "warningCount": self.warning_count,
            "criticalCount": self.critical_count,
            "failures": self.failures,
        }
