"""Provider webhook validation and dispatch"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, Field, ValidationError, model_validator
from sqlalchemy.orm import Session

from bank_sync_gateway.config import Settings, settings as default_settings
from bank_sync_gateway.domain.webhooks import (
    SYNC_CODES,
    WebhookAction,
    WebhookDecision,
    decide_item_webhook,
    decide_transactions_webhook,
)
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.observability.metrics import webhook_received_counter
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.sync import REMOVE_TRANSACTIONS, SYNC_CONNECTION
from bank_sync_gateway.utils.date_utils import as_utc, utcnow

TRANSACTIONS_CODES = SYNC_CODES | {"HISTORICAL_UPDATE", "TRANSACTIONS_REMOVED"}
ITEM_CODES = frozenset({"ERROR", "PENDING_EXPIRATION", "USER_PERMISSION_REVOKED", "LOGIN_REPAIRED"})


class WebhookError(BaseModel):
    """Provider error object attached to a webhook"""

    error_type: str
    error_code: str
    error_code_reason: Optional[str] = None
    error_message: str
    display_message: Optional[str] = None
    request_id: Optional[str] = None
    causes: List[Any] = Field(default_factory=list)
    status: Optional[int] = None


class ProviderWebhook(BaseModel):
    """Inbound webhook body"""

    webhook_type: Literal["TRANSACTIONS", "ITEM"]
    webhook_code: str
    item_id: str = Field(..., min_length=1)
    error: Optional[WebhookError] = None
    new_transactions: Optional[int] = None
    removed_transactions: Optional[List[str]] = None
    environment: Literal["sandbox", "production"]

    @model_validator(mode="after")
    def code_matches_type(self):
        allowed = TRANSACTIONS_CODES if self.webhook_type == "TRANSACTIONS" else ITEM_CODES
        if self.webhook_code not in allowed:
            raise ValueError(f"Unsupported webhook_code {self.webhook_code} for {self.webhook_type}")
        return self


@dataclass
class IngressResponse:
    status_code: int
    body: Dict[str, Any]


class WebhookIngress:
    """
    Validates a provider webhook and turns it into queued work or a status write.

    Nothing is touched before the source address, the body and the item id
    all check out. Once the follow-up work is committed the caller gets 200,
    whatever the sync later does.
    """

    def __init__(self, db: Session, queue: Optional[TaskQueue] = None, config: Settings = default_settings):
        self.db = db
        self.repo = ConnectionRepository(db)
        self.queue = queue or TaskQueue(db)
        self.config = config

    def handle(self, client_ip: str, body: Any) -> IngressResponse:
        # 1. Source address
        if client_ip not in self.config.webhook_allowed_ips:
            webhook_received_counter.labels(code="unknown", outcome="forbidden").inc()
            logging.warning("Webhook from unauthorized address", extra={"client_ip": client_ip})
            return IngressResponse(403, {"error": "Unauthorized IP address"})

        # 2. Schema
        try:
            if isinstance(body, (str, bytes)):
                webhook = ProviderWebhook.model_validate_json(body)
            else:
                webhook = ProviderWebhook.model_validate(body)
        except ValidationError as e:
            webhook_received_counter.labels(code="unknown", outcome="invalid").inc()
            details = json.loads(e.json(include_url=False))
            logging.warning("Invalid webhook payload", extra={"details": details})
            return IngressResponse(400, {"error": "Invalid webhook payload", "details": details})

        # 3. Connection
        connection = self.repo.find_by_item_id(webhook.item_id)
        if connection is None:
            webhook_received_counter.labels(code=webhook.webhook_code, outcome="unknown_item").inc()
            logging.info(
                "Webhook for unknown item",
                extra={"item_id": webhook.item_id, "webhook_code": webhook.webhook_code},
            )
            return IngressResponse(404, {"error": "Connection not found"})

        # 4. Dispatch
        decision = self._decide(webhook, connection)
        try:
            self._apply(decision, webhook, connection.id)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise

        webhook_received_counter.labels(code=webhook.webhook_code, outcome="accepted").inc()
        logging.info(
            "Webhook accepted",
            extra={
                "connection_id": connection.id,
                "webhook_code": webhook.webhook_code,
                "webhook_action": decision.action.value,
                "manual_sync": decision.manual_sync,
            },
        )
        return IngressResponse(200, {"success": True})

    def _decide(self, webhook: ProviderWebhook, connection) -> WebhookDecision:
        if connection.disabled:
            # Terminal until the user re-links
            return WebhookDecision(WebhookAction.IGNORE)

        if webhook.webhook_type == "ITEM":
            return decide_item_webhook(webhook.webhook_code, webhook.error.error_code if webhook.error else None)

        decision = decide_transactions_webhook(
            webhook.webhook_code,
            connection_created_at=as_utc(connection.created_at),
            now=utcnow(),
            historical_max_age_hours=self.config.historical_update_max_age_hours,
        )
        if decision.action == WebhookAction.REMOVE_TRANSACTIONS and not webhook.removed_transactions:
            # Nothing listed: let a standard sync bring local state back in line
            return WebhookDecision(WebhookAction.SYNC, manual_sync=False)
        return decision

    def _apply(self, decision: WebhookDecision, webhook: ProviderWebhook, connection_id: str) -> None:
        if decision.action == WebhookAction.SYNC:
            self.queue.enqueue(SYNC_CONNECTION, {"connectionId": connection_id, "manualSync": decision.manual_sync})

        elif decision.action == WebhookAction.REMOVE_TRANSACTIONS:
            self.queue.enqueue(
                REMOVE_TRANSACTIONS,
                {"connectionId": connection_id, "transactionIds": webhook.removed_transactions},
            )

        elif decision.action == WebhookAction.SET_STATUS:
            error_message = None
            if webhook.error:
                error_message = webhook.error.display_message or webhook.error.error_message
            if self.repo.record_provider_status(connection_id, decision.status, error_message=error_message):
                logging.info(
                    "Status deferred until the running sync resolves",
                    extra={"connection_id": connection_id, "status": decision.status.value},
                )
