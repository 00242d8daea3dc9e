"""Connection endpoints - link, read, manual sync and delete"""

import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy.orm import Session

from bank_sync_gateway.api.dependencies import get_request_id, get_task_queue
from bank_sync_gateway.api.v1.schemas import (
    AccountSchema,
    ConnectionResponse,
    LinkConnectionRequest,
    SyncRequest,
    TaskAccepted,
)
from bank_sync_gateway.infrastructure.database.repositories import ConnectionRepository
from bank_sync_gateway.infrastructure.database.session import get_db
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.tasks.delete import enqueue_delete
from bank_sync_gateway.tasks.sync import SYNC_CONNECTION
from bank_sync_gateway.utils.date_utils import as_utc

router = APIRouter()


def _iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


@router.post("/connections", response_model=TaskAccepted, status_code=202)
def link_connection(
    request_body: LinkConnectionRequest,
    request: Request,
    db: Session = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
):
    """
    Register a freshly linked provider item and queue its first, historical sync.

    Linking the same item again refreshes the stored token and institution,
    and re-arms the consent expiry notices.
    """
    request_id = get_request_id(request)
    try:
        connection, created = ConnectionRepository(db).upsert_connection(
            request_body.item_id,
            {
                "user_id": request_body.user_id,
                "team_id": request_body.team_id,
                "access_token": request_body.access_token,
                "provider": request_body.provider.value,
                "institution_id": request_body.institution_id,
                "institution_name": request_body.institution_name,
                "expires_at": as_utc(request_body.expires_at),
                "expiry_notice_level": None,
                "last_expiry_notified_at": None,
            },
        )
        run = queue.enqueue(SYNC_CONNECTION, {"connectionId": connection.id, "manualSync": True})
        db.commit()
    except Exception as e:
        db.rollback()
        logging.error(f"Failed to link connection: {e}", extra={"request_id": request_id}, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    logging.info(
        "Connection linked" if created else "Connection relinked",
        extra={"request_id": request_id, "connection_id": connection.id, "provider": connection.provider},
    )
    return TaskAccepted(connection_id=connection.id, task_run_id=run.id)


@router.get("/connections/{connection_id}", response_model=ConnectionResponse)
def get_connection(connection_id: str, db: Session = Depends(get_db)):
    repo = ConnectionRepository(db)
    connection = repo.find_by_id(connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")

    accounts = [
        AccountSchema(
            account_id=a.id,
            plaid_account_id=a.plaid_account_id,
            name=a.name,
            type=a.type,
            currency=a.currency,
            enabled=a.enabled,
            current_balance=a.current_balance,
            available_balance=a.available_balance,
            limit=a.limit,
            monthly_income=a.monthly_income,
            monthly_spending=a.monthly_spending,
            average_balance=a.average_balance,
            balance_last_updated=_iso(a.balance_last_updated),
        )
        for a in repo.find_accounts_by_connection(connection_id)
    ]

    return ConnectionResponse(
        connection_id=connection.id,
        item_id=connection.item_id,
        provider=connection.provider,
        institution_name=connection.institution_name,
        status=connection.status,
        disabled=connection.disabled,
        error_message=connection.error_message,
        last_synced_at=_iso(connection.last_synced_at),
        last_status_changed_at=_iso(connection.last_status_changed_at),
        last_notified_at=_iso(connection.last_notified_at),
        notification_count=connection.notification_count,
        expires_at=_iso(connection.expires_at),
        expiry_notice_level=connection.expiry_notice_level,
        accounts=accounts,
    )


@router.post("/connections/{connection_id}/sync", response_model=TaskAccepted, status_code=202)
def trigger_sync(
    connection_id: str,
    request: Request,
    request_body: Optional[SyncRequest] = None,
    db: Session = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
):
    """Queue a user-initiated sync"""
    connection = ConnectionRepository(db).find_by_id(connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")
    if connection.disabled:
        raise HTTPException(status_code=409, detail="Connection is disabled; re-link required")

    manual_sync = request_body.manual_sync if request_body else False
    run = queue.enqueue(SYNC_CONNECTION, {"connectionId": connection_id, "manualSync": manual_sync})
    db.commit()

    logging.info(
        "Manual sync queued",
        extra={"request_id": get_request_id(request), "connection_id": connection_id, "manual_sync": manual_sync},
    )
    return TaskAccepted(connection_id=connection_id, task_run_id=run.id)


@router.delete("/connections/{connection_id}", response_model=TaskAccepted, status_code=202)
def remove_connection(
    connection_id: str,
    request: Request,
    db: Session = Depends(get_db),
    queue: TaskQueue = Depends(get_task_queue),
):
    """Queue provider revocation followed by local deletion"""
    connection = ConnectionRepository(db).find_by_id(connection_id)
    if connection is None:
        raise HTTPException(status_code=404, detail="Connection not found")

    run = enqueue_delete(queue, connection.id, connection.provider, connection.access_token)
    db.commit()

    logging.info(
        "Connection deletion queued",
        extra={"request_id": get_request_id(request), "connection_id": connection_id, "provider": connection.provider},
    )
    return TaskAccepted(connection_id=connection_id, task_run_id=run.id)
