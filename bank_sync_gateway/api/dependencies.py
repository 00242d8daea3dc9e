"""Dependency injection for FastAPI endpoints"""

from typing import Optional

from fastapi import Depends, Request
from sqlalchemy.orm import Session

from bank_sync_gateway.config import settings
from bank_sync_gateway.infrastructure.database.session import get_db
from bank_sync_gateway.infrastructure.queue.task_queue import TaskQueue
from bank_sync_gateway.services.webhook_ingress import WebhookIngress


def get_request_id(request: Request) -> str:
    """Extract request ID from request state"""
    return getattr(request.state, "request_id", "unknown")


def get_client_ip(request: Request, trusted_proxy_count: Optional[int] = None) -> str:
    """
    Address of the peer that reached our outermost trusted proxy.

    Entries to the left of the ones our proxies appended are client-supplied
    and never trusted. With no usable header, the socket peer is used.
    """
    if trusted_proxy_count is None:
        trusted_proxy_count = settings.trusted_proxy_count
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded and trusted_proxy_count > 0:
        hops = [hop.strip() for hop in forwarded.split(",") if hop.strip()]
        if len(hops) >= trusted_proxy_count:
            return hops[-trusted_proxy_count]
    return request.client.host if request.client else ""


def get_task_queue(db: Session = Depends(get_db)) -> TaskQueue:
    """Queue bound to the request session, so enqueues commit with the request's writes"""
    return TaskQueue(db)


def get_webhook_ingress(db: Session = Depends(get_db)) -> WebhookIngress:
    return WebhookIngress(db, TaskQueue(db), settings)
