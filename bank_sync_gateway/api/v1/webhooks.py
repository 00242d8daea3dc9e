"""POST /v1/webhooks/plaid - Provider webhook receiver"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse

from bank_sync_gateway.api.dependencies import get_client_ip, get_request_id, get_webhook_ingress
from bank_sync_gateway.services.webhook_ingress import WebhookIngress

router = APIRouter()


@router.post("/webhooks/plaid")
async def receive_provider_webhook(
    request: Request,
    ingress: WebhookIngress = Depends(get_webhook_ingress),
):
    """
    Accept a provider webhook.

    Returns:
        403 for an address outside the allow-list, 400 for an invalid body,
        404 for an unknown item, 200 once follow-up work is queued
    """
    request_id = get_request_id(request)
    body = await request.body()

    try:
        response = ingress.handle(get_client_ip(request), body)
    except Exception as e:
        logging.error(f"Webhook processing failed: {e}", extra={"request_id": request_id}, exc_info=True)
        raise HTTPException(status_code=500, detail="Internal server error")

    return JSONResponse(status_code=response.status_code, content=response.body)
