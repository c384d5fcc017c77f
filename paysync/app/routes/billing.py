"""API routes exposing webhook intake and reconciliation status."""
from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, status

from ..schemas.billing import WebhookAcknowledgement, WebhookEnvelope, WebhookStatusResponse
from ..services.billing import get_billing_sync_service

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/billing", tags=["billing"])


@router.post("/webhook", response_model=WebhookAcknowledgement, status_code=status.HTTP_200_OK)
def receive_webhook(payload: WebhookEnvelope) -> WebhookAcknowledgement:
    # Always acknowledged; failed events stay in the log for retry.
    try:
        service = get_billing_sync_service()
        service.handle_webhook(payload.id, payload.type, payload.payload)
    except Exception:
        logger.exception(
            "Webhook intake failed",
            extra={"event_id": payload.id, "event_type": payload.type},
        )
    return WebhookAcknowledgement(received=True)


@router.get("/webhook/status", response_model=WebhookStatusResponse)
def webhook_status(
    session_id: Optional[str] = Query(None, alias="sessionId"),
) -> WebhookStatusResponse:
    if not session_id or not session_id.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="sessionId is required")

    service = get_billing_sync_service()
    report = service.check_status(session_id.strip())
    return WebhookStatusResponse.from_report(report)
