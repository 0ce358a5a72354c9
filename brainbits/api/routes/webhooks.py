"""Inbound email provider webhooks (delivery events from Resend)."""

from __future__ import annotations

import os
from typing import Any

from fastapi import APIRouter, HTTPException, Request, status

from brainbits.email.webhook import apply_webhook_event, verify_webhook
from brainbits.errors import WebhookVerificationError
from brainbits.observability.logging import get_logger
from brainbits.observability.telemetry import counter

logger = get_logger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


@router.post("/resend")
async def resend_webhook(request: Request) -> dict[str, Any]:
    """
    Verify and apply one provider event.

    Side Effects:
        - Sets opened_at / clicked_at on the matching email_sends row
    """
    secret = os.getenv("RESEND_WEBHOOK_SECRET")
    if not secret:
        logger.error("RESEND_WEBHOOK_SECRET is not configured")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Webhook secret not configured")

    msg_id = request.headers.get("svix-id")
    timestamp = request.headers.get("svix-timestamp")
    signature = request.headers.get("svix-signature")
    if not msg_id or not timestamp or not signature:
        counter("webhook.rejected")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Missing signature headers")

    payload = (await request.body()).decode("utf-8")
    try:
        event = verify_webhook(payload, signature, timestamp, msg_id, secret)
    except WebhookVerificationError as e:
        counter("webhook.rejected")
        logger.warning("Rejected webhook %s: %s", msg_id, e)
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature") from e

    apply_webhook_event(event)
    counter("webhook.accepted")
    return {"ok": True}
