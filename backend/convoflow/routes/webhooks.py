# /convoflow/routes/webhooks.py

import json

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from convoflow.config.settings import settings
from convoflow.services.db_service import db_service
from convoflow.services.inbound_service import inbound_service
from convoflow.utils.dependencies import verify_webhook_signature
from convoflow.utils.metrics import response_time_histogram
from convoflow.utils.rate_limiter import limiter

# WhatsApp Cloud API webhook. Deliveries are acknowledged with 200 once the
# signature is verified; processing failures are logged, never returned.

router = APIRouter(
    tags=["Webhooks"]
)

log = structlog.get_logger(__name__)


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge")
):
    """WhatsApp webhook verification (GET request)."""
    if hub_mode == "subscribe" and hub_verify_token:
        if hub_verify_token == settings.whatsapp_verify_token or await db_service.verify_token_exists(hub_verify_token):
            log.info("WhatsApp webhook verification successful.")
            return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature)
):
    """Handles inbound messages and status updates."""
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        log.info("WhatsApp webhook received a request.")
        try:
            data = json.loads(verified_body.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            log.warning("Webhook body is not valid JSON.")
            return {"status": "success"}

        try:
            await inbound_service.process_webhook_payload(data)
        except Exception:
            log.exception("Error processing WhatsApp webhook.")
        return {"status": "success"}
