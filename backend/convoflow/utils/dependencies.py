# /convoflow/utils/dependencies.py

import hashlib
import hmac
import secrets

import structlog
from fastapi import HTTPException, Request

from convoflow.config.settings import settings
from convoflow.utils.metrics import webhook_signature_counter
from convoflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def signature_is_valid(payload: bytes, signature: str, secret: str) -> bool:
    """Checks a Meta X-Hub-Signature-256 header ("sha256=<hex hmac>")."""
    if not secret or not signature or not signature.startswith("sha256="):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    signature = request.headers.get("x-hub-signature-256", "")
    if not signature_is_valid(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", signature=signature[:50], client=get_remote_address(request))
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    log.info("Webhook signature verified successfully.")
    return body


async def verify_metrics_access(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
