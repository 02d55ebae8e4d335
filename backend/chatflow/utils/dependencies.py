# /chatflow/utils/dependencies.py

import hmac
import hashlib
import secrets
import structlog
from fastapi import Request, HTTPException

from chatflow.config.settings import settings
from chatflow.services.runtime import Runtime
from chatflow.utils.metrics import webhook_signature_counter
from chatflow.utils.request_utils import get_remote_address

log = structlog.get_logger(__name__)


def verify_signature(payload: bytes, signature: str, secret: str) -> bool:
    """Checks a Meta-style `sha256=<hex>` HMAC of the raw body."""
    if not signature or not signature.startswith("sha256="):
        return False
    expected_signature = hmac.new(secret.encode("utf-8"), payload, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected_signature, signature[7:])


def get_runtime(request: Request) -> Runtime:
    runtime = getattr(request.app.state, "runtime", None)
    if runtime is None:
        raise HTTPException(status_code=503, detail="Engine is not running")
    return runtime


async def verify_webhook_signature(request: Request) -> bytes:
    body = await request.body()
    if not settings.whatsapp_app_secret:
        if settings.environment == "production":
            raise HTTPException(status_code=501, detail="Webhook secret is not configured")
        return body
    signature = request.headers.get("x-hub-signature-256", "")
    if not verify_signature(body, signature, settings.whatsapp_app_secret):
        webhook_signature_counter.labels(status="invalid").inc()
        log.error("Invalid webhook signature.", client_ip=get_remote_address(request), signature=signature[:50])
        raise HTTPException(status_code=403, detail="Invalid signature")
    webhook_signature_counter.labels(status="valid").inc()
    return body


async def verify_api_key(request: Request):
    if settings.api_key:
        provided_key = request.headers.get("X-API-KEY")
        if not (provided_key and secrets.compare_digest(provided_key, settings.api_key)):
            raise HTTPException(status_code=403, detail="Invalid or missing API key")
