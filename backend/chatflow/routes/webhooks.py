# /chatflow/routes/webhooks.py

import json
import structlog
from fastapi import APIRouter, Depends, HTTPException, Request, Query
from fastapi.responses import JSONResponse, PlainTextResponse

from chatflow.config.settings import settings
from chatflow.services.channel_service import normalize_whatsapp_payload
from chatflow.services.runtime import Runtime
from chatflow.utils.dependencies import get_runtime, verify_webhook_signature
from chatflow.utils.metrics import inbound_events_counter, response_time_histogram
from chatflow.utils.rate_limiter import limiter

# WhatsApp Cloud API webhook: subscription verification and message delivery.
# Messages are normalized into inbound events and queued; the response does
# not wait for the engine.

router = APIRouter(tags=["Webhooks"])

log = structlog.get_logger(__name__)


@router.get("/whatsapp")
async def verify_whatsapp_webhook(
    hub_mode: str = Query(None, alias="hub.mode"),
    hub_verify_token: str = Query(None, alias="hub.verify_token"),
    hub_challenge: str = Query(None, alias="hub.challenge"),
):
    if hub_mode == "subscribe" and settings.whatsapp_verify_token and hub_verify_token == settings.whatsapp_verify_token:
        log.info("WhatsApp webhook verification successful.")
        return PlainTextResponse(hub_challenge)
    log.error("WhatsApp webhook verification failed.")
    raise HTTPException(status_code=403, detail="Forbidden")


@router.post("/whatsapp")
@limiter.limit(f"{settings.rate_limit_per_minute}/minute")
async def handle_whatsapp_webhook(
    request: Request,
    verified_body: bytes = Depends(verify_webhook_signature),
    runtime: Runtime = Depends(get_runtime),
):
    with response_time_histogram.labels(endpoint="whatsapp_webhook").time():
        try:
            data = json.loads(verified_body.decode())
        except ValueError:
            raise HTTPException(status_code=400, detail="Body is not valid JSON")

        queued = 0
        for event in normalize_whatsapp_payload(data):
            flow_id = settings.flow_for_channel(event.channel_id)
            if not flow_id:
                inbound_events_counter.labels(channel=event.channel_id or "default", status="unrouted").inc()
                log.warning("No flow bound to channel; event dropped", channel_id=event.channel_id)
                continue
            if await runtime.inbound_queue.submit(flow_id, event):
                queued += 1
            else:
                inbound_events_counter.labels(channel=event.channel_id or "default", status="duplicate").inc()

        log.info("Webhook processed", queued=queued)
        return JSONResponse({"status": "success", "queued": queued})
