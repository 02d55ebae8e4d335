# /chatflow/routes/events.py

import structlog
from fastapi import APIRouter, Depends, HTTPException

from chatflow.config.settings import settings
from chatflow.engine.errors import FlowError, FlowNotFoundError
from chatflow.models.api import APIResponse, InboundEventRequest
from chatflow.services.runtime import Runtime
from chatflow.utils.dependencies import get_runtime, verify_api_key

# Channel-agnostic entry point: other channel adapters (or tests) post
# already-normalized inbound events for a flow.

router = APIRouter(prefix="/events", tags=["Events"], dependencies=[Depends(verify_api_key)])

log = structlog.get_logger(__name__)


@router.post("", response_model=APIResponse)
async def post_event(body: InboundEventRequest, runtime: Runtime = Depends(get_runtime)):
    if not body.wait:
        queued = await runtime.inbound_queue.submit(body.flow_id, body.event)
        return APIResponse(
            success=True, message="Event queued" if queued else "Duplicate event ignored",
            data={"queued": queued}, version=settings.api_version,
        )

    if await runtime.inbound_queue.is_duplicate(body.event):
        return APIResponse(success=True, message="Duplicate event ignored", data={"queued": False},
                           version=settings.api_version)
    try:
        outcome = await runtime.inbound_queue.process(body.flow_id, body.event)
    except FlowNotFoundError as e:
        await runtime.inbound_queue.release(body.event)
        raise HTTPException(status_code=404, detail=e.message)
    except FlowError as e:
        if not e.retryable:
            raise
        # The caller may resend the same message once the chat is free.
        await runtime.inbound_queue.release(body.event)
        raise HTTPException(status_code=409, detail={"error_code": e.code, "message": e.message})

    log.info("Event processed", flow_id=body.flow_id, chat_id=body.event.chat_id, outcome=outcome.stopped_reason)
    return APIResponse(success=True, message="Event processed", data=outcome.to_dict(), version=settings.api_version)
