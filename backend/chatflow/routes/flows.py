# /chatflow/routes/flows.py

import uuid
import structlog
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from chatflow.config.settings import settings
from chatflow.engine.errors import FlowNotFoundError
from chatflow.engine.validator import validate_flow
from chatflow.models.api import APIResponse, FlowUploadRequest
from chatflow.models.flow import FlowDefinition, utcnow
from chatflow.services.runtime import Runtime
from chatflow.utils.dependencies import get_runtime, verify_api_key

# Flow definition management: upload (validated before it is stored),
# listing, and activation. Deactivating a flow makes its sessions fail closed.

router = APIRouter(prefix="/flows", tags=["Flows"], dependencies=[Depends(verify_api_key)])

log = structlog.get_logger(__name__)


def _definition(body: FlowUploadRequest, flow_id: str) -> FlowDefinition:
    return FlowDefinition(id=flow_id, owner_id=body.owner_id, name=body.name, nodes=body.nodes,
                          active=body.active, updated_at=utcnow())


@router.post("/validate", response_model=APIResponse)
async def validate_flow_definition(body: FlowUploadRequest, runtime: Runtime = Depends(get_runtime)):
    result = validate_flow(_definition(body, body.id or "draft"), runtime.engine.registry)
    return APIResponse(success=result["is_valid"], message="Flow is valid" if result["is_valid"] else "Flow has errors",
                       data=dict(result), version=settings.api_version)


@router.post("", response_model=APIResponse, status_code=201)
async def upload_flow(body: FlowUploadRequest, runtime: Runtime = Depends(get_runtime)):
    flow = _definition(body, body.id or uuid.uuid4().hex)
    result = validate_flow(flow, runtime.engine.registry)
    if not result["is_valid"]:
        log.warning("Rejected invalid flow upload", flow_id=flow.id, issues=len(result["issues"]))
        raise HTTPException(status_code=422, detail={"message": "Flow has errors", "issues": result["issues"]})

    flow = await runtime.stores.flows.save(flow)
    log.info("Flow stored", flow_id=flow.id, owner_id=flow.owner_id, nodes=len(flow.nodes))
    return APIResponse(success=True, message="Flow stored", data=flow.model_dump(mode="json"),
                       version=settings.api_version)


@router.get("", response_model=APIResponse)
async def list_flows(owner_id: Optional[str] = Query(None), runtime: Runtime = Depends(get_runtime)):
    flows = await runtime.stores.flows.list(owner_id)
    summaries = [
        {"id": f.id, "owner_id": f.owner_id, "name": f.name, "active": f.active, "nodes": len(f.nodes),
         "updated_at": f.updated_at.isoformat()}
        for f in flows
    ]
    return APIResponse(success=True, message=f"{len(summaries)} flows", data={"flows": summaries},
                       version=settings.api_version)


@router.get("/{flow_id}", response_model=APIResponse)
async def get_flow(flow_id: str, runtime: Runtime = Depends(get_runtime)):
    try:
        flow = await runtime.stores.flows.get(flow_id)
    except FlowNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    return APIResponse(success=True, message="Flow retrieved", data=flow.model_dump(mode="json"),
                       version=settings.api_version)


async def _set_active(runtime: Runtime, flow_id: str, active: bool) -> APIResponse:
    try:
        flow = await runtime.stores.flows.set_active(flow_id, active)
    except FlowNotFoundError as e:
        raise HTTPException(status_code=404, detail=e.message)
    log.info("Flow activation changed", flow_id=flow_id, active=active)
    return APIResponse(success=True, message="Flow activated" if active else "Flow deactivated",
                       data={"id": flow.id, "active": flow.active}, version=settings.api_version)


@router.post("/{flow_id}/activate", response_model=APIResponse)
async def activate_flow(flow_id: str, runtime: Runtime = Depends(get_runtime)):
    return await _set_active(runtime, flow_id, True)


@router.post("/{flow_id}/deactivate", response_model=APIResponse)
async def deactivate_flow(flow_id: str, runtime: Runtime = Depends(get_runtime)):
    return await _set_active(runtime, flow_id, False)
