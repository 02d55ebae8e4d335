# /chatflow/routes/public.py

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import PlainTextResponse
from prometheus_client import generate_latest

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse
from chatflow.models.flow import utcnow
from chatflow.services.runtime import Runtime
from chatflow.utils.dependencies import get_runtime, verify_api_key

# Unauthenticated probes plus the API-key protected Prometheus endpoint.

router = APIRouter()


@router.get("/")
async def root():
    return {
        "service": "chatflow",
        "status": "operational",
        "environment": settings.environment,
        "storage_backend": settings.storage_backend,
    }


@router.get("/health", summary="Basic Health Check")
async def health_check():
    return {"status": "healthy", "timestamp": utcnow()}


@router.get("/health/ready", summary="Readiness Probe")
async def readiness_check(runtime: Runtime = Depends(get_runtime)):
    services = await runtime.health()
    if any(state != "connected" for state in services.values()):
        raise HTTPException(status_code=503, detail=f"Service not ready: {services}")
    return {"status": "ready"}


@router.get("/health/live", summary="Liveness Probe")
async def liveness_check():
    return {"status": "alive"}


@router.get("/health/detailed", response_model=APIResponse, tags=["Admin"],
            dependencies=[Depends(verify_api_key)])
async def detailed_health_check(runtime: Runtime = Depends(get_runtime)):
    services = await runtime.health()
    services["whatsapp"] = "configured" if settings.whatsapp_access_token else "not_configured"
    services["deferred_workers"] = len(runtime.deferred_worker.workers)
    status = "healthy" if services["database"] == services["cache"] == "connected" else "degraded"
    return APIResponse(
        success=True,
        message="Detailed health status retrieved.",
        data={"status": status, "services": services},
        version=settings.api_version,
    )


@router.get("/metrics", tags=["Monitoring"], dependencies=[Depends(verify_api_key)])
async def metrics():
    return PlainTextResponse(generate_latest(), media_type="text/plain")
