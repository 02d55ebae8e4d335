# /chatflow/routes/sessions.py

from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query

from chatflow.config.settings import settings
from chatflow.models.api import APIResponse
from chatflow.models.session import make_session_key
from chatflow.services.runtime import Runtime
from chatflow.utils.dependencies import get_runtime, verify_api_key

# Read-only inspection of conversations: sessions, group sessions, the
# activity log and the deferred work queue.

router = APIRouter(tags=["Sessions"], dependencies=[Depends(verify_api_key)])


def _ok(message: str, data: dict) -> APIResponse:
    return APIResponse(success=True, message=message, data=data, version=settings.api_version)


@router.get("/flows/{flow_id}/sessions", response_model=APIResponse)
async def list_sessions(flow_id: str, status: Optional[str] = Query(None), limit: int = Query(50, ge=1, le=500),
                        runtime: Runtime = Depends(get_runtime)):
    sessions = await runtime.stores.sessions.list_by_flow(flow_id, status=status, limit=limit)
    return _ok(f"{len(sessions)} sessions", {"sessions": [s.model_dump(mode="json") for s in sessions]})


@router.get("/flows/{flow_id}/chats/{chat_id}/session", response_model=APIResponse)
async def get_chat_session(flow_id: str, chat_id: str, runtime: Runtime = Depends(get_runtime)):
    session = await runtime.stores.sessions.get_latest(make_session_key(flow_id, chat_id))
    if session is None:
        raise HTTPException(status_code=404, detail="No session for this chat")
    return _ok("Session retrieved", session.model_dump(mode="json"))


@router.get("/sessions/{session_id}", response_model=APIResponse)
async def get_session(session_id: str, runtime: Runtime = Depends(get_runtime)):
    session = await runtime.stores.sessions.get(session_id)
    if session is None:
        raise HTTPException(status_code=404, detail="Session not found")
    return _ok("Session retrieved", session.model_dump(mode="json"))


@router.get("/flows/{flow_id}/groups", response_model=APIResponse)
async def list_groups(flow_id: str, status: Optional[str] = Query(None), limit: int = Query(50, ge=1, le=500),
                      runtime: Runtime = Depends(get_runtime)):
    groups = await runtime.stores.groups.list_by_flow(flow_id, status=status, limit=limit)
    return _ok(f"{len(groups)} group sessions", {"groups": [g.model_dump(mode="json") for g in groups]})


@router.get("/groups/{group_id}", response_model=APIResponse)
async def get_group(group_id: str, runtime: Runtime = Depends(get_runtime)):
    group = await runtime.stores.groups.get(group_id)
    if group is None:
        raise HTTPException(status_code=404, detail="Group session not found")
    return _ok("Group session retrieved", group.model_dump(mode="json"))


@router.get("/activity", response_model=APIResponse)
async def list_activity(owner_id: str = Query(...), level: Optional[str] = Query(None),
                        limit: int = Query(50, ge=1, le=500), runtime: Runtime = Depends(get_runtime)):
    events = await runtime.activity.list(owner_id, limit=limit, level=level)
    return _ok(f"{len(events)} activity events", {"events": [e.model_dump(mode="json") for e in events]})


@router.get("/deferred", response_model=APIResponse)
async def list_deferred(status: Optional[str] = Query(None), limit: int = Query(50, ge=1, le=500),
                        runtime: Runtime = Depends(get_runtime)):
    items = await runtime.stores.deferred.list(status=status, limit=limit)
    return _ok(f"{len(items)} deferred work items", {"items": [i.model_dump(mode="json") for i in items]})
