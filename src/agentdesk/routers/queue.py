"""Per-session pending message queue endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, Request

from ..models import QueueItem, QueueItemCreate, QueueItemUpdate, QueueSwap
from ..services.agent_sessions import AgentSessionManager, SessionNotFoundError
from ..services.queue_coordinator import QueueCoordinator

router = APIRouter(tags=["queue"])


def _validate_uuid(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return value


def _manager(request: Request) -> AgentSessionManager:
    return request.app.state.session_manager


def _coordinator(request: Request) -> QueueCoordinator:
    return _manager(request).coordinator


@router.get("/agents/{session_id}/queue", response_model=list[QueueItem])
async def list_queue(session_id: str, request: Request):
    _validate_uuid(session_id)
    return _coordinator(request).list_items(session_id)


@router.get("/agents/{session_id}/queue/count")
async def count_queue(session_id: str, request: Request):
    _validate_uuid(session_id)
    return {"count": _coordinator(request).count(session_id)}


@router.get("/agents/{session_id}/queue/search", response_model=list[QueueItem])
async def search_queue(session_id: str, request: Request, keyword: str = ""):
    _validate_uuid(session_id)
    return _coordinator(request).search(session_id, keyword)


@router.post("/agents/{session_id}/queue", status_code=201, response_model=QueueItem)
async def add_to_queue(session_id: str, body: QueueItemCreate, request: Request):
    _validate_uuid(session_id)
    try:
        return await _coordinator(request).enqueue(session_id, body.content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.patch("/agents/{session_id}/queue/{item_id}")
async def update_queue_item(session_id: str, item_id: str, body: QueueItemUpdate, request: Request):
    _validate_uuid(session_id)
    try:
        changed = await _coordinator(request).update(session_id, item_id, body.content)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"success": changed > 0, "changed": changed}


@router.delete("/agents/{session_id}/queue/{item_id}")
async def delete_queue_item(session_id: str, item_id: str, request: Request):
    _validate_uuid(session_id)
    removed = await _coordinator(request).delete(session_id, item_id)
    return {"success": removed > 0, "removed": removed}


@router.post("/agents/{session_id}/queue/swap")
async def swap_queue_items(session_id: str, body: QueueSwap, request: Request):
    _validate_uuid(session_id)
    swapped = await _coordinator(request).swap(session_id, body.id1, body.id2)
    if not swapped:
        raise HTTPException(status_code=404, detail="Queue item not found")
    return {"success": True}


@router.post("/agents/{session_id}/queue/clear")
async def clear_queue(session_id: str, request: Request):
    _validate_uuid(session_id)
    cleared = await _coordinator(request).clear(session_id)
    return {"success": True, "cleared": cleared}


@router.post("/agents/{session_id}/queue/dispatch")
async def dispatch_next(session_id: str, request: Request):
    _validate_uuid(session_id)
    try:
        item = await _manager(request).dispatch_next(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    return {"dispatched": item is not None, "item": item}


@router.post("/agents/{session_id}/queue/{item_id}/executed")
async def mark_queue_item_executed(session_id: str, item_id: str, request: Request):
    _validate_uuid(session_id)
    changed = await _coordinator(request).mark_executed(session_id, item_id)
    return {"success": changed > 0}
