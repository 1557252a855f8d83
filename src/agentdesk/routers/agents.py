"""Agent session lifecycle and messaging endpoints."""

from __future__ import annotations

import uuid

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import Response

from ..models import (
    AgentMessage,
    AgentSessionCreate,
    AgentSessionInfo,
    AgentSessionUpdate,
    OutputListing,
    SendMessageRequest,
)
from ..services.agent_sessions import AgentSessionManager, SessionNotFoundError
from ..services.turn_state import SessionBusyError

router = APIRouter(tags=["agents"])


def _validate_uuid(value: str) -> str:
    try:
        uuid.UUID(value)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return value


def _manager(request: Request) -> AgentSessionManager:
    return request.app.state.session_manager


@router.post("/agents", status_code=201, response_model=AgentSessionInfo)
async def create_agent(body: AgentSessionCreate, request: Request):
    return _manager(request).create(type=body.type, title=body.title, cwd=body.cwd)


@router.get("/agents", response_model=list[AgentSessionInfo])
async def list_agents(request: Request):
    return _manager(request).list_sessions()


@router.get("/agents/{session_id}", response_model=AgentSessionInfo)
async def get_agent(session_id: str, request: Request):
    _validate_uuid(session_id)
    info = _manager(request).describe(session_id)
    if not info:
        raise HTTPException(status_code=404, detail="Session not found")
    return info


@router.patch("/agents/{session_id}", response_model=AgentSessionInfo)
async def rename_agent(session_id: str, body: AgentSessionUpdate, request: Request):
    _validate_uuid(session_id)
    info = await _manager(request).rename(session_id, body.title)
    if not info:
        raise HTTPException(status_code=404, detail="Session not found")
    return info


@router.delete("/agents/{session_id}", status_code=204)
async def delete_agent(session_id: str, request: Request):
    _validate_uuid(session_id)
    deleted = await _manager(request).delete_conversation(session_id)
    if not deleted:
        raise HTTPException(status_code=404, detail="Session not found")
    return Response(status_code=204)


@router.post("/agents/{session_id}/reopen", response_model=AgentSessionInfo)
async def reopen_agent(session_id: str, request: Request):
    _validate_uuid(session_id)
    info = await _manager(request).reopen(session_id)
    if not info:
        raise HTTPException(status_code=404, detail="Session not found")
    return info


@router.post("/agents/{session_id}/close")
async def close_agent(session_id: str, request: Request):
    _validate_uuid(session_id)
    closed = await _manager(request).close(session_id)
    return {"status": "closed" if closed else "not_loaded"}


@router.post("/agents/{session_id}/messages", status_code=202)
async def send_message(session_id: str, body: SendMessageRequest, request: Request):
    _validate_uuid(session_id)
    try:
        return await _manager(request).send_message(session_id, body.message)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.get("/agents/{session_id}/messages", response_model=list[AgentMessage])
async def get_messages(session_id: str, request: Request):
    _validate_uuid(session_id)
    return _manager(request).get_messages(session_id)


@router.get("/agents/{session_id}/history")
async def get_history(session_id: str, request: Request):
    _validate_uuid(session_id)
    return _manager(request).get_history(session_id)


@router.post("/agents/{session_id}/cancel")
async def cancel_turn(session_id: str, request: Request):
    _validate_uuid(session_id)
    cancelled = await _manager(request).cancel(session_id)
    return {"status": "cancelled" if cancelled else "idle"}


@router.post("/agents/{session_id}/compact", status_code=202)
async def compact_agent(session_id: str, request: Request):
    _validate_uuid(session_id)
    try:
        generation = await _manager(request).compact(session_id)
    except SessionNotFoundError:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionBusyError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return {"status": "compacting", "generation": generation}


@router.get("/agents/{session_id}/files", response_model=OutputListing)
async def list_output_files(session_id: str, request: Request):
    _validate_uuid(session_id)
    manager = _manager(request)
    return {"dir": manager.get_output_dir(session_id), "files": manager.list_output_files(session_id)}
