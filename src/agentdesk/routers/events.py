"""Server-sent event streams of agent session events."""

from __future__ import annotations

import asyncio
import json
import uuid
from typing import Any

from fastapi import APIRouter, HTTPException, Request
from sse_starlette.sse import EventSourceResponse

from ..services.event_bus import GLOBAL_CHANNEL, EventBus, session_channel

router = APIRouter(tags=["events"])

DISCONNECT_CHECK_SECONDS = 1.0


def _event_stream(request: Request, bus: EventBus, channel: str):
    queue: asyncio.Queue[dict[str, Any]] = bus.subscribe(channel)

    async def generator():
        try:
            while True:
                if await request.is_disconnected():
                    break
                try:
                    event = await asyncio.wait_for(queue.get(), timeout=DISCONNECT_CHECK_SECONDS)
                except asyncio.TimeoutError:
                    continue
                yield {"event": event["type"], "data": json.dumps(event["data"])}
        finally:
            bus.unsubscribe(channel, queue)

    return EventSourceResponse(generator())


@router.get("/events")
async def stream_all_events(request: Request) -> EventSourceResponse:
    return _event_stream(request, request.app.state.event_bus, GLOBAL_CHANNEL)


@router.get("/agents/{session_id}/events")
async def stream_session_events(session_id: str, request: Request) -> EventSourceResponse:
    try:
        uuid.UUID(session_id)
    except ValueError:
        raise HTTPException(status_code=400, detail="Invalid ID format")
    return _event_stream(request, request.app.state.event_bus, session_channel(session_id))
