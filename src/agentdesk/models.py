"""Pydantic models for API request/response schemas."""

from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, Field


class AgentSessionInfo(BaseModel):
    id: str
    type: str
    status: str
    sdk_session_id: str | None = None
    title: str
    cwd: str | None = None
    cwd_auto: bool = False
    created_at: str | None = None
    message_count: int = 0
    turn_count: int = 0
    total_cost_usd: float = 0.0
    interrupted: bool = False
    queue_length: int = 0


class AgentSessionCreate(BaseModel):
    type: Literal["chat", "specialized", "lightapp"] = "chat"
    title: str = Field(default="", max_length=200)
    cwd: str | None = None


class AgentSessionUpdate(BaseModel):
    title: str = Field(min_length=1, max_length=200)


class SendMessageRequest(BaseModel):
    message: str = Field(min_length=1, max_length=100000)


class AgentMessage(BaseModel):
    id: str
    role: str
    content: str | None = None
    tool_name: str | None = None
    input: dict | None = None
    output: dict | None = None
    interrupted: bool = False
    timestamp: str


class QueueItem(BaseModel):
    id: str
    session_uuid: str
    content: str
    is_executed: bool = False
    created_at: int
    executed_at: int | None = None


class QueueItemCreate(BaseModel):
    content: str = Field(min_length=1, max_length=100000)


class QueueItemUpdate(BaseModel):
    content: str = Field(min_length=1, max_length=100000)


class QueueSwap(BaseModel):
    id1: str
    id2: str


class OutputFile(BaseModel):
    name: str
    is_directory: bool
    path: str


class OutputListing(BaseModel):
    dir: str | None = None
    files: list[OutputFile] = []
