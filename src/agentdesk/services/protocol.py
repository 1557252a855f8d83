"""Typed events for the agent tool's stream-json protocol and the dispatcher producing them."""

from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, ClassVar

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AgentEvent:
    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        return {"kind": self.kind, **asdict(self)}


@dataclass(frozen=True)
class SystemInit(AgentEvent):
    kind: ClassVar[str] = "init"
    sdk_session_id: str | None = None
    model: str | None = None
    tools: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class SystemStatus(AgentEvent):
    kind: ClassVar[str] = "system_status"
    status: str | None = None


@dataclass(frozen=True)
class CompactionComplete(AgentEvent):
    kind: ClassVar[str] = "compaction_complete"
    trigger: str | None = None
    pre_tokens: int | None = None


@dataclass(frozen=True)
class MessageStart(AgentEvent):
    kind: ClassVar[str] = "message_start"
    message_id: str | None = None
    role: str | None = None
    model: str | None = None


@dataclass(frozen=True)
class ContentBlockStart(AgentEvent):
    kind: ClassVar[str] = "content_block_start"
    index: int = 0
    content_type: str | None = None
    tool_use_id: str | None = None
    tool_name: str | None = None


@dataclass(frozen=True)
class TextDelta(AgentEvent):
    kind: ClassVar[str] = "text_delta"
    index: int = 0
    text: str = ""


@dataclass(frozen=True)
class ContentBlockStop(AgentEvent):
    kind: ClassVar[str] = "content_block_stop"
    index: int = 0


@dataclass(frozen=True)
class MessageDelta(AgentEvent):
    kind: ClassVar[str] = "message_delta"
    stop_reason: str | None = None
    stop_sequence: str | None = None


@dataclass(frozen=True)
class MessageStop(AgentEvent):
    kind: ClassVar[str] = "message_stop"
    message: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolUse(AgentEvent):
    kind: ClassVar[str] = "tool_use"
    tool_use_id: str | None = None
    name: str | None = None
    input: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class AssistantMessage(AgentEvent):
    kind: ClassVar[str] = "assistant"
    uuid: str | None = None
    content: list[dict[str, Any]] = field(default_factory=list)

    @property
    def text_blocks(self) -> list[str]:
        return [b.get("text", "") for b in self.content if b.get("type") == "text"]

    @property
    def tool_uses(self) -> list[ToolUse]:
        return [
            ToolUse(tool_use_id=b.get("id"), name=b.get("name"), input=b.get("input") or {})
            for b in self.content
            if b.get("type") == "tool_use"
        ]


@dataclass(frozen=True)
class Usage(AgentEvent):
    kind: ClassVar[str] = "usage"
    input_tokens: int = 0
    output_tokens: int = 0


@dataclass(frozen=True)
class Result(AgentEvent):
    kind: ClassVar[str] = "result"
    subtype: str | None = None
    is_error: bool = False
    result: str | None = None
    total_cost_usd: float = 0.0
    num_turns: int = 0
    duration_ms: int = 0
    usage: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class ToolProgress(AgentEvent):
    kind: ClassVar[str] = "tool_progress"
    tool_use_id: str | None = None
    tool_name: str | None = None
    elapsed_seconds: float = 0.0


@dataclass(frozen=True)
class ProtocolError(AgentEvent):
    kind: ClassVar[str] = "error"
    error: dict[str, Any] = field(default_factory=dict)

    @property
    def message(self) -> str:
        return str(self.error.get("message") or self.error.get("type") or "Unknown agent error")


def _int(value: Any) -> int:
    try:
        return int(value or 0)
    except (TypeError, ValueError):
        return 0


def _float(value: Any) -> float:
    try:
        return float(value or 0.0)
    except (TypeError, ValueError):
        return 0.0


class ProtocolDispatcher:
    """Map raw protocol records to typed events, keeping a timestamped audit trail.

    Unknown record types are logged and dropped; unrecognized fields are ignored.
    ``stream_event`` envelopes are unwrapped and their inner record dispatched.
    """

    def __init__(self, session_id: str = "") -> None:
        self.session_id = session_id
        self.history: list[dict[str, Any]] = []

    def dispatch(self, record: dict[str, Any]) -> AgentEvent | None:
        self.history.append({"received_at": datetime.now(timezone.utc).isoformat(), "record": record})
        return self._dispatch(record)

    def _dispatch(self, record: dict[str, Any]) -> AgentEvent | None:
        rtype = record.get("type")
        handler = getattr(self, f"_on_{rtype}", None) if isinstance(rtype, str) else None
        if handler is None:
            logger.debug("Session %s: dropping unknown record type %r", self.session_id, rtype)
            return None
        return handler(record)

    # --- envelopes from the agent tool ---

    def _on_stream_event(self, record: dict[str, Any]) -> AgentEvent | None:
        inner = record.get("event")
        if not isinstance(inner, dict):
            return None
        return self._dispatch(inner)

    def _on_system(self, record: dict[str, Any]) -> AgentEvent | None:
        subtype = record.get("subtype")
        if subtype == "init":
            tools = record.get("tools") or []
            return SystemInit(
                sdk_session_id=record.get("session_id"),
                model=record.get("model"),
                tools=[t if isinstance(t, str) else str(t.get("name", t)) for t in tools],
            )
        if subtype == "status":
            return SystemStatus(status=record.get("status"))
        if subtype == "compact_boundary":
            meta = record.get("compact_metadata") or {}
            return CompactionComplete(trigger=meta.get("trigger"), pre_tokens=meta.get("pre_tokens"))
        logger.debug("Session %s: dropping system record with subtype %r", self.session_id, subtype)
        return None

    def _on_assistant(self, record: dict[str, Any]) -> AgentEvent:
        message = record.get("message") or {}
        content = message.get("content") or []
        return AssistantMessage(uuid=record.get("uuid"), content=[b for b in content if isinstance(b, dict)])

    def _on_result(self, record: dict[str, Any]) -> AgentEvent:
        return Result(
            subtype=record.get("subtype"),
            is_error=bool(record.get("is_error", False)),
            result=record.get("result"),
            total_cost_usd=_float(record.get("total_cost_usd")),
            num_turns=_int(record.get("num_turns")),
            duration_ms=_int(record.get("duration_ms")),
            usage=record.get("usage") or {},
        )

    def _on_tool_progress(self, record: dict[str, Any]) -> AgentEvent:
        return ToolProgress(
            tool_use_id=record.get("tool_use_id"),
            tool_name=record.get("tool_name"),
            elapsed_seconds=_float(record.get("elapsed_time_seconds")),
        )

    # --- message streaming records ---

    def _on_message_start(self, record: dict[str, Any]) -> AgentEvent:
        message = record.get("message") or {}
        return MessageStart(message_id=message.get("id"), role=message.get("role"), model=message.get("model"))

    def _on_content_block_start(self, record: dict[str, Any]) -> AgentEvent:
        block = record.get("content_block") or {}
        return ContentBlockStart(
            index=_int(record.get("index")),
            content_type=block.get("type"),
            tool_use_id=block.get("id"),
            tool_name=block.get("name"),
        )

    def _on_content_block_delta(self, record: dict[str, Any]) -> AgentEvent | None:
        delta = record.get("delta") or {}
        if delta.get("type") != "text_delta":
            return None
        return TextDelta(index=_int(record.get("index")), text=delta.get("text") or "")

    def _on_content_block_stop(self, record: dict[str, Any]) -> AgentEvent:
        return ContentBlockStop(index=_int(record.get("index")))

    def _on_message_delta(self, record: dict[str, Any]) -> AgentEvent:
        delta = record.get("delta") or {}
        return MessageDelta(stop_reason=delta.get("stop_reason"), stop_sequence=delta.get("stop_sequence"))

    def _on_message_stop(self, record: dict[str, Any]) -> AgentEvent:
        message = record.get("message")
        return MessageStop(message=message if isinstance(message, dict) else {})

    def _on_usage(self, record: dict[str, Any]) -> AgentEvent:
        usage = record.get("usage") if isinstance(record.get("usage"), dict) else record
        return Usage(
            input_tokens=_int(usage.get("input_tokens")),
            output_tokens=_int(usage.get("output_tokens")),
        )

    def _on_error(self, record: dict[str, Any]) -> AgentEvent:
        error = record.get("error")
        if not isinstance(error, dict):
            error = {"message": str(error) if error is not None else "Unknown agent error"}
        return ProtocolError(error=error)
