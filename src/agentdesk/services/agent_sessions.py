"""Agent session lifecycle: one agent subprocess per session, streamed to the UI.

Each session feeds its subprocess output through LineFramer and
ProtocolDispatcher into its TurnStateMachine, publishes the resulting UI events
on the EventBus, and hands finished turns to the QueueCoordinator.
"""

from __future__ import annotations

import asyncio
import logging
import sqlite3
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable

from ..config import AppConfig
from ..db import ThreadSafeConnection
from . import storage
from .agent_process import AgentProcess, AgentTransport, build_message
from .event_bus import EventBus
from .framing import LineFramer, iter_records
from .protocol import (
    AgentEvent,
    AssistantMessage,
    CompactionComplete,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
    ProtocolDispatcher,
    ProtocolError,
    Result,
    SystemInit,
    SystemStatus,
    TextDelta,
    ToolProgress,
    Usage,
)
from .queue_coordinator import QueueCoordinator
from .turn_state import SessionBusyError, TurnOutcome, TurnState, TurnStateMachine

logger = logging.getLogger(__name__)

PROCESS_EXITED_MESSAGE = "Agent process exited"


class AgentType(str, Enum):
    CHAT = "chat"
    SPECIALIZED = "specialized"
    LIGHTAPP = "lightapp"


class SessionNotFoundError(LookupError):
    def __init__(self, session_id: str) -> None:
        super().__init__(f"Agent session {session_id} not found")
        self.session_id = session_id


TransportFactory = Callable[["AgentSession"], AgentTransport]


@dataclass
class SessionContext:
    """Collaborators shared by every session of one manager."""

    config: AppConfig
    db: ThreadSafeConnection
    coordinator: QueueCoordinator
    transport_factory: TransportFactory
    event_bus: EventBus | None = None


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _msg_id(prefix: str = "msg") -> str:
    return f"{prefix}-{uuid.uuid4().hex[:12]}"


class AgentSession:
    def __init__(
        self,
        context: SessionContext,
        *,
        id: str | None = None,
        type: AgentType | str = AgentType.CHAT,
        title: str = "",
        cwd: str | None = None,
    ) -> None:
        self.id = id or str(uuid.uuid4())
        self.type = AgentType(type)
        self.title = title
        self.cwd = cwd
        self.cwd_auto = not cwd
        self.created_at = _now()
        self.sdk_session_id: str | None = None
        self.db_conversation_id: int | None = None
        self.message_count = 0
        self.messages: list[dict[str, Any]] = []
        self.usage = {"input_tokens": 0, "output_tokens": 0}
        self.turn = TurnStateMachine(self.id)
        self.dispatcher = ProtocolDispatcher(self.id)
        self.framer = LineFramer()
        self._ctx = context
        self._inflight: deque[int] = deque()
        self._transport: AgentTransport | None = None
        self._reader: asyncio.Task[None] | None = None

    @property
    def status(self) -> TurnState:
        return self.turn.state

    @property
    def transport(self) -> AgentTransport | None:
        return self._transport

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type.value,
            "status": self.turn.state.value,
            "sdk_session_id": self.sdk_session_id,
            "title": self.title,
            "cwd": self.cwd,
            "cwd_auto": self.cwd_auto,
            "created_at": self.created_at,
            "message_count": self.message_count,
            "turn_count": self.turn.turn_count,
            "total_cost_usd": self.turn.total_cost_usd,
            "interrupted": self.turn.interrupted,
            "queue_length": self._ctx.coordinator.count(self.id),
        }

    # --- outbound ---

    async def send(self, content: str) -> int:
        """Start a turn with ``content``. Raises SessionBusyError unless idle."""
        generation = self.turn.start_turn()
        self.message_count += 1
        self._store_message(role="user", content=content)
        await self._status_changed()
        try:
            await self._ensure_transport()
            assert self._transport is not None
            self._inflight.append(generation)
            await self._transport.send(build_message(content))
        except Exception as e:
            await self._abort_write(generation, e)
            raise
        self._persist(message_count=self.message_count)
        return generation

    async def compact(self) -> int:
        generation = self.turn.start_compaction()
        await self._status_changed()
        try:
            await self._ensure_transport()
            assert self._transport is not None
            self._inflight.append(generation)
            await self._transport.send(build_message(self._ctx.config.agent.compact_command))
        except Exception as e:
            await self._abort_write(generation, e)
            raise
        return generation

    async def cancel(self) -> TurnOutcome | None:
        """Interrupt the running turn. Local state goes idle before the agent reacts."""
        outcome = self.turn.interrupt()
        if outcome is None:
            return None
        logger.info("Session %s: turn %d interrupted by user", self.id, outcome.generation)
        if outcome.text:
            message = self._store_message(role="assistant", content=outcome.text, interrupted=True)
            await self._publish("message", {"message": message})
        await self._status_changed(interrupted=True)
        if self._transport is not None:
            try:
                await self._transport.interrupt()
            except Exception:
                logger.exception("Session %s: failed to signal interrupt", self.id)
        await self._ctx.coordinator.on_turn_finished(self, outcome)
        return outcome

    async def close(self) -> None:
        if not self.turn.is_idle:
            await self.cancel()
        transport, self._transport = self._transport, None
        if transport is not None:
            await transport.close()
        reader, self._reader = self._reader, None
        if reader is not None and not reader.done():
            reader.cancel()
            try:
                await reader
            except asyncio.CancelledError:
                pass
        self._inflight.clear()

    # --- inbound ---

    async def feed(self, chunk: bytes | str) -> list[AgentEvent]:
        """Frame a chunk of subprocess output and handle every complete record in order."""
        events = []
        for record in self.framer.feed(chunk):
            event = await self.handle_record(record)
            if event is not None:
                events.append(event)
        return events

    async def handle_record(self, record: dict[str, Any]) -> AgentEvent | None:
        # Records belong to the oldest turn the agent has not finished yet.
        generation = self._inflight[0] if self._inflight else None
        if record.get("type") == "result" and self._inflight:
            self._inflight.popleft()
        if generation is not None and not self.turn.is_current(generation):
            logger.debug("Session %s: dropping %s record from stale turn %d", self.id, record.get("type"), generation)
            return None

        event = self.dispatcher.dispatch(record)
        if event is None:
            return None
        try:
            await self._apply(event)
        except Exception:
            logger.exception("Session %s: failed to handle %s event", self.id, event.kind)
            await self._publish("error", {"error": f"Failed to handle {event.kind} event"})
        return event

    async def _apply(self, event: AgentEvent) -> None:
        if isinstance(event, SystemInit):
            self.sdk_session_id = event.sdk_session_id
            self._persist(sdk_session_id=event.sdk_session_id)
            await self._publish(
                "init",
                {"sdk_session_id": event.sdk_session_id, "model": event.model, "tools": event.tools},
            )
        elif isinstance(event, SystemStatus):
            await self._publish("systemStatus", {"status": event.status})
        elif isinstance(event, TextDelta):
            self.turn.append_text(event.text)
            await self._publish("stream", {"event": event.to_dict()})
        elif isinstance(event, (MessageStart, ContentBlockStart, ContentBlockStop, MessageDelta)):
            await self._publish("stream", {"event": event.to_dict()})
        elif isinstance(event, MessageStop):
            await self._publish("message", {"message": event.message})
        elif isinstance(event, AssistantMessage):
            # The full message supersedes the deltas streamed for it.
            self.turn.discard_text()
            for text in event.text_blocks:
                self._store_message(role="assistant", content=text)
            for tool in event.tool_uses:
                self._store_message(role="tool", tool_name=tool.name, tool_input=tool.input)
            await self._publish("message", {"message": {"type": "assistant", "uuid": event.uuid, "content": event.content}})
        elif isinstance(event, Usage):
            self.usage["input_tokens"] += event.input_tokens
            self.usage["output_tokens"] += event.output_tokens
            await self._publish("usage", {"usage": event.to_dict(), "total": dict(self.usage)})
        elif isinstance(event, ToolProgress):
            await self._publish(
                "toolProgress",
                {
                    "tool_use_id": event.tool_use_id,
                    "tool_name": event.tool_name,
                    "elapsed_seconds": event.elapsed_seconds,
                },
            )
        elif isinstance(event, CompactionComplete):
            if self.turn.state is TurnState.COMPACTING:
                await self._finish_compaction(event.trigger, event.pre_tokens)
        elif isinstance(event, Result):
            if self.turn.state is TurnState.COMPACTING:
                await self._finish_compaction(None, None)
            elif self.turn.state is TurnState.STREAMING:
                await self._complete_turn(event)
            else:
                logger.debug("Session %s: result with no turn in progress", self.id)
        elif isinstance(event, ProtocolError):
            await self._fail_turn(event.message)

    async def _complete_turn(self, result: Result) -> None:
        outcome = self.turn.complete(result.total_cost_usd)
        if outcome.text:
            self._store_message(role="assistant", content=outcome.text)
        self._persist(
            total_cost_usd=self.turn.total_cost_usd,
            turn_count=self.turn.turn_count,
            message_count=self.message_count,
        )
        await self._publish(
            "result",
            {
                "result": {
                    "subtype": result.subtype,
                    "is_error": result.is_error,
                    "result": result.result,
                    "total_cost_usd": result.total_cost_usd,
                    "num_turns": result.num_turns,
                    "duration_ms": result.duration_ms,
                    "usage": result.usage,
                },
                "elapsed_s": outcome.duration_s,
            },
        )
        await self._status_changed()
        await self._ctx.coordinator.on_turn_finished(self, outcome)

    async def _finish_compaction(self, trigger: str | None, pre_tokens: int | None) -> None:
        outcome = self.turn.finish_compaction()
        await self._publish("compacted", {"trigger": trigger, "pre_tokens": pre_tokens})
        await self._status_changed()
        await self._ctx.coordinator.on_turn_finished(self, outcome)

    async def _fail_turn(self, message: str) -> None:
        await self._publish("error", {"error": message})
        outcome = self.turn.fail(message)
        if outcome is None:
            return
        if outcome.text:
            self._store_message(role="assistant", content=outcome.text)
        await self._status_changed()
        await self._ctx.coordinator.on_turn_finished(self, outcome)

    # --- transport ---

    async def _ensure_transport(self) -> None:
        if self._transport is not None and self._transport.running:
            return
        previous, self._transport = self._transport, None
        if previous is not None:
            # Its reader may still be draining stdout; from here on that output is ignored.
            logger.info("Session %s: agent process gone, starting a new one", self.id)
            self._inflight.clear()
            try:
                await previous.close()
            except Exception:
                logger.exception("Session %s: failed to close previous agent process", self.id)
        transport = self._ctx.transport_factory(self)
        await transport.start()
        self._transport = transport
        self.framer = LineFramer()
        self._reader = asyncio.create_task(self._read_loop(transport, self.framer))

    async def _read_loop(self, transport: AgentTransport, framer: LineFramer) -> None:
        try:
            async for record in iter_records(transport.read_chunks(), framer):
                if self._transport is not transport:
                    logger.debug("Session %s: ignoring output of a replaced agent process", self.id)
                    continue
                await self.handle_record(record)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Session %s: agent read loop crashed", self.id)
        if self._transport is transport:
            self._transport = None
            self._inflight.clear()
            if not self.turn.is_idle:
                await self._fail_turn(PROCESS_EXITED_MESSAGE)

    async def _abort_write(self, generation: int, error: Exception) -> None:
        logger.error("Session %s: failed to write to agent: %s", self.id, error)
        if generation in self._inflight:
            self._inflight.remove(generation)
        self.turn.fail(str(error))
        await self._publish("error", {"error": str(error) or type(error).__name__})
        await self._status_changed()

    # --- bookkeeping ---

    def _store_message(
        self,
        *,
        role: str,
        content: str | None = None,
        tool_name: str | None = None,
        tool_input: Any = None,
        interrupted: bool = False,
    ) -> dict[str, Any]:
        message = {
            "id": _msg_id("tool" if role == "tool" else "msg"),
            "role": role,
            "content": content,
            "tool_name": tool_name,
            "input": tool_input,
            "output": None,
            "interrupted": interrupted,
            "timestamp": _now(),
        }
        self.messages.append(message)
        if self.db_conversation_id is not None:
            try:
                storage.insert_agent_message(
                    self._ctx.db,
                    self.db_conversation_id,
                    msg_id=message["id"],
                    role=role,
                    content=content,
                    tool_name=tool_name,
                    tool_input=tool_input,
                    interrupted=interrupted,
                    timestamp=message["timestamp"],
                )
            except sqlite3.Error:
                logger.exception("Session %s: failed to store message", self.id)
        return message

    def _persist(self, **fields: Any) -> None:
        try:
            storage.update_agent_conversation(self._ctx.db, self.id, **fields)
        except sqlite3.Error:
            logger.exception("Session %s: failed to update conversation row", self.id)

    async def _status_changed(self, **extra: Any) -> None:
        status = self.turn.state.value
        self._persist(status=status)
        await self._publish("statusChange", {"status": status, **extra})

    async def _publish(self, name: str, data: dict[str, Any]) -> None:
        if self._ctx.event_bus:
            await self._ctx.event_bus.publish_session_event(self.id, name, data)


class AgentSessionManager:
    """Owns every live AgentSession and the persistent conversation records."""

    def __init__(
        self,
        config: AppConfig,
        db: ThreadSafeConnection,
        event_bus: EventBus | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        self.config = config
        self.db = db
        self.event_bus = event_bus
        self.coordinator = QueueCoordinator(db, event_bus)
        self.context = SessionContext(
            config=config,
            db=db,
            coordinator=self.coordinator,
            transport_factory=transport_factory or self._default_transport,
            event_bus=event_bus,
        )
        self.sessions: dict[str, AgentSession] = {}

    def _default_transport(self, session: AgentSession) -> AgentTransport:
        return AgentProcess(self.config.agent, cwd=session.cwd, resume=session.sdk_session_id)

    def startup(self) -> None:
        closed = storage.close_all_active_agent_conversations(self.db)
        if closed:
            logger.info("Marked %d conversation(s) left open by a previous run as closed", closed)

    # --- lifecycle ---

    def _assign_cwd(self, session: AgentSession) -> str:
        session_dir = Path(self.config.agent.output_base_dir) / f"conv-{session.id[:8]}"
        try:
            session_dir.mkdir(parents=True, exist_ok=True)
        except OSError:
            logger.exception("Failed to create output dir %s", session_dir)
        return str(session_dir)

    def create(self, *, type: AgentType | str = AgentType.CHAT, title: str = "", cwd: str | None = None) -> dict[str, Any]:
        session = AgentSession(self.context, type=type, title=title, cwd=cwd)
        if not session.cwd:
            session.cwd = self._assign_cwd(session)
        record = storage.create_agent_conversation(
            self.db,
            session.id,
            type=session.type.value,
            title=session.title,
            cwd=session.cwd,
            cwd_auto=session.cwd_auto,
        )
        session.db_conversation_id = record["id"]
        session.created_at = record["created_at"]
        self.sessions[session.id] = session
        logger.info("Created agent session %s (type=%s, cwd=%s)", session.id, session.type.value, session.cwd)
        return session.to_dict()

    async def reopen(self, session_id: str) -> dict[str, Any] | None:
        existing = self.sessions.get(session_id)
        if existing:
            return existing.to_dict()

        row = storage.get_agent_conversation(self.db, session_id)
        if not row:
            return None

        session = AgentSession(self.context, id=row["session_id"], type=row["type"], title=row["title"], cwd=row["cwd"])
        session.cwd_auto = row["cwd_auto"]
        session.sdk_session_id = row["sdk_session_id"]
        session.db_conversation_id = row["id"]
        session.message_count = row["message_count"] or 0
        session.turn.turn_count = row["turn_count"] or 0
        session.turn.total_cost_usd = row["total_cost_usd"] or 0.0
        session.created_at = row["created_at"]
        session.messages = self._load_messages(row["id"])
        self.sessions[session.id] = session

        storage.update_agent_conversation(self.db, session_id, status=TurnState.IDLE.value)
        await self.coordinator.refresh_snapshot(session_id)
        logger.info("Reopened agent session %s (sdk session: %s)", session_id, session.sdk_session_id or "none")
        return session.to_dict()

    async def require(self, session_id: str) -> AgentSession:
        session = self.sessions.get(session_id)
        if session is None:
            await self.reopen(session_id)
            session = self.sessions.get(session_id)
        if session is None:
            raise SessionNotFoundError(session_id)
        return session

    async def send_message(self, session_id: str, content: str) -> dict[str, Any]:
        """Send now if the session is idle, otherwise queue the message behind the running turn."""
        if not content or not content.strip():
            raise ValueError("Message must not be empty")
        session = await self.require(session_id)
        try:
            generation = await session.send(content)
        except SessionBusyError:
            item = await self.coordinator.enqueue(session_id, content)
            return {"queued": True, "item": item}
        return {"queued": False, "generation": generation}

    async def cancel(self, session_id: str) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        return await session.cancel() is not None

    async def compact(self, session_id: str) -> int:
        session = await self.require(session_id)
        return await session.compact()

    async def dispatch_next(self, session_id: str) -> dict[str, Any] | None:
        session = await self.require(session_id)
        return await self.coordinator.dispatch_next(session)

    async def close(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.close()
        try:
            storage.close_agent_conversation(self.db, session_id)
        except sqlite3.Error:
            logger.exception("Failed to mark session %s closed", session_id)
        self.coordinator.forget(session_id)
        logger.info("Closed agent session %s", session_id)
        return True

    async def close_all(self) -> None:
        for session_id in list(self.sessions):
            await self.close(session_id)

    async def delete_conversation(self, session_id: str) -> bool:
        session = self.sessions.pop(session_id, None)
        if session is not None:
            await session.close()
        self.coordinator.forget(session_id)
        deleted = storage.delete_agent_conversation(self.db, session_id)
        logger.info("Deleted agent session %s", session_id)
        return deleted or session is not None

    # --- queries ---

    def get(self, session_id: str) -> dict[str, Any] | None:
        session = self.sessions.get(session_id)
        return session.to_dict() if session else None

    def describe(self, session_id: str) -> dict[str, Any] | None:
        """Live session info, or the stored record of a session that is not loaded."""
        info = self.get(session_id)
        if info is not None:
            return info
        row = storage.get_agent_conversation(self.db, session_id)
        return self._row_info(row) if row else None

    def _row_info(self, row: dict[str, Any]) -> dict[str, Any]:
        return {
            "id": row["session_id"],
            "type": row["type"],
            "status": row["status"],
            "sdk_session_id": row["sdk_session_id"],
            "title": row["title"],
            "cwd": row["cwd"],
            "cwd_auto": row["cwd_auto"],
            "created_at": row["created_at"],
            "message_count": row["message_count"],
            "turn_count": row["turn_count"],
            "total_cost_usd": row["total_cost_usd"],
            "interrupted": False,
            # Rows that are not loaded answer from the cached snapshot.
            "queue_length": len(storage.load_queue_snapshot(self.db, row["session_id"])),
        }

    def list_sessions(self) -> list[dict[str, Any]]:
        """Live sessions plus historical rows, deduplicated, newest first."""
        result = [s.to_dict() for s in self.sessions.values()]
        active = set(self.sessions)
        try:
            rows = storage.list_agent_conversations(self.db)
        except sqlite3.Error:
            logger.exception("Failed to load agent conversations")
            rows = []
        for row in rows:
            if row["session_id"] not in active:
                result.append(self._row_info(row))
        result.sort(key=lambda s: s["created_at"] or "", reverse=True)
        return result

    async def rename(self, session_id: str, title: str) -> dict[str, Any] | None:
        changed = storage.update_agent_conversation_title(self.db, session_id, title)
        session = self.sessions.get(session_id)
        if session is not None:
            session.title = title
        elif not changed:
            return None
        if self.event_bus:
            await self.event_bus.publish_session_event(session_id, "renamed", {"title": title})
        logger.info("Renamed agent session %s to %r", session_id, title)
        return self.describe(session_id)

    def get_messages(self, session_id: str) -> list[dict[str, Any]]:
        session = self.sessions.get(session_id)
        if session is not None:
            return list(session.messages)
        row = storage.get_agent_conversation(self.db, session_id)
        if not row:
            return []
        return self._load_messages(row["id"])

    def get_history(self, session_id: str) -> list[dict[str, Any]]:
        session = self.sessions.get(session_id)
        return list(session.dispatcher.history) if session else []

    def _load_messages(self, conversation_id: int) -> list[dict[str, Any]]:
        return [
            {
                "id": m["msg_id"],
                "role": m["role"],
                "content": m["content"],
                "tool_name": m["tool_name"],
                "input": m["input"],
                "output": m["output"],
                "interrupted": m["interrupted"],
                "timestamp": m["timestamp"],
            }
            for m in storage.list_agent_messages(self.db, conversation_id)
        ]

    def get_output_dir(self, session_id: str) -> str | None:
        session = self.sessions.get(session_id)
        return session.cwd if session else None

    def list_output_files(self, session_id: str) -> list[dict[str, Any]]:
        cwd = self.get_output_dir(session_id)
        if not cwd:
            return []
        base = Path(cwd)
        if not base.is_dir():
            return []
        return [
            {"name": entry.name, "is_directory": entry.is_dir(), "path": str(entry)}
            for entry in sorted(base.iterdir(), key=lambda p: p.name)
        ]
