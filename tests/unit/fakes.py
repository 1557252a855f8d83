"""In-memory stand-ins for the agent subprocess, shared by the session tests."""

from __future__ import annotations

import asyncio
from typing import Any, AsyncIterator, Callable

from agentdesk.services.agent_process import AgentTransport, encode_line


class FakeTransport(AgentTransport):
    """In-memory agent: records what was sent and streams whatever the test emits."""

    def __init__(self, resume: str | None = None) -> None:
        self.resume = resume
        self.sent: list[dict[str, Any]] = []
        self.interrupts = 0
        self.fail_send = False
        self.exit_on_interrupt = False
        self._running = False
        self._chunks: asyncio.Queue[bytes | None] | None = None

    @property
    def running(self) -> bool:
        return self._running

    @property
    def contents(self) -> list[str]:
        return [p["content"] for p in self.sent]

    async def start(self) -> None:
        self._running = True
        self._chunks = asyncio.Queue()

    async def send(self, payload: dict[str, Any]) -> None:
        if self.fail_send:
            raise ConnectionError("broken pipe")
        self.sent.append(payload)

    async def read_chunks(self) -> AsyncIterator[bytes]:
        assert self._chunks is not None
        while True:
            chunk = await self._chunks.get()
            if chunk is None:
                return
            yield chunk

    async def interrupt(self) -> None:
        self.interrupts += 1
        if self.exit_on_interrupt:
            self.die()

    async def close(self) -> None:
        self._running = False
        self.eof()

    async def exit(self) -> None:
        """Simulate the agent process dying on its own."""
        await self.close()

    def emit(self, data: bytes | dict[str, Any]) -> None:
        """Queue raw stdout bytes, or one record as a JSON line."""
        assert self._chunks is not None
        self._chunks.put_nowait(encode_line(data) if isinstance(data, dict) else data)

    def eof(self) -> None:
        if self._chunks is not None:
            self._chunks.put_nowait(None)

    def die(self) -> None:
        """The process has exited but its stdout has not been drained yet."""
        self._running = False


class FakeTransportFactory:
    def __init__(self) -> None:
        self.created: list[FakeTransport] = []
        self.fail_next_send = False
        self.exit_on_interrupt = False

    def __call__(self, session: Any) -> FakeTransport:
        transport = FakeTransport(resume=session.sdk_session_id)
        transport.fail_send = self.fail_next_send
        transport.exit_on_interrupt = self.exit_on_interrupt
        self.fail_next_send = False
        self.created.append(transport)
        return transport

    @property
    def last(self) -> FakeTransport:
        return self.created[-1]


async def wait_for(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    """Let background readers run until ``predicate`` holds."""

    async def _poll() -> None:
        while not predicate():
            await asyncio.sleep(0)

    await asyncio.wait_for(_poll(), timeout)


def text_delta(text: str) -> dict[str, Any]:
    return {
        "type": "stream_event",
        "event": {"type": "content_block_delta", "index": 0, "delta": {"type": "text_delta", "text": text}},
    }


def result(cost: float = 0.01) -> dict[str, Any]:
    return {
        "type": "result",
        "subtype": "success",
        "is_error": False,
        "result": "done",
        "total_cost_usd": cost,
        "num_turns": 1,
        "duration_ms": 12,
    }
