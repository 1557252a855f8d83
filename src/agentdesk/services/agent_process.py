"""Subprocess transport for the external agent CLI.

Outbound: one JSON object per line on stdin, ``{"type": "message", "content": ...}``.
Inbound: raw stdout chunks, framed into records by the session's LineFramer.
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import shutil
import signal
from abc import ABC, abstractmethod
from typing import Any, AsyncIterator

from ..config import AgentConfig

logger = logging.getLogger(__name__)

READ_CHUNK_SIZE = 64 * 1024
CLOSE_TIMEOUT_SECONDS = 5.0


def build_message(content: str) -> dict[str, Any]:
    return {"type": "message", "content": content}


def encode_line(payload: dict[str, Any]) -> bytes:
    return (json.dumps(payload, ensure_ascii=False) + "\n").encode("utf-8")


def _validate_command(command: str) -> str:
    """Validate the agent command exists on PATH."""
    resolved = shutil.which(command)
    if resolved is None:
        raise ValueError(f"Agent command not found on PATH: {command}")
    return resolved


def _build_env(extra: dict[str, str]) -> dict[str, str]:
    env = {**os.environ, **extra}
    return {k: v for k, v in env.items() if v != ""}


class AgentTransport(ABC):
    """Byte-stream boundary to one agent. Writes are fire-and-forget."""

    @property
    @abstractmethod
    def running(self) -> bool:
        """True while the agent can accept writes."""
        pass

    @abstractmethod
    async def start(self) -> None:
        pass

    @abstractmethod
    async def send(self, payload: dict[str, Any]) -> None:
        """Write one message. Raises ConnectionError if the agent is gone."""
        pass

    @abstractmethod
    def read_chunks(self) -> AsyncIterator[bytes]:
        """Raw output chunks until the agent closes its output."""
        pass

    @abstractmethod
    async def interrupt(self) -> None:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class AgentProcess(AgentTransport):
    def __init__(self, config: AgentConfig, cwd: str | None = None, resume: str | None = None) -> None:
        self._config = config
        self._cwd = cwd
        self._resume = resume
        self._proc: asyncio.subprocess.Process | None = None
        self._stderr_task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._proc is not None and self._proc.returncode is None

    @property
    def pid(self) -> int | None:
        return self._proc.pid if self._proc else None

    async def start(self) -> None:
        if self.running:
            return
        executable = _validate_command(self._config.command)
        args = list(self._config.args)
        if self._resume:
            args += ["--resume", self._resume]
        self._proc = await asyncio.create_subprocess_exec(
            executable,
            *args,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=self._cwd,
            env=_build_env(self._config.env),
        )
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.info("Started agent process pid=%s cwd=%s", self._proc.pid, self._cwd)

    async def send(self, payload: dict[str, Any]) -> None:
        if not self.running or self._proc is None or self._proc.stdin is None:
            raise ConnectionError("Agent process is not running")
        self._proc.stdin.write(encode_line(payload))
        await self._proc.stdin.drain()

    async def read_chunks(self) -> AsyncIterator[bytes]:
        if self._proc is None or self._proc.stdout is None:
            return
        while True:
            chunk = await self._proc.stdout.read(READ_CHUNK_SIZE)
            if not chunk:
                return
            yield chunk

    async def interrupt(self) -> None:
        """Best-effort: ask the agent to stop the current turn."""
        if not self.running or self._proc is None:
            return
        try:
            self._proc.send_signal(signal.SIGINT)
        except (ProcessLookupError, ValueError, OSError):
            logger.debug("Could not signal agent process pid=%s", self._proc.pid, exc_info=True)

    async def close(self) -> None:
        proc = self._proc
        if proc is None:
            return
        if proc.stdin and not proc.stdin.is_closing():
            proc.stdin.close()
        if proc.returncode is None:
            proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), timeout=CLOSE_TIMEOUT_SECONDS)
            except asyncio.TimeoutError:
                logger.warning("Agent process pid=%s ignored terminate, killing", proc.pid)
                proc.kill()
                await proc.wait()
        if self._stderr_task:
            self._stderr_task.cancel()
            try:
                await self._stderr_task
            except asyncio.CancelledError:
                pass
            self._stderr_task = None
        logger.info("Agent process pid=%s exited with %s", proc.pid, proc.returncode)

    async def _drain_stderr(self) -> None:
        if self._proc is None or self._proc.stderr is None:
            return
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                return
            logger.debug("agent stderr: %s", line.decode("utf-8", errors="replace").rstrip())
