from __future__ import annotations

import json
import shutil

import pytest

from agentdesk.config import AgentConfig
from agentdesk.services.agent_process import AgentProcess, AgentTransport, _build_env, build_message, encode_line


def test_encode_line_is_one_json_object() -> None:
    line = encode_line(build_message("héllo\nworld"))
    assert line.endswith(b"\n")
    assert line.count(b"\n") == 1
    assert json.loads(line) == {"type": "message", "content": "héllo\nworld"}


def test_build_env_drops_empty_values(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("AGENTDESK_TEST_UNSET_ME", "x")
    env = _build_env({"AGENTDESK_TEST_UNSET_ME": "", "EXTRA": "1"})
    assert "AGENTDESK_TEST_UNSET_ME" not in env
    assert env["EXTRA"] == "1"


def test_transport_requires_every_operation() -> None:
    class WriteOnly(AgentTransport):
        async def send(self, payload):
            pass

    with pytest.raises(TypeError):
        AgentTransport()
    with pytest.raises(TypeError):
        WriteOnly()


@pytest.mark.asyncio
async def test_missing_command_rejected() -> None:
    proc = AgentProcess(AgentConfig(command="definitely-not-an-agent-binary", args=[]))
    with pytest.raises(ValueError, match="not found"):
        await proc.start()
    assert not proc.running


@pytest.mark.asyncio
async def test_send_before_start_raises() -> None:
    proc = AgentProcess(AgentConfig(command="cat", args=[]))
    with pytest.raises(ConnectionError):
        await proc.send(build_message("hi"))


@pytest.mark.asyncio
@pytest.mark.skipif(shutil.which("cat") is None, reason="needs cat")
async def test_round_trip_through_echo_process(tmp_path) -> None:
    proc = AgentProcess(AgentConfig(command="cat", args=[]), cwd=str(tmp_path))
    await proc.start()
    assert proc.running
    try:
        await proc.send(build_message("ping"))
        chunks = proc.read_chunks()
        data = b""
        while not data.endswith(b"\n"):
            data += await chunks.__anext__()
        await chunks.aclose()
        assert json.loads(data) == {"type": "message", "content": "ping"}
    finally:
        await proc.close()
    assert not proc.running
