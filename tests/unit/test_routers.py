from __future__ import annotations

import uuid
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Iterator

import pytest
from fakes import FakeTransportFactory
from fastapi import FastAPI
from fastapi.testclient import TestClient

from agentdesk.config import AppConfig
from agentdesk.db import ThreadSafeConnection
from agentdesk.routers import agents, events, queue
from agentdesk.services.agent_sessions import AgentSessionManager
from agentdesk.services.event_bus import EventBus


@asynccontextmanager
async def _lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    yield
    await app.state.session_manager.close_all()


@pytest.fixture()
def client(config: AppConfig, db: ThreadSafeConnection, factory: FakeTransportFactory) -> Iterator[TestClient]:
    app = FastAPI(lifespan=_lifespan)
    app.include_router(agents.router, prefix="/api")
    app.include_router(queue.router, prefix="/api")
    app.include_router(events.router, prefix="/api")
    app.state.event_bus = EventBus()
    app.state.session_manager = AgentSessionManager(
        config, db, event_bus=app.state.event_bus, transport_factory=factory
    )
    with TestClient(app) as c:
        yield c


def _create(client: TestClient, **body) -> str:
    resp = client.post("/api/agents", json=body)
    assert resp.status_code == 201
    return resp.json()["id"]


class TestAgentsRouter:
    def test_create_and_get(self, client: TestClient) -> None:
        sid = _create(client, title="Demo", type="lightapp")
        resp = client.get(f"/api/agents/{sid}")
        assert resp.status_code == 200
        body = resp.json()
        assert body["title"] == "Demo"
        assert body["type"] == "lightapp"
        assert body["status"] == "idle"
        assert body["queue_length"] == 0

    def test_invalid_and_unknown_ids(self, client: TestClient) -> None:
        assert client.get("/api/agents/not-a-uuid").status_code == 400
        assert client.get(f"/api/agents/{uuid.uuid4()}").status_code == 404
        assert client.post(f"/api/agents/{uuid.uuid4()}/messages", json={"message": "hi"}).status_code == 404
        assert client.get("/api/agents/nope/events").status_code == 400

    def test_create_rejects_unknown_type(self, client: TestClient) -> None:
        resp = client.post("/api/agents", json={"type": "robot"})
        assert resp.status_code == 422

    def test_rename(self, client: TestClient) -> None:
        sid = _create(client, title="old")
        resp = client.patch(f"/api/agents/{sid}", json={"title": "new"})
        assert resp.status_code == 200
        assert resp.json()["title"] == "new"
        assert client.patch(f"/api/agents/{sid}", json={"title": ""}).status_code == 422

    def test_send_then_busy_send_is_queued(self, client: TestClient, factory: FakeTransportFactory) -> None:
        sid = _create(client)
        first = client.post(f"/api/agents/{sid}/messages", json={"message": "first"})
        assert first.status_code == 202
        assert first.json()["queued"] is False
        second = client.post(f"/api/agents/{sid}/messages", json={"message": "second"})
        assert second.status_code == 202
        assert second.json()["queued"] is True
        assert factory.last.contents == ["first"]

        items = client.get(f"/api/agents/{sid}/queue").json()
        assert [i["content"] for i in items] == ["second"]
        assert client.get(f"/api/agents/{sid}").json()["status"] == "streaming"

        messages = client.get(f"/api/agents/{sid}/messages").json()
        assert [m["content"] for m in messages] == ["first"]

    def test_blank_message_rejected(self, client: TestClient) -> None:
        sid = _create(client)
        assert client.post(f"/api/agents/{sid}/messages", json={"message": ""}).status_code == 422
        assert client.post(f"/api/agents/{sid}/messages", json={"message": "   "}).status_code == 400

    def test_cancel_and_compact(self, client: TestClient, factory: FakeTransportFactory) -> None:
        sid = _create(client)
        assert client.post(f"/api/agents/{sid}/cancel").json() == {"status": "idle"}
        client.post(f"/api/agents/{sid}/messages", json={"message": "work"})
        assert client.post(f"/api/agents/{sid}/compact").status_code == 409
        assert client.post(f"/api/agents/{sid}/cancel").json() == {"status": "cancelled"}
        assert factory.last.interrupts == 1

        resp = client.post(f"/api/agents/{sid}/compact")
        assert resp.status_code == 202
        assert resp.json()["status"] == "compacting"

    def test_close_reopen_delete(self, client: TestClient) -> None:
        sid = _create(client)
        assert client.post(f"/api/agents/{sid}/close").json() == {"status": "closed"}
        assert client.get(f"/api/agents/{sid}").json()["status"] == "closed"
        assert client.post(f"/api/agents/{sid}/reopen").json()["status"] == "idle"
        assert client.delete(f"/api/agents/{sid}").status_code == 204
        assert client.get(f"/api/agents/{sid}").status_code == 404
        assert client.delete(f"/api/agents/{sid}").status_code == 404

    def test_list_and_files(self, client: TestClient) -> None:
        sid = _create(client)
        listed = client.get("/api/agents").json()
        assert [s["id"] for s in listed] == [sid]
        files = client.get(f"/api/agents/{sid}/files").json()
        assert files["dir"].endswith(f"conv-{sid[:8]}")
        assert files["files"] == []


class TestQueueRouter:
    def test_crud(self, client: TestClient) -> None:
        sid = _create(client)
        base = f"/api/agents/{sid}/queue"
        a = client.post(base, json={"content": "alpha"}).json()
        b = client.post(base, json={"content": "beta"}).json()
        assert client.get(f"{base}/count").json() == {"count": 2}

        assert client.patch(f"{base}/{a['id']}", json={"content": "ALPHA"}).json()["success"] is True
        assert client.patch(f"{base}/missing", json={"content": "x"}).json()["success"] is False

        assert client.post(f"{base}/swap", json={"id1": a["id"], "id2": b["id"]}).status_code == 200
        assert [i["content"] for i in client.get(base).json()] == ["beta", "ALPHA"]
        assert client.post(f"{base}/swap", json={"id1": a["id"], "id2": "missing"}).status_code == 404

        found = client.get(f"{base}/search", params={"keyword": "alp"}).json()
        assert [i["content"] for i in found] == ["ALPHA"]

        assert client.delete(f"{base}/{b['id']}").json() == {"success": True, "removed": 1}
        assert client.post(f"{base}/clear").json() == {"success": True, "cleared": 1}
        assert client.post(f"{base}/clear").json() == {"success": True, "cleared": 0}

    def test_blank_content_rejected(self, client: TestClient) -> None:
        sid = _create(client)
        assert client.post(f"/api/agents/{sid}/queue", json={"content": "  "}).status_code == 400

    def test_mark_executed(self, client: TestClient) -> None:
        sid = _create(client)
        item = client.post(f"/api/agents/{sid}/queue", json={"content": "done by hand"}).json()
        assert client.post(f"/api/agents/{sid}/queue/{item['id']}/executed").json() == {"success": True}
        assert client.get(f"/api/agents/{sid}/queue").json() == []

    def test_dispatch(self, client: TestClient, factory: FakeTransportFactory) -> None:
        sid = _create(client)
        base = f"/api/agents/{sid}/queue"
        assert client.post(f"{base}/dispatch").json() == {"dispatched": False, "item": None}
        client.post(base, json={"content": "go"})
        resp = client.post(f"{base}/dispatch").json()
        assert resp["dispatched"] is True
        assert resp["item"]["content"] == "go"
        assert factory.last.contents == ["go"]
        assert client.post(f"/api/agents/{uuid.uuid4()}/queue/dispatch").status_code == 404
