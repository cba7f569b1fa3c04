from __future__ import annotations

import importlib
import json
import sys
from pathlib import Path
from types import ModuleType
from typing import Any
from unittest.mock import AsyncMock

import pytest
from fastapi.testclient import TestClient

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from tests.test_orchestrator import FakeAdapter, FakeOracle, FakeRegistry, ok_events  # noqa: E402
from src.relay.types import ErrorEvent  # noqa: E402


def load_app(config_dir: Path, metrics_dir: Path, monkeypatch: pytest.MonkeyPatch) -> ModuleType:
    module_name = "src.relay.server"
    sys.modules.pop(module_name, None)
    monkeypatch.setenv("RELAY_CONFIG_DIR", str(config_dir))
    monkeypatch.setenv("RELAY_METRICS_DIR", str(metrics_dir))
    importlib.invalidate_caches()
    return importlib.import_module(module_name)


def parse_sse(payload: str) -> list[tuple[str, Any]]:
    events: list[tuple[str, Any]] = []
    for chunk in filter(None, payload.split("\n\n")):
        assert chunk.startswith("data: ")
        frame = json.loads(chunk[len("data: "):])
        events.append((frame["type"], frame["data"]))
    return events


@pytest.fixture(name="server")
def fixture_server(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> ModuleType:
    return load_app(PROJECT_ROOT / "config", tmp_path / "metrics", monkeypatch)


def install_fakes(server: ModuleType, monkeypatch: pytest.MonkeyPatch, adapters: dict[str, Any]) -> FakeOracle:
    oracle = FakeOracle()
    monkeypatch.setattr(server, "registry", FakeRegistry(adapters))
    monkeypatch.setattr(server, "oracle", oracle)
    return oracle


def post_chat(client: TestClient, body: dict[str, Any]) -> list[tuple[str, Any]]:
    with client.stream("POST", "/api/chat", json=body) as response:
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        return parse_sse("".join(response.iter_text()))


def test_chat_streams_routing_deltas_and_done(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fakes(server, monkeypatch, {"openai": FakeAdapter(ok_events("Hi", " there")), "anthropic": FakeAdapter([])})
    client = TestClient(server.app)

    events = post_chat(client, {"message": "Hello"})

    assert [kind for kind, _ in events] == ["routing", "delta", "delta", "done"]
    assert "".join(data["content"] for kind, data in events if kind == "delta") == "Hi there"
    done = events[-1][1]
    assert done["usage"]["costUsd"] == pytest.approx(0.000036)

    listing = client.get("/api/conversations").json()
    assert listing["total"] == 1
    assert listing["conversations"][0]["title"] == "Hello"
    conversation = client.get(f"/api/conversations/{done['conversationId']}").json()
    assert conversation["id"] == done["conversationId"]


def test_chat_fallback_surfaces_retry_notice(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fakes(
        server,
        monkeypatch,
        {"openai": FakeAdapter([ErrorEvent("down")]), "anthropic": FakeAdapter(ok_events("backup"))},
    )
    client = TestClient(server.app)

    events = post_chat(client, {"message": "Hello"})

    assert [kind for kind, _ in events] == ["routing", "error", "delta", "done"]
    assert events[1][1]["code"] == "PROVIDER_RETRY"


def test_chat_total_failure_ends_stream_with_error(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fakes(
        server,
        monkeypatch,
        {"openai": FakeAdapter([ErrorEvent("a")]), "anthropic": FakeAdapter([ErrorEvent("b")])},
    )
    client = TestClient(server.app)

    events = post_chat(client, {"message": "Hello"})

    assert events[-1] == (
        "error",
        {"message": "Both primary and backup models failed. Please try again.", "code": "ALL_PROVIDERS_FAILED"},
    )
    assert all(kind != "done" for kind, _ in events)


def test_chat_validation_errors_are_plain_json(server: ModuleType) -> None:
    client = TestClient(server.app)

    missing = client.post("/api/chat", json={"conversationId": "c-1"})
    assert missing.status_code == 400
    assert missing.json() == {"error": {"message": "message: Field required", "code": "VALIDATION_ERROR"}}

    garbage = client.post("/api/chat", content=b"{not json", headers={"Content-Type": "application/json"})
    assert garbage.status_code == 400
    assert garbage.json()["error"]["message"] == "Request body is required"


def test_create_and_fetch_conversation(server: ModuleType) -> None:
    client = TestClient(server.app)

    created = client.post("/api/conversations", json={"title": "Planning"})
    assert created.status_code == 201
    untitled = client.post("/api/conversations", json={})
    assert untitled.json()["title"] == "New conversation"

    fetched = client.get(f"/api/conversations/{created.json()['id']}")
    assert fetched.status_code == 200
    assert fetched.json()["title"] == "Planning"

    page = client.get("/api/conversations", params={"limit": 500, "offset": -3}).json()
    assert page["total"] == 2
    assert [c["title"] for c in page["conversations"]] == ["New conversation", "Planning"]


def test_unknown_conversation_is_404(server: ModuleType) -> None:
    response = TestClient(server.app).get("/api/conversations/missing")
    assert response.status_code == 404
    assert response.json() == {"error": {"message": "Conversation not found: missing", "code": "NOT_FOUND"}}


def test_sub_conversation_flow(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    adapter = FakeAdapter(ok_events("reply"))
    install_fakes(server, monkeypatch, {"openai": adapter, "anthropic": FakeAdapter([])})
    client = TestClient(server.app)
    done = post_chat(client, {"message": "Explain TCP"})[-1][1]
    conversation_id, message_id = done["conversationId"], done["messageId"]
    base = f"/api/conversations/{conversation_id}/messages/{message_id}/sub-conversations"

    created = client.post(base, json={"highlightedText": "  three-way handshake  "})
    assert created.status_code == 201
    sub = created.json()
    assert sub["highlightedText"] == "three-way handshake"
    assert sub["parentMessageId"] == message_id

    listed = client.get(base).json()
    assert [s["id"] for s in listed["subConversations"]] == [sub["id"]]

    events = post_chat(client, {"message": "Why three?", "subConversationId": sub["id"]})
    assert events[0][1]["subConversationId"] == sub["id"]
    assert "three-way handshake" in adapter.requests[-1].messages[0].content

    thread = client.get(f"/api/sub-conversations/{sub['id']}/messages").json()
    assert thread["subConversation"] == {
        "id": sub["id"],
        "conversationId": conversation_id,
        "parentMessageId": message_id,
        "highlightedText": "three-way handshake",
    }
    assert [(m["role"], m["content"]) for m in thread["messages"]] == [("user", "Why three?"), ("assistant", "reply")]
    assert thread["messages"][1]["model"]["id"] == "gpt-4.1"


def test_sub_conversation_validation(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    client = TestClient(server.app)
    conversation_id = client.post("/api/conversations", json={}).json()["id"]
    base = f"/api/conversations/{conversation_id}/messages/nope/sub-conversations"

    blank = client.post(base, json={"highlightedText": "   "})
    assert blank.status_code == 400
    assert blank.json()["error"]["code"] == "VALIDATION_ERROR"

    orphan = client.post(base, json={"highlightedText": "text"})
    assert orphan.status_code == 404
    assert orphan.json()["error"]["message"] == "Parent message not found in conversation: nope"

    assert client.get("/api/sub-conversations/unknown/messages").status_code == 404


def test_health_reports_dependencies(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setattr(server.oracle, "ping", AsyncMock(return_value=True))
    client = TestClient(server.app)

    healthy = client.get("/api/health")
    assert healthy.status_code == 200
    body = healthy.json()
    assert body["status"] == "ok"
    assert body["services"] == {"store": True, "oracle": True}
    assert body["vendors"] == ["openai"]

    monkeypatch.setattr(server.oracle, "ping", AsyncMock(return_value=False))
    degraded = client.get("/api/health")
    assert degraded.status_code == 503
    assert degraded.json()["status"] == "degraded"


def test_metrics_endpoint_exposes_attempts(server: ModuleType, monkeypatch: pytest.MonkeyPatch) -> None:
    install_fakes(server, monkeypatch, {"openai": FakeAdapter(ok_events("Hi")), "anthropic": FakeAdapter([])})
    client = TestClient(server.app)
    post_chat(client, {"message": "Hello"})

    response = client.get("/metrics")
    assert response.status_code == 200
    assert response.headers["content-type"].startswith("text/plain")
    assert 'relay_attempts_total{vendor="openai",ok="true"} 1' in response.text
