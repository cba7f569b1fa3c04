from __future__ import annotations

import asyncio
import json
from decimal import Decimal
from urllib.parse import parse_qs

import httpx
import pytest

from src.relay.errors import NotFoundError, PersistenceError
from src.relay.persistence import (
    PersistenceGateway,
    make_title,
    message_to_wire,
    sub_conversation_context,
)
from src.relay.store import MemoryRecordStore, MonotonicClock, RestRecordStore
from src.relay.types import ApiCallLog, Citation, FinalizedExchange, ModelCandidate, OracleResponse, TokenUsage


def _gateway(**kwargs) -> PersistenceGateway:
    return PersistenceGateway(MemoryRecordStore(), **kwargs)


def _exchange(conversation_id: str, message_id: str = "m-assistant", **kwargs) -> FinalizedExchange:
    model = ModelCandidate(id="gpt-4.1", name="GPT-4.1", vendor="openai", score=0.9, reasoning_summary="fit")
    backup = ModelCandidate(id="claude-sonnet-4-6", name="Claude", vendor="anthropic", score=0.8)
    values = dict(
        message_id=message_id,
        conversation_id=conversation_id,
        sub_conversation_id=None,
        model=model,
        backups=(backup,),
        content="Assistant reply",
        usage=TokenUsage(input_tokens=10, output_tokens=2, reasoning_tokens=1, cached_tokens=3),
        cost_usd=Decimal("0.000036"),
        latency_ms=120,
        oracle_latency_ms=42,
    )
    values.update(kwargs)
    return FinalizedExchange(**values)


def test_make_title_truncates() -> None:
    assert make_title("short") == "short"
    assert make_title("x" * 60) == "x" * 50 + "..."
    assert make_title("abcdef", length=3) == "abc..."


def test_clock_is_strictly_increasing() -> None:
    clock = MonotonicClock()
    stamps = [clock.now() for _ in range(200)]
    assert stamps == sorted(stamps)
    assert len(set(stamps)) == len(stamps)


def test_conversation_lifecycle() -> None:
    gateway = _gateway(title_length=10)

    async def scenario():
        created_id = await gateway.get_or_create_conversation(None, "A rather long opening message")
        same_id = await gateway.get_or_create_conversation(created_id, "ignored")
        blank = await gateway.create_conversation("   ")
        rows, total = await gateway.list_conversations(limit=10)
        await gateway.touch_conversation(created_id)
        touched, _ = await gateway.list_conversations(limit=10)
        return created_id, same_id, blank, rows, total, touched

    created_id, same_id, blank, rows, total, touched = asyncio.run(scenario())

    assert same_id == created_id
    assert blank["title"] == "New conversation"
    assert total == 2
    assert rows[0]["id"] == blank["id"]
    assert touched[0]["id"] == created_id
    assert touched[0]["title"] == "A rather l..."


def test_unknown_conversation_is_not_found() -> None:
    gateway = _gateway()
    with pytest.raises(NotFoundError) as excinfo:
        asyncio.run(gateway.get_or_create_conversation("nope", "hi"))
    assert excinfo.value.message == "Conversation not found: nope"


def test_history_is_recent_window_oldest_first() -> None:
    gateway = _gateway(history_limit=3)

    async def scenario():
        conversation_id = await gateway.get_or_create_conversation(None, "start")
        for index in range(5):
            await gateway.save_user_message(conversation_id, f"message {index}")
        return await gateway.fetch_history(conversation_id)

    history = asyncio.run(scenario())
    assert [m.content for m in history] == ["message 2", "message 3", "message 4"]
    assert all(m.role == "user" for m in history)


def test_assistant_message_round_trip() -> None:
    gateway = _gateway()

    async def scenario():
        conversation_id = await gateway.get_or_create_conversation(None, "hi")
        exchange = _exchange(
            conversation_id,
            thinking="pondering",
            citations=[Citation("https://a.example", "A")],
            web_search_used=True,
            analysis={"intent": "research"},
        )
        await gateway.insert_assistant_message(exchange)
        row = await gateway.read_message(exchange.message_id)
        previous = await gateway.get_previous_model_id(conversation_id)
        return row, previous

    row, previous = asyncio.run(scenario())

    assert previous == "gpt-4.1"
    assert row["tokens_input"] == 10
    assert row["tokens_cached"] == 3
    assert row["cost_usd"] == pytest.approx(0.000036)
    assert row["model_used"]["backupModels"][0]["provider"] == "anthropic"
    assert row["model_used"]["webSearchUsed"] is True
    wire = message_to_wire(row)
    assert wire["model"]["id"] == "gpt-4.1"
    assert wire["alternateModels"][0]["id"] == "claude-sonnet-4-6"
    assert wire["thinkingContent"] == "pondering"
    assert wire["citations"] == [{"url": "https://a.example", "title": "A"}]
    assert wire["usage"] == {"inputTokens": 10, "outputTokens": 2, "reasoningTokens": 1, "cachedTokens": 3}
    assert wire["oracleLatencyMs"] == 42


def test_user_message_wire_has_no_assistant_fields() -> None:
    row = {"id": "u1", "conversation_id": "c1", "role": "user", "content": "hi", "created_at": "t"}
    assert set(message_to_wire(row)) == {"id", "conversationId", "subConversationId", "role", "content", "createdAt"}


def test_previous_model_absent_without_assistant_messages() -> None:
    gateway = _gateway()

    async def scenario():
        conversation_id = await gateway.get_or_create_conversation(None, "hi")
        await gateway.save_user_message(conversation_id, "hi")
        return await gateway.get_previous_model_id(conversation_id)

    assert asyncio.run(scenario()) is None


def test_sub_conversation_requires_parent_in_conversation() -> None:
    gateway = _gateway()

    async def scenario():
        first = await gateway.get_or_create_conversation(None, "one")
        second = await gateway.get_or_create_conversation(None, "two")
        parent_id = await gateway.save_user_message(first, "parent")
        sub = await gateway.create_sub_conversation(first, parent_id, "highlight")
        listed = await gateway.list_sub_conversations(parent_id)
        with pytest.raises(NotFoundError) as excinfo:
            await gateway.create_sub_conversation(second, parent_id, "highlight")
        return sub, listed, excinfo.value

    sub, listed, error = asyncio.run(scenario())
    assert [row["id"] for row in listed] == [sub["id"]]
    assert error.message.startswith("Parent message not found in conversation")


def test_sub_conversation_history_starts_with_context() -> None:
    gateway = _gateway()

    async def scenario():
        conversation_id = await gateway.get_or_create_conversation(None, "main")
        parent_id = await gateway.save_user_message(conversation_id, "main question")
        sub = await gateway.create_sub_conversation(conversation_id, parent_id, "the quoted bit")
        await gateway.save_user_message(conversation_id, "follow-up", sub["id"])
        sub_history = await gateway.fetch_history(conversation_id, sub["id"])
        main_history = await gateway.fetch_history(conversation_id)
        messages = await gateway.list_sub_conversation_messages(sub["id"])
        return sub_history, main_history, messages

    sub_history, main_history, messages = asyncio.run(scenario())
    assert sub_history[0].role == "system"
    assert sub_history[0].content == sub_conversation_context("the quoted bit")
    assert [m.content for m in sub_history[1:]] == ["follow-up"]
    assert [m.content for m in main_history] == ["main question"]
    assert [m["content"] for m in messages] == ["follow-up"]


def test_audit_logs_are_written() -> None:
    gateway = _gateway()
    oracle = OracleResponse.model_validate(
        {
            "primaryModel": {"id": "gpt-4.1", "provider": "openai", "score": 0.9},
            "backupModels": [{"id": "sonar", "provider": "perplexity"}],
            "analysis": {"intent": "research", "webSearchRequired": True},
            "timing": {"totalMs": 12},
        }
    )

    async def scenario():
        await gateway.save_routing_log("m1", oracle, 42, prompt="hello")
        await gateway.save_api_call_log("m1", ApiCallLog("openai", "gpt-4.1", 500, 80, "boom"), retry_count=0)
        await gateway.save_api_call_log("m1", ApiCallLog("perplexity", "sonar", 200, 90), retry_count=1)

    asyncio.run(scenario())
    (routing,) = gateway.store.tables["routing_logs"]
    assert routing["recommended_model"]["id"] == "gpt-4.1"
    assert routing["alternative_models"][0]["id"] == "sonar"
    assert routing["analysis"]["webSearchRequired"] is True
    assert routing["scoring_breakdown"] == {"totalMs": 12}
    calls = gateway.store.tables["api_call_logs"]
    assert [(c["provider"], c["status_code"], c["retry_count"], c["error_message"]) for c in calls] == [
        ("openai", 500, 0, "boom"),
        ("perplexity", 200, 1, None),
    ]


def test_memory_store_rejects_duplicates_and_unknown_tables() -> None:
    store = MemoryRecordStore()

    async def scenario():
        await store.insert("conversations", {"id": "c1"})
        with pytest.raises(PersistenceError):
            await store.insert("conversations", {"id": "c1"})
        with pytest.raises(PersistenceError):
            await store.insert("widgets", {"id": "w1"})
        return await store.count("conversations")

    assert asyncio.run(scenario()) == 1


def test_memory_store_returns_copies() -> None:
    store = MemoryRecordStore()

    async def scenario():
        inserted = await store.insert("conversations", {"id": "c1", "title": "t"})
        inserted["title"] = "mutated"
        return await store.select("conversations", filters={"id": "c1"})

    assert asyncio.run(scenario())[0]["title"] == "t"


# --- PostgREST store ------------------------------------------------------


def test_rest_store_select_encodes_filters(mock_http) -> None:
    seen = mock_http(lambda request: httpx.Response(200, json=[{"id": "m1"}]))
    store = RestRecordStore("https://db.example/", "service-key")

    rows = asyncio.run(
        store.select(
            "messages",
            filters={"conversation_id": "c1", "sub_conversation_id": None},
            order_by="created_at",
            descending=True,
            limit=20,
        )
    )

    assert rows == [{"id": "m1"}]
    request = seen[0]
    assert request.method == "GET"
    assert request.url.path == "/rest/v1/messages"
    params = parse_qs(request.url.query.decode())
    assert params["conversation_id"] == ["eq.c1"]
    assert params["sub_conversation_id"] == ["is.null"]
    assert params["order"] == ["created_at.desc"]
    assert params["limit"] == ["20"]
    assert request.headers["apikey"] == "service-key"
    assert request.headers["Authorization"] == "Bearer service-key"


def test_rest_store_insert_and_update(mock_http) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        return httpx.Response(201 if request.method == "POST" else 200, json=[dict(body, id="c1")])

    seen = mock_http(handler)
    store = RestRecordStore("https://db.example", "key")

    async def scenario():
        inserted = await store.insert("conversations", {"id": "c1", "title": "Hi"})
        updated = await store.update("conversations", "c1", {"title": "Renamed"})
        return inserted, updated

    inserted, updated = asyncio.run(scenario())
    assert inserted["title"] == "Hi"
    assert "created_at" in inserted
    assert updated["title"] == "Renamed"
    assert seen[0].headers["Prefer"] == "return=representation"
    assert seen[1].method == "PATCH"
    assert parse_qs(seen[1].url.query.decode())["id"] == ["eq.c1"]


def test_rest_store_count_reads_content_range(mock_http) -> None:
    mock_http(lambda request: httpx.Response(200, headers={"Content-Range": "0-9/57"}))
    store = RestRecordStore("https://db.example", "key")
    assert asyncio.run(store.count("conversations")) == 57
    assert asyncio.run(store.ping()) is True


def test_rest_store_errors_become_persistence_errors(mock_http) -> None:
    mock_http(lambda request: httpx.Response(409, json={"message": "duplicate key value"}))
    store = RestRecordStore("https://db.example", "key")
    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(store.insert("messages", {"id": "m1"}))
    assert excinfo.value.message == "POST messages failed (409): duplicate key value"
    assert asyncio.run(store.ping()) is False


def test_rest_store_transport_failure(mock_http) -> None:
    def refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("no route to host", request=request)

    mock_http(refuse)
    store = RestRecordStore("https://db.example", "key")
    with pytest.raises(PersistenceError) as excinfo:
        asyncio.run(store.select("conversations"))
    assert "no route to host" in excinfo.value.message
