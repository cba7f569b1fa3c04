import asyncio
import logging
import os
from datetime import datetime, timezone
from typing import Any

from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse

from .chat import validate_chat_request
from .errors import ChatValidationError, RelayError
from .metrics import MetricsLogger
from .oracle import OracleClient
from .orchestrator import ChatPipeline, EventChannel
from .persistence import (
    PersistenceGateway,
    conversation_to_wire,
    message_to_wire,
    sub_conversation_to_wire,
)
from .providers import ProviderRegistry
from .router import load_config
from .store import MemoryRecordStore, RecordStore, RestRecordStore

logger = logging.getLogger(__name__)

app = FastAPI(title="llm-relay")

_ROOT = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..")
CONFIG_DIR = os.environ.get("RELAY_CONFIG_DIR", os.path.join(_ROOT, "config"))
METRICS_DIR = os.environ.get("RELAY_METRICS_DIR", os.path.join(_ROOT, "metrics"))
PROM_CONTENT_TYPE = "text/plain; version=0.0.4; charset=utf-8"
SSE_HEADERS = {"Cache-Control": "no-cache", "Connection": "keep-alive"}

MAX_CONVERSATION_PAGE = 100
MAX_SUB_MESSAGE_PAGE = 200


def _parse_env_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


ALLOWED_ORIGINS = _parse_env_list(os.environ.get("RELAY_CORS_ALLOW_ORIGINS", ""))


def _build_store() -> RecordStore:
    url = os.environ.get("RELAY_STORE_URL", "").strip()
    key = os.environ.get("RELAY_STORE_KEY", "").strip()
    if url and key:
        return RestRecordStore(url, key)
    if url:
        logger.warning("RELAY_STORE_URL is set without RELAY_STORE_KEY; using the in-memory store")
    return MemoryRecordStore()


cfg = load_config(CONFIG_DIR)
registry = ProviderRegistry(cfg.vendors)
oracle = OracleClient(cfg.router.oracle.base_url, cfg.router.oracle.timeout_s)
store = _build_store()
gateway = PersistenceGateway(
    store,
    history_limit=cfg.router.defaults.history_limit,
    title_length=cfg.router.defaults.title_length,
)
metrics = MetricsLogger(METRICS_DIR)

_background_tasks: set[asyncio.Task[Any]] = set()

if ALLOWED_ORIGINS:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=ALLOWED_ORIGINS,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["Content-Type"],
    )


def _make_error_body(exc: RelayError) -> dict[str, Any]:
    return {"error": exc.to_payload()}


@app.exception_handler(RelayError)
async def _relay_error_handler(req: Request, exc: RelayError) -> JSONResponse:
    return JSONResponse(_make_error_body(exc), status_code=exc.status_code)


def _clamp_page(limit: int, offset: int, maximum: int) -> tuple[int, int]:
    return max(1, min(limit, maximum)), max(offset, 0)


async def _json_body(req: Request) -> Any:
    try:
        return await req.json()
    except ValueError:
        return None


@app.post("/api/chat")
async def chat(req: Request):
    body = await _json_body(req)
    try:
        chat_req = validate_chat_request(body)
    except ChatValidationError as exc:
        return JSONResponse(_make_error_body(exc), status_code=exc.status_code)

    channel = EventChannel()
    pipeline = ChatPipeline(
        config=cfg.router,
        registry=registry,
        oracle=oracle,
        gateway=gateway,
        metrics=metrics,
    )
    # The pipeline outlives a disconnected client so that finalize still runs.
    task = asyncio.create_task(pipeline.run(chat_req, channel))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)

    async def event_source() -> Any:
        try:
            async for frame in channel.frames():
                yield frame
        finally:
            if not channel.closed:
                logger.info("client_detached req_id=%s", pipeline.req_id)
            channel.detach()

    return StreamingResponse(event_source(), media_type="text/event-stream", headers=SSE_HEADERS)


@app.get("/api/conversations")
async def list_conversations(limit: int = 20, offset: int = 0) -> dict[str, Any]:
    limit, offset = _clamp_page(limit, offset, MAX_CONVERSATION_PAGE)
    rows, total = await gateway.list_conversations(limit, offset)
    return {"conversations": [conversation_to_wire(row) for row in rows], "total": total}


@app.post("/api/conversations", status_code=201)
async def create_conversation(req: Request) -> dict[str, Any]:
    body = await _json_body(req)
    title = body.get("title") if isinstance(body, dict) else None
    row = await gateway.create_conversation(title if isinstance(title, str) else None)
    return conversation_to_wire(row)


@app.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str) -> dict[str, Any]:
    row = await gateway.get_conversation(conversation_id)
    return conversation_to_wire(row)


@app.post("/api/conversations/{conversation_id}/messages/{message_id}/sub-conversations", status_code=201)
async def create_sub_conversation(conversation_id: str, message_id: str, req: Request) -> dict[str, Any]:
    body = await _json_body(req)
    raw = body.get("highlightedText") if isinstance(body, dict) else None
    highlighted = raw.strip() if isinstance(raw, str) else ""
    if not highlighted:
        raise ChatValidationError("highlightedText is required and must be a non-empty string")
    row = await gateway.create_sub_conversation(conversation_id, message_id, highlighted)
    return sub_conversation_to_wire(row)


@app.get("/api/conversations/{conversation_id}/messages/{message_id}/sub-conversations")
async def list_sub_conversations(conversation_id: str, message_id: str) -> dict[str, Any]:
    rows = await gateway.list_sub_conversations(message_id)
    return {"subConversations": [sub_conversation_to_wire(row) for row in rows]}


@app.get("/api/sub-conversations/{sub_id}/messages")
async def list_sub_conversation_messages(sub_id: str, limit: int = 50, offset: int = 0) -> dict[str, Any]:
    limit, offset = _clamp_page(limit, offset, MAX_SUB_MESSAGE_PAGE)
    sub = await gateway.get_sub_conversation(sub_id)
    rows = await gateway.list_sub_conversation_messages(sub_id, limit, offset)
    summary = sub_conversation_to_wire(sub)
    summary.pop("createdAt", None)
    summary.pop("updatedAt", None)
    return {"subConversation": summary, "messages": [message_to_wire(row) for row in rows]}


@app.get("/api/health")
async def health() -> JSONResponse:
    store_ok, oracle_ok = await asyncio.gather(store.ping(), oracle.ping())
    all_ok = store_ok and oracle_ok
    payload = {
        "status": "ok" if all_ok else "degraded",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "services": {"store": store_ok, "oracle": oracle_ok},
        "vendors": sorted(registry.usable_vendors()),
    }
    return JSONResponse(payload, status_code=200 if all_ok else 503)


@app.get("/metrics")
async def metrics_endpoint() -> Response:
    return Response(metrics.render_prometheus(), media_type=PROM_CONTENT_TYPE)
