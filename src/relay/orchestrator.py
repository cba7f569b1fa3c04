"""Chat pipeline and stream orchestration.

``ChatPipeline.run`` drives one inbound chat request end to end: conversation
bookkeeping, the oracle call, route resolution, the streamed generation with
at most one fallback, and the single finalize step. Everything after the
channel opens is reported through the channel; nothing is raised to the
caller.

Outward frames are ``data: {"type": ..., "data": ...}\\n\\n``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import replace
from typing import Any, AsyncIterator, List, Optional, Protocol, Sequence

from .chat import build_system_prompt, resolve_web_search, should_enable_thinking
from .errors import AdapterConstructionError, AllAttemptsFailed, ErrorCode, RelayError, StreamError, UnsupportedTask
from .metrics import MetricsLogger
from .oracle import OracleClient
from .persistence import PersistenceGateway
from .pricing import calculate_cost
from .providers import ProviderRegistry
from .router import RouterConfig, resolve_route
from .types import (
    ApiCallLog,
    AttemptResult,
    ChatRequest,
    CitationsEvent,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    FinalizedExchange,
    GenerationRequest,
    ModelCandidate,
    OracleResponse,
    RoutingDecision,
    StreamEvent,
    ThinkingEvent,
    ToolUseEvent,
    dedupe_citations,
)

logger = logging.getLogger(__name__)

_CLOSED = object()


def encode_frame(event_type: str, data: Any) -> bytes:
    body = json.dumps({"type": event_type, "data": data}, ensure_ascii=False)
    return f"data: {body}\n\n".encode("utf-8")


def event_to_wire(event: StreamEvent) -> tuple[str, dict[str, Any]]:
    if isinstance(event, DeltaEvent):
        return "delta", {"content": event.text}
    if isinstance(event, ThinkingEvent):
        return "thinking", {"content": event.text}
    if isinstance(event, CitationsEvent):
        return "citations", {"sources": [citation.to_wire() for citation in event.citations]}
    if isinstance(event, ToolUseEvent):
        return "tool_use", {"tool": event.tool, "status": event.status}
    raise ValueError(f"{event.type} events are not forwarded")


class EventSink(Protocol):
    async def send(self, event_type: str, data: Any) -> None: ...

    async def close(self) -> None: ...


class EventChannel:
    """In-memory outward stream between the pipeline task and the HTTP response.

    Sends never block. Once the reader detaches (client gone) or the channel
    is closed, further sends are dropped.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[Any] = asyncio.Queue()
        self._detached = False
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def detached(self) -> bool:
        return self._detached

    async def send(self, event_type: str, data: Any) -> None:
        if self._closed or self._detached:
            return
        self._queue.put_nowait(encode_frame(event_type, data))

    def detach(self) -> None:
        self._detached = True

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(_CLOSED)

    async def frames(self) -> AsyncIterator[bytes]:
        while True:
            item = await self._queue.get()
            if item is _CLOSED:
                return
            yield item


class StreamOrchestrator:
    """Runs the primary attempt and, on failure, exactly one usable backup."""

    def __init__(
        self,
        registry: ProviderRegistry,
        sink: EventSink,
        *,
        metrics: MetricsLogger | None = None,
        req_id: str = "",
    ):
        self.registry = registry
        self.sink = sink
        self.metrics = metrics
        self.req_id = req_id
        self.attempts: List[AttemptResult] = []
        self.call_logs: List[ApiCallLog] = []

    async def run(self, decision: RoutingDecision, template: GenerationRequest) -> AttemptResult:
        primary = await self._attempt(decision.primary, template)
        if primary.success:
            return primary
        backup = self._first_usable_backup(decision.backups)
        if backup is None:
            logger.warning(
                "fallback_unavailable req_id=%s vendor=%s model=%s",
                self.req_id,
                decision.primary.vendor,
                decision.primary.id,
            )
            raise StreamError("Provider failed and no backup model is available.", vendor=decision.primary.vendor)
        logger.warning(
            "fallback req_id=%s from_vendor=%s from_model=%s to_vendor=%s to_model=%s error=%s",
            self.req_id,
            decision.primary.vendor,
            decision.primary.id,
            backup.vendor,
            backup.id,
            primary.error_message,
        )
        await self._forward(
            "error",
            {"message": f"Retrying with backup model {backup.name}...", "code": ErrorCode.PROVIDER_RETRY.value},
        )
        result = await self._attempt(backup, template)
        if result.success:
            return result
        raise AllAttemptsFailed("Both primary and backup models failed. Please try again.", vendor=backup.vendor)

    def _first_usable_backup(self, backups: Sequence[ModelCandidate]) -> Optional[ModelCandidate]:
        usable = self.registry.usable_vendors()
        for candidate in backups:
            if candidate.vendor in usable:
                return candidate
        return None

    async def _forward(self, event_type: str, data: Any) -> None:
        try:
            await self.sink.send(event_type, data)
        except Exception as exc:
            logger.debug("forward_failed req_id=%s type=%s error=%s", self.req_id, event_type, exc)

    async def _attempt(self, candidate: ModelCandidate, template: GenerationRequest) -> AttemptResult:
        result = AttemptResult(candidate=candidate)
        attempt_no = len(self.attempts) + 1
        start = time.perf_counter()
        try:
            adapter = self.registry.get(candidate.vendor)
            request = replace(template, model_id=candidate.id)
            async with aclosing(adapter.stream(request)) as events:
                async for event in events:
                    if isinstance(event, DoneEvent):
                        result.usage = event.usage.copy()
                        result.web_search_used = event.web_search_used
                        result.success = True
                        break
                    if isinstance(event, ErrorEvent):
                        result.error_message = event.message
                        break
                    self._accumulate(result, event)
                    await self._forward(*event_to_wire(event))
                else:
                    result.error_message = "stream ended before completion"
        except AdapterConstructionError as exc:
            result.error_message = exc.message
        except Exception as exc:
            logger.exception(
                "attempt_crashed req_id=%s vendor=%s model=%s", self.req_id, candidate.vendor, candidate.id
            )
            result.error_message = str(exc) or exc.__class__.__name__
        result.latency_ms = int((time.perf_counter() - start) * 1000)
        result.citations = dedupe_citations(result.citations)
        self.attempts.append(result)
        self.call_logs.append(
            ApiCallLog(
                vendor=candidate.vendor,
                model_id=candidate.id,
                status_code=200 if result.success else 500,
                latency_ms=result.latency_ms,
                error_message=result.error_message,
            )
        )
        if result.success:
            logger.info(
                "attempt_ok req_id=%s vendor=%s model=%s attempt=%d latency_ms=%d",
                self.req_id,
                candidate.vendor,
                candidate.id,
                attempt_no,
                result.latency_ms,
            )
        else:
            logger.warning(
                "attempt_failed req_id=%s vendor=%s model=%s attempt=%d latency_ms=%d error=%s",
                self.req_id,
                candidate.vendor,
                candidate.id,
                attempt_no,
                result.latency_ms,
                result.error_message,
            )
        await self._record_metrics(result, attempt_no)
        return result

    @staticmethod
    def _accumulate(result: AttemptResult, event: StreamEvent) -> None:
        if isinstance(event, DeltaEvent):
            result.content += event.text
        elif isinstance(event, ThinkingEvent):
            result.thinking += event.text
        elif isinstance(event, CitationsEvent):
            result.citations.extend(event.citations)

    async def _record_metrics(self, result: AttemptResult, attempt_no: int) -> None:
        if self.metrics is None:
            return
        candidate = result.candidate
        cost = calculate_cost(candidate.vendor, candidate.id, result.usage) if result.success else None
        record: dict[str, Any] = {
            "req_id": self.req_id,
            "ts": time.time(),
            "vendor": candidate.vendor,
            "model": candidate.id,
            "attempt": attempt_no,
            "ok": result.success,
            "latency_ms": result.latency_ms,
            "input_tokens": result.usage.input_tokens,
            "output_tokens": result.usage.output_tokens,
            "reasoning_tokens": result.usage.reasoning_tokens,
            "cost_usd": float(cost) if cost is not None else 0.0,
            "error": result.error_message,
        }
        try:
            await self.metrics.write(record)
        except OSError:
            logger.exception(
                "metrics_write_failed req_id=%s vendor=%s attempt=%d", self.req_id, candidate.vendor, attempt_no
            )


class ChatPipeline:
    def __init__(
        self,
        *,
        config: RouterConfig,
        registry: ProviderRegistry,
        oracle: OracleClient,
        gateway: PersistenceGateway,
        metrics: MetricsLogger | None = None,
        req_id: str | None = None,
    ):
        self.config = config
        self.registry = registry
        self.oracle = oracle
        self.gateway = gateway
        self.metrics = metrics
        self.req_id = req_id or uuid.uuid4().hex

    async def run(self, chat_req: ChatRequest, channel: EventSink) -> Optional[FinalizedExchange]:
        try:
            return await self._run(chat_req, channel)
        except RelayError as exc:
            logger.warning("chat_failed req_id=%s code=%s error=%s", self.req_id, exc.code.value, exc.message)
            await self._send(channel, "error", exc.to_payload())
        except Exception as exc:
            logger.exception("chat_crashed req_id=%s", self.req_id)
            message = str(exc) or "Internal server error"
            await self._send(channel, "error", {"message": message, "code": ErrorCode.INTERNAL_ERROR.value})
        finally:
            await channel.close()
        return None

    async def _send(self, channel: EventSink, event_type: str, data: Any) -> None:
        try:
            await channel.send(event_type, data)
        except Exception as exc:
            logger.debug("forward_failed req_id=%s type=%s error=%s", self.req_id, event_type, exc)

    async def _run(self, chat_req: ChatRequest, channel: EventSink) -> FinalizedExchange:
        defaults = self.config.defaults
        gateway = self.gateway
        sub_conversation_id = chat_req.sub_conversation_id
        if sub_conversation_id:
            sub = await gateway.get_sub_conversation(sub_conversation_id)
            conversation_id = sub["conversation_id"]
        else:
            conversation_id = await gateway.get_or_create_conversation(chat_req.conversation_id, chat_req.message)

        await gateway.save_user_message(conversation_id, chat_req.message, sub_conversation_id)
        history = await gateway.fetch_history(conversation_id, sub_conversation_id)
        previous_model_id = await gateway.get_previous_model_id(conversation_id)

        usable = self.registry.usable_vendors()
        oracle_result = await self.oracle.recommend(
            chat_req.message,
            modality=chat_req.modality or defaults.modality,
            user_tier=chat_req.user_tier or defaults.user_tier,
            usable_vendors=usable,
            conversation_id=conversation_id,
            previous_model_id=previous_model_id,
        )
        oracle = oracle_result.response
        if oracle.fallback is not None and oracle.fallback.message:
            raise UnsupportedTask(
                oracle.fallback.message,
                category=oracle.fallback.category or None,
                suggested_platforms=oracle.fallback.suggested_platforms,
            )

        decision = resolve_route(
            oracle.primary,
            oracle.backups,
            usable,
            chat_req.manual_model_id,
            prefixes=self.config.prefixes,
            default_vendor=defaults.default_vendor,
        )
        message_id = str(uuid.uuid4())
        use_web_search, auto_detected = resolve_web_search(
            chat_req.web_search, oracle.analysis, self.config.web_search_intents
        )
        enable_thinking = should_enable_thinking(oracle.analysis, self.config.thinking_complexities)
        logger.info(
            "routed req_id=%s conversation_id=%s vendor=%s model=%s backups=%d manual=%s web_search=%s thinking=%s",
            self.req_id,
            conversation_id,
            decision.primary.vendor,
            decision.primary.id,
            len(decision.backups),
            decision.is_manual_override,
            use_web_search,
            enable_thinking,
        )

        await self._send(
            channel,
            "routing",
            {
                "conversationId": conversation_id,
                "subConversationId": sub_conversation_id,
                "messageId": message_id,
                "model": decision.primary.to_wire(),
                "backupModels": [candidate.to_wire() for candidate in decision.backups],
                "analysis": {
                    "intent": oracle.analysis.intent,
                    "domain": oracle.analysis.domain,
                    "complexity": oracle.analysis.complexity,
                },
                "confidence": oracle.confidence,
                "oracleLatencyMs": oracle_result.latency_ms,
                "isManualOverride": decision.is_manual_override,
                "upgradeHint": oracle.upgrade_hint,
                "providerHint": oracle.provider_hint,
                "webSearchUsed": use_web_search,
                "webSearchAutoDetected": auto_detected,
            },
        )

        template = GenerationRequest(
            model_id=decision.primary.id,
            system_prompt=build_system_prompt(defaults.system_prompt),
            messages=tuple(history),
            enable_thinking=enable_thinking,
            enable_web_search=use_web_search,
        )
        orchestrator = StreamOrchestrator(self.registry, channel, metrics=self.metrics, req_id=self.req_id)
        result = await orchestrator.run(decision, template)

        exchange = FinalizedExchange(
            message_id=message_id,
            conversation_id=conversation_id,
            sub_conversation_id=sub_conversation_id,
            model=result.candidate,
            backups=decision.backups,
            content=result.content,
            usage=result.usage,
            cost_usd=calculate_cost(result.candidate.vendor, result.candidate.id, result.usage),
            latency_ms=result.latency_ms,
            oracle_latency_ms=oracle_result.latency_ms,
            thinking=result.thinking,
            citations=list(result.citations),
            web_search_used=result.web_search_used,
            analysis=oracle.analysis.model_dump(mode="json", by_alias=True),
        )
        await self._finalize(exchange, oracle_result.response, orchestrator.call_logs, channel)
        return exchange

    async def _finalize(
        self,
        exchange: FinalizedExchange,
        oracle: OracleResponse,
        call_logs: Sequence[ApiCallLog],
        channel: EventSink,
    ) -> None:
        gateway = self.gateway
        await gateway.insert_assistant_message(exchange)
        await gateway.save_routing_log(exchange.message_id, oracle, exchange.oracle_latency_ms)
        for retry_count, log in enumerate(call_logs):
            await gateway.save_api_call_log(exchange.message_id, log, retry_count)
        await gateway.touch_conversation(exchange.conversation_id)
        logger.info(
            "finalized req_id=%s message_id=%s vendor=%s model=%s cost_usd=%s latency_ms=%d",
            self.req_id,
            exchange.message_id,
            exchange.model.vendor,
            exchange.model.id,
            exchange.cost_usd,
            exchange.latency_ms,
        )
        usage = exchange.usage.to_wire()
        usage["costUsd"] = float(exchange.cost_usd)
        await self._send(
            channel,
            "done",
            {
                "messageId": exchange.message_id,
                "conversationId": exchange.conversation_id,
                "subConversationId": exchange.sub_conversation_id,
                "usage": usage,
                "latencyMs": exchange.latency_ms,
                "oracleLatencyMs": exchange.oracle_latency_ms,
            },
        )


__all__ = [
    "EventSink",
    "EventChannel",
    "StreamOrchestrator",
    "ChatPipeline",
    "encode_frame",
    "event_to_wire",
]
