from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any

import httpx

from ..types import (
    Citation,
    CitationsEvent,
    DeltaEvent,
    DoneEvent,
    ErrorEvent,
    GenerationRequest,
    StreamEvent,
    ThinkingEvent,
    TokenUsage,
    ToolUseEvent,
    dedupe_citations,
)
from .base import BaseAdapter, as_int, iter_sse_json, raise_for_vendor_status

REASONING_MODELS = frozenset({"o3", "o3-pro", "o4-mini"})

_ROLE_MAP = {"assistant": "assistant", "system": "developer", "user": "user"}

_SEARCH_STATUS = {
    "response.web_search_call.in_progress": "searching",
    "response.web_search_call.searching": "searching",
    "response.web_search_call.completed": "completed",
}


class OpenAIAdapter(BaseAdapter):
    vendor = "openai"

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = self.defn.base_url.rstrip("/") + "/responses"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        is_reasoning = request.model_id in REASONING_MODELS
        items: list[dict[str, Any]] = []
        if is_reasoning and request.system_prompt:
            items.append({"type": "message", "role": "developer", "content": request.system_prompt})
        for message in request.messages:
            items.append(
                {
                    "type": "message",
                    "role": _ROLE_MAP.get(message.role, "user"),
                    "content": message.content,
                }
            )
        payload: dict[str, Any] = {"model": request.model_id, "input": items, "stream": True}
        if not is_reasoning:
            payload["instructions"] = request.system_prompt
        elif request.enable_thinking:
            payload["reasoning"] = {"summary": "auto"}
        if request.enable_web_search:
            payload["tools"] = [{"type": "web_search_preview"}]
        return url, headers, payload

    async def _stream_events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        url, headers, payload = self._build_request(request)
        search_calls: set[str] = set()
        async with httpx.AsyncClient(timeout=self.defn.timeout) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                await raise_for_vendor_status(response, self.vendor)
                async for event in iter_sse_json(response):
                    kind = event.get("type")
                    if kind == "response.output_text.delta":
                        text = event.get("delta")
                        if isinstance(text, str) and text:
                            yield DeltaEvent(text)
                    elif kind == "response.reasoning_summary_text.delta":
                        text = event.get("delta")
                        if isinstance(text, str) and text:
                            yield ThinkingEvent(text)
                    elif kind in _SEARCH_STATUS:
                        item_id = event.get("item_id")
                        search_calls.add(str(item_id) if item_id is not None else kind)
                        yield ToolUseEvent("web_search", _SEARCH_STATUS[kind])
                    elif kind in ("response.completed", "response.incomplete"):
                        body = event.get("response") or {}
                        for done in self._completion_events(body, search_calls):
                            yield done
                        return
                    elif kind == "response.failed":
                        body = event.get("response") or {}
                        error = body.get("error") or {}
                        yield ErrorEvent(str(error.get("message") or "openai response failed"))
                        return
                    elif kind == "error":
                        yield ErrorEvent(str(event.get("message") or "openai stream error"))
                        return

    def _completion_events(self, body: dict[str, Any], search_calls: set[str]) -> list[StreamEvent]:
        raw_usage = body.get("usage") or {}
        output_details = raw_usage.get("output_tokens_details") or {}
        input_details = raw_usage.get("input_tokens_details") or {}
        usage = TokenUsage(
            input_tokens=as_int(raw_usage.get("input_tokens")),
            output_tokens=as_int(raw_usage.get("output_tokens")),
            reasoning_tokens=as_int(output_details.get("reasoning_tokens")),
            cached_tokens=as_int(input_details.get("cached_tokens")),
        )
        citations: list[Citation] = []
        for item in body.get("output") or []:
            if not isinstance(item, dict):
                continue
            if item.get("type") == "web_search_call":
                search_calls.add(str(item.get("id")))
                continue
            if item.get("type") != "message":
                continue
            for part in item.get("content") or []:
                if not isinstance(part, dict) or part.get("type") != "output_text":
                    continue
                for annotation in part.get("annotations") or []:
                    if not isinstance(annotation, dict) or annotation.get("type") != "url_citation":
                        continue
                    url = annotation.get("url")
                    if not url:
                        continue
                    citations.append(Citation(url=url, title=annotation.get("title") or url))
        if search_calls:
            usage.web_search_requests = len(search_calls)
        events: list[StreamEvent] = []
        citations = dedupe_citations(citations)
        if citations:
            events.append(CitationsEvent(tuple(citations)))
        events.append(DoneEvent(usage, web_search_used=bool(citations or search_calls)))
        return events
