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

API_VERSION = "2023-06-01"

THINKING_MODELS = frozenset(
    {
        "claude-sonnet-4-6",
        "claude-sonnet-4-5-20250929",
        "claude-opus-4-6",
        "claude-opus-4-5-20251101",
    }
)

THINKING_BUDGET_TOKENS = 10000
MAX_TOKENS_WITH_THINKING = 16384
MAX_TOKENS = 8192
WEB_SEARCH_MAX_USES = 5


def _result_citations(block: dict[str, Any]) -> list[Citation]:
    found: list[Citation] = []
    content = block.get("content")
    if not isinstance(content, list):
        return found
    for result in content:
        if not isinstance(result, dict) or result.get("type") != "web_search_result":
            continue
        url = result.get("url")
        if not url:
            continue
        snippet = result.get("cited_text") or result.get("snippet")
        found.append(Citation(url=url, title=result.get("title") or url, snippet=snippet))
    return found


class AnthropicAdapter(BaseAdapter):
    vendor = "anthropic"

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = self.defn.base_url.rstrip("/") + "/v1/messages"
        headers = {
            "Content-Type": "application/json",
            "x-api-key": self._api_key,
            "anthropic-version": API_VERSION,
        }
        system_parts = [request.system_prompt] if request.system_prompt else []
        messages: list[dict[str, str]] = []
        for message in request.messages:
            if message.role == "system":
                system_parts.append(message.content)
                continue
            messages.append({"role": message.role, "content": message.content})
        use_thinking = request.enable_thinking and request.model_id in THINKING_MODELS
        payload: dict[str, Any] = {
            "model": request.model_id,
            "max_tokens": MAX_TOKENS_WITH_THINKING if use_thinking else MAX_TOKENS,
            "messages": messages,
            "stream": True,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        if use_thinking:
            payload["thinking"] = {"type": "enabled", "budget_tokens": THINKING_BUDGET_TOKENS}
        if request.enable_web_search:
            payload["tools"] = [
                {"type": "web_search_20250305", "name": "web_search", "max_uses": WEB_SEARCH_MAX_USES}
            ]
        return url, headers, payload

    async def _stream_events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        url, headers, payload = self._build_request(request)
        usage = TokenUsage()
        citations: list[Citation] = []
        search_requests = 0
        async with httpx.AsyncClient(timeout=self.defn.timeout) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                await raise_for_vendor_status(response, self.vendor)
                async for event in iter_sse_json(response):
                    kind = event.get("type")
                    if kind == "message_start":
                        raw_usage = (event.get("message") or {}).get("usage") or {}
                        usage.input_tokens = as_int(raw_usage.get("input_tokens"))
                        usage.output_tokens = as_int(raw_usage.get("output_tokens"))
                        usage.cached_tokens = as_int(raw_usage.get("cache_read_input_tokens"))
                    elif kind == "content_block_start":
                        block = event.get("content_block") or {}
                        block_type = block.get("type")
                        if block_type in ("tool_use", "server_tool_use"):
                            yield ToolUseEvent(str(block.get("name") or "tool"), "searching")
                        elif block_type == "web_search_tool_result":
                            citations.extend(_result_citations(block))
                    elif kind == "content_block_delta":
                        delta = event.get("delta") or {}
                        delta_type = delta.get("type")
                        if delta_type == "text_delta" and delta.get("text"):
                            yield DeltaEvent(delta["text"])
                        elif delta_type == "thinking_delta" and delta.get("thinking"):
                            yield ThinkingEvent(delta["thinking"])
                        elif delta_type == "citations_delta":
                            citation = delta.get("citation") or {}
                            if citation.get("url"):
                                citations.append(
                                    Citation(
                                        url=citation["url"],
                                        title=citation.get("title") or citation["url"],
                                        snippet=citation.get("cited_text"),
                                    )
                                )
                    elif kind == "message_delta":
                        raw_usage = event.get("usage") or {}
                        if "output_tokens" in raw_usage:
                            usage.output_tokens = as_int(raw_usage.get("output_tokens"))
                        if "input_tokens" in raw_usage:
                            usage.input_tokens = as_int(raw_usage.get("input_tokens"))
                        if "cache_read_input_tokens" in raw_usage:
                            usage.cached_tokens = as_int(raw_usage.get("cache_read_input_tokens"))
                        server_tools = raw_usage.get("server_tool_use") or {}
                        if "web_search_requests" in server_tools:
                            search_requests = as_int(server_tools.get("web_search_requests"))
                    elif kind == "message_stop":
                        if search_requests > 0:
                            usage.web_search_requests = search_requests
                        unique = dedupe_citations(citations)
                        if unique:
                            yield CitationsEvent(tuple(unique))
                        yield DoneEvent(usage, web_search_used=bool(unique) or search_requests > 0)
                        return
                    elif kind == "error":
                        error = event.get("error") or {}
                        yield ErrorEvent(str(error.get("message") or "anthropic stream error"))
                        return
