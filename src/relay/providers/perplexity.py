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
    TokenUsage,
    dedupe_citations,
)
from .base import BaseAdapter, as_int, iter_sse_json, raise_for_vendor_status


def chunk_citations(chunk: dict[str, Any]) -> list[Citation]:
    results = chunk.get("search_results")
    found: list[Citation] = []
    if isinstance(results, list) and results:
        for result in results:
            if not isinstance(result, dict) or not result.get("url"):
                continue
            found.append(
                Citation(url=result["url"], title=result.get("title") or result["url"], snippet=result.get("snippet"))
            )
        return found
    for url in chunk.get("citations") or []:
        if isinstance(url, str) and url:
            found.append(Citation(url=url, title=url))
    return found


class PerplexityAdapter(BaseAdapter):
    """Sonar models search on every request; the thinking and web-search flags do nothing here."""

    vendor = "perplexity"

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = self.defn.base_url.rstrip("/") + "/chat/completions"
        headers = {
            "Content-Type": "application/json",
            "Authorization": f"Bearer {self._api_key}",
        }
        messages: list[dict[str, str]] = [{"role": "system", "content": request.system_prompt}]
        for message in request.messages:
            role = "assistant" if message.role == "assistant" else "user"
            messages.append({"role": role, "content": message.content})
        payload = {"model": request.model_id, "messages": messages, "stream": True}
        return url, headers, payload

    async def _stream_events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        url, headers, payload = self._build_request(request)
        usage = TokenUsage()
        citations: list[Citation] = []
        finished = False
        async with httpx.AsyncClient(timeout=self.defn.timeout) as client:
            async with client.stream("POST", url, headers=headers, json=payload) as response:
                await raise_for_vendor_status(response, self.vendor)
                async for chunk in iter_sse_json(response):
                    error = chunk.get("error")
                    if isinstance(error, dict):
                        yield ErrorEvent(str(error.get("message") or "perplexity stream error"))
                        return
                    choices = chunk.get("choices") or []
                    choice = choices[0] if choices and isinstance(choices[0], dict) else {}
                    content = (choice.get("delta") or {}).get("content")
                    if isinstance(content, str) and content:
                        yield DeltaEvent(content)
                    if choice.get("finish_reason"):
                        finished = True
                    raw_usage = chunk.get("usage")
                    if isinstance(raw_usage, dict):
                        usage.input_tokens = as_int(raw_usage.get("prompt_tokens"))
                        usage.output_tokens = as_int(raw_usage.get("completion_tokens"))
                    citations.extend(chunk_citations(chunk))
        if not finished:
            return
        unique = dedupe_citations(citations)
        if unique:
            yield CitationsEvent(tuple(unique))
        yield DoneEvent(usage, web_search_used=bool(unique))
