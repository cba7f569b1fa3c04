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
    dedupe_citations,
)
from .base import BaseAdapter, as_int, iter_sse_json, raise_for_vendor_status

THINKING_BUDGET = 4096
DEFAULT_THINKING_BUDGET = 1024


def supports_thinking_config(model_id: str) -> bool:
    return "2.5" in model_id and "flash" not in model_id


def grounding_citations(metadata: dict[str, Any]) -> list[Citation]:
    """Map grounding chunks to citations; the first supporting segment becomes the snippet."""
    chunks = metadata.get("groundingChunks") or []
    snippets: dict[int, str] = {}
    for support in metadata.get("groundingSupports") or []:
        if not isinstance(support, dict):
            continue
        text = (support.get("segment") or {}).get("text")
        if not text:
            continue
        for index in support.get("groundingChunkIndices") or []:
            if isinstance(index, int):
                snippets.setdefault(index, text)
    found: list[Citation] = []
    for index, chunk in enumerate(chunks):
        web = chunk.get("web") if isinstance(chunk, dict) else None
        if not isinstance(web, dict) or not web.get("uri"):
            continue
        found.append(Citation(url=web["uri"], title=web.get("title") or web["uri"], snippet=snippets.get(index)))
    return found


class GeminiAdapter(BaseAdapter):
    vendor = "google"

    def _build_request(self, request: GenerationRequest) -> tuple[str, dict[str, str], dict[str, Any]]:
        base = self.defn.base_url.rstrip("/")
        url = f"{base}/models/{request.model_id}:streamGenerateContent?alt=sse"
        headers = {"Content-Type": "application/json", "x-goog-api-key": self._api_key}
        contents = [
            {
                "role": "model" if message.role == "assistant" else "user",
                "parts": [{"text": message.content}],
            }
            for message in request.messages
        ]
        payload: dict[str, Any] = {"contents": contents}
        if request.system_prompt:
            payload["systemInstruction"] = {"parts": [{"text": request.system_prompt}]}
        if request.enable_web_search:
            payload["tools"] = [{"googleSearch": {}}]
        if supports_thinking_config(request.model_id):
            budget = THINKING_BUDGET if request.enable_thinking else DEFAULT_THINKING_BUDGET
            payload["generationConfig"] = {
                "thinkingConfig": {
                    "thinkingBudget": budget,
                    "includeThoughts": request.enable_thinking,
                }
            }
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
                        yield ErrorEvent(str(error.get("message") or "gemini stream error"))
                        return
                    block_reason = (chunk.get("promptFeedback") or {}).get("blockReason")
                    if block_reason:
                        yield ErrorEvent(f"gemini blocked the prompt: {block_reason}")
                        return
                    candidates = chunk.get("candidates") or []
                    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}
                    for part in (candidate.get("content") or {}).get("parts") or []:
                        text = part.get("text") if isinstance(part, dict) else None
                        if not text:
                            continue
                        if part.get("thought"):
                            yield ThinkingEvent(text)
                        else:
                            yield DeltaEvent(text)
                    metadata = candidate.get("groundingMetadata")
                    if isinstance(metadata, dict):
                        citations.extend(grounding_citations(metadata))
                    raw_usage = chunk.get("usageMetadata")
                    if isinstance(raw_usage, dict):
                        usage.input_tokens = as_int(raw_usage.get("promptTokenCount"))
                        usage.output_tokens = as_int(raw_usage.get("candidatesTokenCount"))
                        usage.reasoning_tokens = as_int(raw_usage.get("thoughtsTokenCount"))
                        usage.cached_tokens = as_int(raw_usage.get("cachedContentTokenCount"))
                    if candidate.get("finishReason"):
                        finished = True
        if not finished:
            return
        unique = dedupe_citations(citations)
        if unique:
            usage.web_search_requests = 1
            yield CitationsEvent(tuple(unique))
        yield DoneEvent(usage, web_search_used=bool(unique))
