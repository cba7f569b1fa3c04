from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from contextlib import aclosing
from typing import Any, ClassVar

import httpx

from ..errors import MissingCredential, StreamError
from ..router import VendorDef
from ..types import ErrorEvent, GenerationRequest, StreamEvent

logger = logging.getLogger(__name__)


class BaseAdapter:
    """One vendor's translation between a generation request and uniform events.

    Subclasses implement ``_stream_events``; ``stream`` guarantees the caller
    sees exactly one terminal event and nothing after it.
    """

    vendor: ClassVar[str] = ""

    def __init__(self, defn: VendorDef):
        key = defn.credential()
        if not key:
            raise MissingCredential(f"Missing {defn.auth_env}", vendor=defn.name)
        self.defn = defn
        self._api_key = key

    def _stream_events(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        raise NotImplementedError

    async def stream(self, request: GenerationRequest) -> AsyncIterator[StreamEvent]:
        try:
            async with aclosing(self._stream_events(request)) as events:
                async for event in events:
                    yield event
                    if event.terminal:
                        return
        except StreamError as exc:
            yield ErrorEvent(exc.message)
            return
        except httpx.HTTPError as exc:
            detail = str(exc) or exc.__class__.__name__
            yield ErrorEvent(f"{self.vendor} request failed: {detail}")
            return
        except Exception as exc:
            logger.exception("adapter_stream_failed vendor=%s model=%s", self.vendor, request.model_id)
            yield ErrorEvent(str(exc) or exc.__class__.__name__)
            return
        yield ErrorEvent(f"{self.vendor} stream ended before completion")


def _error_message_from_body(response: httpx.Response) -> str | None:
    try:
        payload = response.json()
    except ValueError:
        payload = None
    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    if isinstance(payload, dict):
        error_field = payload.get("error")
        if isinstance(error_field, dict):
            error_message = error_field.get("message")
            if isinstance(error_message, str) and error_message:
                return error_message
        if isinstance(error_field, str) and error_field:
            return error_field
        nested_message = payload.get("message")
        if isinstance(nested_message, str) and nested_message:
            return nested_message
    text = response.text
    if text:
        return text
    return response.reason_phrase or None


async def raise_for_vendor_status(response: httpx.Response, vendor: str) -> None:
    if response.status_code < 400:
        return
    await response.aread()
    message = _error_message_from_body(response) or "request failed"
    raise StreamError(f"{vendor} returned {response.status_code}: {message}", vendor=vendor)


async def iter_sse_json(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    """Decode a server-sent event stream into its JSON ``data`` payloads."""
    buffer: list[str] = []
    async for line in response.aiter_lines():
        if line is None:
            continue
        stripped = line.strip()
        if not stripped:
            if not buffer:
                continue
            data_text = "\n".join(buffer).strip()
            buffer.clear()
            if not data_text or data_text == "[DONE]":
                continue
            try:
                parsed = json.loads(data_text)
            except json.JSONDecodeError:
                continue
            if isinstance(parsed, dict):
                yield parsed
            continue
        if stripped.startswith("data:"):
            buffer.append(stripped[5:].lstrip())
    if buffer:
        data_text = "\n".join(buffer).strip()
        if data_text and data_text != "[DONE]":
            try:
                parsed = json.loads(data_text)
            except json.JSONDecodeError:
                parsed = None
            if isinstance(parsed, dict):
                yield parsed


def as_int(value: Any) -> int:
    if isinstance(value, bool):
        return 0
    if isinstance(value, int):
        return max(value, 0)
    return 0


__all__ = ["BaseAdapter", "raise_for_vendor_status", "iter_sse_json", "as_int"]
