from __future__ import annotations

from typing import Any, Collection

from pydantic import ValidationError

from .errors import ChatValidationError
from .types import ChatRequest, OracleAnalysis


def validate_chat_request(body: Any) -> ChatRequest:
    if not isinstance(body, dict):
        raise ChatValidationError("Request body is required")
    try:
        return ChatRequest.model_validate(body)
    except ValidationError as exc:
        problems = []
        for error in exc.errors():
            location = ".".join(str(item) for item in error.get("loc", ())) or "body"
            message = str(error.get("msg", "invalid value"))
            # pydantic prefixes messages raised from validators
            message = message.removeprefix("Value error, ")
            problems.append(f"{location}: {message}")
        raise ChatValidationError("; ".join(problems)) from exc


def resolve_web_search(
    user_flag: bool | None, analysis: OracleAnalysis, intents: Collection[str]
) -> tuple[bool, bool]:
    """Return ``(use_web_search, auto_detected)``; an explicit user choice always wins."""
    if user_flag is not None:
        return user_flag, False
    detected = analysis.intent in intents or bool(analysis.web_search_required)
    return detected, detected


def should_enable_thinking(analysis: OracleAnalysis, complexities: Collection[str]) -> bool:
    return analysis.complexity in complexities


def build_system_prompt(base_prompt: str) -> str:
    return base_prompt.strip()


__all__ = ["validate_chat_request", "resolve_web_search", "should_enable_thinking", "build_system_prompt"]
