"""Per-token pricing lookup and cost accounting.

Rates are USD per million tokens. ``calculate_cost`` never raises: unknown
models fall back to the vendor default and unknown vendors to a global default.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Mapping

from .types import TokenUsage

_MILLION = Decimal(1_000_000)
_QUANTUM = Decimal("0.000001")


@dataclass(frozen=True, slots=True)
class ModelPricing:
    input_per_million: Decimal
    output_per_million: Decimal


def _p(input_rate: str, output_rate: str) -> ModelPricing:
    return ModelPricing(Decimal(input_rate), Decimal(output_rate))


MODEL_PRICING: Mapping[str, ModelPricing] = {
    # openai
    "gpt-5.2": _p("1.75", "14"),
    "gpt-5.2-pro": _p("21", "168"),
    "gpt-5.1": _p("1.25", "10"),
    "gpt-5": _p("1.25", "10"),
    "gpt-5-mini": _p("0.25", "2"),
    "gpt-5-nano": _p("0.05", "0.4"),
    "gpt-5.1-codex": _p("1.25", "10"),
    "gpt-5.1-codex-mini": _p("0.25", "2"),
    "gpt-4.1": _p("2", "8"),
    "gpt-4.1-mini": _p("0.4", "1.6"),
    "gpt-4.1-nano": _p("0.1", "1.4"),
    "gpt-4o": _p("2.5", "10"),
    "gpt-4o-mini": _p("0.15", "0.6"),
    "o3": _p("2", "8"),
    "o3-pro": _p("20", "80"),
    "o4-mini": _p("1.1", "4.4"),
    # anthropic
    "claude-opus-4-6": _p("5", "25"),
    "claude-opus-4-5-20251101": _p("5", "25"),
    "claude-opus-4-20250514": _p("15", "75"),
    "claude-opus-4-1-20250610": _p("15", "75"),
    "claude-sonnet-4-6": _p("3", "15"),
    "claude-sonnet-4-5-20250929": _p("3", "15"),
    "claude-haiku-4-5-20251001": _p("1", "5"),
    "claude-3-5-haiku-20241022": _p("0.8", "4"),
    # google
    "gemini-2.5-pro": _p("1.25", "10"),
    "gemini-2.5-pro-preview-05-06": _p("1.25", "10"),
    "gemini-2.5-flash": _p("0.075", "0.3"),
    "gemini-2.5-flash-preview-04-17": _p("0.075", "0.3"),
    "gemini-2.5-flash-lite": _p("0.025", "0.1"),
    "gemini-2.5-flash-lite-preview-06-17": _p("0.025", "0.1"),
    # perplexity
    "sonar": _p("1", "1"),
    "sonar-pro": _p("3", "15"),
}

VENDOR_DEFAULT_PRICING: Mapping[str, ModelPricing] = {
    "openai": _p("2", "8"),
    "anthropic": _p("3", "15"),
    "google": _p("1.25", "10"),
    "perplexity": _p("1", "1"),
}

GLOBAL_DEFAULT_PRICING = _p("2", "10")

# Flat fee per web search request. Zero where search is already folded into token pricing.
WEB_SEARCH_FEE_PER_REQUEST: Mapping[str, Decimal] = {
    "anthropic": Decimal("0.01"),
    "openai": Decimal("0"),
    "google": Decimal("0.035"),
    "perplexity": Decimal("0"),
}


def resolve_pricing(model_id: str, vendor: str) -> ModelPricing:
    exact = MODEL_PRICING.get(model_id)
    if exact is not None:
        return exact
    best_key: str | None = None
    for key in MODEL_PRICING:
        if not (model_id.startswith(key) or key in model_id):
            continue
        if best_key is None or len(key) > len(best_key):
            best_key = key
    if best_key is not None:
        return MODEL_PRICING[best_key]
    return VENDOR_DEFAULT_PRICING.get(vendor, GLOBAL_DEFAULT_PRICING)


def web_search_cost(vendor: str, request_count: int | None) -> Decimal:
    if not request_count or request_count <= 0:
        return Decimal(0)
    return WEB_SEARCH_FEE_PER_REQUEST.get(vendor, Decimal(0)) * request_count


def _tokens(value: object) -> Decimal:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        return Decimal(0)
    return Decimal(value)


def calculate_cost(vendor: str, model_id: str, usage: TokenUsage) -> Decimal:
    pricing = resolve_pricing(model_id or "", vendor or "")
    input_cost = _tokens(usage.input_tokens) / _MILLION * pricing.input_per_million
    output_cost = _tokens(usage.output_tokens) / _MILLION * pricing.output_per_million
    reasoning_cost = _tokens(usage.reasoning_tokens) / _MILLION * pricing.output_per_million
    search_cost = web_search_cost(vendor or "", usage.web_search_requests)
    total = input_cost + output_cost + reasoning_cost + search_cost
    return total.quantize(_QUANTUM, rounding=ROUND_HALF_UP)


__all__ = [
    "ModelPricing",
    "MODEL_PRICING",
    "VENDOR_DEFAULT_PRICING",
    "GLOBAL_DEFAULT_PRICING",
    "WEB_SEARCH_FEE_PER_REQUEST",
    "resolve_pricing",
    "web_search_cost",
    "calculate_cost",
]
