from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, ClassVar, Dict, List, Literal, Optional, Tuple, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

Role = Literal["user", "assistant", "system"]


@dataclass(frozen=True, slots=True)
class ConversationMessage:
    role: Role
    content: str


@dataclass(frozen=True, slots=True)
class GenerationRequest:
    model_id: str
    system_prompt: str
    messages: Tuple[ConversationMessage, ...]
    enable_thinking: bool = False
    enable_web_search: bool = False


@dataclass(slots=True)
class TokenUsage:
    input_tokens: int = 0
    output_tokens: int = 0
    reasoning_tokens: int = 0
    cached_tokens: int = 0
    web_search_requests: int | None = None

    def to_wire(self) -> dict[str, int]:
        payload = {
            "inputTokens": self.input_tokens,
            "outputTokens": self.output_tokens,
            "reasoningTokens": self.reasoning_tokens,
            "cachedTokens": self.cached_tokens,
        }
        if self.web_search_requests is not None:
            payload["webSearchRequests"] = self.web_search_requests
        return payload

    def copy(self) -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens,
            output_tokens=self.output_tokens,
            reasoning_tokens=self.reasoning_tokens,
            cached_tokens=self.cached_tokens,
            web_search_requests=self.web_search_requests,
        )


@dataclass(frozen=True, slots=True)
class Citation:
    url: str
    title: str
    snippet: str | None = None

    def to_wire(self) -> dict[str, str]:
        payload = {"url": self.url, "title": self.title}
        if self.snippet is not None:
            payload["snippet"] = self.snippet
        return payload


def dedupe_citations(citations: List[Citation]) -> List[Citation]:
    """Keep the first citation per URL, filling a missing snippet from later duplicates."""
    merged: dict[str, Citation] = {}
    for citation in citations:
        existing = merged.get(citation.url)
        if existing is None:
            merged[citation.url] = citation
        elif existing.snippet is None and citation.snippet:
            merged[citation.url] = Citation(existing.url, existing.title, citation.snippet)
    return list(merged.values())


# Uniform stream events. Adapters produce nothing else.


@dataclass(frozen=True, slots=True)
class DeltaEvent:
    type: ClassVar[str] = "delta"
    terminal: ClassVar[bool] = False

    text: str


@dataclass(frozen=True, slots=True)
class ThinkingEvent:
    type: ClassVar[str] = "thinking"
    terminal: ClassVar[bool] = False

    text: str


@dataclass(frozen=True, slots=True)
class CitationsEvent:
    type: ClassVar[str] = "citations"
    terminal: ClassVar[bool] = False

    citations: Tuple[Citation, ...]


@dataclass(frozen=True, slots=True)
class ToolUseEvent:
    type: ClassVar[str] = "tool_use"
    terminal: ClassVar[bool] = False

    tool: str
    status: str


@dataclass(frozen=True, slots=True)
class DoneEvent:
    type: ClassVar[str] = "done"
    terminal: ClassVar[bool] = True

    usage: TokenUsage
    web_search_used: bool = False


@dataclass(frozen=True, slots=True)
class ErrorEvent:
    type: ClassVar[str] = "error"
    terminal: ClassVar[bool] = True

    message: str


StreamEvent = Union[DeltaEvent, ThinkingEvent, CitationsEvent, ToolUseEvent, DoneEvent, ErrorEvent]


@dataclass(frozen=True, slots=True)
class ModelCandidate:
    id: str
    name: str
    vendor: str
    score: float
    reasoning_summary: str = ""

    def to_wire(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "provider": self.vendor,
            "score": self.score,
            "reasoning": self.reasoning_summary,
        }


@dataclass(frozen=True, slots=True)
class RoutingDecision:
    primary: ModelCandidate
    backups: Tuple[ModelCandidate, ...]
    is_manual_override: bool = False


@dataclass(slots=True)
class ApiCallLog:
    vendor: str
    model_id: str
    status_code: int
    latency_ms: int
    error_message: str | None = None


@dataclass(slots=True)
class AttemptResult:
    candidate: ModelCandidate
    success: bool = False
    content: str = ""
    thinking: str = ""
    citations: List[Citation] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)
    web_search_used: bool = False
    latency_ms: int = 0
    error_message: str | None = None


@dataclass(slots=True)
class FinalizedExchange:
    message_id: str
    conversation_id: str
    sub_conversation_id: str | None
    model: ModelCandidate
    backups: Tuple[ModelCandidate, ...]
    content: str
    usage: TokenUsage
    cost_usd: Decimal
    latency_ms: int
    oracle_latency_ms: int
    thinking: str = ""
    citations: List[Citation] = field(default_factory=list)
    web_search_used: bool = False
    analysis: Dict[str, Any] = field(default_factory=dict)

    @property
    def extended_data(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.thinking:
            data["thinkingContent"] = self.thinking
        if self.citations:
            data["citations"] = [citation.to_wire() for citation in self.citations]
        return data

    @property
    def model_used(self) -> dict[str, Any]:
        return {
            "model": self.model.to_wire(),
            "backupModels": [candidate.to_wire() for candidate in self.backups],
            "analysis": self.analysis,
            "webSearchUsed": self.web_search_used,
        }


class ChatRequest(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    message: str
    conversation_id: Optional[str] = Field(default=None, alias="conversationId")
    sub_conversation_id: Optional[str] = Field(default=None, alias="subConversationId")
    user_tier: Optional[str] = Field(default=None, alias="userTier")
    modality: Optional[str] = None
    manual_model_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("manualModelId", "selectedModelId", "manual_model_id"),
    )
    web_search: Optional[bool] = Field(default=None, alias="webSearch")

    @field_validator("message")
    @classmethod
    def _require_message(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("message is required and must be a non-empty string")
        return stripped

    @field_validator("conversation_id", "sub_conversation_id", "manual_model_id")
    @classmethod
    def _blank_as_none(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None


class _OracleReasoning(BaseModel):
    model_config = ConfigDict(extra="allow")

    summary: str = ""
    factors: List[Dict[str, Any]] = Field(default_factory=list)


class OracleModel(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    name: str = ""
    provider: str
    score: float = 0.0
    reasoning: Union[_OracleReasoning, str, None] = None

    def to_candidate(self) -> ModelCandidate:
        if isinstance(self.reasoning, _OracleReasoning):
            summary = self.reasoning.summary
        else:
            summary = self.reasoning or ""
        return ModelCandidate(
            id=self.id,
            name=self.name or self.id,
            vendor=self.provider,
            score=float(self.score),
            reasoning_summary=summary,
        )


class OracleAnalysis(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    intent: str = ""
    domain: str = ""
    complexity: str = ""
    tone: str = ""
    modality: str = "text"
    keywords: List[str] = Field(default_factory=list)
    web_search_required: Optional[bool] = Field(default=None, alias="webSearchRequired")


class OracleFallback(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    supported: bool = True
    category: str = ""
    message: str = ""
    suggested_platforms: List[str] = Field(default_factory=list, alias="suggestedPlatforms")


class OracleResponse(BaseModel):
    model_config = ConfigDict(extra="allow", populate_by_name=True)

    decision_id: Optional[str] = Field(default=None, alias="decisionId")
    primary_model: OracleModel = Field(alias="primaryModel")
    backup_models: List[OracleModel] = Field(default_factory=list, alias="backupModels")
    confidence: float = 0.0
    analysis: OracleAnalysis = Field(default_factory=OracleAnalysis)
    timing: Optional[Dict[str, Any]] = None
    upgrade_hint: Optional[Dict[str, Any]] = Field(default=None, alias="upgradeHint")
    provider_hint: Optional[Dict[str, Any]] = Field(default=None, alias="providerHint")
    fallback: Optional[OracleFallback] = None

    @property
    def primary(self) -> ModelCandidate:
        return self.primary_model.to_candidate()

    @property
    def backups(self) -> Tuple[ModelCandidate, ...]:
        return tuple(model.to_candidate() for model in self.backup_models)


@dataclass(frozen=True, slots=True)
class OracleResult:
    response: OracleResponse
    latency_ms: int
