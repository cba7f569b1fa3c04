from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass
from typing import Collection, Dict, Mapping, Sequence

import yaml
from pydantic import BaseModel, ConfigDict, Field, PositiveFloat, PositiveInt, ValidationError, model_validator

from .errors import NoUsableProvider
from .types import ModelCandidate, RoutingDecision

KNOWN_VENDORS: tuple[str, ...] = ("openai", "anthropic", "google", "perplexity")

_VENDOR_DEFAULTS: dict[str, dict[str, object]] = {
    "openai": {"base_url": "https://api.openai.com/v1", "auth_env": "OPENAI_API_KEY"},
    "anthropic": {"base_url": "https://api.anthropic.com", "auth_env": "ANTHROPIC_API_KEY"},
    "google": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "auth_env": "GOOGLE_API_KEY",
    },
    "perplexity": {"base_url": "https://api.perplexity.ai", "auth_env": "PERPLEXITY_API_KEY"},
}

DEFAULT_SYSTEM_PROMPT = " ".join(
    [
        "You are a helpful AI assistant.",
        "Provide clear, accurate, and well-structured responses.",
        "When appropriate, use markdown formatting for better readability.",
        "Be concise but thorough. If you are unsure about something, say so.",
    ]
)


@dataclass
class VendorDef:
    name: str
    base_url: str
    auth_env: str
    timeout: float = 120.0

    def credential(self) -> str | None:
        raw = os.environ.get(self.auth_env)
        if raw is None:
            return None
        key = raw.strip()
        return key or None


@dataclass
class OracleSettings:
    base_url: str
    timeout_s: float


@dataclass
class RouterDefaults:
    default_vendor: str
    history_limit: int
    user_tier: str
    modality: str
    title_length: int
    system_prompt: str


@dataclass
class RouterConfig:
    defaults: RouterDefaults
    prefixes: Dict[str, str]
    oracle: OracleSettings
    web_search_intents: frozenset[str] = frozenset()
    thinking_complexities: frozenset[str] = frozenset()


@dataclass
class LoadedConfig:
    vendors: Dict[str, VendorDef]
    router: RouterConfig


class _VendorModel(BaseModel):
    base_url: str | None = None
    auth_env: str | None = None
    timeout: PositiveFloat = Field(default=120.0)

    model_config = ConfigDict(extra="forbid")


class _DefaultsModel(BaseModel):
    default_vendor: str = Field(default="openai")
    history_limit: PositiveInt = Field(default=20)
    user_tier: str = Field(default="free")
    modality: str = Field(default="text")
    title_length: PositiveInt = Field(default=50)
    system_prompt: str = Field(default=DEFAULT_SYSTEM_PROMPT)

    model_config = ConfigDict(extra="forbid")


class _OracleModel(BaseModel):
    base_url: str = Field(default="http://localhost:3001")
    timeout_s: PositiveFloat = Field(default=15.0)

    model_config = ConfigDict(extra="forbid")


class _WebSearchModel(BaseModel):
    intents: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")


class _ThinkingModel(BaseModel):
    complexities: list[str] = Field(default_factory=lambda: ["demanding"])

    model_config = ConfigDict(extra="forbid")


class _RouterModel(BaseModel):
    defaults: _DefaultsModel = Field(default_factory=_DefaultsModel)
    prefixes: Dict[str, str] = Field(default_factory=dict)
    oracle: _OracleModel = Field(default_factory=_OracleModel)
    web_search: _WebSearchModel = Field(default_factory=_WebSearchModel)
    thinking: _ThinkingModel = Field(default_factory=_ThinkingModel)

    model_config = ConfigDict(extra="forbid")

    @model_validator(mode="after")
    def _check_vendors(self) -> "_RouterModel":
        if self.defaults.default_vendor not in KNOWN_VENDORS:
            raise ValueError(
                f"default_vendor '{self.defaults.default_vendor}' is not a known vendor"
            )
        unknown = sorted({vendor for vendor in self.prefixes.values() if vendor not in KNOWN_VENDORS})
        if unknown:
            raise ValueError("prefixes reference unknown vendors: " + ", ".join(unknown))
        return self


def _format_validation_error(exc: ValidationError) -> str:
    problems = []
    for error in exc.errors():
        location = " -> ".join(str(item) for item in error.get("loc", ())) or "<root>"
        problems.append(f"{location}: {error.get('msg', 'invalid value')}")
    return "; ".join(problems)


def load_vendors(path: str) -> Dict[str, VendorDef]:
    raw: dict[str, object] = {}
    if os.path.exists(path):
        with open(path, "rb") as f:
            raw = tomllib.load(f)
    for name in raw:
        if name not in KNOWN_VENDORS:
            known = ", ".join(KNOWN_VENDORS)
            raise ValueError(f"Unknown vendor '{name}' in {os.path.basename(path)}. Known vendors: {known}")
    vendors: Dict[str, VendorDef] = {}
    for name in KNOWN_VENDORS:
        section = raw.get(name) or {}
        if not isinstance(section, dict):
            raise ValueError(f"Vendor '{name}' must be a table")
        try:
            parsed = _VendorModel.model_validate(section)
        except ValidationError as exc:
            raise ValueError(f"Vendor '{name}': {_format_validation_error(exc)}") from exc
        defaults = _VENDOR_DEFAULTS[name]
        vendors[name] = VendorDef(
            name=name,
            base_url=parsed.base_url or str(defaults["base_url"]),
            auth_env=parsed.auth_env or str(defaults["auth_env"]),
            timeout=float(parsed.timeout),
        )
    return vendors


def load_config(config_dir: str) -> LoadedConfig:
    vendors_path = os.path.join(config_dir, "vendors.toml")
    vendors = load_vendors(vendors_path)
    router_path = os.path.join(config_dir, "router.yaml")
    rdata: object = {}
    if os.path.exists(router_path):
        with open(router_path, "r", encoding="utf-8") as f:
            rdata = yaml.safe_load(f) or {}
    try:
        parsed = _RouterModel.model_validate(rdata)
    except ValidationError as exc:
        raise ValueError(_format_validation_error(exc)) from exc
    defs = parsed.defaults
    oracle_url = os.environ.get("RELAY_ORACLE_URL") or parsed.oracle.base_url
    router = RouterConfig(
        defaults=RouterDefaults(
            default_vendor=defs.default_vendor,
            history_limit=int(defs.history_limit),
            user_tier=defs.user_tier,
            modality=defs.modality,
            title_length=int(defs.title_length),
            system_prompt=defs.system_prompt,
        ),
        prefixes={str(prefix): vendor for prefix, vendor in parsed.prefixes.items()},
        oracle=OracleSettings(base_url=oracle_url.rstrip("/"), timeout_s=float(parsed.oracle.timeout_s)),
        web_search_intents=frozenset(parsed.web_search.intents),
        thinking_complexities=frozenset(parsed.thinking.complexities),
    )
    return LoadedConfig(vendors=vendors, router=router)


def guess_vendor(model_id: str, prefixes: Mapping[str, str], default_vendor: str) -> str:
    best: str | None = None
    for prefix in prefixes:
        if not model_id.startswith(prefix):
            continue
        if best is None or len(prefix) > len(best):
            best = prefix
    if best is None:
        return default_vendor
    return prefixes[best]


def resolve_route(
    primary: ModelCandidate,
    backups: Sequence[ModelCandidate],
    usable_vendors: Collection[str],
    manual_model_id: str | None = None,
    *,
    prefixes: Mapping[str, str],
    default_vendor: str,
) -> RoutingDecision:
    """Pick the primary model and the ordered backup chain.

    Pure: the outcome depends only on the arguments. Without a manual id the
    primary must sit on a usable vendor; a manual id is honoured as-is and the
    backups are re-checked for usability when they are actually attempted.
    """
    candidates = [primary, *backups]
    if manual_model_id:
        for index, candidate in enumerate(candidates):
            if candidate.id == manual_model_id:
                others = tuple(c for i, c in enumerate(candidates) if i != index)
                return RoutingDecision(primary=candidate, backups=others, is_manual_override=True)
        synthesized = ModelCandidate(
            id=manual_model_id,
            name=manual_model_id,
            vendor=guess_vendor(manual_model_id, prefixes, default_vendor),
            score=0.0,
            reasoning_summary="Manually selected by user",
        )
        return RoutingDecision(primary=synthesized, backups=tuple(candidates), is_manual_override=True)

    if primary.vendor in usable_vendors:
        chain = tuple(c for c in backups if c.vendor in usable_vendors)
        return RoutingDecision(primary=primary, backups=chain, is_manual_override=False)

    for index, backup in enumerate(backups):
        if backup.vendor not in usable_vendors:
            continue
        rest = tuple(c for i, c in enumerate(backups) if i != index)
        return RoutingDecision(primary=backup, backups=(primary, *rest), is_manual_override=False)

    offered = ", ".join(sorted({c.vendor for c in candidates})) or "<none>"
    raise NoUsableProvider(
        f"No supported provider available. Recommended providers are not configured: {offered}"
    )


__all__ = [
    "KNOWN_VENDORS",
    "DEFAULT_SYSTEM_PROMPT",
    "VendorDef",
    "OracleSettings",
    "RouterDefaults",
    "RouterConfig",
    "LoadedConfig",
    "load_vendors",
    "load_config",
    "guess_vendor",
    "resolve_route",
]
