from __future__ import annotations

import logging
import time
from typing import Any, Collection

import httpx
from pydantic import ValidationError

from .errors import OracleError
from .types import OracleResponse, OracleResult

logger = logging.getLogger(__name__)


class OracleClient:
    """HTTP client for the recommendation service that ranks candidate models."""

    def __init__(self, base_url: str, timeout_s: float = 15.0):
        self.base_url = base_url.rstrip("/")
        self.timeout_s = timeout_s

    @property
    def route_url(self) -> str:
        return f"{self.base_url}/api/v1/route"

    async def recommend(
        self,
        prompt: str,
        *,
        modality: str,
        user_tier: str,
        usable_vendors: Collection[str],
        conversation_id: str | None = None,
        previous_model_id: str | None = None,
    ) -> OracleResult:
        body: dict[str, Any] = {
            "prompt": prompt,
            "modality": modality,
            "userTier": user_tier,
            "availableProviders": sorted(usable_vendors),
        }
        if conversation_id or previous_model_id:
            context: dict[str, str] = {}
            if conversation_id:
                context["conversationId"] = conversation_id
            if previous_model_id:
                context["previousModelUsed"] = previous_model_id
            body["context"] = context
        start = time.perf_counter()
        try:
            async with httpx.AsyncClient(timeout=self.timeout_s) as client:
                r = await client.post(self.route_url, json=body)
        except httpx.HTTPError as exc:
            detail = str(exc) or exc.__class__.__name__
            raise OracleError(f"Recommendation request failed: {detail}") from exc
        latency_ms = int((time.perf_counter() - start) * 1000)
        if r.status_code >= 400:
            text = r.text or r.reason_phrase or "Unknown error"
            raise OracleError(f"Recommendation request failed ({r.status_code}): {text}")
        try:
            response = OracleResponse.model_validate(r.json())
        except (ValueError, ValidationError) as exc:
            raise OracleError(f"Malformed recommendation response: {exc}") from exc
        logger.info(
            "oracle_recommended primary=%s vendor=%s backups=%d latency_ms=%d",
            response.primary_model.id,
            response.primary_model.provider,
            len(response.backup_models),
            latency_ms,
        )
        return OracleResult(response=response, latency_ms=latency_ms)

    async def ping(self) -> bool:
        try:
            async with httpx.AsyncClient(timeout=min(self.timeout_s, 5.0)) as client:
                r = await client.head(self.base_url)
        except httpx.HTTPError:
            return False
        return r.is_success or r.status_code in (404, 405)
