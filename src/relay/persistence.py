from __future__ import annotations

import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple

from .errors import NotFoundError
from .store import RecordStore
from .types import ApiCallLog, ConversationMessage, FinalizedExchange, OracleResponse, TokenUsage

logger = logging.getLogger(__name__)

DEFAULT_TITLE = "New conversation"


def _new_id() -> str:
    return str(uuid.uuid4())


def make_title(preview: str, length: int = 50) -> str:
    if len(preview) <= length:
        return preview
    return preview[:length] + "..."


def sub_conversation_context(highlighted_text: str) -> str:
    return (
        "The user is asking a follow-up question about this specific text they highlighted "
        f'from a previous response:\n\n"{highlighted_text}"\n\n'
        "Respond in the context of this highlighted text."
    )


def usage_from_row(row: Dict[str, Any]) -> TokenUsage:
    return TokenUsage(
        input_tokens=int(row.get("tokens_input") or 0),
        output_tokens=int(row.get("tokens_output") or 0),
        reasoning_tokens=int(row.get("tokens_reasoning") or 0),
        cached_tokens=int(row.get("tokens_cached") or 0),
        web_search_requests=row.get("web_search_requests"),
    )


def conversation_to_wire(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "title": row.get("title"),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def sub_conversation_to_wire(row: Dict[str, Any]) -> Dict[str, Any]:
    return {
        "id": row["id"],
        "conversationId": row.get("conversation_id"),
        "parentMessageId": row.get("parent_message_id"),
        "highlightedText": row.get("highlighted_text"),
        "createdAt": row.get("created_at"),
        "updatedAt": row.get("updated_at"),
    }


def message_to_wire(row: Dict[str, Any]) -> Dict[str, Any]:
    base: Dict[str, Any] = {
        "id": row["id"],
        "conversationId": row.get("conversation_id"),
        "subConversationId": row.get("sub_conversation_id"),
        "role": row.get("role"),
        "content": row.get("content"),
        "createdAt": row.get("created_at"),
    }
    if row.get("role") != "assistant":
        return base
    model_used = row.get("model_used") or {}
    extended = row.get("extended_data") or {}
    usage = usage_from_row(row).to_wire() if row.get("tokens_input") is not None else None
    base.update(
        {
            "model": model_used.get("model"),
            "alternateModels": model_used.get("backupModels"),
            "thinkingContent": extended.get("thinkingContent"),
            "citations": extended.get("citations"),
            "usage": usage,
            "costUsd": row.get("cost_usd"),
            "latencyMs": row.get("latency_ms"),
            "oracleLatencyMs": row.get("oracle_latency_ms"),
        }
    )
    return base


class PersistenceGateway:
    """Conversation, message and audit-log operations over a record store.

    Every timestamp comes from the store clock so ``created_at`` ordering
    matches insertion order.
    """

    def __init__(self, store: RecordStore, *, history_limit: int = 20, title_length: int = 50):
        self.store = store
        self.history_limit = history_limit
        self.title_length = title_length

    # conversations

    async def get_conversation(self, conversation_id: str) -> Dict[str, Any]:
        rows = await self.store.select("conversations", filters={"id": conversation_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Conversation not found: {conversation_id}")
        return rows[0]

    async def create_conversation(self, title: Optional[str] = None) -> Dict[str, Any]:
        now = self.store.now()
        record = {
            "id": _new_id(),
            "title": (title or "").strip() or DEFAULT_TITLE,
            "created_at": now,
            "updated_at": now,
        }
        return await self.store.insert("conversations", record)

    async def get_or_create_conversation(self, conversation_id: Optional[str], preview: str) -> str:
        if conversation_id:
            await self.get_conversation(conversation_id)
            return conversation_id
        created = await self.create_conversation(make_title(preview, self.title_length))
        logger.info("conversation_created conversation_id=%s", created["id"])
        return created["id"]

    async def list_conversations(self, limit: int = 20, offset: int = 0) -> Tuple[List[Dict[str, Any]], int]:
        rows = await self.store.select(
            "conversations", order_by="updated_at", descending=True, limit=limit, offset=offset
        )
        total = await self.store.count("conversations")
        return rows, total

    async def touch_conversation(self, conversation_id: str) -> None:
        await self.store.update("conversations", conversation_id, {"updated_at": self.store.now()})

    # sub-conversations

    async def create_sub_conversation(
        self, conversation_id: str, parent_message_id: str, highlighted_text: str
    ) -> Dict[str, Any]:
        await self.get_conversation(conversation_id)
        parents = await self.store.select(
            "messages", filters={"id": parent_message_id, "conversation_id": conversation_id}, limit=1
        )
        if not parents:
            raise NotFoundError(f"Parent message not found in conversation: {parent_message_id}")
        now = self.store.now()
        record = {
            "id": _new_id(),
            "conversation_id": conversation_id,
            "parent_message_id": parent_message_id,
            "highlighted_text": highlighted_text,
            "created_at": now,
            "updated_at": now,
        }
        return await self.store.insert("sub_conversations", record)

    async def get_sub_conversation(self, sub_conversation_id: str) -> Dict[str, Any]:
        rows = await self.store.select("sub_conversations", filters={"id": sub_conversation_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Sub-conversation not found: {sub_conversation_id}")
        return rows[0]

    async def list_sub_conversations(self, parent_message_id: str) -> List[Dict[str, Any]]:
        return await self.store.select(
            "sub_conversations", filters={"parent_message_id": parent_message_id}, order_by="created_at"
        )

    async def list_sub_conversation_messages(
        self, sub_conversation_id: str, limit: int = 50, offset: int = 0
    ) -> List[Dict[str, Any]]:
        return await self.store.select(
            "messages",
            filters={"sub_conversation_id": sub_conversation_id},
            order_by="created_at",
            limit=limit,
            offset=offset,
        )

    # messages

    async def read_message(self, message_id: str) -> Dict[str, Any]:
        rows = await self.store.select("messages", filters={"id": message_id}, limit=1)
        if not rows:
            raise NotFoundError(f"Message not found: {message_id}")
        return rows[0]

    async def save_user_message(
        self, conversation_id: str, content: str, sub_conversation_id: Optional[str] = None
    ) -> str:
        record = {
            "id": _new_id(),
            "conversation_id": conversation_id,
            "sub_conversation_id": sub_conversation_id,
            "role": "user",
            "content": content,
            "created_at": self.store.now(),
        }
        await self.store.insert("messages", record)
        return record["id"]

    async def fetch_history(
        self, conversation_id: str, sub_conversation_id: Optional[str] = None
    ) -> List[ConversationMessage]:
        context: List[ConversationMessage] = []
        if sub_conversation_id:
            sub = await self.get_sub_conversation(sub_conversation_id)
            if sub.get("highlighted_text"):
                context.append(ConversationMessage("system", sub_conversation_context(sub["highlighted_text"])))
            filters: Dict[str, Any] = {"sub_conversation_id": sub_conversation_id}
        else:
            filters = {"conversation_id": conversation_id, "sub_conversation_id": None}
        rows = await self.store.select(
            "messages", filters=filters, order_by="created_at", descending=True, limit=self.history_limit
        )
        rows.reverse()
        return context + [ConversationMessage(row["role"], row["content"]) for row in rows]

    async def get_previous_model_id(self, conversation_id: str) -> Optional[str]:
        rows = await self.store.select(
            "messages",
            filters={"conversation_id": conversation_id, "role": "assistant"},
            order_by="created_at",
            descending=True,
            limit=1,
        )
        if not rows:
            return None
        model = (rows[0].get("model_used") or {}).get("model") or {}
        model_id = model.get("id")
        return model_id if isinstance(model_id, str) else None

    async def insert_assistant_message(self, exchange: FinalizedExchange) -> Dict[str, Any]:
        usage = exchange.usage
        record = {
            "id": exchange.message_id,
            "conversation_id": exchange.conversation_id,
            "sub_conversation_id": exchange.sub_conversation_id,
            "role": "assistant",
            "content": exchange.content,
            "model_used": exchange.model_used,
            "tokens_input": usage.input_tokens,
            "tokens_output": usage.output_tokens,
            "tokens_reasoning": usage.reasoning_tokens,
            "tokens_cached": usage.cached_tokens,
            "web_search_requests": usage.web_search_requests,
            "cost_usd": float(exchange.cost_usd),
            "latency_ms": exchange.latency_ms,
            "oracle_latency_ms": exchange.oracle_latency_ms,
            "extended_data": exchange.extended_data,
            "created_at": self.store.now(),
        }
        return await self.store.insert("messages", record)

    # audit logs

    async def save_routing_log(
        self, message_id: str, oracle: OracleResponse, oracle_latency_ms: int, prompt: str = ""
    ) -> None:
        record = {
            "id": _new_id(),
            "message_id": message_id,
            "prompt": prompt,
            "recommended_model": oracle.primary_model.model_dump(mode="json"),
            "alternative_models": [model.model_dump(mode="json") for model in oracle.backup_models],
            "analysis": oracle.analysis.model_dump(mode="json", by_alias=True),
            "scoring_breakdown": oracle.timing,
            "oracle_latency_ms": oracle_latency_ms,
            "created_at": self.store.now(),
        }
        await self.store.insert("routing_logs", record)

    async def save_api_call_log(self, message_id: str, log: ApiCallLog, retry_count: int = 0) -> None:
        record = {
            "id": _new_id(),
            "message_id": message_id,
            "provider": log.vendor,
            "model_id": log.model_id,
            "status_code": log.status_code,
            "latency_ms": log.latency_ms,
            "error_message": log.error_message,
            "retry_count": retry_count,
            "created_at": self.store.now(),
        }
        await self.store.insert("api_call_logs", record)


__all__ = [
    "PersistenceGateway",
    "make_title",
    "sub_conversation_context",
    "usage_from_row",
    "conversation_to_wire",
    "sub_conversation_to_wire",
    "message_to_wire",
]
