"""Record stores behind the persistence gateway.

Two implementations share one async interface: an in-process store used by
default and in tests, and a PostgREST client for a hosted database. Records
are plain dicts keyed by column name; every table has a string ``id``.
"""

from __future__ import annotations

import copy
import logging
import threading
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Mapping, Optional, Protocol

import httpx

from .errors import PersistenceError

logger = logging.getLogger(__name__)

TABLES = ("conversations", "messages", "sub_conversations", "routing_logs", "api_call_logs")


class MonotonicClock:
    """ISO-8601 UTC timestamps that strictly increase within the process."""

    def __init__(self) -> None:
        self._last: datetime | None = None
        self._lock = threading.Lock()

    def now(self) -> str:
        with self._lock:
            current = datetime.now(timezone.utc)
            if self._last is not None and current <= self._last:
                current = self._last + timedelta(microseconds=1)
            self._last = current
        return current.isoformat(timespec="microseconds")


class RecordStore(Protocol):
    def now(self) -> str: ...

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]: ...

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]: ...

    async def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Optional[Dict[str, Any]]: ...

    async def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int: ...

    async def ping(self) -> bool: ...


def _check_table(table: str) -> None:
    if table not in TABLES:
        raise PersistenceError(f"Unknown table: {table}")


def _matches(record: Mapping[str, Any], filters: Mapping[str, Any]) -> bool:
    for column, expected in filters.items():
        if record.get(column) != expected:
            return False
    return True


class MemoryRecordStore:
    def __init__(self, clock: MonotonicClock | None = None) -> None:
        self.clock = clock or MonotonicClock()
        self.tables: Dict[str, List[Dict[str, Any]]] = {name: [] for name in TABLES}

    def now(self) -> str:
        return self.clock.now()

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        _check_table(table)
        if "id" not in record:
            raise PersistenceError(f"Record for {table} has no id")
        rows = self.tables[table]
        if any(row["id"] == record["id"] for row in rows):
            raise PersistenceError(f"Duplicate id {record['id']} in {table}")
        stored = copy.deepcopy(dict(record))
        stored.setdefault("created_at", self.now())
        rows.append(stored)
        return copy.deepcopy(stored)

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        _check_table(table)
        rows = [row for row in self.tables[table] if _matches(row, filters or {})]
        if order_by is not None:
            rows.sort(key=lambda row: (row.get(order_by) is None, row.get(order_by) or ""), reverse=descending)
        rows = rows[max(offset, 0):]
        if limit is not None:
            rows = rows[:limit]
        return copy.deepcopy(rows)

    async def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        _check_table(table)
        for row in self.tables[table]:
            if row["id"] == record_id:
                row.update(copy.deepcopy(dict(changes)))
                return copy.deepcopy(row)
        return None

    async def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        _check_table(table)
        return sum(1 for row in self.tables[table] if _matches(row, filters or {}))

    async def ping(self) -> bool:
        return True


def _filter_value(value: Any) -> str:
    if value is None:
        return "is.null"
    if isinstance(value, bool):
        return "eq." + ("true" if value else "false")
    return f"eq.{value}"


def _parse_content_range(header: str | None) -> int:
    # "0-24/3573" or "*/0"
    if not header or "/" not in header:
        return 0
    total = header.rsplit("/", 1)[1]
    return int(total) if total.isdigit() else 0


class RestRecordStore:
    """PostgREST-compatible store (``{base}/rest/v1/{table}``)."""

    def __init__(self, base_url: str, api_key: str, *, timeout: float = 10.0, clock: MonotonicClock | None = None):
        self.base_url = base_url.rstrip("/")
        self._api_key = api_key
        self.timeout = timeout
        self.clock = clock or MonotonicClock()

    def now(self) -> str:
        return self.clock.now()

    def _url(self, table: str) -> str:
        _check_table(table)
        return f"{self.base_url}/rest/v1/{table}"

    def _headers(self, **extra: str) -> dict[str, str]:
        headers = {
            "apikey": self._api_key,
            "Authorization": f"Bearer {self._api_key}",
            "Content-Type": "application/json",
        }
        headers.update(extra)
        return headers

    async def _send(
        self,
        method: str,
        table: str,
        *,
        params: Optional[Dict[str, str]] = None,
        json: Any = None,
        headers: Optional[Dict[str, str]] = None,
    ) -> httpx.Response:
        url = self._url(table)
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                r = await client.request(method, url, params=params, json=json, headers=headers or self._headers())
        except httpx.HTTPError as exc:
            detail = str(exc) or exc.__class__.__name__
            raise PersistenceError(f"{method} {table} failed: {detail}") from exc
        if r.status_code >= 400:
            message = r.text or r.reason_phrase or "request failed"
            try:
                body = r.json()
            except ValueError:
                body = None
            if isinstance(body, dict) and isinstance(body.get("message"), str):
                message = body["message"]
            raise PersistenceError(f"{method} {table} failed ({r.status_code}): {message}")
        return r

    async def insert(self, table: str, record: Mapping[str, Any]) -> Dict[str, Any]:
        payload = dict(record)
        payload.setdefault("created_at", self.now())
        r = await self._send("POST", table, json=payload, headers=self._headers(Prefer="return=representation"))
        rows = r.json() if r.content else []
        if isinstance(rows, list) and rows:
            return rows[0]
        return payload

    async def select(
        self,
        table: str,
        *,
        filters: Optional[Mapping[str, Any]] = None,
        order_by: Optional[str] = None,
        descending: bool = False,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[Dict[str, Any]]:
        params: Dict[str, str] = {"select": "*"}
        for column, value in (filters or {}).items():
            params[column] = _filter_value(value)
        if order_by is not None:
            params["order"] = f"{order_by}.{'desc' if descending else 'asc'}"
        if limit is not None:
            params["limit"] = str(limit)
        if offset:
            params["offset"] = str(offset)
        r = await self._send("GET", table, params=params)
        rows = r.json()
        if not isinstance(rows, list):
            raise PersistenceError(f"GET {table} returned a non-list body")
        return rows

    async def update(self, table: str, record_id: str, changes: Mapping[str, Any]) -> Optional[Dict[str, Any]]:
        r = await self._send(
            "PATCH",
            table,
            params={"id": f"eq.{record_id}"},
            json=dict(changes),
            headers=self._headers(Prefer="return=representation"),
        )
        rows = r.json() if r.content else []
        if isinstance(rows, list) and rows:
            return rows[0]
        return None

    async def count(self, table: str, filters: Optional[Mapping[str, Any]] = None) -> int:
        params: Dict[str, str] = {"select": "id"}
        for column, value in (filters or {}).items():
            params[column] = _filter_value(value)
        r = await self._send("HEAD", table, params=params, headers=self._headers(Prefer="count=exact"))
        return _parse_content_range(r.headers.get("content-range"))

    async def ping(self) -> bool:
        try:
            await self.count("conversations")
        except PersistenceError as exc:
            logger.warning("store_ping_failed error=%s", exc.message)
            return False
        return True


__all__ = ["TABLES", "MonotonicClock", "RecordStore", "MemoryRecordStore", "RestRecordStore"]
