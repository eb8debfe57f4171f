from __future__ import annotations

import copy
import itertools
import time
from dataclasses import replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

from mcp_gateway.logging import get_logger
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.models import (
    ApiKeyRecord,
    ContextEntry,
    RequestLogEntry,
)


class MemoryStore:
    """In-memory durable store for tests and local development.

    Mirrors the async contract of :class:`PostgresStore`. Nothing survives a
    process restart.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.api_keys: Dict[str, ApiKeyRecord] = {}
        self.context_logs: List[ContextEntry] = []
        self.request_logs: List[RequestLogEntry] = []
        self._ids = itertools.count(1)
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self, *, verify_schema: bool = True) -> None:
        self._connected = True

    async def close(self) -> None:
        self._connected = False

    async def apply_schema(self) -> None:
        return None

    async def get_api_key(self, api_key: str) -> Optional[ApiKeyRecord]:
        record = self.api_keys.get(api_key)
        # Callers get a snapshot, like a row read from Postgres
        return replace(record) if record else None

    async def increment_usage_count(self, api_key: str) -> None:
        record = self.api_keys.get(api_key)
        if record is not None:
            record.usage_count += 1

    async def create_api_key(
        self,
        api_key: str,
        user_id: str,
        *,
        expires_at: Optional[datetime] = None,
        usage_limit: Optional[int] = None,
    ) -> ApiKeyRecord:
        if api_key in self.api_keys:
            raise StoreError("api key already exists", {"operation": "create_api_key"})
        record = ApiKeyRecord(
            id=next(self._ids),
            api_key=api_key,
            user_id=user_id,
            expires_at=expires_at,
            usage_limit=usage_limit,
        )
        self.api_keys[api_key] = record
        return replace(record)

    async def insert_context_entry(
        self, user_id: str, session_id: str, payload: Any
    ) -> int:
        entry = ContextEntry(
            id=next(self._ids),
            user_id=user_id,
            session_id=session_id,
            context=copy.deepcopy(payload),
        )
        self.context_logs.append(entry)
        return entry.id

    async def latest_context_entry(self, user_id: str) -> Any:
        entries = [e for e in self.context_logs if e.user_id == user_id]
        if not entries:
            return None
        latest = max(entries, key=lambda e: (e.created_at, e.id))
        return copy.deepcopy(latest.context)

    async def insert_request_log(self, entry: RequestLogEntry) -> int:
        stored = replace(entry, id=next(self._ids))
        self.request_logs.append(stored)
        return stored.id

    async def list_request_logs(
        self, user_id: str, limit: int = 50
    ) -> List[RequestLogEntry]:
        entries = [e for e in self.request_logs if e.user_id == user_id]
        entries.sort(key=lambda e: (e.created_at, e.id), reverse=True)
        return entries[:limit]


class MemoryCache:
    """In-process TTL cache used when Redis is unavailable in dev/test."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[str, Optional[float]]] = {}
        self._connected = False

    @property
    def is_connected(self) -> bool:
        return self._connected

    async def connect(self) -> None:
        self._connected = True

    def _require_connection(self) -> None:
        if not self._connected:
            raise StoreError("cache client not initialized", {"operation": "cache"})

    async def get(self, key: str) -> Optional[str]:
        self._require_connection()
        item = self._data.get(key)
        if item is None:
            return None
        value, expires_at = item
        if expires_at is not None and expires_at <= time.monotonic():
            self._data.pop(key, None)
            return None
        return value

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        self._require_connection()
        expires_at = time.monotonic() + ttl_seconds if ttl_seconds else None
        self._data[key] = (value, expires_at)

    async def close(self) -> None:
        self._connected = False
        self._data.clear()
