from __future__ import annotations

import json
import uuid
from typing import Any, Optional, Protocol

from mcp_gateway.logging import get_logger
from mcp_gateway.service.errors import InvalidParams, StorageFailure
from mcp_gateway.storage.errors import StoreError

logger = get_logger(__name__)

DEFAULT_MAX_LENGTH = 500
DEFAULT_TTL_SECONDS = 3600
TRUNCATION_MARKER = "\n... [truncated] ...\n"
KEEP_RATIO = 0.4


class ContextStore(Protocol):
    async def insert_context_entry(
        self, user_id: str, session_id: str, payload: Any
    ) -> int: ...

    async def latest_context_entry(self, user_id: str) -> Any: ...


class Cache(Protocol):
    async def get(self, key: str) -> Optional[str]: ...

    async def set(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None: ...


def context_cache_key(user_id: str) -> str:
    return f"cache:context:{user_id}"


def truncate_context_if_needed(context: Any, max_length: int = DEFAULT_MAX_LENGTH) -> Any:
    """Bound a context string while keeping its opening and most recent text.

    Strings no longer than ``max_length`` come back unchanged; longer ones keep
    40% of ``max_length`` from each end joined by ``TRUNCATION_MARKER``.
    Non-string contexts are returned as-is.
    """
    if not isinstance(context, str):
        return context
    if len(context) <= max_length:
        return context
    keep_start = int(max_length * KEEP_RATIO)
    keep_end = int(max_length * KEEP_RATIO)
    tail = context[-keep_end:] if keep_end else ""
    return context[:keep_start] + TRUNCATION_MARKER + tail


def _as_text(context: Any) -> str:
    if isinstance(context, str):
        return context
    return json.dumps(context, ensure_ascii=False, sort_keys=True)


def merge_turn(existing: Any, prompt: str, response: str) -> str:
    """Append one User/Athena exchange to the existing context."""
    turn = "User: " + prompt + "\nAthena: " + response
    if existing is None or existing == "":
        return turn
    return _as_text(existing) + "\n" + turn


def build_prompt(existing: Any, prompt: str) -> str:
    """Prefix the prompt with prior context when there is any."""
    if existing is None or existing == "":
        return prompt
    return _as_text(existing) + "\n" + prompt


class ContextManager:
    """Per-user conversational context over the durable store and the cache.

    Reads are cache-first with a durable fallback; saves append a durable entry
    and write the same value through to the cache with a TTL. The durable log
    is authoritative, so cache failures are logged and tolerated.
    """

    def __init__(
        self,
        store: ContextStore,
        cache: Optional[Cache],
        *,
        ttl_seconds: int = DEFAULT_TTL_SECONDS,
        max_length: int = DEFAULT_MAX_LENGTH,
    ) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self.max_length = max_length

    def truncate(self, context: Any) -> Any:
        return truncate_context_if_needed(context, self.max_length)

    async def _cache_read(self, user_id: str) -> Any:
        if self.cache is None:
            return None
        try:
            raw = await self.cache.get(context_cache_key(user_id))
        except StoreError as exc:
            logger.warning(
                "context_cache_read_failed", user_id=user_id, error=exc.message
            )
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except ValueError:
            logger.warning("context_cache_corrupt", user_id=user_id)
            return None

    async def _cache_write(self, user_id: str, context: Any) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(
                context_cache_key(user_id),
                json.dumps(context, ensure_ascii=False),
                ttl_seconds=self.ttl_seconds,
            )
        except StoreError as exc:
            logger.warning(
                "context_cache_write_failed", user_id=user_id, error=exc.message
            )

    async def get_context(self, user_id: str) -> Any:
        if not user_id:
            raise InvalidParams("User ID required to fetch context")
        cached = await self._cache_read(user_id)
        if cached is not None:
            return cached
        try:
            context = await self.store.latest_context_entry(user_id)
        except StoreError as exc:
            raise StorageFailure(
                "Failed to get user context",
                metadata={"service": "context.get_context", "user_id": user_id, **exc.detail},
            ) from exc
        if context is not None:
            await self._cache_write(user_id, context)
        return context

    async def save_context(self, user_id: str, context: Any) -> str:
        """Persist a new context entry and mirror it into the cache.

        Returns the session id generated for this save.
        """
        if not user_id:
            raise InvalidParams("User ID required to set context")
        truncated = self.truncate(context)
        session_id = str(uuid.uuid4())
        try:
            await self.store.insert_context_entry(user_id, session_id, truncated)
        except StoreError as exc:
            raise StorageFailure(
                "Failed to save user context",
                metadata={"service": "context.save_context", "user_id": user_id, **exc.detail},
            ) from exc
        await self._cache_write(user_id, truncated)
        return session_id

    async def record_turn(
        self, user_id: str, existing: Any, prompt: str, response: str
    ) -> str:
        """Merge one exchange into ``existing`` and save the truncated result."""
        return await self.save_context(user_id, merge_turn(existing, prompt, response))
