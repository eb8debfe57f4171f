from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from mcp_gateway.logging import get_logger
from mcp_gateway.storage.errors import StoreError

logger = get_logger(__name__)


class RedisCache:
    """Thin Redis wrapper for conversational context and operational state.

    A single client is created by :meth:`connect` and released by
    :meth:`close`; both are idempotent.
    """

    DEFAULT_OPERATION_TIMEOUT = 5.0

    def __init__(self, redis_url: str, *, socket_timeout: float = DEFAULT_OPERATION_TIMEOUT):
        if not redis_url or not isinstance(redis_url, str):
            raise ValueError("Redis URL must be a valid string")
        self.redis_url = redis_url
        self.socket_timeout = socket_timeout
        self.client: Optional[aioredis.Redis] = None

    @property
    def is_connected(self) -> bool:
        return self.client is not None

    async def connect(self) -> None:
        if self.client is not None:
            return
        client = aioredis.from_url(
            self.redis_url,
            decode_responses=True,
            socket_timeout=self.socket_timeout,
            socket_connect_timeout=self.socket_timeout,
        )
        try:
            await client.ping()
        except RedisError as exc:
            await client.aclose()
            raise StoreError(
                "failed to connect to Redis", {"operation": "connect", "raw": str(exc)}
            ) from exc
        self.client = client

    def _require_client(self, operation: str) -> aioredis.Redis:
        if self.client is None:
            raise StoreError("Redis client not initialized", {"operation": operation})
        return self.client

    @staticmethod
    def _ttl(ttl_seconds: Optional[int]) -> Optional[int]:
        # Redis rejects zero or negative expirations
        if ttl_seconds is None:
            return None
        return max(1, int(ttl_seconds))

    async def get(self, key: str) -> Optional[str]:
        client = self._require_client("get")
        try:
            return await client.get(key)
        except RedisError as exc:
            raise StoreError(
                "cache read failed", {"operation": "get", "key": key, "raw": str(exc)}
            ) from exc

    async def set(self, key: str, value: str, ttl_seconds: Optional[int] = None) -> None:
        client = self._require_client("set")
        try:
            await client.set(key, value, ex=self._ttl(ttl_seconds))
        except RedisError as exc:
            raise StoreError(
                "cache write failed", {"operation": "set", "key": key, "raw": str(exc)}
            ) from exc

    async def close(self) -> None:
        """Close the Redis connection; a no-op when already closed."""
        client = self.client
        if client is None:
            return
        self.client = None
        try:
            await client.aclose()
        except RedisError as exc:
            logger.warning("redis_close_failed", error=str(exc))
