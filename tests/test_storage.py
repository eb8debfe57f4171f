"""Unit tests for the durable stores and caches.

Postgres and Redis are replaced with scripted fakes; no server is needed.
"""

import time
from contextlib import asynccontextmanager
from unittest.mock import AsyncMock

import psycopg
import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

from mcp_gateway.logging import get_logger
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.memory import MemoryCache
from mcp_gateway.storage.models import RequestLogEntry, utcnow
from mcp_gateway.storage.postgres import PostgresStore
from mcp_gateway.storage.redis_cache import RedisCache


class FakeCursor:
    def __init__(self, rows):
        self.rows = rows

    async def fetchone(self):
        return self.rows[0] if self.rows else None

    async def fetchall(self):
        return list(self.rows)


class FakeConnection:
    def __init__(self, pool):
        self.pool = pool

    async def execute(self, sql, params=None):
        self.pool.executed.append((" ".join(sql.split()), params))
        if self.pool.error is not None:
            raise self.pool.error
        return FakeCursor(self.pool.rows.pop(0) if self.pool.rows else [])


class FakePool:
    def __init__(self, rows=None, error=None):
        self.rows = list(rows or [])
        self.error = error
        self.executed = []

    @asynccontextmanager
    async def connection(self):
        yield FakeConnection(self)


def _postgres(pool) -> PostgresStore:
    store: PostgresStore = PostgresStore.__new__(PostgresStore)
    store.dsn = "postgresql://test"
    store.logger = get_logger("test")
    store.pool = pool
    store._opened = True
    return store


class TestPostgresStore:
    async def test_get_api_key_maps_row(self):
        now = utcnow()
        pool = FakePool(
            rows=[[{
                "id": 7,
                "api_key": "k",
                "user_id": 42,
                "expires_at": None,
                "usage_limit": 10,
                "usage_count": 3,
                "created_at": now,
            }]]
        )
        record = await _postgres(pool).get_api_key("k")

        assert record.id == 7
        assert record.user_id == "42"
        assert record.usage_limit == 10
        assert record.usage_count == 3
        assert pool.executed[0][1] == ("k",)

    async def test_get_api_key_missing(self):
        assert await _postgres(FakePool()).get_api_key("nope") is None

    async def test_increment_is_a_single_update(self):
        pool = FakePool(rows=[[{"id": 1}]])
        await _postgres(pool).increment_usage_count("k")
        sql, params = pool.executed[0]
        assert sql.startswith("UPDATE api_key SET usage_count = usage_count + 1")
        assert params == ("k",)

    async def test_insert_context_wraps_payload_as_json(self):
        pool = FakePool(rows=[[{"id": 11}]])
        entry_id = await _postgres(pool).insert_context_entry("u", "s", {"a": 1})
        assert entry_id == 11
        params = pool.executed[0][1]
        assert params[0:2] == ("u", "s")
        assert params[2].obj == {"a": 1}

    async def test_latest_context_entry(self):
        pool = FakePool(rows=[[{"context_data": "User: hi\nAthena: hello"}]])
        assert await _postgres(pool).latest_context_entry("u") == "User: hi\nAthena: hello"
        assert "ORDER BY created_at DESC, id DESC" in pool.executed[0][0]

    async def test_insert_request_log(self):
        pool = FakePool(rows=[[{"id": 5}]])
        entry = RequestLogEntry(
            user_id="u",
            tool_used="Athena",
            request_payload={"prompt": "hi"},
            response_payload={"error": {"code": "UPSTREAM_ERROR"}},
            processing_time_ms=12,
            status="error",
        )
        assert await _postgres(pool).insert_request_log(entry) == 5
        params = pool.executed[0][1]
        assert params[0:2] == ("u", "Athena")
        assert params[4:] == (12, "error")

    async def test_driver_error_becomes_store_error(self):
        pool = FakePool(error=psycopg.OperationalError("server closed the connection"))
        with pytest.raises(StoreError) as exc_info:
            await _postgres(pool).get_api_key("k")
        assert exc_info.value.detail["operation"] == "get_api_key"

    async def test_missing_tables_fail_schema_check(self):
        pool = FakePool(rows=[[{"oid": "api_key"}], [{"oid": None}], [{"oid": None}]])
        with pytest.raises(RuntimeError) as exc_info:
            await _postgres(pool)._verify_required_schema()
        assert "context_log, request_log" in str(exc_info.value)


class TestRedisCache:
    def test_rejects_empty_url(self):
        with pytest.raises(ValueError):
            RedisCache("")

    async def test_operations_require_connect(self):
        cache = RedisCache("redis://localhost:6379/0")
        assert cache.is_connected is False
        with pytest.raises(StoreError):
            await cache.get("k")

    async def test_set_applies_ttl(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        await cache.set("k", "v", ttl_seconds=0)
        cache.client.set.assert_awaited_once_with("k", "v", ex=1)

    async def test_redis_errors_become_store_errors(self):
        cache = RedisCache("redis://localhost:6379/0")
        cache.client = AsyncMock()
        cache.client.get.side_effect = RedisConnectionError("gone")
        with pytest.raises(StoreError) as exc_info:
            await cache.get("k")
        assert exc_info.value.detail["key"] == "k"

    async def test_close_is_idempotent(self):
        cache = RedisCache("redis://localhost:6379/0")
        client = AsyncMock()
        cache.client = client
        await cache.close()
        await cache.close()
        client.aclose.assert_awaited_once()
        assert cache.is_connected is False


class TestMemoryCache:
    async def test_expired_values_disappear(self):
        cache = MemoryCache()
        await cache.connect()

        await cache.set("k", "v", ttl_seconds=10)
        assert await cache.get("k") == "v"
        cache._data["k"] = ("v", time.monotonic() - 1)
        assert await cache.get("k") is None

    async def test_closed_cache_raises(self):
        cache = MemoryCache()
        with pytest.raises(StoreError):
            await cache.get("k")


class TestMemoryStore:
    async def test_duplicate_key_rejected(self, memory_store):
        await memory_store.create_api_key("k", "u")
        with pytest.raises(StoreError):
            await memory_store.create_api_key("k", "u")

    async def test_snapshots_are_detached(self, memory_store):
        await memory_store.create_api_key("k", "u")
        snapshot = await memory_store.get_api_key("k")
        snapshot.usage_count = 99
        assert (await memory_store.get_api_key("k")).usage_count == 0

    async def test_request_logs_newest_first(self, memory_store):
        for tool in ("Athena", "Moad"):
            await memory_store.insert_request_log(
                RequestLogEntry(user_id="u", tool_used=tool, request_payload={}, response_payload={})
            )
        logs = await memory_store.list_request_logs("u")
        assert [log.tool_used for log in logs] == ["Moad", "Athena"]
