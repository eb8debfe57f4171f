from __future__ import annotations

import asyncio
import threading
import time
from typing import Optional, Union
from urllib.parse import urlparse, urlunparse

import httpx

from mcp_gateway.config import Settings, get_settings, reset_settings_cache
from mcp_gateway.logging import get_logger
from mcp_gateway.service.context import ContextManager
from mcp_gateway.service.credentials import CredentialService
from mcp_gateway.service.dispatcher import CommandDispatcher
from mcp_gateway.service.status import StatusReporter
from mcp_gateway.service.tools import ToolGateway
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.memory import MemoryCache, MemoryStore
from mcp_gateway.storage.postgres import PostgresStore
from mcp_gateway.storage.redis_cache import RedisCache

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password in a connection URL for safe logging.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


class Runtime:
    """Process context owning the store, the cache and the tool clients.

    Collaborators are constructed here and injected into the services; nothing
    opens a connection until :meth:`connect`, which is guarded so repeated or
    concurrent calls connect once. When Redis is unreachable the in-memory
    cache is used, but only under ``TEST_MODE`` or ``ALLOW_REDIS_FALLBACK_DEV``.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        store: Union[PostgresStore, MemoryStore, None] = None,
        cache: Union[RedisCache, MemoryCache, None] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.settings = settings or get_settings()
        logger.info(
            "runtime_init_started",
            use_memory_store=self.settings.use_memory_store,
            test_mode=self.settings.test_mode,
        )
        if store is not None:
            self.store = store
        elif self.settings.use_memory_store:
            self.store = MemoryStore()
        else:
            self.store = PostgresStore(
                self.settings.database_url,
                min_size=self.settings.db_pool_min_size,
                max_size=self.settings.db_pool_max_size,
            )
        if cache is not None:
            self.cache = cache
        elif self.settings.redis_url:
            self.cache = RedisCache(self.settings.redis_url)
        elif self._fallback_allowed:
            self.cache = MemoryCache()
        else:
            raise RuntimeError(
                "REDIS_URL is required; set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true "
                "to use the in-memory cache."
            )
        self.gateway = ToolGateway.from_settings(self.settings, transport=transport)
        self.started_at = time.monotonic()
        self._connect_lock = asyncio.Lock()
        self._build_services()
        logger.info(
            "runtime_initialized",
            store_type=type(self.store).__name__,
            cache_type=type(self.cache).__name__,
            athena_configured=self.gateway.athena.is_configured,
            moad_configured=self.gateway.moad.is_configured,
        )

    def _build_services(self) -> None:
        self.credentials = CredentialService(self.store)
        self.context = ContextManager(
            self.store,
            self.cache,
            ttl_seconds=self.settings.context_ttl_seconds,
            max_length=self.settings.context_max_length,
        )
        self.dispatcher = CommandDispatcher(
            credentials=self.credentials,
            context=self.context,
            gateway=self.gateway,
            request_logs=self.store,
            cache=self.cache,
        )
        self.status = StatusReporter(
            self.cache,
            self.gateway,
            connect=self.connect,
            started_at=self.started_at,
        )

    @property
    def is_connected(self) -> bool:
        return self.store.is_connected and self.cache.is_connected

    @property
    def _fallback_allowed(self) -> bool:
        return self.settings.test_mode or self.settings.allow_redis_fallback_dev

    async def connect(self) -> None:
        async with self._connect_lock:
            if self.is_connected:
                return
            try:
                await self.store.connect()
            except Exception as exc:
                logger.error(
                    "runtime_store_connect_failed",
                    store_type=type(self.store).__name__,
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                raise
            await self._connect_cache()
            await self.status.publish_config()
            logger.info("runtime_connected", cache_type=type(self.cache).__name__)

    async def _connect_cache(self) -> None:
        try:
            await self.cache.connect()
            return
        except StoreError as exc:
            if not self._fallback_allowed:
                raise RuntimeError(
                    "Redis is required for context caching and operational state; "
                    "start Redis or set TEST_MODE=true/ALLOW_REDIS_FALLBACK_DEV=true for local fallback."
                ) from exc
            redis_error = exc
        logger.warning(
            "redis_disabled_fallback",
            redis_url=_mask_url_password(self.settings.redis_url),
            error=redis_error.message,
            message="Running without Redis; cached context and last command are in-memory only.",
        )
        self.cache = MemoryCache()
        await self.cache.connect()
        self._build_services()

    async def close(self) -> None:
        await self.status.shutdown()
        await self.gateway.aclose()
        await self.store.close()
        logger.info("runtime_closed")


runtime: Runtime | None = None
_runtime_lock = threading.Lock()


def get_runtime() -> Runtime:
    """Get or create the process Runtime.

    Uses double-checked locking so concurrent first calls build one instance.
    """
    global runtime
    if runtime is not None:
        return runtime
    with _runtime_lock:
        if runtime is None:
            runtime = Runtime()
        return runtime


def set_runtime(instance: Optional[Runtime]) -> None:
    """Install a pre-built runtime (tests, scripts)."""
    global runtime
    with _runtime_lock:
        runtime = instance


def reset_runtime_for_tests() -> Runtime:
    """Rebuild the Runtime from the current environment; TEST_MODE only."""
    global runtime
    with _runtime_lock:
        reset_settings_cache()
        settings = get_settings()
        if not settings.test_mode:
            raise RuntimeError("runtime reset is only allowed in TEST_MODE")
        runtime = Runtime(settings)
        return runtime
