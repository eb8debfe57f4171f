from __future__ import annotations

import json
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional

from mcp_gateway.logging import get_logger
from mcp_gateway.service.dispatcher import LAST_COMMAND_KEY
from mcp_gateway.service.errors import StorageFailure
from mcp_gateway.service.tools import ATHENA, MOAD, ToolGateway
from mcp_gateway.storage.errors import StoreError

logger = get_logger(__name__)

CONFIG_KEY = "cache:mcp:config"
NO_COMMAND = "none"

COMMAND_CATALOG: List[Dict[str, Any]] = [
    {
        "command": MOAD,
        "description": "Generate documentation for project source code",
        "params": ["projectPath", "outputPath", "outputDir"],
    },
    {
        "command": ATHENA,
        "description": "Ask the Athena Q&A model, or ingest a document into its knowledge base",
        "params": ["prompt", "options", "upload"],
    },
]


class StatusReporter:
    """Lifecycle and status surface: initialize, status, catalog, shutdown."""

    def __init__(
        self,
        cache: Any,
        gateway: ToolGateway,
        *,
        connect: Optional[Callable[[], Awaitable[None]]] = None,
        clock: Callable[[], float] = time.monotonic,
        started_at: Optional[float] = None,
    ) -> None:
        self.cache = cache
        self.gateway = gateway
        self._connect = connect
        self._clock = clock
        self._started_at = clock() if started_at is None else started_at

    async def initialize(self) -> Dict[str, Any]:
        """Connect the store and cache and publish the config snapshot."""
        if self._connect is not None:
            await self._connect()
        else:
            await self.publish_config()
        logger.info("gateway_initialized")
        return {"initialized": True}

    async def publish_config(self) -> None:
        try:
            await self.cache.connect()
            await self.cache.set(CONFIG_KEY, json.dumps(self.gateway.describe()))
        except StoreError as exc:
            raise StorageFailure(
                "Failed to cache gateway config",
                metadata={"service": "status.publish_config", **exc.detail},
            ) from exc

    async def get_status(self) -> Dict[str, Any]:
        last_command = NO_COMMAND
        if self.cache.is_connected:
            try:
                last_command = await self.cache.get(LAST_COMMAND_KEY) or NO_COMMAND
            except StoreError as exc:
                raise StorageFailure(
                    "Failed to get gateway status",
                    metadata={"service": "status.get_status", **exc.detail},
                ) from exc
        return {
            "uptimeSeconds": round(self._clock() - self._started_at, 3),
            "status": "running",
            "lastCommand": last_command,
        }

    async def get_config(self) -> Optional[Dict[str, Any]]:
        if not self.cache.is_connected:
            return None
        try:
            raw = await self.cache.get(CONFIG_KEY)
        except StoreError as exc:
            raise StorageFailure(
                "Failed to get gateway config",
                metadata={"service": "status.get_config", **exc.detail},
            ) from exc
        return json.loads(raw) if raw else None

    def list_commands(self) -> List[Dict[str, Any]]:
        return [dict(entry, params=list(entry["params"])) for entry in COMMAND_CATALOG]

    async def shutdown(self) -> Dict[str, Any]:
        """Release the cache connection; calling it again is a no-op."""
        was_connected = self.cache.is_connected
        await self.cache.close()
        if was_connected:
            logger.info("gateway_cache_released")
        return {"shutdown": True, "timestamp": int(time.time() * 1000)}
