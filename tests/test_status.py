"""Tests for status reporting, the command catalog and lifecycle."""

import json
from unittest.mock import AsyncMock

import pytest

from mcp_gateway.service.dispatcher import LAST_COMMAND_KEY
from mcp_gateway.service.errors import StorageFailure
from mcp_gateway.service.status import CONFIG_KEY, NO_COMMAND, StatusReporter
from mcp_gateway.service.tools import AthenaClient, MoadClient, ToolGateway
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.memory import MemoryCache


def _gateway():
    return ToolGateway(
        AthenaClient("http://athena.test", "a-key"),
        MoadClient("http://moad.test", "m-key"),
    )


class FakeClock:
    def __init__(self, now=100.0):
        self.now = now

    def __call__(self):
        return self.now


class TestStatus:
    async def test_defaults_to_no_command(self, memory_cache):
        reporter = StatusReporter(memory_cache, _gateway())
        status = await reporter.get_status()
        assert status["status"] == "running"
        assert status["lastCommand"] == NO_COMMAND

    async def test_reports_last_command(self, memory_cache):
        await memory_cache.set(LAST_COMMAND_KEY, "Moad")
        reporter = StatusReporter(memory_cache, _gateway())
        assert (await reporter.get_status())["lastCommand"] == "Moad"

    async def test_uptime_uses_clock(self, memory_cache):
        clock = FakeClock(100.0)
        reporter = StatusReporter(memory_cache, _gateway(), clock=clock)
        clock.now = 112.5
        assert (await reporter.get_status())["uptimeSeconds"] == 12.5

    async def test_disconnected_cache_reports_none(self):
        reporter = StatusReporter(MemoryCache(), _gateway())
        assert (await reporter.get_status())["lastCommand"] == NO_COMMAND

    async def test_cache_error_is_storage_failure(self):
        cache = AsyncMock()
        cache.is_connected = True
        cache.get.side_effect = StoreError("redis down")
        reporter = StatusReporter(cache, _gateway())
        with pytest.raises(StorageFailure):
            await reporter.get_status()


class TestLifecycle:
    async def test_initialize_publishes_config(self):
        cache = MemoryCache()
        reporter = StatusReporter(cache, _gateway())

        assert await reporter.initialize() == {"initialized": True}

        config = json.loads(await cache.get(CONFIG_KEY))
        assert config["tools"]["Moad"]["url"] == "http://moad.test"
        assert await reporter.get_config() == config

    async def test_initialize_delegates_to_connect_callback(self, memory_cache):
        connect = AsyncMock()
        reporter = StatusReporter(memory_cache, _gateway(), connect=connect)
        await reporter.initialize()
        connect.assert_awaited_once()

    async def test_shutdown_is_idempotent(self, memory_cache):
        reporter = StatusReporter(memory_cache, _gateway())

        first = await reporter.shutdown()
        second = await reporter.shutdown()

        assert first["shutdown"] is True and second["shutdown"] is True
        assert isinstance(first["timestamp"], int)
        assert memory_cache.is_connected is False


def test_catalog_lists_both_tools(memory_cache):
    catalog = StatusReporter(memory_cache, _gateway()).list_commands()
    commands = {entry["command"]: entry for entry in catalog}
    assert set(commands) == {"Athena", "Moad"}
    assert "outputPath" in commands["Moad"]["params"]
    assert "prompt" in commands["Athena"]["params"]

    catalog[0]["params"].append("mutated")
    assert "mutated" not in StatusReporter(memory_cache, _gateway()).list_commands()[0]["params"]
