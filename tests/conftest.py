import asyncio
import inspect
import os
import sys
from pathlib import Path

# Env defaults must be in place before anything builds settings or the runtime
os.environ.setdefault("TEST_MODE", "true")
os.environ.setdefault("USE_MEMORY_STORE", "true")
os.environ.setdefault("ALLOW_REDIS_FALLBACK_DEV", "true")
os.environ.setdefault("REDIS_URL", "")
os.environ.setdefault("APP_ENV", "test")
os.environ.setdefault("ATHENA_API_URL", "http://athena.test")
os.environ.setdefault("ATHENA_API_KEY", "athena-test-key")
os.environ.setdefault("MOAD_API_URL", "http://moad.test/generate")
os.environ.setdefault("MOAD_API_KEY", "moad-test-key")

import httpx  # noqa: E402
import pytest  # noqa: E402

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


from mcp_gateway.service.runtime import reset_runtime_for_tests  # noqa: E402
from mcp_gateway.storage.memory import MemoryCache, MemoryStore  # noqa: E402


@pytest.fixture(autouse=True)
def reset_runtime_state():
    reset_runtime_for_tests()
    yield
    reset_runtime_for_tests()


@pytest.fixture
def memory_store():
    store = MemoryStore()
    asyncio.run(store.connect())
    return store


@pytest.fixture
def memory_cache():
    cache = MemoryCache()
    asyncio.run(cache.connect())
    return cache


class ToolBackend:
    """Scripted Athena/Moad back end behind ``httpx.MockTransport``.

    Handlers are keyed by URL path; every request is recorded.
    """

    def __init__(self):
        self.requests = []
        self.handlers = {
            "/query": lambda request: httpx.Response(
                200, json={"data": {"answer": "Paris"}}
            ),
            "/ingest": lambda request: httpx.Response(
                200, json={"message": "Document ingested"}
            ),
            "/generate": lambda request: httpx.Response(
                200, json={"message": "Docs generated"}
            ),
        }

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        handler = self.handlers.get(request.url.path)
        if handler is None:
            return httpx.Response(404, text="not found")
        return handler(request)

    def transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self)


@pytest.fixture
def tool_backend():
    return ToolBackend()


def pytest_pyfunc_call(pyfuncitem):
    if inspect.iscoroutinefunction(pyfuncitem.obj):
        call_kwargs = {
            name: pyfuncitem.funcargs[name]
            for name in pyfuncitem._fixtureinfo.argnames
            if name in pyfuncitem.funcargs
        }
        asyncio.run(pyfuncitem.obj(**call_kwargs))
        return True
    return None


def pytest_configure(config):
    config.addinivalue_line("markers", "asyncio: mark test as async")
