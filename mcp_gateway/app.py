from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI

from mcp_gateway.api.error_handling import register_exception_handlers
from mcp_gateway.api.routes import router
from mcp_gateway.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Connect the runtime on startup and release it on exit."""
    from mcp_gateway.service.runtime import get_runtime

    runtime = get_runtime()
    await runtime.connect()
    logger.info("gateway_startup_complete", app_env=runtime.settings.app_env.value)

    yield

    try:
        await runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="MCP Gateway", version=__version__, lifespan=lifespan)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Bind a correlation id for the request and echo it in ``X-Request-ID``.

    A client-supplied ``X-Request-ID`` is reused; otherwise a UUID is generated.
    """
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


def create_app() -> FastAPI:
    return app
