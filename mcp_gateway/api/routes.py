from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Header

from mcp_gateway.api.schemas import Envelope, ExecuteRequest
from mcp_gateway.logging import get_logger
from mcp_gateway.service.errors import InvalidParams
from mcp_gateway.service.runtime import get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/mcp")


@router.post("/initialize", response_model=Envelope)
async def initialize() -> Envelope:
    runtime = get_runtime()
    result = await runtime.status.initialize()
    return Envelope(message="MCP initialized successfully", data=result)


@router.post("/execute", response_model=Envelope)
async def execute(
    body: ExecuteRequest,
    x_user_id: Optional[str] = Header(default=None, alias="X-User-ID"),
    x_api_key: Optional[str] = Header(default=None, alias="X-API-Key"),
) -> Envelope:
    """Run one tool command for an already authenticated caller."""
    if not x_user_id:
        raise InvalidParams("Missing X-User-ID header", user_message="User ID is required.")
    if not x_api_key:
        raise InvalidParams("Missing X-API-Key header", user_message="API key is required.")
    runtime = get_runtime()
    result = await runtime.dispatcher.execute(body.tool, body.params, x_api_key, x_user_id)
    return Envelope(message="Command executed successfully", data=result)


@router.get("/status", response_model=Envelope)
async def status() -> Envelope:
    runtime = get_runtime()
    return Envelope(message="Status retrieved", data=await runtime.status.get_status())


@router.get("/commands", response_model=Envelope)
async def commands() -> Envelope:
    runtime = get_runtime()
    return Envelope(message="Commands retrieved", data=runtime.status.list_commands())


@router.post("/shutdown", response_model=Envelope)
async def shutdown() -> Envelope:
    runtime = get_runtime()
    result = await runtime.status.shutdown()
    logger.info("gateway_shutdown_requested")
    return Envelope(message="MCP shutdown successfully", data=result)
