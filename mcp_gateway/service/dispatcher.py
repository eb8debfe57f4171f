from __future__ import annotations

import time
from dataclasses import replace
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Protocol

from mcp_gateway.logging import get_logger, mask_secret
from mcp_gateway.service.context import ContextManager, build_prompt
from mcp_gateway.service.credentials import CredentialService
from mcp_gateway.service.errors import InternalError, InvalidParams, ServiceError
from mcp_gateway.service.tools import (
    MODE_QUERY,
    ToolCall,
    ToolGateway,
    ToolResult,
    resolve_tool_name,
)
from mcp_gateway.storage.models import RequestLogEntry

logger = get_logger(__name__)

LAST_COMMAND_KEY = "cache:mcp:lastCommand"


class RequestLogStore(Protocol):
    async def insert_request_log(self, entry: RequestLogEntry) -> int: ...


class OperationalCache(Protocol):
    async def set(
        self, key: str, value: str, ttl_seconds: Optional[int] = None
    ) -> None: ...


class CommandDispatcher:
    """Runs one named command end to end.

    Steps, in order: resolve the tool, validate the API key, validate params,
    record the last command, fetch prior context (Athena queries only), call
    the tool, save the merged context, write the request log and count usage.

    Key and param failures stop the command before any write. Once the tool
    has been called, context saves, request logging and usage counting are
    best-effort: their failures are logged and never change the result. A
    failed tool call is still logged (``status="error"``) but never counted.
    Context read-modify-write is not atomic across concurrent requests for the
    same user; the last writer wins.
    """

    def __init__(
        self,
        *,
        credentials: CredentialService,
        context: ContextManager,
        gateway: ToolGateway,
        request_logs: RequestLogStore,
        cache: Optional[OperationalCache] = None,
    ) -> None:
        self.credentials = credentials
        self.context = context
        self.gateway = gateway
        self.request_logs = request_logs
        self.cache = cache

    async def execute(
        self, tool: Any, params: Any, api_key: Optional[str], user_id: Optional[str]
    ) -> Dict[str, Any]:
        try:
            result = await self._execute(tool, params, api_key, user_id)
        except ServiceError:
            raise
        except Exception as exc:
            logger.exception(
                "command_execution_unexpected_error",
                tool=tool,
                user_id=user_id,
                error_type=type(exc).__name__,
            )
            raise InternalError(
                "Command execution error",
                metadata={"tool": tool, "raw": repr(exc)},
            ) from exc
        return {
            "status": "success",
            "data": result.data,
            "processedAt": datetime.now(timezone.utc).isoformat(),
        }

    async def _execute(
        self, tool: Any, params: Any, api_key: Optional[str], user_id: Optional[str]
    ) -> ToolResult:
        tool_name = resolve_tool_name(tool)
        if not user_id:
            raise InvalidParams("User ID is required")
        await self.credentials.validate(api_key)
        call = self.gateway.validate_params(tool_name, params)
        await self._record_last_command(tool_name)

        existing = None
        outbound = call
        if call.mode == MODE_QUERY:
            existing = await self._fetch_context(user_id)
            prompt = build_prompt(existing, call.arguments["prompt"])
            outbound = replace(call, arguments={**call.arguments, "prompt": prompt})

        started = time.perf_counter()
        try:
            result = await self.gateway.send(outbound)
        except ServiceError as exc:
            await self._log_request(
                user_id,
                api_key,
                call,
                {"error": exc.to_dict()},
                _elapsed_ms(started),
                status="error",
            )
            raise
        except Exception as exc:
            error = InternalError(
                f"{call.tool} call failed unexpectedly",
                metadata={"tool": call.tool, "raw": repr(exc)},
            )
            await self._log_request(
                user_id,
                api_key,
                call,
                {"error": error.to_dict()},
                _elapsed_ms(started),
                status="error",
            )
            raise error from exc
        elapsed_ms = _elapsed_ms(started)

        if call.mode == MODE_QUERY:
            await self._save_context(
                user_id, existing, call.arguments["prompt"], result.data["response"]
            )
        await self._log_request(
            user_id, api_key, call, result.data, elapsed_ms, status="success"
        )
        await self.credentials.increment_usage(api_key)
        logger.info(
            "command_executed",
            tool=call.tool,
            mode=call.mode,
            user_id=user_id,
            processing_time_ms=elapsed_ms,
        )
        return result

    async def _record_last_command(self, tool_name: str) -> None:
        if self.cache is None:
            return
        try:
            await self.cache.set(LAST_COMMAND_KEY, tool_name)
        except Exception as exc:
            logger.warning(
                "last_command_write_failed", tool=tool_name, error=str(exc)
            )

    async def _fetch_context(self, user_id: str) -> Any:
        # Missing or unreadable context means a fresh conversation
        try:
            return await self.context.get_context(user_id)
        except Exception as exc:
            logger.warning(
                "context_fetch_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return None

    async def _save_context(
        self, user_id: str, existing: Any, prompt: str, response: str
    ) -> None:
        try:
            await self.context.record_turn(user_id, existing, prompt, response)
        except Exception as exc:
            logger.warning(
                "context_save_failed",
                user_id=user_id,
                error_type=type(exc).__name__,
                error=str(exc),
            )

    async def _log_request(
        self,
        user_id: str,
        api_key: Optional[str],
        call: ToolCall,
        response_payload: Dict[str, Any],
        processing_time_ms: Optional[int],
        *,
        status: str,
    ) -> None:
        entry = RequestLogEntry(
            user_id=user_id,
            tool_used=call.tool,
            request_payload={**call.log_payload(), "api_key": mask_secret(api_key)},
            response_payload=response_payload,
            processing_time_ms=processing_time_ms,
            status=status,
        )
        try:
            await self.request_logs.insert_request_log(entry)
        except Exception as exc:
            logger.warning(
                "request_log_failed",
                user_id=user_id,
                tool=call.tool,
                error_type=type(exc).__name__,
                error=str(exc),
            )


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)
