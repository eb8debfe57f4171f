from __future__ import annotations

import asyncio
import mimetypes
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

import httpx

from mcp_gateway.config import Settings
from mcp_gateway.logging import get_logger
from mcp_gateway.service.errors import (
    GatewayFailure,
    InternalError,
    InvalidParams,
    UpstreamError,
)

logger = get_logger(__name__)

ATHENA = "Athena"
MOAD = "Moad"
SUPPORTED_TOOLS = (ATHENA, MOAD)

# Command names used by earlier clients resolve to the same tools
_TOOL_ALIASES = {
    "athena": ATHENA,
    "askathena": ATHENA,
    "moad": MOAD,
    "generatedocs": MOAD,
}

MODE_QUERY = "query"
MODE_INGEST = "ingest"
MODE_GENERATE = "generate"

_MAX_ERROR_BODY_CHARS = 2000


def resolve_tool_name(name: Any) -> str:
    """Map a requested tool name onto a supported tool or raise InvalidParams."""
    if isinstance(name, str):
        resolved = _TOOL_ALIASES.get(name.strip().lower())
        if resolved:
            return resolved
    raise InvalidParams(
        f"Unknown tool: {name}",
        user_message="unknown tool",
        metadata={"tool": name, "supported": list(SUPPORTED_TOOLS)},
    )


@dataclass
class ToolCall:
    """A validated, normalized tool invocation ready to send."""

    tool: str
    mode: str
    arguments: Dict[str, Any] = field(default_factory=dict)

    def log_payload(self) -> Dict[str, Any]:
        payload = {"tool": self.tool, "mode": self.mode}
        for key, value in self.arguments.items():
            payload[key] = str(value) if isinstance(value, Path) else value
        return payload


@dataclass
class ToolResult:
    tool: str
    mode: str
    data: Dict[str, Any]


class ToolClient:
    """Shared httpx plumbing for one external tool.

    Non-2xx answers become :class:`UpstreamError` carrying the upstream status
    and body; network failures and timeouts become :class:`GatewayFailure`.
    """

    service_name = "tool"

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/") if base_url else None
        self.api_key = api_key
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @property
    def is_configured(self) -> bool:
        return bool(self.base_url and self.api_key)

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"X-API-Key": self.api_key or ""},
                follow_redirects=False,
                transport=self._transport,
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def _require_config(self) -> str:
        if not self.is_configured:
            raise InternalError(
                f"{self.service_name} API URL or API key not configured",
                metadata={"service": self.service_name},
            )
        return self.base_url

    async def _post(
        self,
        url: str,
        *,
        timeout: float,
        json: Optional[dict] = None,
        data: Optional[dict] = None,
        files: Optional[dict] = None,
    ) -> dict:
        client = self._get_client()
        try:
            response = await client.post(
                url, json=json, data=data, files=files, timeout=timeout
            )
        except httpx.TimeoutException as exc:
            logger.error(
                "tool_call_timeout",
                service=self.service_name,
                url=url,
                timeout_seconds=timeout,
                error=str(exc),
            )
            raise GatewayFailure(
                f"{self.service_name} API timed out after {timeout}s",
                metadata={
                    "service": self.service_name,
                    "url": url,
                    "timeout_seconds": timeout,
                    "raw": repr(exc),
                },
            ) from exc
        except httpx.RequestError as exc:
            logger.error(
                "tool_call_connect_error",
                service=self.service_name,
                url=url,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise GatewayFailure(
                f"Failed to call {self.service_name} API",
                metadata={"service": self.service_name, "url": url, "raw": repr(exc)},
            ) from exc

        if not response.is_success:
            body = response.text[:_MAX_ERROR_BODY_CHARS]
            logger.error(
                "tool_call_upstream_error",
                service=self.service_name,
                url=url,
                status_code=response.status_code,
            )
            raise UpstreamError(
                f"{self.service_name} API error: {response.status_code} {response.reason_phrase}",
                status_code=response.status_code if response.status_code >= 400 else 502,
                metadata={
                    "service": self.service_name,
                    "upstream_status": response.status_code,
                    "body": body,
                },
            )

        try:
            payload = response.json()
        except ValueError as exc:
            raise self._invalid_response(response.text) from exc
        if not isinstance(payload, dict):
            raise self._invalid_response(response.text)
        return payload

    def _invalid_response(self, body: Any) -> UpstreamError:
        return UpstreamError(
            f"Invalid response from {self.service_name} API",
            status_code=502,
            metadata={
                "service": self.service_name,
                "body": str(body)[:_MAX_ERROR_BODY_CHARS],
            },
        )


@dataclass
class AthenaUpload:
    file_path: Path
    source_type: str
    title: str
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)


class AthenaClient(ToolClient):
    """Q&A / RAG service: ``POST /query`` for questions, ``POST /ingest`` for documents."""

    service_name = ATHENA

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        query_timeout: float = 15.0,
        ingest_timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, api_key, transport=transport)
        self.query_timeout = query_timeout
        self.ingest_timeout = ingest_timeout

    @staticmethod
    def parse_upload(descriptor: Any) -> AthenaUpload:
        if not isinstance(descriptor, dict):
            raise InvalidParams("upload must be an object with a filePath")
        raw_path = descriptor.get("filePath") or descriptor.get("file_path")
        if not raw_path or not isinstance(raw_path, str):
            raise InvalidParams("upload.filePath is required")
        file_path = Path(raw_path).expanduser()
        if not file_path.is_file():
            raise InvalidParams(
                "Upload file does not exist",
                metadata={"filePath": raw_path},
            )
        tags = descriptor.get("tags") or []
        if isinstance(tags, str):
            tags = [t.strip() for t in tags.split(",") if t.strip()]
        elif not isinstance(tags, list):
            raise InvalidParams("upload.tags must be a list or a comma separated string")
        return AthenaUpload(
            file_path=file_path,
            source_type=descriptor.get("sourceType") or descriptor.get("source_type") or "document",
            title=descriptor.get("title") or file_path.name,
            description=descriptor.get("description"),
            tags=[str(t) for t in tags],
        )

    def prepare(self, params: Dict[str, Any]) -> ToolCall:
        prompt = params.get("prompt")
        upload = params.get("upload")
        has_prompt = isinstance(prompt, str) and bool(prompt.strip())
        if has_prompt and upload:
            raise InvalidParams("Provide either prompt or upload for Athena, not both")
        if upload:
            parsed = self.parse_upload(upload)
            return ToolCall(
                tool=ATHENA,
                mode=MODE_INGEST,
                arguments={
                    "filePath": parsed.file_path,
                    "sourceType": parsed.source_type,
                    "title": parsed.title,
                    "description": parsed.description,
                    "tags": parsed.tags,
                },
            )
        if not has_prompt:
            raise InvalidParams("Prompt must be a non-empty string")
        options = params.get("options") or {}
        if not isinstance(options, dict):
            raise InvalidParams("options must be an object")
        return ToolCall(
            tool=ATHENA,
            mode=MODE_QUERY,
            arguments={"prompt": prompt, "options": options},
        )

    async def ask(self, prompt: str, options: Optional[dict] = None) -> Dict[str, Any]:
        base_url = self._require_config()
        payload = await self._post(
            f"{base_url}/query",
            json={"prompt": prompt, "options": options or {}},
            timeout=self.query_timeout,
        )
        data = payload.get("data")
        answer = data.get("answer") if isinstance(data, dict) else payload.get("answer")
        if not isinstance(answer, str):
            raise self._invalid_response(payload)
        return {"response": answer, "model": payload.get("model") or ATHENA}

    async def ingest(self, upload: AthenaUpload) -> Dict[str, Any]:
        base_url = self._require_config()
        try:
            content = await asyncio.to_thread(upload.file_path.read_bytes)
        except OSError as exc:
            raise InvalidParams(
                "Upload file could not be read",
                metadata={"filePath": str(upload.file_path), "raw": str(exc)},
            ) from exc
        mime_type = mimetypes.guess_type(upload.file_path.name)[0] or "application/octet-stream"
        form: Dict[str, str] = {
            "source_type": upload.source_type,
            "title": upload.title,
        }
        if upload.description:
            form["description"] = upload.description
        if upload.tags:
            form["tags"] = ",".join(upload.tags)
        payload = await self._post(
            f"{base_url}/ingest",
            data=form,
            files={"file": (upload.file_path.name, content, mime_type)},
            timeout=self.ingest_timeout,
        )
        data = payload.get("data")
        answer = data.get("answer") if isinstance(data, dict) else None
        if not isinstance(answer, str):
            answer = payload.get("message")
        if not isinstance(answer, str):
            raise self._invalid_response(payload)
        return {
            "response": answer,
            "source_type": upload.source_type,
            "title": upload.title,
        }


class MoadClient(ToolClient):
    """Documentation generator: ``POST {base}`` with project and output paths."""

    service_name = MOAD

    def __init__(
        self,
        base_url: Optional[str],
        api_key: Optional[str],
        *,
        timeout: float = 30.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        super().__init__(base_url, api_key, transport=transport)
        self.timeout = timeout

    def prepare(self, params: Dict[str, Any]) -> ToolCall:
        project_path = params.get("projectPath")
        output_path = params.get("outputPath") or params.get("outputDir")
        if not project_path or not output_path:
            raise InvalidParams(
                "Missing required params for Moad: projectPath, outputPath",
                metadata={"received": sorted(params.keys())},
            )
        if not isinstance(project_path, str) or not isinstance(output_path, str):
            raise InvalidParams("projectPath and outputPath must be strings")
        return ToolCall(
            tool=MOAD,
            mode=MODE_GENERATE,
            arguments={"projectPath": project_path, "outputPath": output_path},
        )

    async def generate(self, project_path: str, output_path: str) -> Dict[str, Any]:
        base_url = self._require_config()
        payload = await self._post(
            base_url,
            json={"projectPath": project_path, "outputPath": output_path},
            timeout=self.timeout,
        )
        message = payload.get("message")
        if not isinstance(message, str):
            raise self._invalid_response(payload)
        return {
            "response": message,
            "projectPath": project_path,
            "outputPath": output_path,
        }


class ToolGateway:
    """Routes a named tool invocation to the matching external call."""

    def __init__(self, athena: AthenaClient, moad: MoadClient) -> None:
        self.athena = athena
        self.moad = moad

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> "ToolGateway":
        return cls(
            AthenaClient(
                settings.athena_api_url,
                settings.athena_api_key,
                query_timeout=settings.athena_query_timeout_seconds,
                ingest_timeout=settings.athena_ingest_timeout_seconds,
                transport=transport,
            ),
            MoadClient(
                settings.moad_api_url,
                settings.moad_api_key,
                timeout=settings.moad_timeout_seconds,
                transport=transport,
            ),
        )

    def validate_params(self, tool_name: Any, params: Any) -> ToolCall:
        """Check tool name and parameters without any I/O."""
        tool = resolve_tool_name(tool_name)
        if params is None:
            params = {}
        if not isinstance(params, dict):
            raise InvalidParams("params must be an object")
        if tool == ATHENA:
            return self.athena.prepare(params)
        return self.moad.prepare(params)

    async def invoke(self, tool_name: Any, params: Any) -> ToolResult:
        return await self.send(self.validate_params(tool_name, params))

    async def send(self, call: ToolCall) -> ToolResult:
        args = call.arguments
        if call.mode == MODE_QUERY:
            data = await self.athena.ask(args["prompt"], args.get("options"))
        elif call.mode == MODE_INGEST:
            data = await self.athena.ingest(
                AthenaUpload(
                    file_path=Path(args["filePath"]),
                    source_type=args["sourceType"],
                    title=args["title"],
                    description=args.get("description"),
                    tags=list(args.get("tags") or []),
                )
            )
        elif call.mode == MODE_GENERATE:
            data = await self.moad.generate(args["projectPath"], args["outputPath"])
        else:
            raise InternalError(f"Unsupported tool mode: {call.mode}")
        return ToolResult(tool=call.tool, mode=call.mode, data=data)

    def describe(self) -> Dict[str, Any]:
        """Non-secret configuration snapshot for the operational cache."""
        return {
            "tools": {
                ATHENA: {
                    "url": self.athena.base_url,
                    "configured": self.athena.is_configured,
                    "query_timeout_seconds": self.athena.query_timeout,
                    "ingest_timeout_seconds": self.athena.ingest_timeout,
                },
                MOAD: {
                    "url": self.moad.base_url,
                    "configured": self.moad.is_configured,
                    "timeout_seconds": self.moad.timeout,
                },
            }
        }

    async def aclose(self) -> None:
        await self.athena.aclose()
        await self.moad.aclose()
