from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ExecuteRequest(BaseModel):
    """Body of ``POST /mcp/execute``; tool names are resolved by the dispatcher."""

    tool: Any = None
    params: Optional[Dict[str, Any]] = Field(default_factory=dict)


class Envelope(BaseModel):
    """Success envelope for every ``/mcp`` route."""

    success: bool = True
    message: str
    data: Optional[Any] = None


class ErrorEnvelope(BaseModel):
    """Failure envelope; ``metadata`` and ``stack`` appear outside production."""

    success: bool = False
    message: str
    code: str
    metadata: Optional[Dict[str, Any]] = None
    stack: Optional[List[str]] = None
