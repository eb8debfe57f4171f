from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalize naive timestamps (older rows) to aware UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class ApiKeyRecord:
    api_key: str
    user_id: str
    id: Optional[int] = None
    expires_at: Optional[datetime] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    created_at: datetime = field(default_factory=utcnow)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        if self.expires_at is None:
            return False
        return as_utc(self.expires_at) <= (now or utcnow())

    def is_over_limit(self) -> bool:
        if self.usage_limit is None:
            return False
        return self.usage_count >= self.usage_limit

    def is_usable(self, now: Optional[datetime] = None) -> bool:
        return not self.is_expired(now) and not self.is_over_limit()


@dataclass
class ContextEntry:
    user_id: str
    session_id: str
    context: Any
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)


@dataclass
class RequestLogEntry:
    user_id: str
    tool_used: str
    request_payload: Dict[str, Any]
    response_payload: Dict[str, Any]
    processing_time_ms: Optional[int] = None
    status: str = "success"
    id: Optional[int] = None
    created_at: datetime = field(default_factory=utcnow)
