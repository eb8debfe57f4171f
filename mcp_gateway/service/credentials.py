from __future__ import annotations

import secrets
from datetime import datetime
from typing import Optional, Protocol

from mcp_gateway.logging import get_logger, mask_secret
from mcp_gateway.service.errors import (
    CredentialExpired,
    InvalidCredential,
    QuotaExceeded,
    StorageFailure,
)
from mcp_gateway.storage.errors import StoreError
from mcp_gateway.storage.models import ApiKeyRecord, utcnow

logger = get_logger(__name__)

API_KEY_PREFIX = "mcp_"


class CredentialStore(Protocol):
    async def get_api_key(self, api_key: str) -> Optional[ApiKeyRecord]: ...

    async def increment_usage_count(self, api_key: str) -> None: ...


def generate_api_key() -> str:
    """Return a fresh opaque API key."""
    return API_KEY_PREFIX + secrets.token_urlsafe(32)


class CredentialService:
    """API key validation and best-effort usage accounting."""

    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def _now(self) -> datetime:
        return utcnow()

    async def validate(self, api_key: Optional[str]) -> ApiKeyRecord:
        """Return the key record if it is usable.

        Raises:
            InvalidCredential: no record matches
            CredentialExpired: the expiry timestamp is in the past
            QuotaExceeded: a usage limit exists and has been reached
            StorageFailure: the store could not be read
        """
        if not api_key:
            raise InvalidCredential("API key is required")
        try:
            record = await self.store.get_api_key(api_key)
        except StoreError as exc:
            raise StorageFailure(
                "Failed to read API key",
                metadata={
                    "service": "credentials.validate",
                    "api_key": mask_secret(api_key),
                    **exc.detail,
                },
            ) from exc
        if record is None:
            raise InvalidCredential(
                "Invalid API key", metadata={"api_key": mask_secret(api_key)}
            )
        if record.is_expired(self._now()):
            raise CredentialExpired(
                "API key expired",
                metadata={
                    "api_key": mask_secret(api_key),
                    "expires_at": record.expires_at.isoformat(),
                },
            )
        if record.is_over_limit():
            raise QuotaExceeded(
                "API key usage limit exceeded",
                metadata={
                    "api_key": mask_secret(api_key),
                    "usage_count": record.usage_count,
                    "usage_limit": record.usage_limit,
                },
            )
        return record

    async def increment_usage(self, api_key: str) -> bool:
        """Count one successful call against the key.

        Never raises: losing a count is preferred over failing a request whose
        answer the caller already has. Returns whether the update landed.
        """
        try:
            await self.store.increment_usage_count(api_key)
        except Exception as exc:
            logger.warning(
                "usage_increment_failed",
                key=mask_secret(api_key),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        return True
