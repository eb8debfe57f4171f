from __future__ import annotations

from enum import Enum
from typing import Any, Optional


class ErrorKind(str, Enum):
    """Failure kinds surfaced by the gateway core."""

    INVALID_PARAMS = "invalid_params"
    INVALID_CREDENTIAL = "invalid_credential"
    CREDENTIAL_EXPIRED = "credential_expired"
    QUOTA_EXCEEDED = "quota_exceeded"
    UPSTREAM_ERROR = "upstream_error"
    GATEWAY_FAILURE = "gateway_failure"
    STORAGE_FAILURE = "storage_failure"
    INTERNAL_ERROR = "internal_error"


class ServiceError(Exception):
    """Base class for request-scoped failures mapped to HTTP responses.

    Each subclass fixes a ``kind``, an HTTP ``status_code``, a stable upper-case
    ``code`` and whether the failure is ``reportable``. Caller-input failures
    (bad params, bad or exhausted keys) are not reportable and must never reach
    alerting; infrastructure failures are.

    ``message`` is the internal description, ``user_message`` is what crosses
    the boundary in production-like modes and ``metadata`` carries diagnostics
    (service name, inputs, raw cause).
    """

    kind: ErrorKind = ErrorKind.INTERNAL_ERROR
    status_code: int = 500
    reportable: bool = True
    user_message: str = "Something went wrong."

    def __init__(
        self,
        message: str,
        *,
        user_message: Optional[str] = None,
        status_code: Optional[int] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        if user_message is not None:
            self.user_message = user_message
        if status_code is not None:
            self.status_code = status_code
        self.metadata = metadata or {}

    @property
    def code(self) -> str:
        return self.kind.value.upper()

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "status_code": self.status_code,
        }


class InvalidParams(ServiceError):
    """Caller supplied bad or missing fields (400)."""

    kind = ErrorKind.INVALID_PARAMS
    status_code = 400
    reportable = False
    user_message = "Please check your inputs."


class InvalidCredential(ServiceError):
    """No API key record matches (401)."""

    kind = ErrorKind.INVALID_CREDENTIAL
    status_code = 401
    reportable = False
    user_message = "Invalid API key."


class CredentialExpired(ServiceError):
    """API key expiry is in the past (401)."""

    kind = ErrorKind.CREDENTIAL_EXPIRED
    status_code = 401
    reportable = False
    user_message = "API key expired."


class QuotaExceeded(ServiceError):
    """API key usage count reached its limit (429)."""

    kind = ErrorKind.QUOTA_EXCEEDED
    status_code = 429
    reportable = False
    user_message = "API key usage limit exceeded."


class UpstreamError(ServiceError):
    """External tool answered non-2xx or with a malformed body.

    ``status_code`` is the upstream status, or 502 for malformed bodies.
    """

    kind = ErrorKind.UPSTREAM_ERROR
    status_code = 502
    user_message = "The tool service returned an error."


class GatewayFailure(ServiceError):
    """Network-level failure reaching an external tool (timeout, refused)."""

    kind = ErrorKind.GATEWAY_FAILURE
    status_code = 500
    user_message = "The tool service could not be reached."


class StorageFailure(ServiceError):
    """Durable store or cache failure."""

    kind = ErrorKind.STORAGE_FAILURE
    status_code = 500


class InternalError(ServiceError):
    """Anything unclassified."""

    kind = ErrorKind.INTERNAL_ERROR
    status_code = 500


__all__ = [
    "ErrorKind",
    "ServiceError",
    "InvalidParams",
    "InvalidCredential",
    "CredentialExpired",
    "QuotaExceeded",
    "UpstreamError",
    "GatewayFailure",
    "StorageFailure",
    "InternalError",
]
