"""
Error taxonomy for the generation engine.

Every error carries a stable machine-readable ``code`` and a ``details``
dict so callers can decide whether to retry, upgrade, or abandon. Business
outcomes (quota, safety) are converted to ``FailureInfo`` and reported in
the status response; only structural faults are raised to callers.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any


class ReasonCode(str, Enum):
    VALIDATION_ERROR = "validation_error"
    QUOTA_EXCEEDED = "quota_exceeded"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    PROVIDER_REJECTED = "provider_rejected"
    SAFETY_REJECTED = "safety_rejected"
    TIMEOUT = "timeout"
    INTERNAL_ERROR = "internal_error"
    CANCELLED = "cancelled"
    REVIEW_REJECTED = "review_rejected"


class ErrorKind(str, Enum):
    """Classification of a single provider invocation failure."""

    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    TRANSIENT = "transient"
    PAYLOAD_REJECTED = "payload_rejected"
    AUTHENTICATION = "authentication"
    INTERNAL = "internal"

    @property
    def retriable(self) -> bool:
        # INTERNAL is a fault inside one backend client; another backend may still succeed
        return self not in (ErrorKind.PAYLOAD_REJECTED, ErrorKind.AUTHENTICATION)


class GenerationError(Exception):
    code: ReasonCode = ReasonCode.INTERNAL_ERROR

    def __init__(self, message: str, **details: Any) -> None:
        super().__init__(message)
        self.message = message
        self.details: dict[str, Any] = details

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code.value,
            "message": self.message,
            "details": self.details,
        }


class ValidationError(GenerationError):
    code = ReasonCode.VALIDATION_ERROR


class AssetNotFound(ValidationError):
    def __init__(self, asset_id: str) -> None:
        super().__init__(f"Asset {asset_id} not found", asset_id=asset_id)


class AssetForbidden(ValidationError):
    def __init__(self, asset_id: str) -> None:
        super().__init__(
            f"Asset {asset_id} is not accessible to the requester",
            asset_id=asset_id,
        )


class QuotaExceeded(GenerationError):
    code = ReasonCode.QUOTA_EXCEEDED

    def __init__(self, account_id: str, window: str, reset_at: datetime) -> None:
        super().__init__(
            f"{window.capitalize()} generation limit reached for {account_id}",
            account_id=account_id,
            window=window,
            reset_at=reset_at.isoformat(),
        )
        self.reset_at = reset_at


class ProviderUnavailable(GenerationError):
    code = ReasonCode.PROVIDER_UNAVAILABLE

    def __init__(self, failed_providers: int, last_error: str = "") -> None:
        super().__init__(
            f"All providers exhausted ({failed_providers} failed)",
            failed_providers=failed_providers,
            last_error=last_error,
        )


class ProviderRejected(GenerationError):
    """A provider refused the payload itself; failing over would not help."""

    code = ReasonCode.PROVIDER_REJECTED

    def __init__(self, provider_id: str, kind: ErrorKind, message: str) -> None:
        super().__init__(
            f"Provider {provider_id} rejected the request: {message}",
            provider_id=provider_id,
            error_kind=kind.value,
        )


class SafetyRejected(GenerationError):
    code = ReasonCode.SAFETY_REJECTED

    def __init__(self, stage: str, categories: list[str]) -> None:
        super().__init__(
            f"Content rejected by {stage}-generation safety check",
            stage=stage,
            categories=categories,
        )


class GenerationTimeout(GenerationError):
    code = ReasonCode.TIMEOUT


class InternalError(GenerationError):
    code = ReasonCode.INTERNAL_ERROR


class InvalidStateError(GenerationError):
    """Operation not permitted for the request's current status."""

    code = ReasonCode.VALIDATION_ERROR

    def __init__(self, request_id: str, status: str, operation: str) -> None:
        super().__init__(
            f"Cannot {operation} request {request_id} in status {status}",
            request_id=request_id,
            status=status,
            operation=operation,
        )


class RequestNotFound(GenerationError):
    code = ReasonCode.VALIDATION_ERROR

    def __init__(self, request_id: str) -> None:
        super().__init__(f"Unknown request {request_id}", request_id=request_id)


class ProviderError(Exception):
    """Raised by provider clients; consumed only by the router."""

    def __init__(self, kind: ErrorKind, message: str = "") -> None:
        super().__init__(message or kind.value)
        self.kind = kind
