from __future__ import annotations

from enum import Enum
from typing import Any


class ErrorCode(str, Enum):
    VALIDATION_ERROR = "VALIDATION_ERROR"
    NO_PROVIDER = "NO_PROVIDER"
    UNSUPPORTED_TASK = "UNSUPPORTED_TASK"
    PROVIDER_RETRY = "PROVIDER_RETRY"
    PROVIDER_ERROR = "PROVIDER_ERROR"
    ALL_PROVIDERS_FAILED = "ALL_PROVIDERS_FAILED"
    ORACLE_ERROR = "ORACLE_ERROR"
    PERSISTENCE_ERROR = "PERSISTENCE_ERROR"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class RelayError(Exception):
    """Base class for failures that end up in front of the client."""

    code: ErrorCode = ErrorCode.INTERNAL_ERROR
    status_code: int = 500

    def __init__(self, message: str, *, vendor: str | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.vendor = vendor

    def to_payload(self) -> dict[str, Any]:
        return {"message": self.message, "code": self.code.value}


class ChatValidationError(RelayError):
    code = ErrorCode.VALIDATION_ERROR
    status_code = 400


class NotFoundError(RelayError):
    code = ErrorCode.NOT_FOUND
    status_code = 404


class RoutingError(RelayError):
    code = ErrorCode.NO_PROVIDER
    status_code = 503


class NoUsableProvider(RoutingError):
    """No oracle candidate lives on a vendor with a configured credential."""


class UnsupportedTask(RelayError):
    code = ErrorCode.UNSUPPORTED_TASK
    status_code = 422

    def __init__(
        self,
        message: str,
        *,
        category: str | None = None,
        suggested_platforms: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.category = category
        self.suggested_platforms = list(suggested_platforms or [])

    def to_payload(self) -> dict[str, Any]:
        payload = super().to_payload()
        if self.category is not None:
            payload["category"] = self.category
        payload["suggestedPlatforms"] = list(self.suggested_platforms)
        return payload


class AdapterConstructionError(RelayError):
    code = ErrorCode.PROVIDER_ERROR
    status_code = 502


class UnsupportedVendor(AdapterConstructionError):
    pass


class MissingCredential(AdapterConstructionError):
    pass


class StreamError(RelayError):
    code = ErrorCode.PROVIDER_ERROR
    status_code = 502


class AllAttemptsFailed(RelayError):
    code = ErrorCode.ALL_PROVIDERS_FAILED
    status_code = 502


class OracleError(RelayError):
    code = ErrorCode.ORACLE_ERROR
    status_code = 502


class PersistenceError(RelayError):
    code = ErrorCode.PERSISTENCE_ERROR
    status_code = 500


__all__ = [
    "ErrorCode",
    "RelayError",
    "ChatValidationError",
    "NotFoundError",
    "RoutingError",
    "NoUsableProvider",
    "UnsupportedTask",
    "AdapterConstructionError",
    "UnsupportedVendor",
    "MissingCredential",
    "StreamError",
    "AllAttemptsFailed",
    "OracleError",
    "PersistenceError",
]
