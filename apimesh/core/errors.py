"""
apimesh - Error Definitions

Attempt-level error kinds reported by executors and the orchestration-level
codes returned by the resilience manager.
"""

import asyncio
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(str, Enum):
    """Classification of a single provider attempt failure."""
    TIMEOUT = "TIMEOUT"
    NETWORK_ERROR = "NETWORK_ERROR"
    SERVICE_UNAVAILABLE = "SERVICE_UNAVAILABLE"
    RATE_LIMITED = "RATE_LIMITED"
    AUTHENTICATION_ERROR = "AUTHENTICATION_ERROR"
    UNKNOWN_ERROR = "UNKNOWN_ERROR"


class OrchestrationCode(str, Enum):
    """Outcome codes for a whole execute-with-fallback call."""
    CIRCUIT_OPEN = "CIRCUIT_OPEN"          # Skip reason, not a failure
    NO_CANDIDATES = "NO_CANDIDATES"
    ALL_ATTEMPTS_FAILED = "ALL_ATTEMPTS_FAILED"
    DEADLINE_EXCEEDED = "DEADLINE_EXCEEDED"
    EXECUTION_ERROR = "EXECUTION_ERROR"


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.NETWORK_ERROR,
    ErrorKind.SERVICE_UNAVAILABLE,
})


def is_retryable(kind: ErrorKind) -> bool:
    """Whether a failure of this kind is worth retrying on the same provider."""
    return kind in RETRYABLE_KINDS


@dataclass
class ErrorDetails:
    """Full error information for API responses and attempt bookkeeping."""
    code: str
    message: str
    kind: Optional[ErrorKind] = None

    provider: Optional[str] = None
    retryable: bool = False
    retry_after: Optional[int] = None

    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "code": self.code,
            "message": self.message,
            "retryable": self.retryable,
        }

        if self.kind is not None:
            result["kind"] = self.kind.value
        if self.provider:
            result["provider"] = self.provider
        if self.retry_after is not None:
            result["retry_after"] = self.retry_after
        if self.details:
            result["details"] = self.details

        return {"error": result}


class ApiMeshException(Exception):
    """Base exception for all apimesh errors."""

    def __init__(self, error: ErrorDetails, status_code: int = 500):
        self.error = error
        self.status_code = status_code
        super().__init__(error.message)


# ============================================================
# Executor Errors (reported by provider attempts)
# ============================================================

class ExecutorError(ApiMeshException):
    """
    A categorized provider failure.

    Executors raise this instead of encoding the category in the message,
    so callers never have to inspect error text.
    """

    def __init__(
        self,
        kind: ErrorKind,
        message: str = "",
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        retry_after: Optional[int] = None,
    ):
        self.kind = kind
        self.provider_status_code = status_code
        super().__init__(
            ErrorDetails(
                code=kind.value.lower(),
                message=message or f"Provider call failed: {kind.value}",
                kind=kind,
                provider=provider,
                retryable=is_retryable(kind),
                retry_after=retry_after,
                details={"status_code": status_code} if status_code else {},
            ),
            status_code=502,
        )


# ============================================================
# Semantic Errors (caller must fix configuration or input)
# ============================================================

class ProviderNotFoundError(ApiMeshException):
    """Provider id is not known to the catalog."""

    def __init__(self, provider_id: str):
        self.provider_id = provider_id
        super().__init__(
            ErrorDetails(
                code="api_not_found",
                message=f"Provider '{provider_id}' is not registered",
                provider=provider_id,
            ),
            status_code=404,
        )


class ConfigurationError(ApiMeshException):
    """Invalid configuration value."""

    def __init__(self, message: str, setting: Optional[str] = None):
        super().__init__(
            ErrorDetails(
                code="invalid_configuration",
                message=message,
                details={"setting": setting} if setting else {},
            ),
            status_code=500,
        )


def categorize_error(error: BaseException) -> ErrorKind:
    """Map an exception raised during an attempt to an ErrorKind."""
    if isinstance(error, ExecutorError):
        return error.kind
    if isinstance(error, asyncio.TimeoutError):
        return ErrorKind.TIMEOUT
    return ErrorKind.UNKNOWN_ERROR
