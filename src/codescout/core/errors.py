"""CodeScout error types with typed error codes.

Error code ranges:
- 2xxx: Config
- 3xxx: Index
- 4xxx: Provider
- 5xxx: Search
- 9xxx: Internal
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Any


class ErrorCode(IntEnum):
    """Typed error codes for programmatic handling."""

    # Config (2xxx)
    CONFIG_PARSE_ERROR = 2001
    CONFIG_INVALID_VALUE = 2002
    CONFIG_MODEL_MISMATCH = 2003
    CONFIG_INVALID_SIZING = 2004
    CONFIG_PROVIDER_UNAVAILABLE = 2005

    # Index (3xxx)
    INDEX_UNAVAILABLE = 3001
    INDEX_ALREADY_INDEXING = 3002
    INDEX_WORKSPACE_TOO_LARGE = 3003
    INDEX_NOT_SUPPORTED = 3004

    # Provider (4xxx)
    PROVIDER_TIMEOUT = 4001
    PROVIDER_NETWORK = 4002
    PROVIDER_RATE_LIMITED = 4003
    PROVIDER_BAD_RESPONSE = 4004
    PROVIDER_AUTH_REQUIRED = 4005

    # Search (5xxx)
    SEARCH_CANCELLED = 5001
    SEARCH_EXHAUSTED = 5002

    # Internal (9xxx)
    INTERNAL_ERROR = 9001
    INTERNAL_TIMEOUT = 9002


@dataclass(frozen=True, slots=True, eq=False)
class CodeScoutError(Exception):
    """Base error with structured context for callers and logs."""

    code: ErrorCode
    message: str
    retryable: bool = False
    details: dict[str, Any] = field(default_factory=dict)

    @property
    def error_name(self) -> str:
        """String identifier for logging (e.g., 'CONFIG_PARSE_ERROR')."""
        return self.code.name

    def to_dict(self) -> dict[str, Any]:
        """Serialize for JSON responses."""
        return {
            "code": self.code.value,
            "error": self.error_name,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.error_name}: {self.message}"


class ConfigurationError(CodeScoutError):
    """Bad model or size parameters. Fatal to the call that raised it."""

    @classmethod
    def parse_error(cls, path: str, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_PARSE_ERROR,
            message=f"Failed to parse config at {path}: {reason}",
            details={"path": path, "reason": reason},
        )

    @classmethod
    def invalid_value(cls, field: str, value: Any, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_VALUE,
            message=f"Invalid value for '{field}': {reason}",
            details={"field": field, "value": str(value), "reason": reason},
        )

    @classmethod
    def model_mismatch(cls, expected: str, actual: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_MODEL_MISMATCH,
            message=f"Vector from model '{actual}' compared against index built with '{expected}'",
            details={"expected": expected, "actual": actual},
        )

    @classmethod
    def invalid_sizing(cls, field: str, value: Any) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_INVALID_SIZING,
            message=f"Sizing field '{field}' must be positive, got {value!r}",
            details={"field": field, "value": str(value)},
        )

    @classmethod
    def provider_unavailable(cls, provider: str, reason: str) -> "ConfigurationError":
        return cls(
            code=ErrorCode.CONFIG_PROVIDER_UNAVAILABLE,
            message=f"Provider '{provider}' is unusable: {reason}",
            details={"provider": provider, "reason": reason},
        )


class TransientProviderError(CodeScoutError):
    """Network, timeout or rate-limit failure from an embedding or remote provider."""

    @classmethod
    def timeout(cls, provider: str, timeout_sec: float) -> "TransientProviderError":
        return cls(
            code=ErrorCode.PROVIDER_TIMEOUT,
            message=f"{provider} did not respond within {timeout_sec}s",
            retryable=True,
            details={"provider": provider, "timeout_sec": timeout_sec},
        )

    @classmethod
    def network(cls, provider: str, reason: str) -> "TransientProviderError":
        return cls(
            code=ErrorCode.PROVIDER_NETWORK,
            message=f"{provider} request failed: {reason}",
            retryable=True,
            details={"provider": provider, "reason": reason},
        )

    @classmethod
    def rate_limited(cls, provider: str, status: int) -> "TransientProviderError":
        return cls(
            code=ErrorCode.PROVIDER_RATE_LIMITED,
            message=f"{provider} kept rejecting requests (HTTP {status})",
            retryable=True,
            details={"provider": provider, "status": status},
        )

    @classmethod
    def bad_response(cls, provider: str, reason: str) -> "TransientProviderError":
        return cls(
            code=ErrorCode.PROVIDER_BAD_RESPONSE,
            message=f"{provider} returned an unusable response: {reason}",
            retryable=True,
            details={"provider": provider, "reason": reason},
        )

    @classmethod
    def auth_required(cls, provider: str, status: int) -> "TransientProviderError":
        return cls(
            code=ErrorCode.PROVIDER_AUTH_REQUIRED,
            message=f"{provider} rejected credentials (HTTP {status})",
            details={"provider": provider, "status": status},
        )


class IndexUnavailableError(CodeScoutError):
    """A strategy precondition is unmet. Treated as an absent result."""

    @classmethod
    def not_ready(cls, index: str, state: str) -> "IndexUnavailableError":
        return cls(
            code=ErrorCode.INDEX_UNAVAILABLE,
            message=f"{index} index is not ready (state={state})",
            details={"index": index, "state": state},
        )


class CancellationError(CodeScoutError):
    """The operation was cancelled. Always propagated."""

    @classmethod
    def cancelled(cls, reason: str = "cancelled") -> "CancellationError":
        return cls(
            code=ErrorCode.SEARCH_CANCELLED,
            message=f"Operation cancelled: {reason}",
            details={"reason": reason},
        )


class ResourceExhaustedError(CodeScoutError):
    """Workspace exceeds configured file or size limits."""

    @classmethod
    def workspace_too_large(cls, file_count: int, limit: int) -> "ResourceExhaustedError":
        return cls(
            code=ErrorCode.INDEX_WORKSPACE_TOO_LARGE,
            message=f"Workspace has {file_count} files, above the limit of {limit}",
            details={"file_count": file_count, "limit": limit},
        )


class SearchExhaustedError(CodeScoutError):
    """Every strategy in the fallback chain was absent or failed."""

    @classmethod
    def exhausted(cls, attempts: dict[str, str]) -> "SearchExhaustedError":
        return cls(
            code=ErrorCode.SEARCH_EXHAUSTED,
            message="No search strategy produced a result",
            retryable=True,
            details={"attempts": attempts},
        )


class InternalError(CodeScoutError):
    """Internal/unexpected errors."""

    @classmethod
    def unexpected(cls, reason: str, **details: Any) -> "InternalError":
        return cls(
            code=ErrorCode.INTERNAL_ERROR,
            message=f"Internal error: {reason}",
            details=details,
        )
