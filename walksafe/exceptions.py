"""
WalkSafe Exceptions.

Error taxonomy:
- ValidationError: bad coordinates / address / record. Never retried.
- ProviderError: external map provider failure, carries is_retryable.
  - QuotaExceededError: local quota exhausted, handled as "skip to fallback".
  - RetryExhaustedError: retry budget spent on retryable failures.
- ServiceUnavailableError: every provider in the fallback chain failed.
- RegionNotFoundError: unknown region id.
"""

from enum import StrEnum
from typing import Any, Optional


class ProviderErrorCode(StrEnum):
    TIMEOUT = "TIMEOUT"
    RATE_LIMITED = "RATE_LIMITED"
    UNAVAILABLE = "UNAVAILABLE"
    INVALID_RESPONSE = "INVALID_RESPONSE"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"
    AUTH_FAILED = "AUTH_FAILED"
    QUOTA_EXCEEDED = "QUOTA_EXCEEDED"
    NO_ROUTE = "NO_ROUTE"
    GEOCODE_NOT_FOUND = "GEOCODE_NOT_FOUND"
    MAX_RETRIES_EXCEEDED = "MAX_RETRIES_EXCEEDED"

    @property
    def default_retryable(self) -> bool:
        return self in _RETRYABLE_CODES


_RETRYABLE_CODES = frozenset({
    ProviderErrorCode.TIMEOUT,
    ProviderErrorCode.RATE_LIMITED,
    ProviderErrorCode.UNAVAILABLE,
    ProviderErrorCode.INVALID_RESPONSE,
    ProviderErrorCode.UNEXPECTED_ERROR,
})


# ── Base ───────────────────────────────────────────────────────────────────


class WalkSafeError(Exception):
    """Base exception for WalkSafe."""

    code: str = "WALKSAFE_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        self.message = message
        if code is not None:
            self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        return {
            "error": str(self.code),
            "message": self.message,
            "details": self.details,
        }


class ValidationError(WalkSafeError):
    """Malformed input (coordinates, address, import record)."""

    code = "VALIDATION_ERROR"

    def __init__(self, message: str, field: Optional[str] = None, details: Optional[dict] = None):
        super().__init__(message, details=details)
        self.field = field

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["field"] = self.field
        return body


class RegionNotFoundError(WalkSafeError):
    code = "REGION_NOT_FOUND"

    def __init__(self, region_id: int):
        super().__init__(f"Region {region_id} not found", details={"region_id": region_id})
        self.region_id = region_id


# ── Provider errors ────────────────────────────────────────────────────────


class ProviderError(WalkSafeError):
    """Failure talking to an external map provider."""

    def __init__(
        self,
        message: str,
        provider: str,
        code: ProviderErrorCode = ProviderErrorCode.UNEXPECTED_ERROR,
        is_retryable: Optional[bool] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, code=code, details=details)
        self.provider = provider
        self.is_retryable = code.default_retryable if is_retryable is None else is_retryable

    def to_dict(self) -> dict[str, Any]:
        body = super().to_dict()
        body["provider"] = self.provider
        body["is_retryable"] = self.is_retryable
        return body

    def __repr__(self) -> str:
        return (
            f"{type(self).__name__}(provider={self.provider!r}, code={str(self.code)!r}, "
            f"is_retryable={self.is_retryable}, message={self.message!r})"
        )

    # ── Factories ─────────────────────────────────────────────────────

    @classmethod
    def timeout(cls, provider: str, timeout_seconds: float) -> "ProviderError":
        return cls(
            f"Request to {provider} timed out after {timeout_seconds} seconds",
            provider, ProviderErrorCode.TIMEOUT,
        )

    @classmethod
    def rate_limited(cls, provider: str) -> "ProviderError":
        return cls(f"Rate limit exceeded for {provider}", provider, ProviderErrorCode.RATE_LIMITED)

    @classmethod
    def auth_failed(cls, provider: str) -> "ProviderError":
        return cls(
            f"Authentication failed for {provider}. Check API key configuration.",
            provider, ProviderErrorCode.AUTH_FAILED,
        )

    @classmethod
    def unavailable(cls, provider: str, details: str = "") -> "ProviderError":
        message = f"{provider} is currently unavailable"
        if details:
            message += f": {details}"
        return cls(message, provider, ProviderErrorCode.UNAVAILABLE)

    @classmethod
    def invalid_response(cls, provider: str, details: str = "") -> "ProviderError":
        message = f"Invalid response from {provider}"
        if details:
            message += f": {details}"
        return cls(message, provider, ProviderErrorCode.INVALID_RESPONSE)

    @classmethod
    def no_route(cls, provider: str) -> "ProviderError":
        return cls(f"No route found by {provider}", provider, ProviderErrorCode.NO_ROUTE)

    @classmethod
    def geocode_not_found(cls, provider: str, query: str) -> "ProviderError":
        return cls(
            f"No results found for '{query}' using {provider}",
            provider, ProviderErrorCode.GEOCODE_NOT_FOUND,
        )

    @classmethod
    def quota_exceeded(cls, provider: str) -> "QuotaExceededError":
        return QuotaExceededError(provider)

    @classmethod
    def from_status(cls, provider: str, status: int, body: str = "") -> "ProviderError":
        """Map an HTTP error status to a provider error."""
        if status in (401, 403):
            return cls.auth_failed(provider)
        if status == 429:
            return cls.rate_limited(provider)
        if status in (500, 502, 503, 504):
            return cls.unavailable(provider, f"HTTP {status}")
        return cls.invalid_response(provider, f"HTTP {status}: {body[:200]}")


class QuotaExceededError(ProviderError):
    """Local quota for the provider is exhausted (or throttled)."""

    def __init__(self, provider: str, message: str = ""):
        super().__init__(
            message or f"API quota exceeded for {provider}",
            provider,
            ProviderErrorCode.QUOTA_EXCEEDED,
            is_retryable=False,
        )


class RetryExhaustedError(ProviderError):
    """Every attempt failed with a retryable provider error."""

    def __init__(self, provider: str, operation: str, attempts: int, last_error: ProviderError):
        super().__init__(
            f"Failed to complete {operation} after {attempts} attempts: {last_error.message}",
            provider,
            ProviderErrorCode.MAX_RETRIES_EXCEEDED,
            is_retryable=False,
            details={"attempts": attempts, "last_code": str(last_error.code)},
        )
        self.attempts = attempts
        self.last_error = last_error


# ── Terminal ───────────────────────────────────────────────────────────────


class ServiceUnavailableError(WalkSafeError):
    """All map providers exhausted. Terminal for the caller."""

    code = "SERVICE_UNAVAILABLE"

    def __init__(self, operation: str, errors: dict[str, ProviderError]):
        tried = ", ".join(errors) or "none"
        super().__init__(
            f"all providers exhausted during {operation} (tried: {tried})",
            details={
                "operation": operation,
                "providers": {name: str(err.code) for name, err in errors.items()},
            },
        )
        self.operation = operation
        self.errors = errors

    @property
    def last_error(self) -> Optional[ProviderError]:
        if not self.errors:
            return None
        return list(self.errors.values())[-1]
