"""
Error taxonomy for routed provider calls.

Provider failures are normalized into a fixed set of kinds so the router can
apply one retry/failover policy regardless of which provider raised them.
"""

from enum import Enum
from typing import Any, Dict, Optional


class ErrorKind(Enum):
    """Normalized failure kinds."""
    TIMEOUT = "timeout"
    RATE_LIMITED = "rate_limited"
    PROVIDER_UNAVAILABLE = "provider_unavailable"
    AUTH_ERROR = "auth_error"
    INVALID_RESPONSE = "invalid_response"
    QUOTA_EXCEEDED = "quota_exceeded"
    ALL_PROVIDERS_EXHAUSTED = "all_providers_exhausted"
    DEADLINE_EXCEEDED = "deadline_exceeded"

    @property
    def retryable(self) -> bool:
        """Whether the router may fail over to another candidate."""
        return self in RETRYABLE_KINDS

    @property
    def fatal(self) -> bool:
        """Whether the error indicates a configuration bug (no failover)."""
        return self in FATAL_KINDS


RETRYABLE_KINDS = frozenset({
    ErrorKind.TIMEOUT,
    ErrorKind.RATE_LIMITED,
    ErrorKind.PROVIDER_UNAVAILABLE,
})

FATAL_KINDS = frozenset({
    ErrorKind.AUTH_ERROR,
    ErrorKind.INVALID_RESPONSE,
})

ADAPTER_KINDS = RETRYABLE_KINDS | FATAL_KINDS


class RouterError(Exception):
    """Base class for all router errors."""


class ProviderError(RouterError):
    """Raised by adapters with a normalized error kind.

    Only the adapter-level kinds are accepted here; terminal kinds such as
    DEADLINE_EXCEEDED are produced by the router itself.
    """

    def __init__(self, kind: ErrorKind, message: str = "", provider_id: Optional[str] = None):
        if kind not in ADAPTER_KINDS:
            raise ValueError(f"{kind} is not an adapter error kind")
        super().__init__(message or kind.value)
        self.kind = kind
        self.provider_id = provider_id

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class RateLimitedError(RouterError):
    """Raised when admission is denied by a token bucket."""

    def __init__(self, message: str, provider_id: str, tenant_id: str):
        super().__init__(message)
        self.kind = ErrorKind.RATE_LIMITED
        self.provider_id = provider_id
        self.tenant_id = tenant_id


class QuotaExceededError(RouterError):
    """Raised before dispatch when a tenant cannot afford a call.

    No billing record is produced for rejected calls.
    """

    def __init__(self, message: str, tenant_id: str, usage_info: Dict[str, Any]):
        super().__init__(message)
        self.kind = ErrorKind.QUOTA_EXCEEDED
        self.tenant_id = tenant_id
        self.usage_info = usage_info


class ConfigError(ValueError):
    """Raised when router configuration is invalid."""


def normalize_error(exc: BaseException, provider_id: Optional[str] = None) -> ProviderError:
    """Coerce any exception escaping an adapter into a ProviderError.

    Unknown exceptions are treated as the provider being unavailable, so they
    are eligible for failover instead of crashing the call.
    """
    if isinstance(exc, ProviderError):
        if exc.provider_id is None:
            exc.provider_id = provider_id
        return exc
    if isinstance(exc, TimeoutError):
        return ProviderError(ErrorKind.TIMEOUT, str(exc) or "timed out", provider_id)
    return ProviderError(
        ErrorKind.PROVIDER_UNAVAILABLE,
        f"{type(exc).__name__}: {exc}",
        provider_id,
    )
