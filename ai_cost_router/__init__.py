"""
AI Cost Router.

Routes LLM calls across providers with failover, per-tenant quotas,
response caching, rate limiting and one billing record per call.
"""

from .core.errors import ErrorKind, ProviderError, QuotaExceededError
from .core.gateway import Gateway
from .core.models import CallOutcome, CallParameters, CallRequest, ProviderProfile

__version__ = "0.1.0"

__all__ = [
    "CallOutcome",
    "CallParameters",
    "CallRequest",
    "ErrorKind",
    "Gateway",
    "ProviderError",
    "ProviderProfile",
    "QuotaExceededError",
]
