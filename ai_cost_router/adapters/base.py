"""
Uniform provider adapter interface.

One adapter per provider ID; the router only ever sees normalized responses
and ProviderError kinds.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Dict, Iterator

from ..core.errors import ErrorKind, ProviderError
from ..core.models import CallRequest, ProviderProfile
from ..core.token_counter import TokenUsage


@dataclass(frozen=True)
class AdapterResponse:
    """Normalized provider response."""
    payload: str
    usage: TokenUsage
    provider_request_id: str = ""


class ProviderAdapter(ABC):
    """Wrapper around one model provider.

    Implementations issue exactly one outbound call per ``invoke``; retries and
    failover belong to the router.
    """

    provider_id: str = ""

    @abstractmethod
    def invoke(self, profile: ProviderProfile, request: CallRequest, timeout: float) -> AdapterResponse:
        """
        Call the provider once.

        Args:
            profile: Provider model to call
            request: The routed request
            timeout: Seconds this attempt may take

        Returns:
            AdapterResponse with payload and usage counts

        Raises:
            ProviderError: With a normalized kind on any failure
        """


class CallableAdapter(ProviderAdapter):
    """Adapter over a plain function, for in-house or custom providers.

    The function receives ``(profile, request, timeout)`` and returns an
    AdapterResponse. Plain strings are accepted and measured for bytes only.
    """

    def __init__(self, provider_id: str, func: Callable[..., object]):
        if not provider_id:
            raise ValueError("provider_id is required")
        self.provider_id = provider_id
        self._func = func

    def invoke(self, profile: ProviderProfile, request: CallRequest, timeout: float) -> AdapterResponse:
        result = self._func(profile, request, timeout)
        if isinstance(result, AdapterResponse):
            return result
        if isinstance(result, str):
            return AdapterResponse(
                payload=result,
                usage=TokenUsage(
                    request_bytes=len(request.prompt.encode("utf-8")),
                    response_bytes=len(result.encode("utf-8")),
                ),
            )
        raise ProviderError(
            ErrorKind.INVALID_RESPONSE,
            f"Adapter returned unsupported type {type(result).__name__}",
            self.provider_id,
        )


class AdapterRegistry:
    """Maps provider IDs to adapters."""

    def __init__(self):
        self._adapters: Dict[str, ProviderAdapter] = {}

    def register(self, adapter: ProviderAdapter, provider_id: str = "") -> None:
        key = provider_id or adapter.provider_id
        if not key:
            raise ValueError("adapter has no provider_id")
        self._adapters[key] = adapter

    def get(self, provider_id: str) -> ProviderAdapter:
        """
        Raises:
            ProviderError: INVALID_RESPONSE when no adapter is registered,
                since a missing adapter is a configuration bug
        """
        try:
            return self._adapters[provider_id]
        except KeyError:
            raise ProviderError(
                ErrorKind.INVALID_RESPONSE,
                f"No adapter registered for provider {provider_id}",
                provider_id,
            ) from None

    def __contains__(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def __iter__(self) -> Iterator[str]:
        return iter(self._adapters)
