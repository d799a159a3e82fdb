"""
OpenAI provider adapter.

Issues one chat completion per attempt and normalizes OpenAI SDK errors into
router error kinds.
"""

from typing import Any, Dict, List, Optional

import openai
from openai import OpenAI

from ..core.errors import ErrorKind, ProviderError
from ..core.models import CallRequest, ProviderProfile
from ..core.token_counter import TokenUsage, payload_bytes
from .base import AdapterResponse, ProviderAdapter


def classify_openai_error(exc: Exception) -> ErrorKind:
    """Map an OpenAI SDK exception to an error kind."""
    # Order matters: timeout is a subclass of connection error
    if isinstance(exc, openai.APITimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, openai.APIConnectionError):
        return ErrorKind.PROVIDER_UNAVAILABLE
    if isinstance(exc, openai.RateLimitError):
        return ErrorKind.RATE_LIMITED
    if isinstance(exc, (openai.AuthenticationError, openai.PermissionDeniedError)):
        return ErrorKind.AUTH_ERROR
    if isinstance(exc, openai.APIStatusError):
        if exc.status_code >= 500:
            return ErrorKind.PROVIDER_UNAVAILABLE
        return ErrorKind.INVALID_RESPONSE
    return ErrorKind.PROVIDER_UNAVAILABLE


class OpenAIAdapter(ProviderAdapter):
    """OpenAI chat completions behind the uniform adapter interface.

    The prompt payload is sent as a single user message, optionally preceded
    by a fixed system prompt.
    """

    def __init__(
        self,
        provider_id: str = "openai",
        client: Optional[OpenAI] = None,
        system_prompt: Optional[str] = None,
        **client_kwargs: Any
    ):
        """Initialize the adapter.

        Args:
            provider_id: Provider ID this adapter is registered under
            client: Preconfigured OpenAI client (created from env when omitted)
            system_prompt: Optional system message sent with every call
            **client_kwargs: Passed to OpenAI() when no client is given
        """
        if not provider_id or not provider_id.strip():
            raise ValueError("provider_id is required and cannot be empty")
        self.provider_id = provider_id
        # The router owns retries, so the SDK must not retry on its own
        self.client = client or OpenAI(max_retries=0, **client_kwargs)
        self.system_prompt = system_prompt

    def _messages(self, request: CallRequest) -> List[Dict[str, str]]:
        messages = []
        if self.system_prompt:
            messages.append({"role": "system", "content": self.system_prompt})
        messages.append({"role": "user", "content": request.prompt})
        return messages

    def invoke(self, profile: ProviderProfile, request: CallRequest, timeout: float) -> AdapterResponse:
        """Create one chat completion.

        Raises:
            ProviderError: Normalized from any OpenAI error or malformed response
        """
        params = request.parameters
        kwargs: Dict[str, Any] = dict(params.extra)
        if params.temperature is not None:
            kwargs["temperature"] = params.temperature
        if params.max_tokens is not None:
            kwargs["max_tokens"] = params.max_tokens

        try:
            response = self.client.chat.completions.create(
                model=profile.model_id,
                messages=self._messages(request),
                timeout=timeout,
                **kwargs
            )
        except openai.OpenAIError as e:
            raise ProviderError(classify_openai_error(e), str(e), self.provider_id) from e

        usage = response.usage
        if not usage:
            raise ProviderError(
                ErrorKind.INVALID_RESPONSE,
                "OpenAI response missing usage information",
                self.provider_id,
            )
        if not response.choices or response.choices[0].message.content is None:
            raise ProviderError(
                ErrorKind.INVALID_RESPONSE,
                "OpenAI response has no message content",
                self.provider_id,
            )

        content = response.choices[0].message.content
        return AdapterResponse(
            payload=content,
            usage=TokenUsage(
                prompt_tokens=usage.prompt_tokens,
                completion_tokens=usage.completion_tokens,
                request_bytes=payload_bytes(request.prompt),
                response_bytes=payload_bytes(content),
            ),
            provider_request_id=response.id or "",
        )
