"""
Unit tests for the OpenAI adapter.

Tests request construction, usage extraction and error normalization.
"""

from unittest.mock import Mock, patch

import httpx
import openai
import pytest

from ai_cost_router.adapters.openai_adapter import OpenAIAdapter, classify_openai_error
from ai_cost_router.core.errors import ErrorKind, ProviderError
from ai_cost_router.core.models import CallParameters, CallRequest

REQUEST = httpx.Request("POST", "https://api.openai.com/v1/chat/completions")


def status_error(cls, status_code):
    response = httpx.Response(status_code, request=REQUEST)
    return cls(f"HTTP {status_code}", response=response, body=None)


def completion(content="A short summary.", prompt_tokens=20, completion_tokens=100):
    response = Mock()
    response.id = "chatcmpl-123"
    response.choices = [Mock()]
    response.choices[0].message.content = content
    response.usage = Mock(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens)
    return response


def make_request(**params):
    return CallRequest(
        tenant_id="T1",
        task_kind="summarize",
        prompt="Summarize this text",
        parameters=CallParameters.build(**params),
    )


class TestErrorClassification:
    """Test OpenAI exception mapping."""

    def test_timeout(self):
        assert classify_openai_error(openai.APITimeoutError(request=REQUEST)) == ErrorKind.TIMEOUT

    def test_connection_error(self):
        error = openai.APIConnectionError(request=REQUEST)
        assert classify_openai_error(error) == ErrorKind.PROVIDER_UNAVAILABLE

    def test_rate_limited(self):
        error = status_error(openai.RateLimitError, 429)
        assert classify_openai_error(error) == ErrorKind.RATE_LIMITED

    @pytest.mark.parametrize("cls,code", [
        (openai.AuthenticationError, 401),
        (openai.PermissionDeniedError, 403),
    ])
    def test_auth_errors(self, cls, code):
        assert classify_openai_error(status_error(cls, code)) == ErrorKind.AUTH_ERROR

    def test_server_error(self):
        error = status_error(openai.InternalServerError, 503)
        assert classify_openai_error(error) == ErrorKind.PROVIDER_UNAVAILABLE

    def test_bad_request(self):
        error = status_error(openai.BadRequestError, 400)
        assert classify_openai_error(error) == ErrorKind.INVALID_RESPONSE


class TestOpenAIAdapter:
    """Test OpenAIAdapter behavior."""

    @patch('ai_cost_router.adapters.openai_adapter.OpenAI')
    def test_client_created_without_sdk_retries(self, mock_openai_class):
        OpenAIAdapter(api_key="test")
        mock_openai_class.assert_called_once_with(max_retries=0, api_key="test")

    def test_missing_provider_id(self):
        with pytest.raises(ValueError, match="provider_id is required"):
            OpenAIAdapter(provider_id="", client=Mock())

    def test_invoke_success(self, helpers):
        client = Mock()
        client.chat.completions.create.return_value = completion()
        adapter = OpenAIAdapter(client=client, system_prompt="Be brief.")
        profile = helpers.profile("openai", model_id="gpt-4o-mini")

        response = adapter.invoke(profile, make_request(temperature=0.2, max_tokens=50), timeout=3.0)

        assert response.payload == "A short summary."
        assert response.usage.prompt_tokens == 20
        assert response.usage.completion_tokens == 100
        assert response.usage.request_bytes == len("Summarize this text")
        assert response.provider_request_id == "chatcmpl-123"

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["model"] == "gpt-4o-mini"
        assert kwargs["timeout"] == 3.0
        assert kwargs["temperature"] == 0.2
        assert kwargs["max_tokens"] == 50
        assert kwargs["messages"] == [
            {"role": "system", "content": "Be brief."},
            {"role": "user", "content": "Summarize this text"},
        ]

    def test_extra_parameters_forwarded(self, helpers):
        client = Mock()
        client.chat.completions.create.return_value = completion()
        adapter = OpenAIAdapter(client=client)

        adapter.invoke(helpers.profile("openai"), make_request(top_p=0.5), timeout=1.0)

        kwargs = client.chat.completions.create.call_args.kwargs
        assert kwargs["top_p"] == 0.5
        assert "temperature" not in kwargs

    def test_sdk_error_normalized(self, helpers):
        client = Mock()
        client.chat.completions.create.side_effect = status_error(openai.RateLimitError, 429)
        adapter = OpenAIAdapter(client=client)

        with pytest.raises(ProviderError) as exc_info:
            adapter.invoke(helpers.profile("openai"), make_request(), timeout=1.0)

        assert exc_info.value.kind == ErrorKind.RATE_LIMITED
        assert exc_info.value.provider_id == "openai"

    def test_missing_usage_is_invalid(self, helpers):
        response = completion()
        response.usage = None
        client = Mock()
        client.chat.completions.create.return_value = response
        adapter = OpenAIAdapter(client=client)

        with pytest.raises(ProviderError, match="missing usage") as exc_info:
            adapter.invoke(helpers.profile("openai"), make_request(), timeout=1.0)
        assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE

    def test_missing_content_is_invalid(self, helpers):
        client = Mock()
        client.chat.completions.create.return_value = completion(content=None)
        adapter = OpenAIAdapter(client=client)

        with pytest.raises(ProviderError, match="no message content"):
            adapter.invoke(helpers.profile("openai"), make_request(), timeout=1.0)
