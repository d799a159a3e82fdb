"""
Unit tests for supporting pieces: error taxonomy, adapter registry, prompt
templates and redaction.
"""

import pytest

from ai_cost_router.adapters.base import AdapterResponse, CallableAdapter
from ai_cost_router.core.errors import ErrorKind, ProviderError, normalize_error
from ai_cost_router.core.models import CallParameters, CallRequest
from ai_cost_router.core.prompts import InMemoryTemplateStore
from ai_cost_router.core.redaction import REDACTED, redact


def make_request(prompt="hello"):
    return CallRequest(tenant_id="T1", task_kind="summarize", prompt=prompt)


class TestErrorTaxonomy:
    """Test retryable/fatal classification."""

    @pytest.mark.parametrize("kind", [ErrorKind.TIMEOUT, ErrorKind.RATE_LIMITED, ErrorKind.PROVIDER_UNAVAILABLE])
    def test_retryable_kinds(self, kind):
        assert kind.retryable
        assert not kind.fatal

    @pytest.mark.parametrize("kind", [ErrorKind.AUTH_ERROR, ErrorKind.INVALID_RESPONSE])
    def test_fatal_kinds(self, kind):
        assert kind.fatal
        assert not kind.retryable

    def test_normalize_timeout(self):
        error = normalize_error(TimeoutError("read timed out"), "x")
        assert error.kind == ErrorKind.TIMEOUT
        assert error.provider_id == "x"

    def test_normalize_unknown(self):
        error = normalize_error(KeyError("boom"), "x")
        assert error.kind == ErrorKind.PROVIDER_UNAVAILABLE
        assert "KeyError" in str(error)

    def test_normalize_keeps_provider_error(self):
        original = ProviderError(ErrorKind.AUTH_ERROR, "denied")
        assert normalize_error(original, "x") is original
        assert original.provider_id == "x"


class TestAdapters:
    """Test the adapter registry and callable adapter."""

    def test_callable_adapter_passes_through_response(self, helpers):
        response = AdapterResponse(payload="ok", usage=helpers.ok().usage)
        adapter = CallableAdapter("local", lambda profile, request, timeout: response)
        assert adapter.invoke(helpers.profile("local"), make_request(), 1.0) is response

    def test_callable_adapter_measures_string_results(self, helpers):
        adapter = CallableAdapter("local", lambda profile, request, timeout: "résumé")

        response = adapter.invoke(helpers.profile("local"), make_request("hello"), 1.0)

        assert response.payload == "résumé"
        assert response.usage.request_bytes == 5
        assert response.usage.response_bytes == 8
        assert response.usage.total_tokens == 0

    def test_callable_adapter_rejects_other_types(self, helpers):
        adapter = CallableAdapter("local", lambda profile, request, timeout: 42)
        with pytest.raises(ProviderError) as exc_info:
            adapter.invoke(helpers.profile("local"), make_request(), 1.0)
        assert exc_info.value.kind == ErrorKind.INVALID_RESPONSE

    def test_registry(self, registry, helpers):
        adapter = helpers.Adapter("x", [helpers.ok()])
        registry.register(adapter)

        assert "x" in registry
        assert registry.get("x") is adapter
        assert list(registry) == ["x"]

    def test_registry_missing_adapter(self, registry):
        with pytest.raises(ProviderError, match="No adapter registered for provider y"):
            registry.get("y")


class TestRequestValidation:
    """Test request model validation."""

    def test_empty_tenant_rejected(self):
        with pytest.raises(ValueError, match="tenant_id"):
            CallRequest(tenant_id=" ", task_kind="summarize", prompt="p")

    def test_non_positive_deadline_rejected(self):
        with pytest.raises(ValueError, match="deadline"):
            CallRequest(tenant_id="T1", task_kind="summarize", prompt="p", deadline=0)

    def test_extra_parameters_sorted(self):
        params = CallParameters.build(top_p=0.9, seed=7)
        assert params.extra == (("seed", 7), ("top_p", 0.9))


class TestPromptTemplates:
    """Test template rendering."""

    def test_render(self):
        store = InMemoryTemplateStore({"summarize": "  Summarize for $audience:\n$text  "})
        assert store.render("summarize", audience="execs", text="Q3 results") == \
            "Summarize for execs:\nQ3 results"

    def test_unknown_template(self):
        store = InMemoryTemplateStore({})
        with pytest.raises(KeyError, match="Unknown prompt template"):
            store.get_template("missing")

    def test_missing_placeholder(self):
        store = InMemoryTemplateStore({"t": "Hello $name"})
        with pytest.raises(KeyError):
            store.render("t")


class TestRedaction:
    """Test error detail scrubbing."""

    def test_bearer_token(self):
        assert redact("Authorization: Bearer abc.def.ghi") == f"Authorization: {REDACTED}"

    def test_api_key_and_email(self):
        text = redact("key sk-proj-ABCDEFGHIJKLMNOPQRST rejected for admin@corp.io")
        assert "ABCDEFGHIJ" not in text
        assert "admin@corp.io" not in text

    def test_password(self):
        assert "hunter2" not in redact("login failed password=hunter2")

    def test_truncation(self):
        assert redact("x" * 500, max_length=10) == "x" * 10 + "..."

    def test_none_passthrough(self):
        assert redact(None) is None
