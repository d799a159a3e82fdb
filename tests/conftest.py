"""
Shared fixtures: a controllable clock, scripted provider adapters and an
in-memory billing sink.
"""

import threading
from decimal import Decimal

import pytest

from ai_cost_router.adapters.base import AdapterRegistry, AdapterResponse, ProviderAdapter
from ai_cost_router.core.errors import ProviderError
from ai_cost_router.core.models import ProviderProfile
from ai_cost_router.core.pricing import ModelPricing
from ai_cost_router.core.token_counter import TokenUsage


class FakeClock:
    """Monotonic clock that only moves when told to (or when slept on)."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


class ScriptedAdapter(ProviderAdapter):
    """Adapter that replays a script of responses and errors.

    Each script item is an AdapterResponse, a ProviderError to raise, or any
    other exception to raise. The last item repeats once the script runs out.
    """

    def __init__(self, provider_id, script, clock=None, latency=0.0):
        self.provider_id = provider_id
        self.script = list(script)
        self.clock = clock
        self.latency = latency
        self.calls = []
        self._lock = threading.Lock()

    def invoke(self, profile, request, timeout):
        with self._lock:
            self.calls.append((profile.model_id, request.request_id, timeout))
            item = self.script.pop(0) if len(self.script) > 1 else self.script[0]
        if self.clock is not None and self.latency:
            self.clock.advance(self.latency)
        if isinstance(item, BaseException):
            raise item
        return item


class MemorySink:
    """Billing sink that keeps records in a list and can fail on demand."""

    def __init__(self, failures: int = 0):
        self.records = []
        self.failures = failures
        self.attempts = 0
        self._lock = threading.Lock()

    def append(self, record):
        with self._lock:
            self.attempts += 1
            if self.failures > 0:
                self.failures -= 1
                raise ConnectionError("billing store unavailable")
            self.records.append(record)


def make_profile(provider_id, model_id="m1", ranks=None, price="0.002", capabilities=()):
    return ProviderProfile(
        provider_id=provider_id,
        model_id=model_id,
        priorities=ranks or {"summarize": 1},
        pricing=ModelPricing.flat(price),
        capabilities=frozenset(capabilities),
    )


def ok(payload="done", prompt_tokens=20, completion_tokens=100):
    return AdapterResponse(
        payload=payload,
        usage=TokenUsage(prompt_tokens=prompt_tokens, completion_tokens=completion_tokens),
    )


def fail(kind, message=""):
    return ProviderError(kind, message or kind.value)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def registry():
    return AdapterRegistry()


@pytest.fixture
def sink():
    return MemorySink()


@pytest.fixture
def helpers():
    """Factories for profiles, scripted responses and adapters."""
    class _Helpers:
        profile = staticmethod(make_profile)
        ok = staticmethod(ok)
        fail = staticmethod(fail)
        Adapter = ScriptedAdapter
        Sink = MemorySink
        Clock = FakeClock
        D = Decimal
    return _Helpers
