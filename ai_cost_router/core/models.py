"""
Data models for routed calls.

Defines the request, provider profile, and outcome types shared by the router,
cache, quota and telemetry components.
"""

import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from .errors import ErrorKind
from .pricing import ModelPricing
from .token_counter import TokenUsage, ZERO_USAGE


class HealthState(Enum):
    """Provider health as tracked by the router."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    DOWN = "down"


class OutcomeStatus(Enum):
    SUCCESS = "success"
    FAILED = "failed"


@dataclass(frozen=True)
class CallParameters:
    """Generation parameters for a call."""
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    deterministic: bool = False
    extra: Tuple[Tuple[str, Any], ...] = ()

    def __post_init__(self):
        """Validate parameter ranges."""
        if self.temperature is not None and self.temperature < 0:
            raise ValueError("temperature cannot be negative")
        if self.max_tokens is not None and self.max_tokens <= 0:
            raise ValueError("max_tokens must be > 0")

    @classmethod
    def build(cls, temperature: Optional[float] = None, max_tokens: Optional[int] = None,
              deterministic: bool = False, **extra: Any) -> "CallParameters":
        """Build parameters, freezing extra options in a stable order."""
        return cls(
            temperature=temperature,
            max_tokens=max_tokens,
            deterministic=deterministic,
            extra=tuple(sorted(extra.items())),
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "max_tokens": self.max_tokens,
            "deterministic": self.deterministic,
            "extra": dict(self.extra),
        }


@dataclass(frozen=True)
class CallRequest:
    """Immutable, already validated request from an authenticated tenant.

    The prompt is an opaque, normalized payload; templates are resolved
    before the request is built.
    """
    tenant_id: str
    task_kind: str
    prompt: str
    parameters: CallParameters = field(default_factory=CallParameters)
    deadline: Optional[float] = None  # seconds budget; None uses configured call_deadline
    request_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    def __post_init__(self):
        if not self.tenant_id or not self.tenant_id.strip():
            raise ValueError("tenant_id is required and cannot be empty")
        if not self.task_kind or not self.task_kind.strip():
            raise ValueError("task_kind is required and cannot be empty")
        if self.deadline is not None and self.deadline <= 0:
            raise ValueError("deadline must be > 0")

    @property
    def deterministic(self) -> bool:
        return self.parameters.deterministic


@dataclass(frozen=True)
class ProviderProfile:
    """One provider model the router can dispatch to.

    Health is not stored here: the health tracker owns it so that profiles
    stay immutable and shareable across config snapshots.
    """
    provider_id: str
    model_id: str
    priorities: Mapping[str, int]  # task kind -> rank, lower goes first
    pricing: ModelPricing
    capabilities: FrozenSet[str] = frozenset()

    def __post_init__(self):
        if not self.provider_id:
            raise ValueError("provider_id is required")
        if not self.model_id:
            raise ValueError("model_id is required")
        for kind, rank in self.priorities.items():
            if rank < 0:
                raise ValueError(f"priority for {kind} cannot be negative")

    @property
    def key(self) -> Tuple[str, str]:
        return (self.provider_id, self.model_id)

    def serves(self, task_kind: str) -> bool:
        return task_kind in self.priorities

    def rank_for(self, task_kind: str) -> int:
        return self.priorities[task_kind]

    def supports(self, capability: str) -> bool:
        return capability in self.capabilities

    def __hash__(self) -> int:
        return hash(self.key)


@dataclass(frozen=True)
class AttemptRecord:
    """One provider attempt inside a call. Carries no payload content."""
    provider_id: str
    model_id: str
    error_kind: Optional[ErrorKind]
    latency: float

    @property
    def succeeded(self) -> bool:
        return self.error_kind is None


@dataclass(frozen=True)
class CallOutcome:
    """Terminal result of a call, produced exactly once per request."""
    request_id: str
    status: OutcomeStatus
    provider_id: Optional[str] = None
    model_id: Optional[str] = None
    attempts: int = 0
    latency: float = 0.0
    usage: TokenUsage = ZERO_USAGE
    response: Optional[str] = None
    failure_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    cache_hit: bool = False
    trail: Tuple[AttemptRecord, ...] = ()

    @property
    def succeeded(self) -> bool:
        return self.status == OutcomeStatus.SUCCESS
