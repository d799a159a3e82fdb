"""
Data models for storage layer.

Defines the billing ledger entity.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional


@dataclass(frozen=True)
class BillingRecord:
    """Immutable billing/telemetry record for one routed call.

    Append-only events that create an auditable ledger of AI costs.
    Exactly one exists per call that reached a terminal state. Prompt and
    response content is never stored, only counts and identifiers.
    """
    timestamp: datetime
    request_id: str
    tenant_id: str
    task_kind: str
    status: str
    provider_id: Optional[str]
    model_id: Optional[str]
    attempts: int
    latency_ms: int
    prompt_tokens: int
    completion_tokens: int
    total_tokens: int
    request_bytes: int
    response_bytes: int
    estimated_cost: Decimal
    cache_hit: bool = False
    failure_kind: Optional[str] = None
    error_detail: Optional[str] = None
    attempt_trail: str = ""
    redacted: bool = True
    record_id: str = field(default_factory=lambda: uuid.uuid4().hex)
