"""
Token and byte accounting for provider calls.

Carries the counts a provider reports and estimates counts before dispatch.
"""

import math
from dataclasses import dataclass


# Rough characters-per-token ratio used only for pre-dispatch estimates
BYTES_PER_TOKEN_ESTIMATE = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token and byte usage for cost calculation.

    Contains the counts reported by the provider; byte counts are measured on
    the UTF-8 request and response payloads.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    request_bytes: int = 0
    response_bytes: int = 0

    def __post_init__(self):
        for name in ("prompt_tokens", "completion_tokens", "request_bytes", "response_bytes"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} cannot be negative")

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens

    @property
    def total_bytes(self) -> int:
        return self.request_bytes + self.response_bytes


ZERO_USAGE = TokenUsage()


def payload_bytes(payload: str) -> int:
    """Size of a payload in UTF-8 bytes."""
    return len(payload.encode("utf-8"))


def estimate_prompt_tokens(payload: str) -> int:
    """Estimate prompt tokens from payload size, rounding up."""
    return math.ceil(payload_bytes(payload) / BYTES_PER_TOKEN_ESTIMATE)
