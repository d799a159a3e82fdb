"""
Provider adapters for AI Cost Router.

Uniform wrappers around model providers.
"""

from .base import AdapterRegistry, AdapterResponse, CallableAdapter, ProviderAdapter
from .openai_adapter import OpenAIAdapter

__all__ = [
    "AdapterRegistry",
    "AdapterResponse",
    "CallableAdapter",
    "OpenAIAdapter",
    "ProviderAdapter",
]
