"""
apimesh - Adapters

Provider catalog and executor interfaces plus reference implementations.
"""

from .base import Executor, ProviderCatalog
from .catalog import InMemoryProviderCatalog
from .http_executor import HttpExecutor, RetryConfig, calculate_backoff, classify_status
from .stub_executor import StubCall, StubDelay, StubExecutor

__all__ = [
    # Interfaces
    "Executor",
    "ProviderCatalog",
    # Implementations
    "InMemoryProviderCatalog",
    "HttpExecutor",
    "RetryConfig",
    "StubExecutor",
    "StubCall",
    "StubDelay",
    # Helpers
    "calculate_backoff",
    "classify_status",
]
