"""
apimesh Core Module

Data models, error taxonomy and configuration shared by all components.
"""

from .models import (
    # Enums
    AttemptOutcome,
    BudgetTier,
    CircuitState,
    PriorityMode,

    # Providers
    CapabilityVector,
    Provider,

    # Records
    CallRecord,
    QualityAssessment,

    # Selection
    ScoredCandidate,
    Selection,
    SelectionConstraints,

    # Execution
    AttemptRecord,
    ExecutionOptions,
    ExecutionResult,
    ExecutorResponse,
    FallbackCandidate,
    Operation,
)
from .errors import (
    ApiMeshException,
    ConfigurationError,
    ErrorDetails,
    ErrorKind,
    ExecutorError,
    OrchestrationCode,
    ProviderNotFoundError,
    RETRYABLE_KINDS,
    categorize_error,
    is_retryable,
)
from .config import (
    CircuitBreakerConfig,
    DEFAULT_FALLBACK_CHAINS,
    FallbackChainConfig,
    PerformanceMonitorConfig,
    ResilienceSettings,
)

__all__ = [
    # Enums
    "AttemptOutcome",
    "BudgetTier",
    "CircuitState",
    "PriorityMode",
    # Providers
    "CapabilityVector",
    "Provider",
    # Records
    "CallRecord",
    "QualityAssessment",
    # Selection
    "ScoredCandidate",
    "Selection",
    "SelectionConstraints",
    # Execution
    "AttemptRecord",
    "ExecutionOptions",
    "ExecutionResult",
    "ExecutorResponse",
    "FallbackCandidate",
    "Operation",
    # Errors
    "ApiMeshException",
    "ConfigurationError",
    "ErrorDetails",
    "ErrorKind",
    "ExecutorError",
    "OrchestrationCode",
    "ProviderNotFoundError",
    "RETRYABLE_KINDS",
    "categorize_error",
    "is_retryable",
    # Configuration
    "CircuitBreakerConfig",
    "DEFAULT_FALLBACK_CHAINS",
    "FallbackChainConfig",
    "PerformanceMonitorConfig",
    "ResilienceSettings",
]
