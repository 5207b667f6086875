"""
apimesh - Routing Module

Adaptive provider selection and failover with:
- Circuit breaker pattern
- Weighted selection strategies (balanced, speed, quality, cost, reliability)
- Configured fallback chains with quality re-ranking
- Rolling performance monitoring and response quality scoring
"""

from ..core.config import FallbackChainConfig
from .resilience import ResilienceManager
from .circuit_breaker import (
    CircuitBreaker,
    CircuitBreakerConfig,
    CircuitBreakerRegistry,
    CircuitState,
)
from .strategies import (
    BaseStrategy,
    CandidateProfile,
    SmartSelector,
    WeightedStrategy,
    calculate_cost_score,
    calculate_speed_score,
    get_strategy,
)
from .fallback import (
    AttemptHistory,
    FallbackChainRegistry,
    FallbackUsage,
    FallbackUsageTracker,
)
from .performance import (
    APIStats,
    PerformanceMonitor,
    ProviderAlerts,
    RecentStats,
    TrendAnalysis,
)
from .quality import (
    DEFAULT_DOMAIN_CRITERIA,
    DomainCriteria,
    QualityScorer,
)

__all__ = [
    # Resilience
    "ResilienceManager",
    # Circuit Breaker
    "CircuitBreaker",
    "CircuitBreakerConfig",
    "CircuitBreakerRegistry",
    "CircuitState",
    # Strategies
    "BaseStrategy",
    "CandidateProfile",
    "SmartSelector",
    "WeightedStrategy",
    "calculate_cost_score",
    "calculate_speed_score",
    "get_strategy",
    # Fallback
    "AttemptHistory",
    "FallbackChainConfig",
    "FallbackChainRegistry",
    "FallbackUsage",
    "FallbackUsageTracker",
    # Performance
    "APIStats",
    "PerformanceMonitor",
    "ProviderAlerts",
    "RecentStats",
    "TrendAnalysis",
    # Quality
    "DEFAULT_DOMAIN_CRITERIA",
    "DomainCriteria",
    "QualityScorer",
]
