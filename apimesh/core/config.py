"""
apimesh - Configuration

Tunables for circuit breakers, fallback execution and performance monitoring.
Every value has a default; `ResilienceSettings.from_env()` overrides them
from APIMESH_* environment variables.
"""

import os
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, TypeVar

from .errors import ConfigurationError

T = TypeVar("T")


@dataclass
class CircuitBreakerConfig:
    """Configuration for circuit breaker behavior."""
    # Failures (net of successes) needed to open the circuit
    failure_threshold: int = 5

    # Time to wait in OPEN before admitting trial calls (seconds)
    reset_timeout_seconds: float = 60.0

    # Successful trial calls needed in HALF_OPEN to close the circuit
    half_open_max_calls: int = 3

    # Default per-attempt timeout (milliseconds)
    timeout_threshold_ms: int = 10000


@dataclass
class FallbackChainConfig:
    """Configuration for execute-with-fallback."""
    # Maximum fallback candidates attempted after the primary
    max_candidates: int = 3

    # Per-attempt timeout; falls back to the breaker timeout when unset
    per_attempt_timeout_seconds: Optional[float] = None

    # Wall-clock budget for a whole call; unlimited when unset
    overall_deadline_seconds: Optional[float] = None

    # Order candidates of equal priority by historical quality
    quality_rerank: bool = True

    # Quality assumed for providers with no history or catalog score
    default_quality: float = 7.0


@dataclass
class PerformanceMonitorConfig:
    """Configuration for per-provider performance tracking."""
    max_history_size: int = 1000

    # Alert thresholds
    alert_response_time_ms: float = 5000.0
    alert_error_rate: float = 0.20
    alert_success_rate: float = 0.80

    # Window sizes (records)
    recent_window: int = 50
    short_term_window: int = 200
    long_term_window: int = 500

    # Minimum data needed for derived analysis
    trend_min_samples: int = 10
    insights_min_calls: int = 20
    operation_min_calls: int = 5

    # (max avg response ms, min success rate) per category, best first
    performance_categories: Dict[str, tuple] = field(default_factory=lambda: {
        "excellent": (500.0, 0.98),
        "good": (1000.0, 0.95),
        "acceptable": (2000.0, 0.90),
    })


# Fallback chains: {domain: {primary_provider: [fallback, ...]}}
DEFAULT_FALLBACK_CHAINS: Dict[str, Dict[str, List[str]]] = {}


def _parse(env: Mapping[str, str], name: str, cast: Callable[[str], T], default: T) -> T:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        return cast(raw.strip())
    except ValueError:
        raise ConfigurationError(f"Invalid value for {name}: {raw!r}", setting=name)


def _parse_bool(raw: str) -> bool:
    lowered = raw.lower()
    if lowered in {"1", "true", "yes", "on"}:
        return True
    if lowered in {"0", "false", "no", "off"}:
        return False
    raise ValueError(raw)


@dataclass
class ResilienceSettings:
    """All component configuration in one place."""
    circuit_breaker: CircuitBreakerConfig = field(default_factory=CircuitBreakerConfig)
    fallback: FallbackChainConfig = field(default_factory=FallbackChainConfig)
    performance: PerformanceMonitorConfig = field(default_factory=PerformanceMonitorConfig)
    quality_history_size: int = 50
    selection_history_size: int = 100

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "ResilienceSettings":
        """
        Build settings from environment variables.

        Raises:
            ConfigurationError: If a variable is set but cannot be parsed
                or is out of range.
        """
        env = os.environ if env is None else env

        breaker = CircuitBreakerConfig(
            failure_threshold=_parse(env, "APIMESH_FAILURE_THRESHOLD", int, 5),
            reset_timeout_seconds=_parse(env, "APIMESH_RESET_TIMEOUT_SECONDS", float, 60.0),
            half_open_max_calls=_parse(env, "APIMESH_HALF_OPEN_MAX_CALLS", int, 3),
            timeout_threshold_ms=_parse(env, "APIMESH_ATTEMPT_TIMEOUT_MS", int, 10000),
        )
        fallback = FallbackChainConfig(
            max_candidates=_parse(env, "APIMESH_MAX_CANDIDATES", int, 3),
            overall_deadline_seconds=_parse(env, "APIMESH_OVERALL_DEADLINE_SECONDS", float, None),
            quality_rerank=_parse(env, "APIMESH_QUALITY_RERANK", _parse_bool, True),
        )
        performance = PerformanceMonitorConfig(
            max_history_size=_parse(env, "APIMESH_MAX_HISTORY_SIZE", int, 1000),
            alert_response_time_ms=_parse(env, "APIMESH_ALERT_RESPONSE_TIME_MS", float, 5000.0),
            alert_error_rate=_parse(env, "APIMESH_ALERT_ERROR_RATE", float, 0.20),
            alert_success_rate=_parse(env, "APIMESH_ALERT_SUCCESS_RATE", float, 0.80),
        )

        settings = cls(circuit_breaker=breaker, fallback=fallback, performance=performance)
        settings.validate()
        return settings

    def validate(self) -> None:
        """Fail fast on values that would make the components misbehave."""
        if self.circuit_breaker.failure_threshold < 1:
            raise ConfigurationError("failure_threshold must be >= 1", "APIMESH_FAILURE_THRESHOLD")
        if self.circuit_breaker.half_open_max_calls < 1:
            raise ConfigurationError("half_open_max_calls must be >= 1", "APIMESH_HALF_OPEN_MAX_CALLS")
        if self.circuit_breaker.reset_timeout_seconds < 0:
            raise ConfigurationError("reset_timeout_seconds must be >= 0", "APIMESH_RESET_TIMEOUT_SECONDS")
        if self.fallback.max_candidates < 0:
            raise ConfigurationError("max_candidates must be >= 0", "APIMESH_MAX_CANDIDATES")
        if self.performance.max_history_size < 1:
            raise ConfigurationError("max_history_size must be >= 1", "APIMESH_MAX_HISTORY_SIZE")
        for name in ("alert_error_rate", "alert_success_rate"):
            value = getattr(self.performance, name)
            if not 0.0 <= value <= 1.0:
                raise ConfigurationError(f"{name} must be within [0, 1]", f"APIMESH_{name.upper()}")
