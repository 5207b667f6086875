"""
apimesh - Prometheus Metrics

Metrics exposed:
- apimesh_attempts_total: Counter of provider attempts by provider, domain, outcome
- apimesh_attempt_duration_seconds: Histogram of attempt latency
- apimesh_executions_total: Counter of execute-with-fallback calls by domain, status
- apimesh_fallbacks_total: Counter of fallbacks taken, by source and target provider
- apimesh_circuit_breaker_state: Gauge of circuit breaker state per provider
- apimesh_quality_score: Histogram of response quality scores per domain
- apimesh_selections_total: Counter of smart selection decisions

Usage:
    from apimesh.observability.metrics import get_metrics, metrics_endpoint

    metrics = get_metrics()
    metrics.record_attempt(provider="weatherapi", domain="weather",
                           outcome="success", duration_seconds=0.42)

    @app.get("/metrics")
    async def metrics():
        return metrics_endpoint()
"""

from typing import Optional

from fastapi import Response
from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

from ..core.models import CircuitState

# 0 = closed (healthy), 1 = half-open, 2 = open (unhealthy)
CIRCUIT_STATE_VALUES = {
    CircuitState.CLOSED: 0,
    CircuitState.HALF_OPEN: 1,
    CircuitState.OPEN: 2,
}


class MetricsCollector:
    """
    Prometheus collectors for the resilience layer.

    Each instance registers its collectors on the given registry; tests pass
    a fresh CollectorRegistry, the process uses the shared one via
    get_metrics().
    """

    def __init__(self, registry: CollectorRegistry = REGISTRY):
        self.registry = registry

        self.attempts_total = Counter(
            "apimesh_attempts_total",
            "Total provider attempts",
            labelnames=["provider", "domain", "outcome"],
            registry=registry,
        )

        # Provider calls typically range from tens of ms to the attempt timeout
        self.attempt_duration = Histogram(
            "apimesh_attempt_duration_seconds",
            "Provider attempt duration in seconds",
            labelnames=["provider", "domain"],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, float("inf")),
            registry=registry,
        )

        self.executions_total = Counter(
            "apimesh_executions_total",
            "Total execute-with-fallback calls",
            labelnames=["domain", "status"],
            registry=registry,
        )

        self.fallbacks_total = Counter(
            "apimesh_fallbacks_total",
            "Total fallbacks that produced the final result",
            labelnames=["domain", "from_provider", "to_provider"],
            registry=registry,
        )

        self.circuit_breaker_state = Gauge(
            "apimesh_circuit_breaker_state",
            "Circuit breaker state (0=closed, 1=half-open, 2=open)",
            labelnames=["provider"],
            registry=registry,
        )

        self.quality_score = Histogram(
            "apimesh_quality_score",
            "Response quality score (0-10)",
            labelnames=["domain"],
            buckets=(1.0, 2.0, 3.0, 4.0, 5.0, 6.0, 7.0, 8.0, 9.0, 10.0),
            registry=registry,
        )

        self.selections_total = Counter(
            "apimesh_selections_total",
            "Total smart selection decisions",
            labelnames=["domain", "priority", "selected_provider"],
            registry=registry,
        )

    def record_attempt(
        self,
        provider: str,
        domain: str,
        outcome: str,
        duration_seconds: Optional[float] = None,
    ):
        """Record one provider attempt. Skipped attempts carry no duration."""
        self.attempts_total.labels(
            provider=provider,
            domain=domain,
            outcome=outcome,
        ).inc()

        if duration_seconds is not None:
            self.attempt_duration.labels(
                provider=provider,
                domain=domain,
            ).observe(duration_seconds)

    def record_execution(self, domain: str, status: str):
        """Record the final status of an execute-with-fallback call."""
        self.executions_total.labels(domain=domain, status=status).inc()

    def record_fallback(self, domain: str, from_provider: Optional[str], to_provider: str):
        """Record a fallback that served the call."""
        self.fallbacks_total.labels(
            domain=domain,
            from_provider=from_provider or "none",
            to_provider=to_provider,
        ).inc()

    def set_circuit_breaker_state(self, provider: str, state: CircuitState):
        """Update circuit breaker state."""
        self.circuit_breaker_state.labels(provider=provider).set(CIRCUIT_STATE_VALUES[state])

    def record_quality(self, domain: str, score: float):
        """Record a response quality score."""
        self.quality_score.labels(domain=domain).observe(score)

    def record_selection(self, domain: str, priority: str, selected_provider: Optional[str]):
        """Record a selection decision."""
        self.selections_total.labels(
            domain=domain,
            priority=priority,
            selected_provider=selected_provider or "none",
        ).inc()


# Module-level functions for convenience
_metrics_instance: Optional[MetricsCollector] = None


def setup_metrics(registry: CollectorRegistry = REGISTRY) -> MetricsCollector:
    """
    Setup metrics collection.

    Safe to call multiple times - returns the existing instance.
    """
    global _metrics_instance
    if _metrics_instance is None:
        _metrics_instance = MetricsCollector(registry)
    return _metrics_instance


def get_metrics() -> MetricsCollector:
    """Get the process-wide metrics collector, creating it if needed."""
    if _metrics_instance is None:
        return setup_metrics()
    return _metrics_instance


def metrics_endpoint(registry: Optional[CollectorRegistry] = None) -> Response:
    """Render metrics in Prometheus exposition format."""
    if registry is None:
        registry = get_metrics().registry
    return Response(
        content=generate_latest(registry),
        media_type=CONTENT_TYPE_LATEST,
    )
