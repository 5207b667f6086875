"""
apimesh - Pytest Configuration

Configures:
- Integration test markers (skip by default)
- Provider catalog, stub executor and fake clock fixtures
- Isolated Prometheus registries per test
"""

import os
import logging
from typing import Optional

import pytest
from prometheus_client import CollectorRegistry

from apimesh.adapters import InMemoryProviderCatalog, StubExecutor
from apimesh.core.config import CircuitBreakerConfig, FallbackChainConfig
from apimesh.observability.metrics import MetricsCollector
from apimesh.routing import PerformanceMonitor, QualityScorer, ResilienceManager, SmartSelector


# ============================================================
# Environment Configuration
# ============================================================

def _is_truthy(value: Optional[str]) -> bool:
    """Check if environment variable is truthy."""
    if value is None:
        return False
    return value.lower() in ("1", "true", "yes", "on")


RUN_INTEGRATION = _is_truthy(os.getenv("RUN_INTEGRATION"))


# ============================================================
# Pytest Markers
# ============================================================

def pytest_configure(config):
    """Register custom markers."""
    config.addinivalue_line(
        "markers",
        "integration: mark test as integration test (requires RUN_INTEGRATION=1)"
    )


def pytest_collection_modifyitems(config, items):
    """Skip integration tests unless RUN_INTEGRATION=1."""
    skip_integration = pytest.mark.skip(
        reason="Integration test - set RUN_INTEGRATION=1 to run"
    )
    for item in items:
        if "integration" in item.keywords and not RUN_INTEGRATION:
            item.add_marker(skip_integration)


# ============================================================
# Clock
# ============================================================

class FakeClock:
    """Manually advanced clock; call it to read the time."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def fake_clock():
    return FakeClock()


# ============================================================
# Providers
# ============================================================

CATALOG_DATA = {
    "weather": {
        "openweather": {
            "quality": 8, "speed": 7, "cost": 10, "reliability": 9,
            "features": ["current", "forecast", "historical"],
        },
        "weatherapi": {
            "quality": 9, "speed": 8, "cost": 7, "reliability": 9,
            "features": ["current", "forecast", "astronomy"],
        },
        "weatherstack": {
            "quality": 7.2, "speed": 6, "cost": 9, "reliability": 8,
            "features": ["current", "historical"],
        },
    },
    "news": {
        "newsapi": {
            "quality": 8, "speed": 8, "cost": 8, "reliability": 9,
            "features": ["headlines", "search"],
        },
        "gnews": {
            "quality": 7, "speed": 9, "cost": 10, "reliability": 8,
            "features": ["headlines"],
        },
    },
}


@pytest.fixture
def catalog():
    """Weather and news providers."""
    return InMemoryProviderCatalog.from_dict(CATALOG_DATA)


@pytest.fixture
def stub_executor():
    """Executor that answers every provider with a canned payload."""
    return StubExecutor()


# ============================================================
# Metrics
# ============================================================

@pytest.fixture
def metrics_registry():
    """Fresh registry so collectors never clash between tests."""
    return CollectorRegistry()


@pytest.fixture
def metrics(metrics_registry):
    return MetricsCollector(metrics_registry)


# ============================================================
# Components
# ============================================================

@pytest.fixture
def monitor(fake_clock):
    return PerformanceMonitor(clock=fake_clock)


@pytest.fixture
def scorer(fake_clock):
    return QualityScorer(clock=fake_clock)


@pytest.fixture
def selector(catalog, monitor, metrics, fake_clock):
    return SmartSelector(catalog, performance_monitor=monitor, metrics=metrics, clock=fake_clock)


@pytest.fixture
def manager(catalog, stub_executor, selector, monitor, scorer, metrics, fake_clock):
    """Resilience manager wired to the stub executor and fake clock."""
    return ResilienceManager(
        catalog,
        stub_executor,
        selector=selector,
        performance_monitor=monitor,
        quality_scorer=scorer,
        metrics=metrics,
        breaker_config=CircuitBreakerConfig(failure_threshold=5, reset_timeout_seconds=60),
        fallback_config=FallbackChainConfig(per_attempt_timeout_seconds=1.0),
        clock=fake_clock,
    )


# ============================================================
# Logging Configuration
# ============================================================

@pytest.fixture(autouse=True)
def configure_test_logging():
    """Configure logging for tests."""
    logging.basicConfig(
        level=logging.DEBUG,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
    yield
