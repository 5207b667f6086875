"""
apimesh - Configuration Tests

Verifies:
- Defaults for every component
- Environment overrides
- Fail-fast validation of bad values
"""

import pytest

from apimesh.core.config import (
    CircuitBreakerConfig,
    FallbackChainConfig,
    PerformanceMonitorConfig,
    ResilienceSettings,
)
from apimesh.core.errors import ConfigurationError
from apimesh.routing import ResilienceManager


class TestDefaults:
    """Test default values."""

    def test_circuit_breaker_defaults(self):
        config = CircuitBreakerConfig()
        assert config.failure_threshold == 5
        assert config.reset_timeout_seconds == 60.0
        assert config.half_open_max_calls == 3
        assert config.timeout_threshold_ms == 10000

    def test_fallback_defaults(self):
        config = FallbackChainConfig()
        assert config.max_candidates == 3
        assert config.per_attempt_timeout_seconds is None
        assert config.overall_deadline_seconds is None
        assert config.quality_rerank is True

    def test_performance_defaults(self):
        config = PerformanceMonitorConfig()
        assert config.max_history_size == 1000
        assert config.alert_response_time_ms == 5000.0
        assert config.alert_error_rate == 0.20
        assert config.alert_success_rate == 0.80

    def test_empty_environment_gives_defaults(self):
        settings = ResilienceSettings.from_env({})
        assert settings.circuit_breaker == CircuitBreakerConfig()
        assert settings.fallback == FallbackChainConfig()


class TestFromEnv:
    """Test environment overrides."""

    def test_overrides(self):
        settings = ResilienceSettings.from_env({
            "APIMESH_FAILURE_THRESHOLD": "3",
            "APIMESH_RESET_TIMEOUT_SECONDS": "12.5",
            "APIMESH_HALF_OPEN_MAX_CALLS": "1",
            "APIMESH_ATTEMPT_TIMEOUT_MS": "2500",
            "APIMESH_MAX_CANDIDATES": "5",
            "APIMESH_OVERALL_DEADLINE_SECONDS": "8",
            "APIMESH_QUALITY_RERANK": "off",
            "APIMESH_MAX_HISTORY_SIZE": "200",
            "APIMESH_ALERT_ERROR_RATE": "0.1",
        })

        assert settings.circuit_breaker.failure_threshold == 3
        assert settings.circuit_breaker.reset_timeout_seconds == 12.5
        assert settings.circuit_breaker.half_open_max_calls == 1
        assert settings.circuit_breaker.timeout_threshold_ms == 2500
        assert settings.fallback.max_candidates == 5
        assert settings.fallback.overall_deadline_seconds == 8.0
        assert settings.fallback.quality_rerank is False
        assert settings.performance.max_history_size == 200
        assert settings.performance.alert_error_rate == 0.1

    def test_blank_values_are_ignored(self):
        settings = ResilienceSettings.from_env({"APIMESH_FAILURE_THRESHOLD": "  "})
        assert settings.circuit_breaker.failure_threshold == 5

    def test_reads_process_environment(self, monkeypatch):
        monkeypatch.setenv("APIMESH_MAX_CANDIDATES", "1")
        assert ResilienceSettings.from_env().fallback.max_candidates == 1

    @pytest.mark.parametrize("name,value", [
        ("APIMESH_FAILURE_THRESHOLD", "five"),
        ("APIMESH_RESET_TIMEOUT_SECONDS", "soon"),
        ("APIMESH_QUALITY_RERANK", "maybe"),
    ])
    def test_unparseable_value(self, name, value):
        with pytest.raises(ConfigurationError) as exc_info:
            ResilienceSettings.from_env({name: value})

        assert exc_info.value.error.details["setting"] == name
        assert exc_info.value.error.code == "invalid_configuration"

    @pytest.mark.parametrize("name,value", [
        ("APIMESH_FAILURE_THRESHOLD", "0"),
        ("APIMESH_HALF_OPEN_MAX_CALLS", "0"),
        ("APIMESH_RESET_TIMEOUT_SECONDS", "-1"),
        ("APIMESH_MAX_CANDIDATES", "-2"),
        ("APIMESH_MAX_HISTORY_SIZE", "0"),
        ("APIMESH_ALERT_SUCCESS_RATE", "1.5"),
    ])
    def test_out_of_range_value(self, name, value):
        with pytest.raises(ConfigurationError):
            ResilienceSettings.from_env({name: value})


class TestFromSettings:
    """Test building a manager from settings."""

    def test_manager_uses_settings(self, catalog, stub_executor, metrics, fake_clock):
        settings = ResilienceSettings.from_env({
            "APIMESH_FAILURE_THRESHOLD": "2",
            "APIMESH_ATTEMPT_TIMEOUT_MS": "1500",
        })

        manager = ResilienceManager.from_settings(
            settings, catalog, stub_executor, metrics=metrics, clock=fake_clock
        )

        assert manager.attempt_timeout_seconds == 1.5
        manager.record_failure("openweather")
        manager.record_failure("openweather")
        assert manager.get_circuit_state("openweather").value == "open"
