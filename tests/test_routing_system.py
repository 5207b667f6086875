"""
apimesh - Routing System Tests

Verifies:
- Circuit breaker state transitions
- Fallback chains, attempt history and fallback usage
- Execute-with-fallback ordering, outcomes and error codes
"""

import asyncio
from unittest.mock import MagicMock, patch

import pytest

from apimesh.core.config import CircuitBreakerConfig, FallbackChainConfig
from apimesh.core.errors import ErrorKind, OrchestrationCode
from apimesh.core.models import (
    AttemptOutcome,
    CircuitState,
    ExecutionOptions,
    Operation,
    SelectionConstraints,
)
from apimesh.adapters import StubDelay
from apimesh.routing.circuit_breaker import CircuitBreaker, CircuitBreakerRegistry
from apimesh.routing.fallback import AttemptHistory, FallbackChainRegistry, FallbackUsageTracker
from apimesh.routing.resilience import ResilienceManager

WEATHER_CURRENT = Operation(type="current", domain="weather")


# ============================================================
# Circuit Breaker Tests
# ============================================================

class TestCircuitBreaker:
    """Test circuit breaker state transitions."""

    def test_initial_state_is_closed(self, fake_clock):
        """Circuit should start in CLOSED state."""
        cb = CircuitBreaker("test_provider", clock=fake_clock)
        assert cb.state == CircuitState.CLOSED
        assert cb.allow_request()[0] is True

    def test_failures_open_circuit_at_threshold(self, fake_clock):
        """Circuit opens exactly when failures reach the threshold."""
        cb = CircuitBreaker("test_provider", CircuitBreakerConfig(failure_threshold=5), fake_clock)

        for _ in range(4):
            cb.record_failure("error")
        assert cb.state == CircuitState.CLOSED

        transition = cb.record_failure("error")
        assert transition == (CircuitState.CLOSED, CircuitState.OPEN)
        assert cb.state == CircuitState.OPEN
        assert cb.next_retry_time == fake_clock.now + 60

    def test_success_cancels_one_failure(self, fake_clock):
        """Each success in CLOSED offsets one earlier failure."""
        cb = CircuitBreaker("test_provider", CircuitBreakerConfig(failure_threshold=3), fake_clock)

        cb.record_failure("error")
        cb.record_failure("error")
        cb.record_success()
        cb.record_failure("error")

        assert cb.failure_count == 2
        assert cb.state == CircuitState.CLOSED

    def test_failure_count_never_negative(self, fake_clock):
        """Successes on a clean circuit keep the count at zero."""
        cb = CircuitBreaker("test_provider", clock=fake_clock)
        cb.record_success()
        cb.record_success()
        assert cb.failure_count == 0

    def test_open_circuit_blocks_requests(self, fake_clock):
        """OPEN circuit should refuse calls."""
        cb = CircuitBreaker("test_provider", CircuitBreakerConfig(failure_threshold=2), fake_clock)
        cb.record_failure("error")
        cb.record_failure("error")

        allowed, _ = cb.allow_request()
        assert allowed is False

    def test_half_open_only_after_reset_timeout(self, fake_clock):
        """OPEN moves to HALF_OPEN on the first read after the timeout."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=60)
        cb = CircuitBreaker("test_provider", config, fake_clock)
        cb.record_failure("error")

        fake_clock.advance(59)
        assert cb.state == CircuitState.OPEN

        fake_clock.advance(1)
        state, transition = cb.read_state()
        assert state == CircuitState.HALF_OPEN
        assert transition == (CircuitState.OPEN, CircuitState.HALF_OPEN)

    def test_half_open_limits_trial_calls(self, fake_clock):
        """HALF_OPEN admits at most half_open_max_calls trials."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=1, half_open_max_calls=3)
        cb = CircuitBreaker("test_provider", config, fake_clock)
        cb.record_failure("error")
        fake_clock.advance(1)

        admitted = [cb.allow_request()[0] for _ in range(4)]
        assert admitted == [True, True, True, False]

    def test_half_open_successes_close_circuit(self, fake_clock):
        """Enough successful trials CLOSE the circuit."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=1, half_open_max_calls=3)
        cb = CircuitBreaker("test_provider", config, fake_clock)
        cb.record_failure("error")
        fake_clock.advance(1)

        for _ in range(2):
            cb.allow_request()
            cb.record_success()
        assert cb.state == CircuitState.HALF_OPEN

        cb.allow_request()
        cb.record_success()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 0

    def test_half_open_failure_reopens_circuit(self, fake_clock):
        """Failure in HALF_OPEN should reopen circuit with a fresh timeout."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=10)
        cb = CircuitBreaker("test_provider", config, fake_clock)
        cb.record_failure("error")
        fake_clock.advance(10)
        assert cb.state == CircuitState.HALF_OPEN

        cb.record_failure("still broken")
        assert cb.state == CircuitState.OPEN
        assert cb.next_retry_time == fake_clock.now + 10

    def test_release_returns_half_open_slot(self, fake_clock):
        """A released trial frees its slot without counting as an outcome."""
        config = CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=1, half_open_max_calls=2)
        cb = CircuitBreaker("test_provider", config, fake_clock)
        cb.record_failure("error")
        fake_clock.advance(1)

        assert [cb.allow_request()[0] for _ in range(3)] == [True, True, False]

        cb.release()
        assert cb.half_open_in_flight == 1
        assert cb.half_open_call_count == 0
        assert cb.state == CircuitState.HALF_OPEN
        assert cb.allow_request()[0] is True

    def test_release_is_noop_when_closed(self, fake_clock):
        cb = CircuitBreaker("test_provider", clock=fake_clock)
        cb.record_failure("error")

        cb.release()
        assert cb.state == CircuitState.CLOSED
        assert cb.failure_count == 1
        assert cb.half_open_in_flight == 0

    def test_get_status(self, fake_clock):
        """get_status should return correct information."""
        cb = CircuitBreaker("test_provider", clock=fake_clock)
        cb.record_failure("timeout")

        status = cb.get_status()
        assert status["provider"] == "test_provider"
        assert status["state"] == "closed"
        assert status["failure_count"] == 1
        assert status["last_failure_reason"] == "timeout"
        assert status["last_failure_time"] == fake_clock.now


class TestCircuitBreakerRegistry:
    """Test circuit breaker registry."""

    def test_unknown_provider_is_closed(self):
        """Providers without a breaker read as CLOSED."""
        registry = CircuitBreakerRegistry()
        assert registry.get_state("provider1") == CircuitState.CLOSED
        assert registry.allow_request("provider1") is True

    def test_success_does_not_create_breaker(self):
        """record_success on an unknown provider is a no-op."""
        registry = CircuitBreakerRegistry()
        registry.record_success("provider1")
        assert registry.get_breaker("provider1") is None

    def test_failure_creates_breaker(self):
        """First failure creates the breaker."""
        registry = CircuitBreakerRegistry()
        registry.record_failure("provider1", "error")

        breaker = registry.get_breaker("provider1")
        assert breaker is not None
        assert breaker.failure_count == 1
        assert registry.get_breaker("provider1") is breaker

    def test_state_change_listener(self, fake_clock):
        """Listener receives every transition."""
        listener = MagicMock()
        registry = CircuitBreakerRegistry(
            CircuitBreakerConfig(failure_threshold=1, reset_timeout_seconds=5),
            clock=fake_clock,
            on_state_change=listener,
        )

        registry.record_failure("provider1", "error")
        listener.assert_called_with("provider1", CircuitState.CLOSED, CircuitState.OPEN)

        fake_clock.advance(5)
        assert registry.get_state("provider1") == CircuitState.HALF_OPEN
        listener.assert_called_with("provider1", CircuitState.OPEN, CircuitState.HALF_OPEN)

    def test_reset_single_provider(self):
        """reset(provider) drops only that breaker."""
        listener = MagicMock()
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1), on_state_change=listener)
        registry.record_failure("provider1", "error")
        registry.record_failure("provider2", "error")

        registry.reset("provider1")

        assert registry.known_providers() == ["provider2"]
        listener.assert_called_with("provider1", CircuitState.OPEN, CircuitState.CLOSED)

    def test_release_unknown_provider(self):
        """Releasing a provider without a breaker creates nothing."""
        registry = CircuitBreakerRegistry()
        registry.release("provider1")
        assert registry.get_breaker("provider1") is None

    def test_get_all_status(self):
        registry = CircuitBreakerRegistry(CircuitBreakerConfig(failure_threshold=1))
        registry.record_failure("provider1", "error")

        status = registry.get_all_status()
        assert status["provider1"]["state"] == "open"


# ============================================================
# Fallback Chain Tests
# ============================================================

class TestFallbackChainRegistry:
    """Test configured fallback chains."""

    def test_configured_chain(self):
        registry = FallbackChainRegistry({
            "weather": {"openweather": ["weatherapi", "weatherstack"]},
        })
        assert registry.get_chain("weather", "openweather") == ["weatherapi", "weatherstack"]

    def test_missing_chain_is_empty(self):
        registry = FallbackChainRegistry()
        assert registry.get_chain("weather", "openweather") == []
        assert registry.get_chain("weather", None) == []

    def test_configure_drops_duplicates_and_primary(self):
        """Chains never contain the primary or repeated providers."""
        registry = FallbackChainRegistry()
        registry.configure("weather", "openweather", ["weatherapi", "openweather", "weatherapi", "weatherstack"])
        assert registry.get_chain("weather", "openweather") == ["weatherapi", "weatherstack"]

    def test_get_chain_returns_copy(self):
        registry = FallbackChainRegistry({"weather": {"a": ["b"]}})
        registry.get_chain("weather", "a").append("c")
        assert registry.get_chain("weather", "a") == ["b"]


class TestAttemptHistory:
    """Test per-execution attempt history."""

    def test_records_in_order(self, fake_clock):
        history = AttemptHistory(fake_clock)
        history.skip("a", "circuit_breaker_open")
        history.add("b", AttemptOutcome.FAILED, reason="TIMEOUT", duration_ms=12.0)
        history.add("c", AttemptOutcome.SUCCESS, duration_ms=30.0)

        assert [r.provider_id for r in history] == ["a", "b", "c"]
        assert len(history) == 3
        assert history.attempted_providers() == ["b", "c"]
        assert history.records[0].timestamp == fake_clock.now

    def test_failure_reasons_exclude_successes(self, fake_clock):
        history = AttemptHistory(fake_clock)
        history.add("b", AttemptOutcome.FAILED, reason="TIMEOUT")
        history.add("c", AttemptOutcome.SUCCESS)

        assert history.failure_reasons() == [
            {"provider_id": "b", "outcome": "failed", "reason": "TIMEOUT"},
        ]


class TestFallbackUsageTracker:
    """Test aggregate fallback usage."""

    def test_stats(self, fake_clock):
        tracker = FallbackUsageTracker(fake_clock)
        tracker.record_fallback_usage("weather", "current", "weatherapi", True)
        tracker.record_fallback_usage("weather", "current", "weatherapi", False)
        tracker.record_fallback_usage("weather", "forecast", "weatherstack", True)
        tracker.record_fallback_usage("news", "headlines", "gnews", True)

        stats = tracker.get_stats("weather")
        assert stats["total_fallbacks"] == 3
        assert stats["successful_fallbacks"] == 2
        assert stats["success_rate"] == 66.67
        assert stats["top_fallback_providers"][0] == {"provider_id": "weatherapi", "count": 2}

    def test_empty_stats(self):
        stats = FallbackUsageTracker().get_stats("weather")
        assert stats["total_fallbacks"] == 0
        assert stats["success_rate"] == 0.0

    def test_reset_provider(self):
        tracker = FallbackUsageTracker()
        tracker.record_fallback_usage("weather", "current", "weatherapi", True)
        tracker.record_fallback_usage("weather", "current", "weatherstack", True)

        assert tracker.reset("weatherapi") == 1
        assert [u.provider_id for u in tracker.get_usage()] == ["weatherstack"]


# ============================================================
# Resilience Manager Tests
# ============================================================

class TestFallbackCandidates:
    """Test candidate ordering."""

    def test_configured_chain_before_alternatives(self, manager):
        """Configured fallbacks come before the rest of the domain."""
        manager.configure_fallback_chain("weather", "openweather", ["weatherstack"])

        candidates = manager.get_fallback_candidates("weather", "openweather")

        assert [c.provider_id for c in candidates] == ["weatherstack", "weatherapi"]
        assert candidates[0].source == "configured_fallback"
        assert candidates[1].source == "domain_alternative"

    def test_ordered_by_quality(self, manager):
        """Equal priority candidates are ordered by quality."""
        candidates = manager.get_fallback_candidates("weather", "openweather")
        assert [c.provider_id for c in candidates] == ["weatherapi", "weatherstack"]
        assert candidates[0].rank_score == 9.0

    def test_never_includes_open_circuit(self, manager):
        manager.breakers.force_open("weatherapi")

        candidates = manager.get_fallback_candidates("weather", "openweather")
        assert "weatherapi" not in [c.provider_id for c in candidates]

    def test_half_open_after_closed(self, manager, fake_clock):
        """A half-open candidate is tried after closed ones."""
        manager.breakers.force_open("weatherapi")
        fake_clock.advance(60)

        candidates = manager.get_fallback_candidates("weather", "openweather")

        assert [c.provider_id for c in candidates] == ["weatherstack", "weatherapi"]
        assert candidates[1].circuit_state == CircuitState.HALF_OPEN

    def test_excluded_providers_dropped(self, manager):
        selection = SelectionConstraints(excluded_providers={"weatherapi"})
        candidates = manager.get_fallback_candidates("weather", None, selection)
        assert [c.provider_id for c in candidates] == ["openweather", "weatherstack"]

    def test_capped_at_max_candidates(self, catalog, stub_executor, metrics):
        manager = ResilienceManager(
            catalog, stub_executor, metrics=metrics,
            fallback_config=FallbackChainConfig(max_candidates=1),
        )
        assert len(manager.get_fallback_candidates("weather")) == 1


class TestExecuteWithFallback:
    """Test execute-with-fallback."""

    @pytest.mark.asyncio
    async def test_primary_success(self, manager, stub_executor):
        """Primary success needs no fallback."""
        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather", parameters={"q": "Paris"})
        )

        assert result.success is True
        assert result.data == {"provider": "openweather", "operation": "current"}
        assert result.metadata["provider_id"] == "openweather"
        assert result.metadata["used_fallback"] is False
        assert result.metadata["fallback_provider_id"] is None
        assert result.metadata["attempts_count"] == 1
        assert stub_executor.calls[0].parameters == {"q": "Paris"}

    @pytest.mark.asyncio
    async def test_first_fallback_success_stops(self, manager, stub_executor):
        """Primary fails, first fallback succeeds, second is never tried."""
        manager.configure_fallback_chain("weather", "openweather", ["weatherapi", "weatherstack"])
        stub_executor.set_response("openweather", ErrorKind.SERVICE_UNAVAILABLE)

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        assert result.success is True
        assert result.metadata["used_fallback"] is True
        assert result.metadata["fallback_provider_id"] == "weatherapi"
        assert len(result.attempt_history) == 2
        assert result.attempt_history[0].outcome == AttemptOutcome.FAILED
        assert result.attempt_history[0].reason == "SERVICE_UNAVAILABLE"
        assert result.attempt_history[0].retryable is True
        assert stub_executor.calls_for("weatherstack") == []

    @pytest.mark.asyncio
    async def test_open_primary_is_skipped(self, manager, stub_executor):
        """openweather fails 5 times, then the next call skips it."""
        for _ in range(5):
            manager.record_failure("openweather", "SERVICE_UNAVAILABLE")
        assert manager.get_circuit_state("openweather") == CircuitState.OPEN

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        history = result.attempt_history
        assert history[0].provider_id == "openweather"
        assert history[0].outcome == AttemptOutcome.SKIPPED
        assert history[0].reason == "circuit_breaker_open"
        assert history[1].provider_id == "weatherapi"
        assert history[1].outcome == AttemptOutcome.SUCCESS
        assert stub_executor.calls_for("openweather") == []
        assert stub_executor.calls_for("weatherstack") == []

    @pytest.mark.asyncio
    async def test_open_primary_with_configured_chain(self, manager, stub_executor):
        """openweather fails 5 times; the configured chain then runs in order."""
        manager.configure_fallback_chain("weather", "openweather", ["weatherapi", "weatherstack"])
        options = ExecutionOptions(primary_provider="openweather")

        for _ in range(5):
            manager.record_failure("openweather", "SERVICE_UNAVAILABLE")
        assert manager.get_circuit_state("openweather") == CircuitState.OPEN

        candidates = manager.get_fallback_candidates("weather", "openweather")
        assert [(c.provider_id, c.source) for c in candidates] == [
            ("weatherapi", "configured_fallback"),
            ("weatherstack", "configured_fallback"),
        ]

        stub_executor.script("weatherapi", ErrorKind.TIMEOUT)
        result = await manager.execute_with_fallback(WEATHER_CURRENT, options)

        assert [(r.provider_id, r.outcome, r.reason) for r in result.attempt_history] == [
            ("openweather", AttemptOutcome.SKIPPED, "circuit_breaker_open"),
            ("weatherapi", AttemptOutcome.FAILED, "TIMEOUT"),
            ("weatherstack", AttemptOutcome.SUCCESS, None),
        ]
        assert result.success is True
        assert result.metadata["fallback_provider_id"] == "weatherstack"
        assert stub_executor.calls_for("openweather") == []

    @pytest.mark.asyncio
    async def test_repeated_failures_open_circuit(self, manager, stub_executor):
        """Failed attempts feed the breaker."""
        stub_executor.set_response("openweather", ErrorKind.NETWORK_ERROR)

        for _ in range(5):
            result = await manager.execute_with_fallback(
                WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
            )
            assert result.success is True

        assert manager.get_circuit_state("openweather") == CircuitState.OPEN
        assert stub_executor.calls_for("openweather") == []

    @pytest.mark.asyncio
    async def test_all_attempts_failed(self, manager, stub_executor):
        for provider_id in ("openweather", "weatherapi", "weatherstack"):
            stub_executor.set_response(provider_id, ErrorKind.SERVICE_UNAVAILABLE)

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        assert result.success is False
        assert result.error == "All fallback attempts failed"
        assert result.error_code == OrchestrationCode.ALL_ATTEMPTS_FAILED.value
        reasons = result.metadata["all_failure_reasons"]
        assert [r["provider_id"] for r in reasons] == ["openweather", "weatherapi", "weatherstack"]
        assert {r["reason"] for r in reasons} == {"SERVICE_UNAVAILABLE"}

    @pytest.mark.asyncio
    async def test_no_candidates(self, manager):
        result = await manager.execute_with_fallback(Operation(type="convert", domain="currency"))

        assert result.success is False
        assert result.error_code == OrchestrationCode.NO_CANDIDATES.value
        assert result.attempt_history == []

    @pytest.mark.asyncio
    async def test_unknown_primary_recorded_as_failure(self, manager):
        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="ghost")
        )

        assert result.success is True
        assert result.attempt_history[0].provider_id == "ghost"
        assert result.attempt_history[0].reason == "api_not_found"
        assert result.metadata["provider_id"] == "weatherapi"

    @pytest.mark.asyncio
    async def test_timeout_is_categorized(self, catalog, stub_executor, metrics, fake_clock):
        """A slow provider is cut off and recorded as TIMEOUT."""
        manager = ResilienceManager(
            catalog, stub_executor, metrics=metrics, clock=fake_clock,
            fallback_config=FallbackChainConfig(per_attempt_timeout_seconds=0.05),
        )
        stub_executor.set_response("openweather", StubDelay(1.0))

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        first = result.attempt_history[0]
        assert first.outcome == AttemptOutcome.FAILED
        assert first.error_kind == ErrorKind.TIMEOUT.value
        assert first.reason == "TIMEOUT"
        assert result.success is True

    @pytest.mark.asyncio
    async def test_unexpected_exception_is_error_outcome(self, manager, stub_executor):
        stub_executor.set_response("openweather", RuntimeError("boom"))

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        first = result.attempt_history[0]
        assert first.outcome == AttemptOutcome.ERROR
        assert first.reason == "boom"
        assert first.error_kind == ErrorKind.UNKNOWN_ERROR.value
        assert result.success is True

    @pytest.mark.asyncio
    async def test_elapsed_deadline(self, manager, stub_executor):
        """No attempt starts once the deadline has passed."""
        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather", deadline_seconds=0)
        )

        assert result.success is False
        assert result.error_code == OrchestrationCode.DEADLINE_EXCEEDED.value
        assert stub_executor.calls == []

    @pytest.mark.asyncio
    async def test_deadline_expires_mid_chain(self, manager, stub_executor, monitor):
        """Attempts made before the deadline are kept; later candidates never run."""
        stub_executor.set_response("openweather", ErrorKind.SERVICE_UNAVAILABLE)
        stub_executor.set_response("weatherapi", StubDelay(5.0))

        result = await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather", deadline_seconds=0.2)
        )

        assert result.success is False
        assert result.error_code == OrchestrationCode.DEADLINE_EXCEEDED.value
        assert [(r.provider_id, r.reason) for r in result.attempt_history] == [
            ("openweather", "SERVICE_UNAVAILABLE"),
            ("weatherapi", "deadline_exceeded"),
        ]
        assert result.metadata["attempts_count"] == 2
        assert stub_executor.calls_for("weatherstack") == []
        # only the real failure counts against provider health
        assert manager.breakers.get_breaker("openweather").failure_count == 1
        assert manager.breakers.get_breaker("weatherapi") is None
        assert monitor.has_data("weatherapi") is False

    @pytest.mark.asyncio
    async def test_short_deadline_does_not_open_circuit(self, manager, stub_executor):
        """Deadline cut-offs never feed the breaker of a slow but healthy provider."""
        stub_executor.set_response("openweather", StubDelay(0.2))
        options = ExecutionOptions(primary_provider="openweather", deadline_seconds=0.05)

        for _ in range(5):
            result = await manager.execute_with_fallback(WEATHER_CURRENT, options)
            assert result.error_code == OrchestrationCode.DEADLINE_EXCEEDED.value
            assert result.attempt_history[0].reason == "deadline_exceeded"

        assert manager.get_circuit_state("openweather") == CircuitState.CLOSED
        assert manager.breakers.get_breaker("openweather") is None

    @pytest.mark.asyncio
    async def test_selection_constraints_filter_candidates(self, manager, stub_executor):
        """Only providers passing the selector's filters are tried."""
        result = await manager.execute_with_fallback(
            WEATHER_CURRENT,
            ExecutionOptions(selection=SelectionConstraints(required_features={"astronomy"})),
        )

        assert result.success is True
        assert result.metadata["provider_id"] == "weatherapi"
        assert [c.provider_id for c in stub_executor.calls] == ["weatherapi"]

    @pytest.mark.asyncio
    async def test_never_raises(self, manager):
        """Orchestration bugs become EXECUTION_ERROR results."""
        with patch.object(manager, "get_fallback_candidates", side_effect=RuntimeError("broken")):
            result = await manager.execute_with_fallback(WEATHER_CURRENT)

        assert result.success is False
        assert result.error_code == OrchestrationCode.EXECUTION_ERROR.value
        assert result.metadata["execution_error"] is True

    @pytest.mark.asyncio
    async def test_attempts_feed_monitor_and_scorer(self, manager, monitor, scorer, stub_executor):
        stub_executor.set_response("openweather", ErrorKind.TIMEOUT)

        await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        assert monitor.get_api_stats("openweather").failed_calls == 1
        assert monitor.get_api_stats("weatherapi").successful_calls == 1
        assert monitor.get_operation_stats("weatherapi")["current"]["calls"] == 1
        assert scorer.average_quality("weatherapi", "weather") is not None

    @pytest.mark.asyncio
    async def test_metrics_recorded(self, manager, stub_executor, metrics_registry):
        stub_executor.set_response("openweather", ErrorKind.SERVICE_UNAVAILABLE)

        await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        assert metrics_registry.get_sample_value(
            "apimesh_attempts_total",
            {"provider": "openweather", "domain": "weather", "outcome": "failed"},
        ) == 1
        assert metrics_registry.get_sample_value(
            "apimesh_fallbacks_total",
            {"domain": "weather", "from_provider": "openweather", "to_provider": "weatherapi"},
        ) == 1
        assert metrics_registry.get_sample_value(
            "apimesh_executions_total", {"domain": "weather", "status": "success"}
        ) == 1

    @pytest.mark.asyncio
    async def test_concurrent_executions(self, manager, stub_executor):
        """Independent calls run concurrently and all succeed."""
        stub_executor.set_response("openweather", StubDelay(0.01))

        results = await asyncio.gather(*[
            manager.execute_with_fallback(WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather"))
            for _ in range(10)
        ])

        assert all(r.success for r in results)
        assert len(stub_executor.calls_for("openweather")) == 10


class TestHalfOpenExecution:
    """Test trial calls through a half-open circuit."""

    @pytest.fixture
    def half_open_primary(self, manager, fake_clock):
        manager.breakers.force_open("openweather")
        fake_clock.advance(61)
        assert manager.get_circuit_state("openweather") == CircuitState.HALF_OPEN
        return ExecutionOptions(primary_provider="openweather")

    @pytest.mark.asyncio
    async def test_trials_close_circuit(self, manager, stub_executor, half_open_primary):
        """Three trials run, the fourth caller is skipped, then the circuit closes."""
        stub_executor.script("openweather", *[StubDelay(0.05)] * 3)

        results = await asyncio.gather(*[
            manager.execute_with_fallback(WEATHER_CURRENT, half_open_primary)
            for _ in range(4)
        ])

        for result in results[:3]:
            assert result.metadata["provider_id"] == "openweather"
            assert result.attempt_history[0].outcome == AttemptOutcome.SUCCESS

        skipped = results[3].attempt_history[0]
        assert skipped.outcome == AttemptOutcome.SKIPPED
        assert skipped.reason == "circuit_half_open_limit"
        assert results[3].metadata["provider_id"] == "weatherapi"

        assert manager.get_circuit_state("openweather") == CircuitState.CLOSED
        assert len(stub_executor.calls_for("openweather")) == 3

    @pytest.mark.asyncio
    async def test_failed_trial_reopens_circuit(self, manager, stub_executor, half_open_primary):
        stub_executor.script("openweather", ErrorKind.NETWORK_ERROR)

        result = await manager.execute_with_fallback(WEATHER_CURRENT, half_open_primary)

        assert result.success is True
        assert result.attempt_history[0].outcome == AttemptOutcome.FAILED
        assert manager.get_circuit_state("openweather") == CircuitState.OPEN

    @pytest.mark.asyncio
    async def test_cancelled_trials_release_their_slots(
        self, manager, stub_executor, fake_clock, half_open_primary
    ):
        """Cancelling every in-flight trial leaves the circuit able to recover."""
        stub_executor.script("openweather", *[StubDelay(5.0)] * 3)
        tasks = [
            asyncio.create_task(manager.execute_with_fallback(WEATHER_CURRENT, half_open_primary))
            for _ in range(3)
        ]
        await asyncio.sleep(0.05)
        assert manager.breakers.get_breaker("openweather").half_open_in_flight == 3

        for task in tasks:
            task.cancel()
        results = await asyncio.gather(*tasks, return_exceptions=True)
        assert all(isinstance(r, asyncio.CancelledError) for r in results)

        breaker = manager.breakers.get_breaker("openweather")
        assert breaker.half_open_in_flight == 0
        assert manager.get_circuit_state("openweather") == CircuitState.HALF_OPEN

        fake_clock.advance(10_000)
        result = await manager.execute_with_fallback(WEATHER_CURRENT, half_open_primary)

        assert result.attempt_history[0].provider_id == "openweather"
        assert result.attempt_history[0].outcome == AttemptOutcome.SUCCESS
        assert result.metadata["used_fallback"] is False


class TestFallbackStateManagement:
    """Test stats, reset and capability refresh."""

    @pytest.mark.asyncio
    async def test_fallback_stats(self, manager, stub_executor):
        stub_executor.set_response("openweather", ErrorKind.SERVICE_UNAVAILABLE)
        await manager.execute_with_fallback(
            WEATHER_CURRENT, ExecutionOptions(primary_provider="openweather")
        )

        stats = manager.get_fallback_stats("weather")
        assert stats["total_fallbacks"] == 1
        assert stats["successful_fallbacks"] == 1
        assert stats["circuit_breaker_status"]["openweather"]["failure_count"] == 1

    def test_reset_fallback_state_single_provider(self, manager):
        """Resetting one provider leaves the others untouched."""
        manager.record_failure("openweather", "error")
        manager.record_failure("weatherstack", "error")
        manager.usage.record_fallback_usage("weather", "current", "weatherapi", True)
        manager.usage.record_fallback_usage("weather", "current", "weatherstack", False)

        manager.reset_fallback_state("weatherstack")

        assert manager.breakers.known_providers() == ["openweather"]
        assert [u.provider_id for u in manager.usage.get_usage()] == ["weatherapi"]

    def test_reset_all(self, manager):
        manager.record_failure("openweather", "error")
        manager.reset_fallback_state()
        assert manager.breakers.known_providers() == []

    def test_refresh_capabilities(self, manager, monitor, catalog):
        for _ in range(4):
            monitor.record_api_call("weatherstack", 400, True)

        updated = manager.refresh_capabilities()

        assert updated == ["weatherstack"]
        caps = catalog.get_provider("weatherstack").capabilities
        assert caps.reliability == 10.0
        assert caps.speed == 10.0

    def test_circuit_state_gauge(self, manager, metrics_registry):
        for _ in range(5):
            manager.record_failure("openweather", "error")

        assert metrics_registry.get_sample_value(
            "apimesh_circuit_breaker_state", {"provider": "openweather"}
        ) == 2
