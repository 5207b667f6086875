"""
apimesh - Resilience Manager

Executes a logical operation against the providers of its domain with
automatic failover:

1. Try the caller's primary provider, unless its circuit is open
2. Order fallback candidates: configured chain first, then the other
   providers of the domain; closed circuits before half-open ones; then by
   selector score or historical quality
3. Try candidates one at a time, each bounded by a timeout, until one
   succeeds

Every attempt feeds the circuit breakers, the performance monitor, the
quality scorer and Prometheus metrics. The caller always gets an
ExecutionResult; failures are never raised.
"""

import asyncio
import time
import uuid
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..adapters.base import Executor, ProviderCatalog
from ..core.config import (
    CircuitBreakerConfig,
    FallbackChainConfig,
    ResilienceSettings,
)
from ..core.errors import (
    ErrorKind,
    ExecutorError,
    OrchestrationCode,
    categorize_error,
    is_retryable,
)
from ..core.models import (
    AttemptOutcome,
    CircuitState,
    ExecutionOptions,
    ExecutionResult,
    ExecutorResponse,
    FallbackCandidate,
    Operation,
    SelectionConstraints,
)
from ..observability.logging import LogContext, get_logger
from ..observability.metrics import MetricsCollector, get_metrics
from .circuit_breaker import CircuitBreakerRegistry
from .fallback import AttemptHistory, FallbackChainRegistry, FallbackUsageTracker
from .performance import PerformanceMonitor
from .quality import QualityScorer
from .strategies import SmartSelector

logger = get_logger(__name__)

CIRCUIT_OPEN_REASON = "circuit_breaker_open"
HALF_OPEN_LIMIT_REASON = "circuit_half_open_limit"
PROVIDER_NOT_FOUND_REASON = "api_not_found"
DEADLINE_EXCEEDED_REASON = "deadline_exceeded"


class _DeadlineExceeded(Exception):
    """Internal signal: the overall deadline elapsed before or during an attempt."""


class ResilienceManager:
    """
    Failover orchestration across the providers of a domain.

    Owns the circuit breaker registry, the fallback chain registry and the
    fallback usage tracker. Instances are independent; construct one per
    application and share it.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        executor: Executor,
        selector: Optional[SmartSelector] = None,
        performance_monitor: Optional[PerformanceMonitor] = None,
        quality_scorer: Optional[QualityScorer] = None,
        metrics: Optional[MetricsCollector] = None,
        breaker_config: Optional[CircuitBreakerConfig] = None,
        fallback_config: Optional[FallbackChainConfig] = None,
        fallback_chains: Optional[Mapping[str, Mapping[str, List[str]]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.catalog = catalog
        self.executor = executor
        self.metrics = metrics or get_metrics()
        self.config = fallback_config or FallbackChainConfig()
        self._clock = clock

        self.performance_monitor = performance_monitor or PerformanceMonitor(clock=clock)
        self.quality_scorer = quality_scorer or QualityScorer(clock=clock)
        self.selector = selector or SmartSelector(
            catalog, performance_monitor=self.performance_monitor, metrics=self.metrics, clock=clock
        )

        self.breakers = CircuitBreakerRegistry(
            breaker_config, clock=clock, on_state_change=self._on_circuit_change
        )
        self.chains = FallbackChainRegistry(fallback_chains)
        self.usage = FallbackUsageTracker(clock=clock)

    @classmethod
    def from_settings(
        cls,
        settings: ResilienceSettings,
        catalog: ProviderCatalog,
        executor: Executor,
        metrics: Optional[MetricsCollector] = None,
        fallback_chains: Optional[Mapping[str, Mapping[str, List[str]]]] = None,
        clock: Callable[[], float] = time.time,
    ) -> "ResilienceManager":
        """Build a manager and its components from one settings object."""
        metrics = metrics or get_metrics()
        monitor = PerformanceMonitor(settings.performance, clock=clock)
        scorer = QualityScorer(clock=clock, history_size=settings.quality_history_size)
        selector = SmartSelector(
            catalog,
            performance_monitor=monitor,
            metrics=metrics,
            history_size=settings.selection_history_size,
            clock=clock,
        )
        return cls(
            catalog,
            executor,
            selector=selector,
            performance_monitor=monitor,
            quality_scorer=scorer,
            metrics=metrics,
            breaker_config=settings.circuit_breaker,
            fallback_config=settings.fallback,
            fallback_chains=fallback_chains,
            clock=clock,
        )

    def _on_circuit_change(self, provider_id: str, old: CircuitState, new: CircuitState):
        self.metrics.set_circuit_breaker_state(provider_id, new)

    @property
    def attempt_timeout_seconds(self) -> float:
        if self.config.per_attempt_timeout_seconds is not None:
            return self.config.per_attempt_timeout_seconds
        return self.breakers.config.timeout_threshold_ms / 1000.0

    # ------------------------------------------------------------
    # Circuit breaker passthrough
    # ------------------------------------------------------------

    def get_circuit_state(self, provider_id: str) -> CircuitState:
        return self.breakers.get_state(provider_id)

    def record_success(self, provider_id: str) -> None:
        self.breakers.record_success(provider_id)

    def record_failure(self, provider_id: str, reason: Optional[str] = None) -> None:
        self.breakers.record_failure(provider_id, reason)

    def configure_fallback_chain(self, domain: str, primary: str, fallbacks: List[str]) -> None:
        self.chains.configure(domain, primary, fallbacks)

    # ------------------------------------------------------------
    # Candidate ordering
    # ------------------------------------------------------------

    def _historical_quality(self, provider_id: str, domain: str) -> float:
        average = self.quality_scorer.average_quality(provider_id, domain)
        if average is not None:
            return average
        provider = self.catalog.get_provider(provider_id)
        if provider is not None:
            return provider.capabilities.quality
        return self.config.default_quality

    def get_fallback_candidates(
        self,
        domain: str,
        primary: Optional[str] = None,
        selection: Optional[SelectionConstraints] = None,
    ) -> List[FallbackCandidate]:
        """
        Ordered fallback candidates for a domain, never including an open
        circuit or the primary.
        """
        configured = self.chains.get_chain(domain, primary)
        entries = [(pid, "configured_fallback", 1) for pid in configured]
        entries += [
            (p.provider_id, "domain_alternative", 2)
            for p in self.catalog.providers_for_domain(domain)
            if p.provider_id not in configured
        ]
        excluded = selection.excluded_providers if selection else set()

        candidates = []
        for provider_id, source, priority in entries:
            if provider_id == primary or provider_id in excluded:
                continue
            state = self.breakers.get_state(provider_id)
            if state == CircuitState.OPEN:
                continue
            candidates.append(FallbackCandidate(provider_id, source, priority, state))

        if candidates and selection is not None:
            ranked = self.selector.rank_candidates(
                domain, [c.provider_id for c in candidates], selection
            )
            scores = {s.provider_id: s.total_score for s in ranked}
            candidates = [c for c in candidates if c.provider_id in scores]
            for c in candidates:
                c.rank_score = scores[c.provider_id]
        elif self.config.quality_rerank:
            for c in candidates:
                c.rank_score = self._historical_quality(c.provider_id, domain)

        candidates.sort(key=lambda c: (
            c.priority,
            0 if c.circuit_state == CircuitState.CLOSED else 1,
            -c.rank_score,
        ))
        return candidates[:self.config.max_candidates]

    # ------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------

    async def execute_with_fallback(
        self,
        operation: Operation,
        options: Optional[ExecutionOptions] = None,
    ) -> ExecutionResult:
        """
        Execute an operation with failover.

        Args:
            operation: Logical operation (type and domain)
            options: Primary provider, call parameters, selection
                constraints and deadline

        Returns:
            ExecutionResult; success=False results carry error_code and the
            full attempt history
        """
        options = options or ExecutionOptions()
        execution_id = f"exec_{uuid.uuid4().hex[:12]}"

        with LogContext.scoped(
            request_id=execution_id, domain=operation.domain, operation=operation.type
        ):
            try:
                result = await self._execute(operation, options)
            except Exception as e:
                logger.exception("Fallback execution failed", error=str(e))
                result = ExecutionResult(
                    success=False,
                    error=f"Fallback execution failed: {e}",
                    error_code=OrchestrationCode.EXECUTION_ERROR.value,
                    metadata={
                        "operation": operation.type,
                        "domain": operation.domain,
                        "execution_error": True,
                    },
                )

        result.metadata["execution_id"] = execution_id
        self.metrics.record_execution(
            operation.domain, "success" if result.success else result.error_code.lower()
        )
        return result

    async def _execute(self, operation: Operation, options: ExecutionOptions) -> ExecutionResult:
        history = AttemptHistory(self._clock)
        loop = asyncio.get_running_loop()
        deadline_seconds = (
            options.deadline_seconds
            if options.deadline_seconds is not None
            else self.config.overall_deadline_seconds
        )
        deadline = loop.time() + deadline_seconds if deadline_seconds is not None else None

        primary = options.primary_provider
        selection = options.selection
        excluded = selection.excluded_providers if selection else set()

        try:
            if primary is not None and primary not in excluded:
                timeout, cut_by_deadline = self._attempt_timeout(loop, deadline)
                if self._admit(primary, operation, history):
                    response = await self._attempt(
                        primary, operation, options, history, timeout, 0, cut_by_deadline
                    )
                    if response is not None:
                        return self._success(operation, history, primary, response, primary, False)

            candidates = self.get_fallback_candidates(operation.domain, primary, selection)
            if not candidates and not history.attempted_providers():
                logger.warning("No candidates available", primary=primary)
                return ExecutionResult(
                    success=False,
                    error="No candidates available",
                    error_code=OrchestrationCode.NO_CANDIDATES.value,
                    metadata=self._failure_metadata(operation, history),
                )

            for index, candidate in enumerate(candidates, start=1):
                provider_id = candidate.provider_id
                timeout, cut_by_deadline = self._attempt_timeout(loop, deadline)
                if not self._admit(provider_id, operation, history):
                    continue
                response = await self._attempt(
                    provider_id, operation, options, history, timeout, index, cut_by_deadline
                )
                self.usage.record_fallback_usage(
                    operation.domain, operation.type, provider_id, response is not None
                )
                if response is not None:
                    self.metrics.record_fallback(operation.domain, primary, provider_id)
                    logger.info(
                        "Fallback succeeded",
                        provider=provider_id,
                        primary=primary,
                        attempts=len(history),
                    )
                    return self._success(operation, history, provider_id, response, primary, True)

        except _DeadlineExceeded:
            logger.warning("Overall deadline exceeded", attempts=len(history))
            return ExecutionResult(
                success=False,
                error="Overall deadline exceeded",
                error_code=OrchestrationCode.DEADLINE_EXCEEDED.value,
                metadata=self._failure_metadata(operation, history),
            )

        logger.warning("All fallback attempts failed", attempts=len(history), primary=primary)
        return ExecutionResult(
            success=False,
            error="All fallback attempts failed",
            error_code=OrchestrationCode.ALL_ATTEMPTS_FAILED.value,
            metadata=self._failure_metadata(operation, history),
        )

    def _attempt_timeout(
        self, loop: asyncio.AbstractEventLoop, deadline: Optional[float]
    ) -> Tuple[float, bool]:
        """Timeout for the next attempt, and whether the deadline is what bounds it."""
        timeout = self.attempt_timeout_seconds
        if deadline is None:
            return timeout, False
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise _DeadlineExceeded()
        if remaining < timeout:
            return remaining, True
        return timeout, False

    def _admit(self, provider_id: str, operation: Operation, history: AttemptHistory) -> bool:
        """Ask the breaker; a refusal is recorded as a skip and touches nothing else."""
        if self.breakers.allow_request(provider_id):
            return True
        state = self.breakers.get_state(provider_id)
        reason = CIRCUIT_OPEN_REASON if state == CircuitState.OPEN else HALF_OPEN_LIMIT_REASON
        history.skip(provider_id, reason)
        self.metrics.record_attempt(provider_id, operation.domain, AttemptOutcome.SKIPPED.value)
        logger.debug("Provider skipped", provider=provider_id, reason=reason)
        return False

    async def _attempt(
        self,
        provider_id: str,
        operation: Operation,
        options: ExecutionOptions,
        history: AttemptHistory,
        timeout_seconds: float,
        attempt_index: int,
        cut_by_deadline: bool = False,
    ) -> Optional[Tuple[ExecutorResponse, float, float]]:
        """
        Call one provider once.

        Returns (response, duration_ms, quality) on success, None otherwise.
        A timeout caused by the overall deadline, or a cancellation, hands the
        breaker slot back without counting against the provider.
        """
        provider = self.catalog.get_provider(provider_id)
        if provider is None:
            self._record_attempt_failure(
                provider_id, operation, history, AttemptOutcome.FAILED,
                PROVIDER_NOT_FOUND_REASON, ErrorKind.UNKNOWN_ERROR, 0.0, attempt_index,
            )
            return None

        with LogContext.scoped(provider=provider_id):
            start = time.perf_counter()
            try:
                response = await asyncio.wait_for(
                    self.executor.invoke(
                        provider, operation, dict(options.parameters), timeout_ms=timeout_seconds * 1000
                    ),
                    timeout=timeout_seconds,
                )
            except asyncio.CancelledError:
                self.breakers.release(provider_id)
                logger.info("Provider attempt cancelled")
                raise
            except asyncio.TimeoutError:
                duration_ms = (time.perf_counter() - start) * 1000
                if not cut_by_deadline:
                    self._record_attempt_failure(
                        provider_id, operation, history, AttemptOutcome.FAILED,
                        ErrorKind.TIMEOUT.value, ErrorKind.TIMEOUT, duration_ms, attempt_index,
                    )
                    return None
                self.breakers.release(provider_id)
                history.add(
                    provider_id,
                    AttemptOutcome.FAILED,
                    reason=DEADLINE_EXCEEDED_REASON,
                    duration_ms=duration_ms,
                    error_kind=ErrorKind.TIMEOUT.value,
                    retryable=True,
                )
                raise _DeadlineExceeded()
            except Exception as e:
                duration_ms = (time.perf_counter() - start) * 1000
                kind = categorize_error(e)
                if isinstance(e, ExecutorError):
                    outcome, reason = AttemptOutcome.FAILED, kind.value
                else:
                    outcome, reason = AttemptOutcome.ERROR, str(e) or type(e).__name__
                self._record_attempt_failure(
                    provider_id, operation, history, outcome, reason, kind, duration_ms, attempt_index
                )
                return None

            duration_ms = (time.perf_counter() - start) * 1000
            quality = self._score(provider_id, operation.domain, response, duration_ms)

            self.breakers.record_success(provider_id)
            self.performance_monitor.record_api_call(provider_id, duration_ms, True, {
                "operation": operation.type,
                "domain": operation.domain,
                "cached": response.cached,
                "retry_attempt": attempt_index,
            })
            self.metrics.record_attempt(
                provider_id, operation.domain, AttemptOutcome.SUCCESS.value, duration_ms / 1000
            )
            history.add(provider_id, AttemptOutcome.SUCCESS, duration_ms=duration_ms, quality=quality)
            logger.debug("Provider attempt succeeded", duration_ms=round(duration_ms, 2), quality=quality)
            return response, duration_ms, quality

    def _record_attempt_failure(
        self,
        provider_id: str,
        operation: Operation,
        history: AttemptHistory,
        outcome: AttemptOutcome,
        reason: str,
        kind: ErrorKind,
        duration_ms: float,
        attempt_index: int,
    ) -> None:
        self.breakers.record_failure(provider_id, reason)
        self.performance_monitor.record_api_call(provider_id, duration_ms, False, {
            "operation": operation.type,
            "domain": operation.domain,
            "retry_attempt": attempt_index,
            "error_kind": kind.value,
        })
        self.metrics.record_attempt(provider_id, operation.domain, outcome.value, duration_ms / 1000)
        history.add(
            provider_id,
            outcome,
            reason=reason,
            duration_ms=duration_ms,
            error_kind=kind.value,
            retryable=is_retryable(kind),
        )
        logger.warning(
            "Provider attempt failed",
            provider=provider_id,
            outcome=outcome.value,
            error_kind=kind.value,
            reason=reason,
            duration_ms=round(duration_ms, 2),
        )

    def _score(self, provider_id: str, domain: str, response: ExecutorResponse, duration_ms: float) -> float:
        quality = self.quality_scorer.score_response(
            {"data": response.data, "response_time_ms": response.response_time_ms or duration_ms},
            domain,
            provider_id=provider_id,
        )
        self.metrics.record_quality(domain, quality)
        return quality

    def _success(
        self,
        operation: Operation,
        history: AttemptHistory,
        provider_id: str,
        outcome: Tuple[ExecutorResponse, float, float],
        primary: Optional[str],
        used_fallback: bool,
    ) -> ExecutionResult:
        response, duration_ms, quality = outcome
        return ExecutionResult(
            success=True,
            data=response.data,
            metadata={
                "operation": operation.type,
                "domain": operation.domain,
                "provider_id": provider_id,
                "primary_provider": primary,
                "used_fallback": used_fallback,
                "fallback_provider_id": provider_id if used_fallback else None,
                "attempts_count": len(history),
                "attempt_history": list(history.records),
                "quality": quality,
                "response_time_ms": duration_ms,
                "cached": response.cached,
            },
        )

    @staticmethod
    def _failure_metadata(operation: Operation, history: AttemptHistory) -> Dict[str, Any]:
        return {
            "operation": operation.type,
            "domain": operation.domain,
            "attempts_count": len(history),
            "attempt_history": list(history.records),
            "all_failure_reasons": history.failure_reasons(),
        }

    # ------------------------------------------------------------
    # Stats and maintenance
    # ------------------------------------------------------------

    def get_fallback_stats(self, domain: Optional[str] = None) -> Dict[str, Any]:
        """Fallback usage totals plus the status of every circuit breaker."""
        stats = self.usage.get_stats(domain)
        stats["circuit_breaker_status"] = self.breakers.get_all_status()
        stats["fallback_chains"] = (
            self.chains.all_chains().get(domain, {}) if domain else self.chains.all_chains()
        )
        return stats

    def reset_fallback_state(self, provider_id: Optional[str] = None) -> None:
        """Remove one provider's breaker and fallback usage, or everything."""
        self.breakers.reset(provider_id)
        removed = self.usage.reset(provider_id)
        logger.info("Fallback state reset", provider=provider_id or "all", usage_records=removed)

    def refresh_capabilities(self) -> List[str]:
        """Push observed success rate and latency into the catalog."""
        updated = []
        for provider_id in self.performance_monitor.tracked_providers():
            if self.catalog.get_provider(provider_id) is None:
                continue
            stats = self.performance_monitor.get_api_stats(provider_id)
            if stats.total_calls == 0:
                continue
            self.selector.update_api_capabilities(
                provider_id,
                success_rate=stats.success_rate,
                average_response_time_ms=stats.avg_response_time_ms,
            )
            updated.append(provider_id)
        return updated
