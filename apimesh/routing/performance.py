"""
apimesh - Performance Monitoring

Per-provider call history and derived statistics:
- Totals, success/error rate, response time (avg, median, p95, min, max)
- Daily and per-operation rollups
- Threshold alerts on the recent window
- Trend analysis (last 50 calls vs the 50 before)
- Insights (performance category, best/worst hour, cache effect, operations)

History is a bounded ring buffer per provider; totals cover every call
ever recorded, percentile statistics cover the buffer.
"""

import time
from collections import deque
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Dict, List, Optional

from ..core.config import PerformanceMonitorConfig
from ..core.models import CallRecord
from ..observability.logging import get_logger

logger = get_logger(__name__)

SECONDS_PER_DAY = 86400.0


@dataclass
class RecentStats:
    """Statistics over the most recent calls."""
    calls: int = 0
    successes: int = 0
    failures: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    time_window_seconds: float = 0.0


@dataclass
class APIStats:
    """Comprehensive statistics for one provider."""
    provider_id: str
    total_calls: int = 0
    successful_calls: int = 0
    failed_calls: int = 0
    success_rate: float = 0.0
    error_rate: float = 0.0
    avg_response_time_ms: float = 0.0
    median_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    min_response_time_ms: float = 0.0
    max_response_time_ms: float = 0.0
    first_call: Optional[float] = None
    last_call: Optional[float] = None
    calls_per_day: float = 0.0
    recent_performance: RecentStats = field(default_factory=RecentStats)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Alert:
    """One threshold breach."""
    type: str          # high_response_time | high_error_rate | low_success_rate
    severity: str      # warning | critical
    message: str
    value: float
    threshold: float


@dataclass
class ProviderAlerts:
    """Active alerts for one provider."""
    provider_id: str
    timestamp: float
    alerts: List[Alert] = field(default_factory=list)

    @property
    def is_critical(self) -> bool:
        return any(a.severity == "critical" for a in self.alerts)


@dataclass
class TrendAnalysis:
    """Recent window compared with the window before it."""
    provider_id: str
    timestamp: float
    response_time_trend: float      # percent change
    success_rate_trend: float       # percent change
    response_time_direction: str    # improving | stable | degrading
    success_rate_direction: str
    overall_trend: str
    recent_avg_response_time_ms: float
    older_avg_response_time_ms: float
    recent_success_rate: float
    older_success_rate: float


@dataclass
class PerformanceInsight:
    type: str
    message: str
    details: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ProviderInsights:
    provider_id: str
    timestamp: float
    insights: List[PerformanceInsight] = field(default_factory=list)


@dataclass
class _DailyRollup:
    calls: int = 0
    successes: int = 0
    total_response_time_ms: float = 0.0
    min_response_time_ms: Optional[float] = None
    max_response_time_ms: Optional[float] = None


@dataclass
class _OperationRollup:
    operation: str
    calls: int = 0
    successes: int = 0
    total_response_time_ms: float = 0.0

    @property
    def avg_response_time_ms(self) -> float:
        return self.total_response_time_ms / self.calls if self.calls else 0.0


def summarize(records: List[CallRecord]) -> RecentStats:
    """Aggregate a list of call records."""
    if not records:
        return RecentStats()
    calls = len(records)
    successes = sum(1 for r in records if r.success)
    return RecentStats(
        calls=calls,
        successes=successes,
        failures=calls - successes,
        success_rate=successes / calls,
        error_rate=(calls - successes) / calls,
        avg_response_time_ms=sum(r.response_time_ms for r in records) / calls,
        time_window_seconds=records[-1].timestamp - records[0].timestamp,
    )


def categorize_performance(
    avg_response_time_ms: float,
    success_rate: float,
    categories: Optional[Dict[str, tuple]] = None,
) -> str:
    """excellent | good | acceptable | poor."""
    categories = categories or PerformanceMonitorConfig().performance_categories
    for name, (max_response_time, min_success_rate) in categories.items():
        if avg_response_time_ms <= max_response_time and success_rate >= min_success_rate:
            return name
    return "poor"


def calculate_performance_score(avg_response_time_ms: float, success_rate: float) -> float:
    """Weighted score: 60% success rate, 40% speed (10 points under 1s, linear decay)."""
    success_score = success_rate * 10
    speed_score = max(0.0, 10 - avg_response_time_ms / 1000)
    return success_score * 0.6 + speed_score * 0.4


class ProviderPerformance:
    """
    Tracks performance for a single provider.

    Every method takes the provider lock; derived statistics are pure
    functions of the buffered history and the running totals.
    """

    def __init__(self, provider_id: str, config: PerformanceMonitorConfig):
        self.provider_id = provider_id
        self.config = config
        self._lock = Lock()

        self.total_calls = 0
        self.successful_calls = 0
        self.failed_calls = 0
        self.total_response_time_ms = 0.0
        self.min_response_time_ms: Optional[float] = None
        self.max_response_time_ms: Optional[float] = None
        self.first_call: Optional[float] = None
        self.last_call: Optional[float] = None

        self.history: deque = deque(maxlen=config.max_history_size)
        self.daily: Dict[str, _DailyRollup] = {}
        self.operations: Dict[str, _OperationRollup] = {}

        self.alerts: Optional[ProviderAlerts] = None
        self.trend: Optional[TrendAnalysis] = None
        self.insights: Optional[ProviderInsights] = None

    def record(self, call: CallRecord) -> None:
        with self._lock:
            rt = call.response_time_ms
            self.total_calls += 1
            if call.success:
                self.successful_calls += 1
            else:
                self.failed_calls += 1
            self.total_response_time_ms += rt
            self.min_response_time_ms = rt if self.min_response_time_ms is None else min(self.min_response_time_ms, rt)
            self.max_response_time_ms = rt if self.max_response_time_ms is None else max(self.max_response_time_ms, rt)
            if self.first_call is None:
                self.first_call = call.timestamp
            self.last_call = call.timestamp

            self.history.append(call)

            day_key = datetime.fromtimestamp(call.timestamp, tz=timezone.utc).date().isoformat()
            day = self.daily.setdefault(day_key, _DailyRollup())
            day.calls += 1
            day.successes += int(call.success)
            day.total_response_time_ms += rt
            day.min_response_time_ms = rt if day.min_response_time_ms is None else min(day.min_response_time_ms, rt)
            day.max_response_time_ms = rt if day.max_response_time_ms is None else max(day.max_response_time_ms, rt)

            op = self.operations.setdefault(call.operation, _OperationRollup(call.operation))
            op.calls += 1
            op.successes += int(call.success)
            op.total_response_time_ms += rt

            self._check_alerts(call.timestamp)
            self._analyze_trend(call.timestamp)
            self._generate_insights(call.timestamp)

    # ------------------------------------------------------------
    # Statistics (must hold lock)
    # ------------------------------------------------------------

    def _recent(self, window_size: int) -> List[CallRecord]:
        if window_size <= 0:
            return []
        history = list(self.history)
        return history[-window_size:]

    def _stats(self) -> APIStats:
        if self.total_calls == 0:
            return APIStats(provider_id=self.provider_id)

        samples = sorted(r.response_time_ms for r in self.history)
        n = len(samples)
        span_days = (self.last_call - self.first_call) / SECONDS_PER_DAY

        return APIStats(
            provider_id=self.provider_id,
            total_calls=self.total_calls,
            successful_calls=self.successful_calls,
            failed_calls=self.failed_calls,
            success_rate=self.successful_calls / self.total_calls,
            error_rate=self.failed_calls / self.total_calls,
            avg_response_time_ms=self.total_response_time_ms / self.total_calls,
            median_response_time_ms=samples[n // 2],
            p95_response_time_ms=samples[min(n - 1, int(n * 0.95))],
            min_response_time_ms=self.min_response_time_ms,
            max_response_time_ms=self.max_response_time_ms,
            first_call=self.first_call,
            last_call=self.last_call,
            calls_per_day=self.total_calls / max(span_days, 1.0),
            recent_performance=summarize(self._recent(self.config.recent_window)),
        )

    def _check_alerts(self, now: float) -> None:
        recent = summarize(self._recent(self.config.recent_window))
        alerts = []

        if recent.error_rate > self.config.alert_error_rate:
            alerts.append(Alert(
                type="high_error_rate",
                severity="critical",
                message=f"Error rate {recent.error_rate:.1%} exceeds {self.config.alert_error_rate:.0%}",
                value=recent.error_rate,
                threshold=self.config.alert_error_rate,
            ))
        if recent.success_rate < self.config.alert_success_rate:
            alerts.append(Alert(
                type="low_success_rate",
                severity="warning",
                message=f"Success rate {recent.success_rate:.1%} below {self.config.alert_success_rate:.0%}",
                value=recent.success_rate,
                threshold=self.config.alert_success_rate,
            ))
        if recent.avg_response_time_ms > self.config.alert_response_time_ms:
            alerts.append(Alert(
                type="high_response_time",
                severity="warning",
                message=f"Average response time {recent.avg_response_time_ms:.0f}ms exceeds "
                        f"{self.config.alert_response_time_ms:.0f}ms",
                value=recent.avg_response_time_ms,
                threshold=self.config.alert_response_time_ms,
            ))

        if not alerts:
            if self.alerts is not None:
                logger.info("Performance alerts cleared", provider=self.provider_id)
            self.alerts = None
            return

        previous = {a.type for a in self.alerts.alerts} if self.alerts else set()
        self.alerts = ProviderAlerts(provider_id=self.provider_id, timestamp=now, alerts=alerts)
        new_types = {a.type for a in alerts} - previous
        if new_types:
            logger.warning(
                "Performance alert raised",
                provider=self.provider_id,
                alert_types=sorted(new_types),
                critical=self.alerts.is_critical,
            )

    def _analyze_trend(self, now: float) -> None:
        window = self.config.recent_window
        history = list(self.history)
        recent = history[-window:]
        older = history[-2 * window:-window] if len(history) > window else []

        if len(recent) < self.config.trend_min_samples or len(older) < self.config.trend_min_samples:
            return

        recent_stats = summarize(recent)
        older_stats = summarize(older)

        rt_trend = _percent_change(recent_stats.avg_response_time_ms, older_stats.avg_response_time_ms)
        sr_trend = _percent_change(recent_stats.success_rate, older_stats.success_rate)

        if rt_trend > 5:
            rt_direction = "degrading"
        elif rt_trend < -5:
            rt_direction = "improving"
        else:
            rt_direction = "stable"

        if sr_trend > 2:
            sr_direction = "improving"
        elif sr_trend < -2:
            sr_direction = "degrading"
        else:
            sr_direction = "stable"

        if rt_trend > 10 or sr_trend < -5:
            overall = "degrading"
        elif rt_trend < -10 or sr_trend > 5:
            overall = "improving"
        else:
            overall = "stable"

        self.trend = TrendAnalysis(
            provider_id=self.provider_id,
            timestamp=now,
            response_time_trend=round(rt_trend, 2),
            success_rate_trend=round(sr_trend, 2),
            response_time_direction=rt_direction,
            success_rate_direction=sr_direction,
            overall_trend=overall,
            recent_avg_response_time_ms=recent_stats.avg_response_time_ms,
            older_avg_response_time_ms=older_stats.avg_response_time_ms,
            recent_success_rate=recent_stats.success_rate,
            older_success_rate=older_stats.success_rate,
        )

    def _generate_insights(self, now: float) -> None:
        if self.total_calls < self.config.insights_min_calls:
            return

        stats = self._stats()
        insights = []

        category = categorize_performance(
            stats.avg_response_time_ms, stats.success_rate, self.config.performance_categories
        )
        insights.append(PerformanceInsight(
            type="performance_category",
            message=f"Provider performance is {category}",
            details={
                "category": category,
                "avg_response_time_ms": stats.avg_response_time_ms,
                "success_rate": stats.success_rate,
            },
        ))

        hourly = self._hourly_averages()
        if hourly:
            best_hour = min(hourly, key=hourly.get)
            worst_hour = max(hourly, key=hourly.get)
            if best_hour != worst_hour:
                insights.append(PerformanceInsight(
                    type="peak_performance",
                    message=f"Best performance at {best_hour}:00 UTC, worst at {worst_hour}:00 UTC",
                    details={
                        "best_hour": best_hour,
                        "best_avg_time_ms": hourly[best_hour],
                        "worst_hour": worst_hour,
                        "worst_avg_time_ms": hourly[worst_hour],
                    },
                ))

        history = list(self.history)
        cached = [r.response_time_ms for r in history if r.cached]
        if cached:
            uncached = [r.response_time_ms for r in history if not r.cached]
            cached_avg = sum(cached) / len(cached)
            uncached_avg = sum(uncached) / len(uncached) if uncached else 0.0
            hit_rate = len(cached) / len(history)
            insights.append(PerformanceInsight(
                type="cache_effectiveness",
                message=f"Cache hit rate: {hit_rate:.1%}",
                details={
                    "cache_hit_rate": hit_rate,
                    "cached_avg_time_ms": cached_avg,
                    "uncached_avg_time_ms": uncached_avg,
                    "speed_improvement": (
                        (uncached_avg - cached_avg) / uncached_avg * 100 if uncached_avg > 0 else 0.0
                    ),
                },
            ))

        operations = sorted(
            (op for op in self.operations.values() if op.calls >= self.config.operation_min_calls),
            key=lambda op: op.avg_response_time_ms,
            reverse=True,
        )
        if len(operations) > 1:
            slowest, fastest = operations[0], operations[-1]
            insights.append(PerformanceInsight(
                type="operation_performance",
                message=f"{slowest.operation} is slowest operation, {fastest.operation} is fastest",
                details={
                    "slowest_operation": slowest.operation,
                    "slowest_avg_time_ms": slowest.avg_response_time_ms,
                    "fastest_operation": fastest.operation,
                    "fastest_avg_time_ms": fastest.avg_response_time_ms,
                },
            ))

        self.insights = ProviderInsights(provider_id=self.provider_id, timestamp=now, insights=insights)

    def _hourly_averages(self) -> Dict[int, float]:
        totals: Dict[int, List[float]] = {}
        for r in self.history:
            hour = datetime.fromtimestamp(r.timestamp, tz=timezone.utc).hour
            totals.setdefault(hour, []).append(r.response_time_ms)
        return {hour: sum(v) / len(v) for hour, v in totals.items()}

    # ------------------------------------------------------------
    # Locked accessors
    # ------------------------------------------------------------

    def get_stats(self) -> APIStats:
        with self._lock:
            return self._stats()

    def get_recent_stats(self, window_size: int) -> RecentStats:
        with self._lock:
            return summarize(self._recent(window_size))

    def get_daily_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                day: {
                    "calls": r.calls,
                    "successes": r.successes,
                    "avg_response_time_ms": r.total_response_time_ms / r.calls,
                    "min_response_time_ms": r.min_response_time_ms,
                    "max_response_time_ms": r.max_response_time_ms,
                }
                for day, r in self.daily.items()
            }

    def get_operation_stats(self) -> Dict[str, Dict[str, Any]]:
        with self._lock:
            return {
                name: {
                    "calls": op.calls,
                    "successes": op.successes,
                    "avg_response_time_ms": op.avg_response_time_ms,
                }
                for name, op in self.operations.items()
            }

    def overview(self) -> Dict[str, Any]:
        with self._lock:
            success_rate = self.successful_calls / self.total_calls if self.total_calls else 0.0
            avg = self.total_response_time_ms / self.total_calls if self.total_calls else 0.0
            return {
                "provider_id": self.provider_id,
                "total_calls": self.total_calls,
                "success_rate": success_rate,
                "avg_response_time_ms": avg,
                "category": categorize_performance(avg, success_rate, self.config.performance_categories),
                "last_call": self.last_call,
                "has_alerts": self.alerts is not None,
            }


def _percent_change(new: float, old: float) -> float:
    if old == 0:
        return 0.0 if new == 0 else 100.0
    return (new - old) / old * 100


class PerformanceMonitor:
    """
    Registry of per-provider performance trackers.

    Explicitly constructed and passed to the components that need it; the
    clock is injectable so tests control timestamps.
    """

    def __init__(
        self,
        config: Optional[PerformanceMonitorConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.config = config or PerformanceMonitorConfig()
        self._clock = clock
        self._providers: Dict[str, ProviderPerformance] = {}
        self._lock = Lock()

    def _get(self, provider_id: str, create: bool = False) -> Optional[ProviderPerformance]:
        with self._lock:
            tracker = self._providers.get(provider_id)
            if tracker is None and create:
                tracker = ProviderPerformance(provider_id, self.config)
                self._providers[provider_id] = tracker
            return tracker

    def _all(self) -> List[ProviderPerformance]:
        with self._lock:
            return list(self._providers.values())

    def record_api_call(
        self,
        provider_id: str,
        response_time_ms: float,
        success: bool,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> CallRecord:
        """Record one call and refresh alerts, trend and insights."""
        metadata = dict(metadata or {})
        call = CallRecord(
            provider_id=provider_id,
            timestamp=metadata.pop("timestamp", None) or self._clock(),
            response_time_ms=max(0.0, float(response_time_ms)),
            success=bool(success),
            operation=metadata.pop("operation", "unknown"),
            domain=metadata.pop("domain", "unknown"),
            cached=bool(metadata.pop("cached", False)),
            retry_attempt=int(metadata.pop("retry_attempt", 0)),
            extra=metadata,
        )
        self._get(provider_id, create=True).record(call)
        return call

    def tracked_providers(self) -> List[str]:
        with self._lock:
            return list(self._providers)

    def has_data(self, provider_id: str) -> bool:
        tracker = self._get(provider_id)
        return tracker is not None and tracker.total_calls > 0

    def get_api_stats(self, provider_id: str) -> APIStats:
        tracker = self._get(provider_id)
        if tracker is None:
            return APIStats(provider_id=provider_id)
        return tracker.get_stats()

    def get_recent_stats(self, provider_id: str, window_size: Optional[int] = None) -> RecentStats:
        tracker = self._get(provider_id)
        if tracker is None:
            return RecentStats()
        return tracker.get_recent_stats(window_size or self.config.recent_window)

    def get_daily_stats(self, provider_id: str) -> Dict[str, Dict[str, Any]]:
        tracker = self._get(provider_id)
        return tracker.get_daily_stats() if tracker else {}

    def get_operation_stats(self, provider_id: str) -> Dict[str, Dict[str, Any]]:
        tracker = self._get(provider_id)
        return tracker.get_operation_stats() if tracker else {}

    def get_active_alerts(self) -> Dict[str, ProviderAlerts]:
        return {t.provider_id: t.alerts for t in self._all() if t.alerts is not None}

    def get_trend_analysis(self, provider_id: str) -> Optional[TrendAnalysis]:
        tracker = self._get(provider_id)
        return tracker.trend if tracker else None

    def get_performance_insights(self, provider_id: str) -> Optional[ProviderInsights]:
        tracker = self._get(provider_id)
        return tracker.insights if tracker else None

    def compare_apis(self, provider_ids: List[str]) -> Dict[str, Any]:
        """Rank providers by performance score (highest first)."""
        comparisons = []
        for provider_id in provider_ids:
            stats = self.get_api_stats(provider_id)
            comparisons.append({
                "provider_id": provider_id,
                "stats": stats,
                "category": categorize_performance(
                    stats.avg_response_time_ms, stats.success_rate, self.config.performance_categories
                ),
                "score": calculate_performance_score(stats.avg_response_time_ms, stats.success_rate),
            })

        comparisons.sort(key=lambda c: c["score"], reverse=True)
        if not comparisons:
            return {"comparisons": [], "best_performing": None, "worst_performing": None,
                    "average_response_time_ms": 0.0, "average_success_rate": 0.0}

        return {
            "comparisons": comparisons,
            "best_performing": comparisons[0],
            "worst_performing": comparisons[-1],
            "average_response_time_ms": sum(c["stats"].avg_response_time_ms for c in comparisons) / len(comparisons),
            "average_success_rate": sum(c["stats"].success_rate for c in comparisons) / len(comparisons),
        }

    def get_monitoring_dashboard(self) -> Dict[str, Any]:
        """Overview of all providers plus overall system health."""
        trackers = self._all()
        overview = [t.overview() for t in trackers]
        alerts = [t.alerts for t in trackers if t.alerts is not None]

        if any(a.is_critical for a in alerts):
            system_health = "critical"
        elif alerts:
            system_health = "warning"
        else:
            system_health = "healthy"

        return {
            "timestamp": self._clock(),
            "total_providers": len(trackers),
            "active_alerts": len(alerts),
            "provider_overview": overview,
            "system_health": system_health,
        }

    def clear_performance_data(self, provider_id: Optional[str] = None) -> None:
        """Forget one provider's data, or everything."""
        with self._lock:
            if provider_id is None:
                self._providers.clear()
            else:
                self._providers.pop(provider_id, None)
        logger.info("Performance data cleared", provider=provider_id or "all")
