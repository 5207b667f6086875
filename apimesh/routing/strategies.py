"""
apimesh - Selection Strategies

Ranks the providers of a domain under a priority mode and caller
constraints.

Each priority mode is a weight vector over four normalized capability
scores (quality, speed, cost, reliability). Candidates that violate a
constraint are dropped; the rest are scored, optionally nudged by their
recent success rate, and ranked.

Usage:
    selector = SmartSelector(catalog, performance_monitor=monitor)
    selection = selector.select_optimal_api(
        "weather",
        constraints=SelectionConstraints(priority_mode=PriorityMode.COST),
    )
    selection.selected_provider  # "openweather"
"""

import time
from abc import ABC, abstractmethod
from collections import Counter, deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Deque, Dict, FrozenSet, Iterable, List, Mapping, Optional, Union

from ..adapters.base import ProviderCatalog
from ..core.models import (
    BudgetTier,
    CapabilityVector,
    PriorityMode,
    Provider,
    ScoredCandidate,
    Selection,
    SelectionConstraints,
)
from ..observability.logging import get_logger, log_context
from ..observability.metrics import MetricsCollector
from .performance import PerformanceMonitor

logger = get_logger(__name__)

CRITERIA = ("quality", "speed", "cost", "reliability")

# Weights over (quality, speed, cost, reliability); each row sums to 1.0
PRIORITY_WEIGHTS: Dict[PriorityMode, Dict[str, float]] = {
    PriorityMode.QUALITY: {"quality": 0.5, "speed": 0.2, "cost": 0.1, "reliability": 0.2},
    PriorityMode.SPEED: {"quality": 0.2, "speed": 0.5, "cost": 0.1, "reliability": 0.2},
    PriorityMode.COST: {"quality": 0.2, "speed": 0.1, "cost": 0.5, "reliability": 0.2},
    PriorityMode.RELIABILITY: {"quality": 0.2, "speed": 0.1, "cost": 0.2, "reliability": 0.5},
    PriorityMode.BALANCED: {"quality": 0.3, "speed": 0.25, "cost": 0.25, "reliability": 0.2},
}

# Minimum cost score admitted by each budget tier
BUDGET_TIERS: Dict[BudgetTier, float] = {
    BudgetTier.FREE: 8,
    BudgetTier.BUDGET: 6,
    BudgetTier.STANDARD: 4,
    BudgetTier.PREMIUM: 1,
}

BUDGET_DESCRIPTIONS: Dict[BudgetTier, str] = {
    BudgetTier.FREE: "free tier providers only",
    BudgetTier.BUDGET: "low-cost providers preferred",
    BudgetTier.STANDARD: "standard pricing acceptable",
    BudgetTier.PREMIUM: "premium providers acceptable",
}

COST_CATEGORIES: Dict[str, float] = {
    "free": 10,
    "budget": 8,
    "standard": 6,
    "premium": 3,
    "enterprise": 1,
}

# Operation-level feature names mapped to provider features
FEATURE_ALIASES: Dict[str, tuple] = {
    "current_weather": ("current",),
    "weather_forecast": ("forecast",),
    "weather_alerts": ("alerts",),
    "news_headlines": ("headlines",),
    "news_search": ("search",),
    "currency_convert": ("convert",),
    "currency_historical": ("historical",),
    "location_lookup": ("ip_lookup",),
    "location_timezone": ("timezone",),
}

MAX_PERFORMANCE_BOOST = 0.2
CLOSE_DECISION_MARGIN = 0.1


def calculate_speed_score(response_time_ms: Optional[float]) -> float:
    """Speed score from a response time (lower time, higher score)."""
    if not response_time_ms:
        return 7.0
    if response_time_ms <= 500:
        return 10.0
    if response_time_ms <= 1000:
        return 9.0
    if response_time_ms <= 2000:
        return 8.0
    if response_time_ms <= 3000:
        return 7.0
    if response_time_ms <= 5000:
        return 6.0
    return 5.0


def calculate_cost_score(cost: Union[str, float, int, None]) -> float:
    """Cost score from a number (taken as is) or a pricing category."""
    if isinstance(cost, (int, float)) and not isinstance(cost, bool):
        return float(cost)
    if isinstance(cost, str):
        return COST_CATEGORIES.get(cost.lower(), 7.0)
    return 7.0


def expand_features(features: Iterable[str]) -> FrozenSet[str]:
    expanded = set()
    for feature in features:
        expanded.update(FEATURE_ALIASES.get(feature, (feature,)))
    return frozenset(expanded)


@dataclass
class CandidateProfile:
    """What the selector knows about one candidate."""
    provider_id: str
    capabilities: CapabilityVector
    features: FrozenSet[str] = frozenset()
    response_time_ms: Optional[float] = None

    @property
    def estimated_response_time_ms(self) -> float:
        if self.response_time_ms is not None:
            return self.response_time_ms
        return (10 - self.capabilities.speed) * 200


class BaseStrategy(ABC):
    """Base class for selection strategies."""

    priority_mode: PriorityMode

    @property
    @abstractmethod
    def weights(self) -> Dict[str, float]:
        pass

    def passes_constraints(self, candidate: CandidateProfile, constraints: SelectionConstraints) -> bool:
        """Hard filters; a failing candidate is never selected."""
        caps = candidate.capabilities

        if candidate.provider_id in constraints.excluded_providers:
            return False

        if constraints.budget_tier is not None:
            if caps.cost < BUDGET_TIERS[BudgetTier(constraints.budget_tier)]:
                return False

        if constraints.required_features:
            if not expand_features(constraints.required_features) <= candidate.features:
                return False

        if constraints.min_quality is not None and caps.quality < constraints.min_quality:
            return False

        if constraints.min_reliability is not None and caps.reliability < constraints.min_reliability:
            return False

        if (
            constraints.max_response_time_ms is not None
            and candidate.estimated_response_time_ms > constraints.max_response_time_ms
        ):
            return False

        return True

    def score_candidate(
        self,
        candidate: CandidateProfile,
        constraints: SelectionConstraints,
        performance_boost: float = 0.0,
    ) -> Optional[ScoredCandidate]:
        """
        Calculate score for a candidate.

        Returns None if candidate should be excluded.
        Higher score = better candidate, within [0, 1].
        """
        if not self.passes_constraints(candidate, constraints):
            return None

        caps = candidate.capabilities
        breakdown = {name: getattr(caps, name) / 10 for name in CRITERIA}
        weighted = sum(breakdown[name] * weight for name, weight in self.weights.items())
        total = max(0.0, min(1.0, weighted + performance_boost))

        return ScoredCandidate(
            provider_id=candidate.provider_id,
            total_score=round(total, 4),
            breakdown=breakdown,
            performance_boost=performance_boost,
            capabilities=caps,
        )

    def rank(
        self,
        candidates: List[CandidateProfile],
        constraints: SelectionConstraints,
        boosts: Optional[Mapping[str, float]] = None,
    ) -> List[ScoredCandidate]:
        """Score every candidate and sort best first (ties by provider id)."""
        boosts = boosts or {}
        scored = []
        for candidate in candidates:
            result = self.score_candidate(
                candidate, constraints, boosts.get(candidate.provider_id, 0.0)
            )
            if result is not None:
                scored.append(result)
        scored.sort()
        return scored


class WeightedStrategy(BaseStrategy):
    """Scores candidates with the weight vector of one priority mode."""

    def __init__(self, priority_mode: PriorityMode = PriorityMode.BALANCED):
        self.priority_mode = PriorityMode(priority_mode)

    @property
    def weights(self) -> Dict[str, float]:
        return PRIORITY_WEIGHTS[self.priority_mode]


def get_strategy(priority_mode: Union[PriorityMode, str]) -> BaseStrategy:
    """Factory function to get a strategy instance."""
    try:
        return WeightedStrategy(PriorityMode(priority_mode))
    except ValueError:
        logger.warning("Unknown priority mode, using balanced", priority_mode=str(priority_mode))
        return WeightedStrategy(PriorityMode.BALANCED)


def describe_candidate(scored: ScoredCandidate, weights: Mapping[str, float]) -> str:
    strength = max(CRITERIA, key=lambda name: scored.breakdown.get(name, 0.0))
    top_weighted = sorted(weights, key=weights.get, reverse=True)[:2]
    return (
        f"Scored {round(scored.total_score * 100)}% overall, "
        f"excels in {strength} ({round(scored.breakdown[strength] * 10)}/10). "
        f"Optimized for {' and '.join(top_weighted)}"
    )


@dataclass
class SelectionRecord:
    domain: str
    selected_provider: Optional[str]
    score: float
    timestamp: float
    reason: str
    priority_mode: str = PriorityMode.BALANCED.value


class SmartSelector:
    """
    Picks the best provider of a domain for the caller's constraints.

    Capability data comes from the catalog; update_api_capabilities is the
    only operation that changes it.
    """

    def __init__(
        self,
        catalog: ProviderCatalog,
        performance_monitor: Optional[PerformanceMonitor] = None,
        metrics: Optional[MetricsCollector] = None,
        history_size: int = 100,
        clock: Callable[[], float] = time.time,
    ):
        self.catalog = catalog
        self.performance_monitor = performance_monitor
        self.metrics = metrics
        self.history_size = history_size
        self._clock = clock
        self._history: Dict[str, Deque[SelectionRecord]] = {}
        self._lock = Lock()

    # ------------------------------------------------------------
    # Candidates
    # ------------------------------------------------------------

    def _profile(self, candidate: Union[str, Provider, Mapping[str, Any]]) -> Optional[CandidateProfile]:
        if isinstance(candidate, Provider):
            return CandidateProfile(candidate.provider_id, candidate.capabilities, candidate.features)

        if isinstance(candidate, str):
            provider = self.catalog.get_provider(candidate)
            if provider is None:
                logger.debug("Ignoring unknown candidate", provider=candidate)
                return None
            return CandidateProfile(provider.provider_id, provider.capabilities, provider.features)

        provider_id = candidate.get("provider_id") or candidate.get("id")
        if not provider_id:
            return None

        known = self.catalog.get_provider(provider_id)
        if known is not None:
            base = known.capabilities
            features = known.features
        else:
            base = CapabilityVector(quality=7.0, speed=7.0, cost=7.0, reliability=8.0)
            features = frozenset()

        response_time_ms = candidate.get("response_time_ms")
        updates = {
            "quality": candidate.get("quality"),
            "reliability": candidate.get("reliability"),
            "speed": (
                calculate_speed_score(response_time_ms)
                if response_time_ms else candidate.get("speed")
            ),
            "cost": calculate_cost_score(candidate["cost"]) if "cost" in candidate else None,
        }
        if "features" in candidate:
            features = frozenset(candidate["features"])

        return CandidateProfile(
            provider_id=provider_id,
            capabilities=base.with_updates(**updates),
            features=features,
            response_time_ms=response_time_ms,
        )

    def _resolve(self, domain: str, candidates) -> List[CandidateProfile]:
        if not candidates:
            candidates = self.catalog.providers_for_domain(domain)
        profiles = []
        seen = set()
        for candidate in candidates:
            profile = self._profile(candidate)
            if profile is not None and profile.provider_id not in seen:
                seen.add(profile.provider_id)
                profiles.append(profile)
        return profiles

    def performance_boost(self, provider_id: str) -> float:
        """Recent success rate relative to 80%, bounded to +-0.2; 0 without data."""
        monitor = self.performance_monitor
        if monitor is None or not monitor.has_data(provider_id):
            return 0.0
        recent = monitor.get_recent_stats(provider_id)
        boost = recent.success_rate - 0.8
        return max(-MAX_PERFORMANCE_BOOST, min(MAX_PERFORMANCE_BOOST, boost))

    def rank_candidates(
        self,
        domain: str,
        candidates: Optional[List[Union[str, Provider, Mapping[str, Any]]]] = None,
        constraints: Optional[SelectionConstraints] = None,
    ) -> List[ScoredCandidate]:
        """Every qualifying candidate, best first."""
        constraints = constraints or SelectionConstraints()
        profiles = self._resolve(domain, candidates)
        strategy = get_strategy(constraints.priority_mode)
        boosts = {p.provider_id: self.performance_boost(p.provider_id) for p in profiles}
        return strategy.rank(profiles, constraints, boosts)

    # ------------------------------------------------------------
    # Selection
    # ------------------------------------------------------------

    @log_context(component="selector")
    def select_optimal_api(
        self,
        domain: str,
        candidates: Optional[List[Union[str, Provider, Mapping[str, Any]]]] = None,
        constraints: Optional[SelectionConstraints] = None,
    ) -> Selection:
        """
        Select the best provider for a domain.

        Args:
            domain: Domain to serve
            candidates: Provider ids, Provider records or dicts overriding
                catalog data; defaults to every provider of the domain
            constraints: Priority mode and hard filters

        Returns:
            Selection; selected_provider is None when nothing qualifies
        """
        constraints = constraints or SelectionConstraints()
        priority = PriorityMode(constraints.priority_mode)
        strategy = get_strategy(priority)

        profiles = self._resolve(domain, candidates)
        boosts = {p.provider_id: self.performance_boost(p.provider_id) for p in profiles}
        ranked = strategy.rank(profiles, constraints, boosts)

        criteria = {
            "priority": priority.value,
            "budget": BudgetTier(constraints.budget_tier).value if constraints.budget_tier else None,
            "required_features": sorted(constraints.required_features),
            "weights": dict(strategy.weights),
        }
        metadata = {
            "domain": domain,
            "candidates_evaluated": len(profiles),
            "candidates_qualified": len(ranked),
            "timestamp": self._clock(),
        }

        if not ranked:
            reason = "No candidates available" if not profiles else "No candidates satisfy the constraints"
            selection = Selection(
                selected_provider=None,
                confidence=0.0,
                reason=reason,
                selection_criteria=criteria,
                metadata=metadata,
            )
        else:
            best = ranked[0]
            selection = Selection(
                selected_provider=best.provider_id,
                confidence=best.total_score,
                reason=self._selection_reason(ranked, priority, constraints),
                alternatives=[
                    {
                        "provider_id": alt.provider_id,
                        "score": alt.total_score,
                        "reason": describe_candidate(alt, strategy.weights),
                    }
                    for alt in ranked[1:4]
                ],
                ranked=ranked,
                selection_criteria=criteria,
                metadata=metadata,
            )

        self._record(domain, selection, priority)
        logger.debug(
            "Provider selected",
            domain=domain,
            provider=selection.selected_provider,
            confidence=selection.confidence,
            priority_mode=priority.value,
        )
        return selection

    @staticmethod
    def _selection_reason(
        ranked: List[ScoredCandidate],
        priority: PriorityMode,
        constraints: SelectionConstraints,
    ) -> str:
        best = ranked[0]
        reason = f"Selected based on {priority.value} priority"

        if constraints.budget_tier:
            reason += f" with {BUDGET_DESCRIPTIONS[BudgetTier(constraints.budget_tier)]}"

        strength = max(CRITERIA, key=lambda name: best.breakdown.get(name, 0.0))
        reason += f". Strongest in {strength}"

        if best.performance_boost > 0:
            reason += ". Historical performance boost applied"

        if len(ranked) > 1:
            margin = best.total_score - ranked[1].total_score
            if margin < CLOSE_DECISION_MARGIN:
                reason += f". Close decision ({margin * 100:.1f}% margin)"

        return reason

    def _record(self, domain: str, selection: Selection, priority: PriorityMode) -> None:
        record = SelectionRecord(
            domain=domain,
            selected_provider=selection.selected_provider,
            score=selection.confidence,
            timestamp=self._clock(),
            reason=selection.reason,
            priority_mode=priority.value,
        )
        with self._lock:
            self._history.setdefault(domain, deque(maxlen=self.history_size)).append(record)
        if self.metrics is not None:
            self.metrics.record_selection(domain, priority.value, selection.selected_provider)

    # ------------------------------------------------------------
    # Capabilities and history
    # ------------------------------------------------------------

    def update_api_capabilities(
        self,
        provider_id: str,
        success_rate: Optional[float] = None,
        average_response_time_ms: Optional[float] = None,
    ) -> Provider:
        """
        Refresh reliability and speed from observed performance.

        Raises:
            ProviderNotFoundError: If the catalog does not know the provider
        """
        reliability = round(success_rate * 10) if success_rate is not None else None
        speed = calculate_speed_score(average_response_time_ms) if average_response_time_ms else None
        updated = self.catalog.update_capabilities(provider_id, reliability=reliability, speed=speed)
        logger.debug(
            "Provider capabilities updated",
            provider=provider_id,
            reliability=updated.capabilities.reliability,
            speed=updated.capabilities.speed,
        )
        return updated

    def get_available_apis(self, domain: str) -> List[str]:
        return [p.provider_id for p in self.catalog.providers_for_domain(domain)]

    def get_selection_stats(self, domain: str) -> Dict[str, Any]:
        with self._lock:
            history = list(self._history.get(domain, ()))

        if not history:
            return {
                "domain": domain,
                "total_selections": 0,
                "top_providers": [],
                "average_score": 0.0,
                "recent_selections": [],
            }

        counts = Counter(r.selected_provider for r in history if r.selected_provider)
        return {
            "domain": domain,
            "total_selections": len(history),
            "top_providers": [
                {
                    "provider_id": pid,
                    "selections": count,
                    "percentage": round(count / len(history) * 100),
                }
                for pid, count in counts.most_common(5)
            ],
            "average_score": sum(r.score for r in history) / len(history),
            "recent_selections": [
                {"provider_id": r.selected_provider, "score": r.score, "timestamp": r.timestamp}
                for r in history[-10:]
            ],
        }

    def clear_selection_history(self, domain: Optional[str] = None) -> None:
        with self._lock:
            if domain is None:
                self._history.clear()
            else:
                self._history.pop(domain, None)
        logger.debug("Selection history cleared", domain=domain or "all")
