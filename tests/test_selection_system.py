"""
apimesh - Smart Selection Tests

Verifies:
- Priority modes pick the provider their weights favour
- Budget, feature and threshold filters
- Performance boost from recent history
- Selection history, metrics and capability updates
"""

import pytest

from apimesh.core.errors import ProviderNotFoundError
from apimesh.core.models import BudgetTier, CapabilityVector, PriorityMode, SelectionConstraints
from apimesh.routing.strategies import (
    PRIORITY_WEIGHTS,
    CandidateProfile,
    WeightedStrategy,
    calculate_cost_score,
    calculate_speed_score,
    expand_features,
    get_strategy,
)


def constraints(**kwargs):
    return SelectionConstraints(**kwargs)


# ============================================================
# Strategy Tests
# ============================================================

class TestStrategies:
    """Test weight vectors and the strategy factory."""

    def test_weights_sum_to_one(self):
        for mode, weights in PRIORITY_WEIGHTS.items():
            assert sum(weights.values()) == pytest.approx(1.0), mode

    def test_get_strategy(self):
        assert get_strategy("cost").priority_mode == PriorityMode.COST
        assert get_strategy(PriorityMode.SPEED).weights["speed"] == 0.5

    def test_unknown_mode_falls_back_to_balanced(self):
        assert get_strategy("fastest").priority_mode == PriorityMode.BALANCED

    @pytest.mark.parametrize("response_time_ms,expected", [
        (None, 7.0),
        (300, 10.0),
        (500, 10.0),
        (900, 9.0),
        (1800, 8.0),
        (2500, 7.0),
        (4000, 6.0),
        (9000, 5.0),
    ])
    def test_speed_score(self, response_time_ms, expected):
        assert calculate_speed_score(response_time_ms) == expected

    def test_cost_score(self):
        assert calculate_cost_score(4) == 4.0
        assert calculate_cost_score("Free") == 10
        assert calculate_cost_score("premium") == 3
        assert calculate_cost_score("mystery") == 7.0
        assert calculate_cost_score(None) == 7.0

    def test_feature_aliases(self):
        assert expand_features(["weather_forecast", "astronomy"]) == frozenset({"forecast", "astronomy"})

    def test_score_is_bounded(self):
        strategy = WeightedStrategy(PriorityMode.QUALITY)
        scored = strategy.score_candidate(
            CandidateProfile("top", CapabilityVector(10, 10, 10, 10)),
            SelectionConstraints(),
            performance_boost=0.2,
        )
        assert scored.total_score == 1.0


# ============================================================
# Selection Tests
# ============================================================

class TestSelectOptimalApi:
    """Test provider selection."""

    def test_cost_priority(self, selector):
        """Cost mode picks the cheapest well-rounded provider."""
        selection = selector.select_optimal_api("weather", constraints=constraints(priority_mode=PriorityMode.COST))

        assert selection.selected_provider == "openweather"
        assert selection.confidence == pytest.approx(0.91)
        assert selection.selection_criteria["priority"] == "cost"

    def test_quality_priority(self, selector):
        selection = selector.select_optimal_api(
            "weather", constraints=constraints(priority_mode=PriorityMode.QUALITY)
        )
        assert selection.selected_provider == "weatherapi"
        assert selection.confidence == pytest.approx(0.86)

    def test_balanced_is_default(self, selector):
        selection = selector.select_optimal_api("weather")
        assert selection.selected_provider == "openweather"
        assert selection.selection_criteria["priority"] == "balanced"

    def test_alternatives_are_ranked(self, selector):
        selection = selector.select_optimal_api("weather", constraints=constraints(priority_mode="cost"))

        assert [alt["provider_id"] for alt in selection.alternatives] == ["weatherstack", "weatherapi"]
        assert selection.alternatives[0]["score"] == pytest.approx(0.814)
        assert "Optimized for cost" in selection.alternatives[0]["reason"]

    def test_close_decision_reason(self, selector):
        selection = selector.select_optimal_api("weather", constraints=constraints(priority_mode="cost"))

        assert selection.reason.startswith("Selected based on cost priority")
        assert "Strongest in cost" in selection.reason
        assert "Close decision (9.6% margin)" in selection.reason

    def test_budget_filter(self, selector):
        """The free tier drops providers whose cost score is below 8."""
        selection = selector.select_optimal_api(
            "weather",
            constraints=constraints(priority_mode=PriorityMode.QUALITY, budget_tier=BudgetTier.FREE),
        )

        assert selection.selected_provider == "openweather"
        assert "weatherapi" not in [alt["provider_id"] for alt in selection.alternatives]
        assert "free tier providers only" in selection.reason
        assert selection.selection_criteria["budget"] == "free"

    def test_required_features(self, selector):
        selection = selector.select_optimal_api(
            "weather", constraints=constraints(required_features={"astronomy"})
        )
        assert selection.selected_provider == "weatherapi"
        assert selection.alternatives == []

    def test_required_feature_alias(self, selector):
        selection = selector.select_optimal_api(
            "weather", constraints=constraints(required_features={"weather_forecast"})
        )
        assert selection.metadata["candidates_qualified"] == 2

    def test_minimum_quality(self, selector):
        selection = selector.select_optimal_api("weather", constraints=constraints(min_quality=8.5))
        assert selection.selected_provider == "weatherapi"

    def test_max_response_time_uses_speed_estimate(self, selector):
        selection = selector.select_optimal_api("weather", constraints=constraints(max_response_time_ms=400))
        assert selection.selected_provider == "weatherapi"

    def test_excluded_providers(self, selector):
        selection = selector.select_optimal_api(
            "weather", constraints=constraints(excluded_providers={"openweather"})
        )
        assert selection.selected_provider == "weatherapi"

    def test_nothing_qualifies(self, selector):
        selection = selector.select_optimal_api("weather", constraints=constraints(max_response_time_ms=300))

        assert selection.selected_provider is None
        assert selection.confidence == 0.0
        assert selection.reason == "No candidates satisfy the constraints"
        assert selection.metadata["candidates_evaluated"] == 3

    def test_unknown_domain(self, selector):
        selection = selector.select_optimal_api("crypto")
        assert selection.selected_provider is None
        assert selection.reason == "No candidates available"

    def test_explicit_candidate_ids(self, selector):
        selection = selector.select_optimal_api("weather", candidates=["weatherstack", "ghost"])

        assert selection.selected_provider == "weatherstack"
        assert selection.metadata["candidates_evaluated"] == 1

    def test_candidate_dicts_override_catalog(self, selector):
        selection = selector.select_optimal_api("weather", candidates=[
            {"provider_id": "openweather"},
            {"provider_id": "custom", "quality": 10, "reliability": 10, "cost": "free", "response_time_ms": 300},
        ])

        assert selection.selected_provider == "custom"
        assert selection.confidence == 1.0

    def test_to_dict(self, selector):
        body = selector.select_optimal_api("news").to_dict()
        assert set(body) == {
            "selected_provider", "confidence", "reason", "alternatives",
            "selection_criteria", "metadata",
        }


class TestPerformanceBoost:
    """Test the recent-success adjustment."""

    def test_no_data_no_boost(self, selector):
        assert selector.performance_boost("openweather") == 0.0

    def test_boost_is_clamped(self, selector, monitor):
        for _ in range(10):
            monitor.record_api_call("openweather", 100, False)
            monitor.record_api_call("weatherapi", 100, True)

        assert selector.performance_boost("openweather") == -0.2
        assert selector.performance_boost("weatherapi") == pytest.approx(0.2)

    def test_failing_provider_loses_selection(self, selector, monitor):
        for _ in range(10):
            monitor.record_api_call("openweather", 100, False)
            monitor.record_api_call("weatherapi", 100, True)

        selection = selector.select_optimal_api("weather")

        assert selection.selected_provider == "weatherapi"
        assert "Historical performance boost applied" in selection.reason

    def test_rank_candidates(self, selector):
        ranked = selector.rank_candidates("weather", constraints=constraints(priority_mode="quality"))
        assert [c.provider_id for c in ranked] == ["weatherapi", "openweather", "weatherstack"]
        assert ranked[0].breakdown["quality"] == 0.9


# ============================================================
# History and Capability Tests
# ============================================================

class TestSelectionHistory:
    """Test selection bookkeeping."""

    def test_stats(self, selector):
        selector.select_optimal_api("weather")
        selector.select_optimal_api("weather", constraints=constraints(priority_mode="quality"))
        selector.select_optimal_api("weather")

        stats = selector.get_selection_stats("weather")

        assert stats["total_selections"] == 3
        assert stats["top_providers"][0] == {
            "provider_id": "openweather", "selections": 2, "percentage": 67,
        }
        assert len(stats["recent_selections"]) == 3

    def test_empty_stats(self, selector):
        stats = selector.get_selection_stats("news")
        assert stats["total_selections"] == 0
        assert stats["top_providers"] == []

    def test_selections_are_counted(self, selector, metrics_registry):
        selector.select_optimal_api("weather", constraints=constraints(priority_mode="cost"))
        selector.select_optimal_api("crypto")

        assert metrics_registry.get_sample_value(
            "apimesh_selections_total",
            {"domain": "weather", "priority": "cost", "selected_provider": "openweather"},
        ) == 1.0
        assert metrics_registry.get_sample_value(
            "apimesh_selections_total",
            {"domain": "crypto", "priority": "balanced", "selected_provider": "none"},
        ) == 1.0

    def test_clear_history(self, selector):
        selector.select_optimal_api("weather")
        selector.select_optimal_api("news")

        selector.clear_selection_history("weather")

        assert selector.get_selection_stats("weather")["total_selections"] == 0
        assert selector.get_selection_stats("news")["total_selections"] == 1

    def test_available_apis(self, selector):
        assert sorted(selector.get_available_apis("news")) == ["gnews", "newsapi"]


class TestUpdateCapabilities:
    """Test capability refresh from observed performance."""

    def test_update(self, selector, catalog):
        updated = selector.update_api_capabilities(
            "weatherstack", success_rate=0.64, average_response_time_ms=1200
        )

        assert updated.capabilities.reliability == 6
        assert updated.capabilities.speed == 8
        assert catalog.get_provider("weatherstack").capabilities.reliability == 6

    def test_partial_update_keeps_other_scores(self, selector, catalog):
        selector.update_api_capabilities("weatherstack", success_rate=0.94)

        caps = catalog.get_provider("weatherstack").capabilities
        assert caps.reliability == 9
        assert caps.speed == 6
        assert caps.quality == 7.2

    def test_unknown_provider(self, selector):
        with pytest.raises(ProviderNotFoundError):
            selector.update_api_capabilities("ghost", success_rate=1.0)
