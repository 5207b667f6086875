"""
apimesh - Response Quality Scoring

Scores a provider response from 0 to 10 across four dimensions, weighted
per domain:

- Completeness: required fields present (8 points) plus optional fields (2)
- Accuracy: domain validation, type and logical consistency
- Freshness: age of the payload timestamp against the domain window
- Structure: nesting, naming consistency, grouping, error payloads

The weighted sum is adjusted by response time (+1 to -2) and clamped.
Scores are recorded in bounded histories per domain and per provider;
`average_quality` is what the resilience manager consults when ordering
fallback candidates.
"""

import json
import re
import time
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Tuple

from ..core.models import QualityAssessment
from ..observability.logging import get_logger

logger = get_logger(__name__)

MINUTE = 60.0
HOUR = 60 * MINUTE
DAY = 24 * HOUR


@dataclass(frozen=True)
class DomainCriteria:
    """Dimension weights (summing to 1), expected fields and freshness window."""
    completeness: float = 0.3
    accuracy: float = 0.3
    freshness: float = 0.2
    structure: float = 0.2
    required_fields: Tuple[str, ...] = ()
    optional_fields: Tuple[str, ...] = ()
    freshness_window_seconds: float = HOUR


DEFAULT_CRITERIA = DomainCriteria()

DEFAULT_DOMAIN_CRITERIA: Dict[str, DomainCriteria] = {
    "weather": DomainCriteria(
        0.3, 0.3, 0.2, 0.2,
        required_fields=("temp", "description"),
        optional_fields=("humidity", "pressure", "wind_speed", "visibility"),
        freshness_window_seconds=30 * MINUTE,
    ),
    "news": DomainCriteria(
        0.25, 0.25, 0.3, 0.2,
        required_fields=("title", "url"),
        optional_fields=("description", "publishedAt", "author", "source"),
        freshness_window_seconds=HOUR,
    ),
    "currency": DomainCriteria(
        0.35, 0.35, 0.2, 0.1,
        required_fields=("rates",),
        optional_fields=("base", "date", "timestamp"),
        freshness_window_seconds=15 * MINUTE,
    ),
    "location": DomainCriteria(
        0.4, 0.4, 0.1, 0.1,
        required_fields=("country",),
        optional_fields=("city", "region", "lat", "lon", "timezone"),
        freshness_window_seconds=DAY,
    ),
    "facts": DomainCriteria(
        0.3, 0.25, 0.15, 0.3,
        required_fields=("text",),
        optional_fields=("source", "category", "url"),
        freshness_window_seconds=7 * DAY,
    ),
}

# Minimum score per category, best first
QUALITY_CATEGORIES = (
    ("excellent", 9.0),
    ("very_good", 8.0),
    ("good", 7.0),
    ("acceptable", 6.0),
    ("poor", 4.0),
    ("unacceptable", 0.0),
)

TIMESTAMP_FIELDS = ("timestamp", "updated", "last_updated", "publishedAt", "date")
NUMERIC_NAMES = ("temp", "temperature", "pressure", "humidity", "lat", "lon", "price", "rate")
LOCATION_KEYS = {"lat", "lon", "latitude", "longitude", "city", "country"}
TIME_KEY_PARTS = ("date", "time", "timestamp", "created", "updated")

URL_PATTERN = re.compile(r"^https?://.+")
CAMEL_CASE = re.compile(r"^[a-z][a-zA-Z0-9]*$")
SNAKE_CASE = re.compile(r"^[a-z][a-z0-9_]*$")
KEBAB_CASE = re.compile(r"^[a-z][a-z0-9-]*$")


# ============================================================
# Value helpers
# ============================================================

def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _to_float(value: Any) -> Optional[float]:
    """Lenient numeric parse; None when the value is not numeric."""
    if _is_number(value):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def parse_timestamp(value: Any) -> Optional[float]:
    """
    Parse a payload timestamp into epoch seconds.

    Accepts epoch seconds, epoch milliseconds and ISO-8601 strings; naive
    datetimes are taken as UTC.
    """
    number = _to_float(value)
    if number is not None:
        return number / 1000.0 if number > 1e11 else number
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def _has_value(data: Any, name: str) -> bool:
    if not isinstance(data, dict):
        return False
    value = data.get(name)
    return value is not None and value != ""


def nesting_depth(obj: Any, depth: int = 0) -> int:
    if isinstance(obj, dict):
        children = obj.values()
    elif isinstance(obj, list):
        children = obj
    else:
        return depth
    deepest = depth
    for value in children:
        if isinstance(value, (dict, list)):
            deepest = max(deepest, nesting_depth(value, depth + 1))
    return deepest


def field_names(obj: Any) -> List[str]:
    names: List[str] = []
    if isinstance(obj, dict):
        for key, value in obj.items():
            names.append(str(key))
            names.extend(field_names(value))
    elif isinstance(obj, list):
        for value in obj:
            names.extend(field_names(value))
    return names


# ============================================================
# Domain validators (accuracy bonus)
# ============================================================

def validate_weather_data(data: Dict[str, Any]) -> float:
    score = 0.0
    temp = _to_float(data.get("temp"))
    if temp is not None and -100 <= temp <= 70:
        score += 0.5
    humidity = _to_float(data.get("humidity"))
    if humidity is not None and 0 <= humidity <= 100:
        score += 0.5
    description = data.get("description")
    if isinstance(description, str) and description:
        score += 0.5
    return score


def validate_currency_data(data: Dict[str, Any]) -> float:
    score = 0.0
    rates = data.get("rates")
    if isinstance(rates, dict) and rates:
        if all(_is_number(rate) and 0 < rate < 1_000_000 for rate in rates.values()):
            score += 1.0
    base = data.get("base")
    if isinstance(base, str) and len(base) == 3:
        score += 0.5
    return score


def validate_news_data(data: Dict[str, Any]) -> float:
    score = 0.0
    title = data.get("title")
    if isinstance(title, str) and len(title) > 5:
        score += 0.5
    url = data.get("url")
    if isinstance(url, str) and URL_PATTERN.match(url):
        score += 0.5
    if data.get("publishedAt") and parse_timestamp(data["publishedAt"]) is not None:
        score += 0.5
    return score


def validate_location_data(data: Dict[str, Any]) -> float:
    score = 0.0
    country = data.get("country")
    if isinstance(country, str) and len(country) >= 2:
        score += 0.5
    lat = _to_float(data.get("lat"))
    lon = _to_float(data.get("lon"))
    if lat is not None and lon is not None and -90 <= lat <= 90 and -180 <= lon <= 180:
        score += 1.0
    return score


def validate_generic_data(data: Dict[str, Any]) -> float:
    score = 0.0
    if data:
        score += 0.5
    if any(isinstance(v, str) and v for v in data.values()):
        score += 0.5
    return score


DOMAIN_VALIDATORS: Dict[str, Callable[[Dict[str, Any]], float]] = {
    "weather": validate_weather_data,
    "currency": validate_currency_data,
    "news": validate_news_data,
    "location": validate_location_data,
}


def quality_category(score: float) -> str:
    for name, minimum in QUALITY_CATEGORIES:
        if score >= minimum:
            return name
    return "unacceptable"


def performance_impact(response_time_ms: Optional[float]) -> float:
    """Response-time adjustment, from +1 (under 500ms) to -2 (10s or more)."""
    if not response_time_ms:
        return 0.0
    if response_time_ms < 500:
        return 1.0
    if response_time_ms < 1000:
        return 0.5
    if response_time_ms < 2000:
        return 0.0
    if response_time_ms < 5000:
        return -0.5
    if response_time_ms < 10000:
        return -1.0
    return -2.0


@dataclass
class QualityRecord:
    """One scored response kept in history."""
    domain: str
    score: float
    timestamp: float
    provider_id: Optional[str] = None
    response_time_ms: Optional[float] = None
    data_size: int = 0
    category: str = "unacceptable"


class QualityScorer:
    """
    Scores responses and keeps bounded quality history.

    The score of a response depends only on the response, the domain
    criteria and the clock.
    """

    def __init__(
        self,
        criteria: Optional[Mapping[str, DomainCriteria]] = None,
        clock: Callable[[], float] = time.time,
        history_size: int = 50,
    ):
        self.criteria: Dict[str, DomainCriteria] = dict(
            DEFAULT_DOMAIN_CRITERIA if criteria is None else criteria
        )
        self._clock = clock
        self.history_size = history_size
        self._domain_history: Dict[str, Deque[QualityRecord]] = {}
        self._provider_history: Dict[Tuple[str, str], Deque[QualityRecord]] = {}
        self._lock = Lock()

    def get_criteria(self, domain: str) -> DomainCriteria:
        return self.criteria.get(domain, DEFAULT_CRITERIA)

    # ------------------------------------------------------------
    # Scoring
    # ------------------------------------------------------------

    def score_response(
        self,
        response: Mapping[str, Any],
        domain: str,
        provider_id: Optional[str] = None,
    ) -> float:
        """
        Score a response and record it.

        Args:
            response: {"data": payload, "response_time_ms": float}
            domain: Domain whose criteria apply
            provider_id: Provider that produced the response, if known

        Returns:
            Score in [0, 10] rounded to 2 decimals; 0 if scoring fails
        """
        try:
            assessment = self.assess_response(response, domain)
            self._record(domain, provider_id, response, assessment)
        except Exception as e:
            logger.error("Quality scoring failed", domain=domain, provider=provider_id, error=str(e))
            return 0.0
        logger.debug(
            "Quality scored",
            domain=domain,
            provider=provider_id,
            score=assessment.overall_score,
        )
        return assessment.overall_score

    def assess_response(self, response: Mapping[str, Any], domain: str) -> QualityAssessment:
        """Full breakdown of a response's quality; does not record history."""
        criteria = self.get_criteria(domain)
        data = response.get("data")
        if data is None:
            data = {}
        response_time_ms = response.get("response_time_ms")

        dimensions = {
            "completeness": self.assess_completeness(data, criteria),
            "accuracy": self.assess_accuracy(data, domain),
            "freshness": self.assess_freshness(data, criteria, response_time_ms),
            "structure": self.assess_structure(data),
        }
        impact = performance_impact(response_time_ms)

        weighted = sum(dimensions[name] * getattr(criteria, name) for name in dimensions)
        final = round(max(0.0, min(10.0, weighted + impact)), 2)

        assessment = QualityAssessment(
            overall_score=final,
            dimension_scores=dimensions,
            category=quality_category(final),
            performance_impact=impact,
            response_time_ms=response_time_ms,
        )
        for name, score in dimensions.items():
            if score >= 8:
                assessment.strengths.append(f"Excellent {name}")
            elif score <= 5:
                assessment.weaknesses.append(f"Poor {name}")

        if impact < 0:
            assessment.recommendations.append("Improve response time for better quality score")
        if dimensions["completeness"] < 7:
            assessment.recommendations.append("Include more complete data fields")
        if dimensions["freshness"] < 6:
            assessment.recommendations.append("Provide more recent data or timestamps")
        return assessment

    def assess_completeness(self, data: Any, criteria: DomainCriteria) -> float:
        required = criteria.required_fields
        optional = criteria.optional_fields

        required_ratio = (
            sum(1 for name in required if _has_value(data, name)) / len(required)
            if required else 1.0
        )
        optional_bonus = (
            sum(1 for name in optional if _has_value(data, name)) / len(optional) * 2
            if optional else 0.0
        )
        return min(10.0, required_ratio * 8 + min(2.0, optional_bonus))

    def assess_accuracy(self, data: Any, domain: str) -> float:
        if not isinstance(data, dict):
            return 8.0
        score = 8.0
        validator = DOMAIN_VALIDATORS.get(domain, validate_generic_data)
        score += validator(data)
        score += self._type_consistency(data)
        score += self._logical_consistency(data, domain)
        return max(0.0, min(10.0, score))

    def assess_freshness(
        self,
        data: Any,
        criteria: DomainCriteria,
        response_time_ms: Optional[float] = None,
    ) -> float:
        data_timestamp = None
        if isinstance(data, dict):
            for name in TIMESTAMP_FIELDS:
                if data.get(name):
                    data_timestamp = parse_timestamp(data[name])
                    if data_timestamp is not None:
                        break

        if data_timestamp is None:
            if response_time_ms:
                # Fast answers are likely real-time
                return 8.0 if response_time_ms < 1000 else 6.0
            return 5.0

        window = criteria.freshness_window_seconds
        age = self._clock() - data_timestamp
        if age < 0:
            return 3.0
        if age <= window * 0.25:
            return 10.0
        if age <= window * 0.5:
            return 9.0
        if age <= window:
            return 7.0
        if age <= window * 2:
            return 5.0
        if age <= window * 5:
            return 3.0
        return 1.0

    def assess_structure(self, data: Any) -> float:
        if not isinstance(data, (dict, list)):
            return 2.0

        score = 8.0
        depth = nesting_depth(data)
        if depth > 5:
            score -= 1.0
        elif depth == 0:
            score -= 0.5

        score += self._naming_consistency(field_names(data))

        if isinstance(data, dict):
            score += self._organization(data)
            error_info = data.get("error") or data.get("errors")
            if error_info:
                score -= 1.0
                if isinstance(error_info, dict):
                    if error_info.get("message") or error_info.get("description"):
                        score += 0.5
                    if error_info.get("code") or error_info.get("status"):
                        score += 0.5

        return max(0.0, min(10.0, score))

    def _type_consistency(self, data: Dict[str, Any]) -> float:
        numeric_keys = [k.lower() for k, v in data.items() if _is_number(v)]
        string_keys = [k.lower() for k, v in data.items() if isinstance(v, str)]
        score = 1.0
        for name in NUMERIC_NAMES:
            if any(name in k for k in numeric_keys) and any(name in k for k in string_keys):
                score -= 0.2
        return max(0.0, score)

    def _logical_consistency(self, data: Dict[str, Any], domain: str) -> float:
        if domain == "weather":
            temp = _to_float(data.get("temp"))
            feels_like = _to_float(data.get("feels_like"))
            if temp is not None and feels_like is not None and abs(temp - feels_like) < 20:
                return 0.5
        elif domain == "news" and data.get("publishedAt"):
            published = parse_timestamp(data["publishedAt"])
            if published is not None and published <= self._clock():
                return 0.5
        return 0.0

    @staticmethod
    def _naming_consistency(names: List[str]) -> float:
        if len(names) < 2:
            return 0.0
        best = max(
            sum(1 for n in names if pattern.match(n))
            for pattern in (CAMEL_CASE, SNAKE_CASE, KEBAB_CASE)
        )
        consistency = best / len(names)
        if consistency > 0.8:
            return 1.0
        if consistency > 0.6:
            return 0.5
        return 0.0

    @staticmethod
    def _organization(data: Dict[str, Any]) -> float:
        keys = [str(k).lower() for k in data]
        score = 0.0
        if sum(1 for k in keys if k in LOCATION_KEYS) >= 2:
            score += 0.5
        if any(part in k for k in keys for part in TIME_KEY_PARTS):
            score += 0.5
        return score

    # ------------------------------------------------------------
    # History
    # ------------------------------------------------------------

    def _record(
        self,
        domain: str,
        provider_id: Optional[str],
        response: Mapping[str, Any],
        assessment: QualityAssessment,
    ) -> None:
        try:
            data_size = len(json.dumps(response.get("data") or {}, default=str))
        except (TypeError, ValueError):
            data_size = 0
        record = QualityRecord(
            domain=domain,
            score=assessment.overall_score,
            timestamp=self._clock(),
            provider_id=provider_id,
            response_time_ms=assessment.response_time_ms,
            data_size=data_size,
            category=assessment.category,
        )
        with self._lock:
            self._domain_history.setdefault(domain, deque(maxlen=self.history_size)).append(record)
            if provider_id is not None:
                self._provider_history.setdefault(
                    (provider_id, domain), deque(maxlen=self.history_size)
                ).append(record)

    def average_quality(self, provider_id: str, domain: Optional[str] = None) -> Optional[float]:
        """Mean recorded score for a provider, or None without history."""
        with self._lock:
            scores = [
                r.score
                for (pid, dom), records in self._provider_history.items()
                if pid == provider_id and (domain is None or dom == domain)
                for r in records
            ]
        if not scores:
            return None
        return round(sum(scores) / len(scores), 2)

    def get_quality_stats(self, domain: str) -> Dict[str, Any]:
        """Average score, category distribution and recent scores for a domain."""
        with self._lock:
            history = list(self._domain_history.get(domain, ()))

        distribution = {name: 0 for name, _ in QUALITY_CATEGORIES}
        if not history:
            return {
                "domain": domain,
                "total_responses": 0,
                "average_score": 0.0,
                "score_distribution": distribution,
                "recent_scores": [],
            }

        for record in history:
            distribution[record.category] += 1

        return {
            "domain": domain,
            "total_responses": len(history),
            "average_score": round(sum(r.score for r in history) / len(history), 2),
            "score_distribution": distribution,
            "recent_scores": [
                {
                    "score": r.score,
                    "provider_id": r.provider_id,
                    "timestamp": r.timestamp,
                    "response_time_ms": r.response_time_ms,
                }
                for r in history[-10:]
            ],
        }

    def compare_quality(self, responses: List[Mapping[str, Any]]) -> Dict[str, Any]:
        """
        Rank already-scored responses.

        Args:
            responses: [{"score": float, "response_time_ms": float, ...}, ...]

        Raises:
            ValueError: If fewer than two responses are given
        """
        if len(responses) < 2:
            raise ValueError("At least 2 responses required for comparison")

        scored = [
            {
                "index": index,
                "score": response.get("score") or 0.0,
                "response_time_ms": response.get("response_time_ms") or 0.0,
            }
            for index, response in enumerate(responses)
        ]
        scored.sort(key=lambda item: item["score"], reverse=True)

        return {
            "ranking": [
                {
                    "rank": rank,
                    "original_index": item["index"],
                    "score": item["score"],
                    "response_time_ms": item["response_time_ms"],
                    "category": quality_category(item["score"]),
                }
                for rank, item in enumerate(scored, start=1)
            ],
            "best_response": scored[0],
            "worst_response": scored[-1],
            "average_score": sum(item["score"] for item in scored) / len(scored),
            "score_range": scored[0]["score"] - scored[-1]["score"],
        }

    def clear_history(self, domain: Optional[str] = None) -> None:
        with self._lock:
            if domain is None:
                self._domain_history.clear()
                self._provider_history.clear()
                return
            self._domain_history.pop(domain, None)
            for key in [k for k in self._provider_history if k[1] == domain]:
                del self._provider_history[key]

    def clear_provider_history(self, provider_id: str) -> None:
        with self._lock:
            for key in [k for k in self._provider_history if k[0] == provider_id]:
                del self._provider_history[key]
