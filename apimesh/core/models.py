"""
apimesh - Core Data Models

Provider descriptions, call records, selection constraints and execution
results shared by the routing components.
"""

from __future__ import annotations

import time
from dataclasses import asdict, dataclass, field, replace
from enum import Enum
from typing import Any, Dict, FrozenSet, List, Optional, Set


# ============================================================
# Enums
# ============================================================

class CircuitState(str, Enum):
    """Circuit breaker states."""
    CLOSED = "closed"        # Normal operation
    HALF_OPEN = "half_open"  # Testing recovery
    OPEN = "open"            # Failing fast


class PriorityMode(str, Enum):
    """What the selector optimizes for."""
    QUALITY = "quality"
    SPEED = "speed"
    COST = "cost"
    RELIABILITY = "reliability"
    BALANCED = "balanced"


class BudgetTier(str, Enum):
    """Caller budget; each tier implies a minimum cost score."""
    FREE = "free"
    BUDGET = "budget"
    STANDARD = "standard"
    PREMIUM = "premium"


class AttemptOutcome(str, Enum):
    """Outcome of a single provider attempt."""
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"
    SKIPPED = "skipped"


# ============================================================
# Providers
# ============================================================

@dataclass(frozen=True)
class CapabilityVector:
    """
    Static capability scores for a provider, each in [0, 10].

    `cost` is inverted: a higher score means a cheaper provider.
    """
    quality: float = 5.0
    speed: float = 5.0
    cost: float = 5.0
    reliability: float = 5.0

    def with_updates(self, **fields) -> "CapabilityVector":
        """Return a copy with some scores replaced, clamped to [0, 10]."""
        clamped = {
            name: max(0.0, min(10.0, float(value)))
            for name, value in fields.items()
            if value is not None
        }
        return replace(self, **clamped)

    def to_dict(self) -> Dict[str, float]:
        return asdict(self)


@dataclass(frozen=True)
class Provider:
    """An external provider able to serve one domain."""
    provider_id: str
    domain: str
    capabilities: CapabilityVector = field(default_factory=CapabilityVector)
    features: FrozenSet[str] = frozenset()

    # Opaque to the core; interpreted by the executor
    invocation: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "provider_id": self.provider_id,
            "domain": self.domain,
            "capabilities": self.capabilities.to_dict(),
            "features": sorted(self.features),
        }


# ============================================================
# Call Records
# ============================================================

@dataclass(frozen=True)
class CallRecord:
    """One observed provider call."""
    provider_id: str
    timestamp: float
    response_time_ms: float
    success: bool
    operation: str = "unknown"
    domain: str = "unknown"
    cached: bool = False
    retry_attempt: int = 0
    extra: Dict[str, Any] = field(default_factory=dict, compare=False, hash=False)


@dataclass
class QualityAssessment:
    """Detailed quality breakdown of a single response."""
    overall_score: float
    dimension_scores: Dict[str, float] = field(default_factory=dict)
    category: str = "unacceptable"
    performance_impact: float = 0.0
    response_time_ms: Optional[float] = None
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    recommendations: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


# ============================================================
# Selection
# ============================================================

@dataclass
class SelectionConstraints:
    """Caller constraints for ranking candidates."""
    priority_mode: PriorityMode = PriorityMode.BALANCED
    budget_tier: Optional[BudgetTier] = None
    required_features: Set[str] = field(default_factory=set)
    min_quality: Optional[float] = None
    min_reliability: Optional[float] = None
    max_response_time_ms: Optional[float] = None
    excluded_providers: Set[str] = field(default_factory=set)


@dataclass
class ScoredCandidate:
    """A candidate with its weighted score and the factors behind it."""
    provider_id: str
    total_score: float
    breakdown: Dict[str, float] = field(default_factory=dict)
    performance_boost: float = 0.0
    capabilities: Optional[CapabilityVector] = None

    def __lt__(self, other: "ScoredCandidate") -> bool:
        # Higher score first, provider id breaks ties
        if self.total_score != other.total_score:
            return self.total_score > other.total_score
        return self.provider_id < other.provider_id


@dataclass
class Selection:
    """Result of a smart selection."""
    selected_provider: Optional[str]
    confidence: float
    reason: str
    alternatives: List[Dict[str, Any]] = field(default_factory=list)
    ranked: List[ScoredCandidate] = field(default_factory=list)
    selection_criteria: Dict[str, Any] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "selected_provider": self.selected_provider,
            "confidence": self.confidence,
            "reason": self.reason,
            "alternatives": list(self.alternatives),
            "selection_criteria": dict(self.selection_criteria),
            "metadata": dict(self.metadata),
        }


# ============================================================
# Execution
# ============================================================

@dataclass
class Operation:
    """A logical operation on a domain, e.g. ("current", "weather")."""
    type: str
    domain: str


@dataclass
class ExecutionOptions:
    """Per-call options for execute_with_fallback."""
    primary_provider: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    selection: Optional[SelectionConstraints] = None
    deadline_seconds: Optional[float] = None


@dataclass
class ExecutorResponse:
    """Payload returned by an executor for a successful call."""
    data: Any
    response_time_ms: float = 0.0
    cached: bool = False


@dataclass
class FallbackCandidate:
    """An ordered fallback candidate."""
    provider_id: str
    source: str                    # configured_fallback | domain_alternative
    priority: int                  # 1 configured, 2 alternative
    circuit_state: CircuitState = CircuitState.CLOSED
    rank_score: float = 0.0


@dataclass
class AttemptRecord:
    """One entry of the attempt history."""
    provider_id: str
    outcome: AttemptOutcome
    reason: Optional[str] = None
    duration_ms: float = 0.0
    timestamp: float = field(default_factory=time.time)
    error_kind: Optional[str] = None
    retryable: Optional[bool] = None
    quality: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "provider_id": self.provider_id,
            "outcome": self.outcome.value,
            "duration_ms": round(self.duration_ms, 2),
            "timestamp": self.timestamp,
        }
        if self.reason is not None:
            result["reason"] = self.reason
        if self.error_kind is not None:
            result["error_kind"] = self.error_kind
        if self.retryable is not None:
            result["retryable"] = self.retryable
        if self.quality is not None:
            result["quality"] = self.quality
        return result


@dataclass
class ExecutionResult:
    """Structured result of execute_with_fallback; never an exception."""
    success: bool
    data: Any = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def attempt_history(self) -> List[AttemptRecord]:
        return self.metadata.get("attempt_history", [])

    def to_dict(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        if "attempt_history" in metadata:
            metadata["attempt_history"] = [
                record.to_dict() for record in metadata["attempt_history"]
            ]
        result: Dict[str, Any] = {"success": self.success, "metadata": metadata}
        if self.success:
            result["data"] = self.data
        else:
            result["error"] = self.error
            result["error_code"] = self.error_code
        return result
