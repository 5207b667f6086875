"""
apimesh - Fallback Chains

Configured fallback order per (domain, primary provider), the attempt
history of a single execution, and aggregate fallback usage.

A fallback chain is an ordered list of providers to try when the primary
fails:

    registry = FallbackChainRegistry({
        "weather": {"openweather": ["weatherapi", "weatherstack"]},
    })
    registry.get_chain("weather", "openweather")
    # ["weatherapi", "weatherstack"]
"""

import time
from collections import Counter
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from ..core.models import AttemptOutcome, AttemptRecord


class FallbackChainRegistry:
    """Holds configured fallback chains; safe for concurrent use."""

    def __init__(self, chains: Optional[Mapping[str, Mapping[str, List[str]]]] = None):
        self._chains: Dict[str, Dict[str, List[str]]] = {}
        self._lock = Lock()
        for domain, by_primary in (chains or {}).items():
            for primary, fallbacks in by_primary.items():
                self.configure(domain, primary, fallbacks)

    def configure(self, domain: str, primary: str, fallbacks: List[str]) -> None:
        """Set the fallback order for a primary provider; duplicates are dropped."""
        ordered = []
        for provider_id in fallbacks:
            if provider_id != primary and provider_id not in ordered:
                ordered.append(provider_id)
        with self._lock:
            self._chains.setdefault(domain, {})[primary] = ordered

    def get_chain(self, domain: str, primary: Optional[str]) -> List[str]:
        """Configured fallbacks for a primary, in order (empty if none)."""
        if primary is None:
            return []
        with self._lock:
            return list(self._chains.get(domain, {}).get(primary, []))

    def all_chains(self) -> Dict[str, Dict[str, List[str]]]:
        with self._lock:
            return {domain: {p: list(f) for p, f in chains.items()}
                    for domain, chains in self._chains.items()}


class AttemptHistory:
    """
    Ordered record of the attempts made during one execution.

    Only the task running the execution appends to it.
    """

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.records: List[AttemptRecord] = []

    def __len__(self) -> int:
        return len(self.records)

    def __iter__(self):
        return iter(self.records)

    def add(
        self,
        provider_id: str,
        outcome: AttemptOutcome,
        reason: Optional[str] = None,
        duration_ms: float = 0.0,
        **fields: Any,
    ) -> AttemptRecord:
        record = AttemptRecord(
            provider_id=provider_id,
            outcome=outcome,
            reason=reason,
            duration_ms=duration_ms,
            timestamp=self._clock(),
            **fields,
        )
        self.records.append(record)
        return record

    def skip(self, provider_id: str, reason: str) -> AttemptRecord:
        """Record a provider that was not called."""
        return self.add(provider_id, AttemptOutcome.SKIPPED, reason=reason)

    def attempted_providers(self) -> List[str]:
        return [r.provider_id for r in self.records if r.outcome != AttemptOutcome.SKIPPED]

    def failure_reasons(self) -> List[Dict[str, Any]]:
        """Reasons for every attempt that did not succeed."""
        return [
            {"provider_id": r.provider_id, "outcome": r.outcome.value, "reason": r.reason}
            for r in self.records
            if r.outcome != AttemptOutcome.SUCCESS
        ]


@dataclass
class FallbackUsage:
    """Aggregate use of one fallback provider for one operation."""
    domain: str
    operation: str
    provider_id: str
    count: int = 0
    successes: int = 0
    last_used: Optional[float] = None

    @property
    def success_rate(self) -> float:
        if self.count == 0:
            return 0.0
        return self.successes / self.count


class FallbackUsageTracker:
    """Counts how often each fallback provider was called and how it fared."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self._usage: Dict[Tuple[str, str, str], FallbackUsage] = {}
        self._lock = Lock()

    def record_fallback_usage(
        self,
        domain: str,
        operation: str,
        provider_id: str,
        success: bool,
    ) -> FallbackUsage:
        key = (domain, operation, provider_id)
        with self._lock:
            usage = self._usage.get(key)
            if usage is None:
                usage = FallbackUsage(domain=domain, operation=operation, provider_id=provider_id)
                self._usage[key] = usage
            usage.count += 1
            if success:
                usage.successes += 1
            usage.last_used = self._clock()
            return usage

    def get_usage(self, domain: Optional[str] = None) -> List[FallbackUsage]:
        with self._lock:
            return [
                FallbackUsage(**vars(u))
                for u in self._usage.values()
                if domain is None or u.domain == domain
            ]

    def get_stats(self, domain: Optional[str] = None, top_n: int = 5) -> Dict[str, Any]:
        """Totals, success rate (percent) and most used fallback providers."""
        usage = self.get_usage(domain)
        total = sum(u.count for u in usage)
        successful = sum(u.successes for u in usage)

        per_provider: Counter = Counter()
        for u in usage:
            per_provider[u.provider_id] += u.count

        return {
            "domain": domain,
            "total_fallbacks": total,
            "successful_fallbacks": successful,
            "success_rate": round(successful / total * 100, 2) if total else 0.0,
            "top_fallback_providers": [
                {"provider_id": pid, "count": count}
                for pid, count in per_provider.most_common(top_n)
            ],
        }

    def reset(self, provider_id: Optional[str] = None) -> int:
        """Drop usage for one provider (or all); returns the number of records removed."""
        with self._lock:
            if provider_id is None:
                removed = len(self._usage)
                self._usage.clear()
                return removed
            keys = [k for k in self._usage if k[2] == provider_id]
            for key in keys:
                del self._usage[key]
            return len(keys)


__all__ = [
    "AttemptHistory",
    "FallbackChainRegistry",
    "FallbackUsage",
    "FallbackUsageTracker",
]
