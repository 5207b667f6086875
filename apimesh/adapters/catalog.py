"""
apimesh - In-Memory Provider Catalog

Catalog backed by a dict, loadable from plain configuration data:

    catalog = InMemoryProviderCatalog.from_dict({
        "weather": {
            "openweather": {
                "quality": 8, "speed": 7, "cost": 10, "reliability": 9,
                "features": ["current", "forecast", "historical"],
                "invocation": {"method": "GET", "url": "https://..."},
            },
        },
    })
"""

from threading import Lock
from typing import Any, Dict, List, Mapping, Optional

from .base import ProviderCatalog
from ..core.errors import ConfigurationError, ProviderNotFoundError
from ..core.models import CapabilityVector, Provider

_SCORE_FIELDS = ("quality", "speed", "cost", "reliability")


class InMemoryProviderCatalog(ProviderCatalog):
    """Thread-safe catalog holding Provider records in memory."""

    def __init__(self, providers: Optional[List[Provider]] = None):
        self._providers: Dict[str, Provider] = {}
        self._lock = Lock()
        for provider in providers or []:
            self.register(provider)

    @classmethod
    def from_dict(cls, data: Mapping[str, Mapping[str, Mapping[str, Any]]]) -> "InMemoryProviderCatalog":
        """Build a catalog from {domain: {provider_id: {scores, features, invocation}}}."""
        providers = []
        for domain, entries in data.items():
            for provider_id, entry in entries.items():
                try:
                    scores = {
                        name: float(entry[name])
                        for name in _SCORE_FIELDS
                        if name in entry
                    }
                except (TypeError, ValueError):
                    raise ConfigurationError(
                        f"Invalid capability score for provider '{provider_id}'",
                        setting=f"{domain}.{provider_id}",
                    )
                providers.append(Provider(
                    provider_id=provider_id,
                    domain=domain,
                    capabilities=CapabilityVector().with_updates(**scores),
                    features=frozenset(entry.get("features", ())),
                    invocation=dict(entry.get("invocation", {})),
                ))
        return cls(providers)

    def register(self, provider: Provider) -> None:
        """Add or replace a provider."""
        with self._lock:
            self._providers[provider.provider_id] = provider

    def remove(self, provider_id: str) -> bool:
        with self._lock:
            return self._providers.pop(provider_id, None) is not None

    def providers_for_domain(self, domain: str) -> List[Provider]:
        with self._lock:
            return [p for p in self._providers.values() if p.domain == domain]

    def get_provider(self, provider_id: str) -> Optional[Provider]:
        with self._lock:
            return self._providers.get(provider_id)

    def domains(self) -> List[str]:
        with self._lock:
            return sorted({p.domain for p in self._providers.values()})

    def update_capabilities(self, provider_id: str, **scores: Optional[float]) -> Provider:
        with self._lock:
            current = self._providers.get(provider_id)
            if current is None:
                raise ProviderNotFoundError(provider_id)
            updated = Provider(
                provider_id=current.provider_id,
                domain=current.domain,
                capabilities=current.capabilities.with_updates(**scores),
                features=current.features,
                invocation=current.invocation,
            )
            self._providers[provider_id] = updated
            return updated
