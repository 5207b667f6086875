"""
apimesh - Collaborator Interfaces

The resilience core depends only on these two abstractions:

- ProviderCatalog: which providers serve a domain and what they can do
- Executor: performs one call against one provider

Concrete implementations live beside this module (in-memory catalog,
httpx executor, stub executor) and can be replaced freely.
"""

from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from ..core.models import Operation, Provider, ExecutorResponse


class ProviderCatalog(ABC):
    """
    Source of provider capability data.

    Implementations must be safe to read concurrently; capability updates
    replace whole Provider records.
    """

    @abstractmethod
    def providers_for_domain(self, domain: str) -> List[Provider]:
        """List providers serving a domain, in a stable order."""
        pass

    @abstractmethod
    def get_provider(self, provider_id: str) -> Optional[Provider]:
        """Look up one provider, or None if unknown."""
        pass

    @abstractmethod
    def domains(self) -> List[str]:
        """List all known domains."""
        pass

    @abstractmethod
    def update_capabilities(self, provider_id: str, **scores: Optional[float]) -> Provider:
        """
        Replace some capability scores of a provider.

        Raises:
            ProviderNotFoundError: If the provider is unknown
        """
        pass


class Executor(ABC):
    """
    Performs a single call against a provider.

    The executor is responsible for:
    1. Translating the logical operation into a provider request
    2. Making the call
    3. Returning the payload, or raising ExecutorError with a
       categorized ErrorKind
    """

    @abstractmethod
    async def invoke(
        self,
        provider: Provider,
        operation: Operation,
        parameters: Dict[str, Any],
        timeout_ms: Optional[float] = None,
    ) -> ExecutorResponse:
        """
        Call a provider once.

        Args:
            provider: Provider to call
            operation: Logical operation
            parameters: Caller-supplied call parameters
            timeout_ms: Upper bound for this call

        Returns:
            ExecutorResponse with the payload

        Raises:
            ExecutorError: On a categorized provider failure
        """
        pass

    async def close(self) -> None:
        """Release resources held by the executor."""
        return None
