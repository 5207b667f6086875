"""
apimesh - Stub Executor

Deterministic in-process executor used for smoke and integration testing.
No network calls. Each provider gets a script of outcomes; once the script
is exhausted the provider's default outcome repeats.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Union

from .base import Executor
from ..core.errors import ErrorKind, ExecutorError
from ..core.models import ExecutorResponse, Operation, Provider


@dataclass
class StubCall:
    """One invocation observed by the stub."""
    provider_id: str
    operation: str
    domain: str
    parameters: Dict[str, Any] = field(default_factory=dict)


# A scripted outcome: payload dict, ErrorKind, any exception, or a delay+payload
Outcome = Union[Dict[str, Any], ErrorKind, Exception, "StubDelay"]


@dataclass
class StubDelay:
    """Sleep before answering (to exercise timeouts)."""
    seconds: float
    then: Any = None


class StubExecutor(Executor):
    """Deterministic executor for tests/smoke checks."""

    def __init__(
        self,
        responses: Optional[Dict[str, Outcome]] = None,
        response_time_ms: float = 120.0,
    ):
        self._defaults: Dict[str, Outcome] = dict(responses or {})
        self._scripts: Dict[str, List[Outcome]] = {}
        self.response_time_ms = response_time_ms
        self.calls: List[StubCall] = []

    def set_response(self, provider_id: str, outcome: Outcome) -> None:
        """Set the repeating outcome for a provider."""
        self._defaults[provider_id] = outcome

    def script(self, provider_id: str, *outcomes: Outcome) -> None:
        """Queue one-shot outcomes consumed before the default."""
        self._scripts.setdefault(provider_id, []).extend(outcomes)

    def calls_for(self, provider_id: str) -> List[StubCall]:
        return [call for call in self.calls if call.provider_id == provider_id]

    async def invoke(
        self,
        provider: Provider,
        operation: Operation,
        parameters: Dict[str, Any],
        timeout_ms: Optional[float] = None,
    ) -> ExecutorResponse:
        self.calls.append(StubCall(
            provider_id=provider.provider_id,
            operation=operation.type,
            domain=operation.domain,
            parameters=dict(parameters),
        ))

        script = self._scripts.get(provider.provider_id)
        if script:
            outcome = script.pop(0)
        else:
            outcome = self._defaults.get(
                provider.provider_id,
                {"provider": provider.provider_id, "operation": operation.type},
            )

        if isinstance(outcome, StubDelay):
            await asyncio.sleep(outcome.seconds)
            outcome = outcome.then if outcome.then is not None else {"provider": provider.provider_id}

        if isinstance(outcome, ErrorKind):
            raise ExecutorError(outcome, f"stub failure: {outcome.value}",
                                provider=provider.provider_id)
        if isinstance(outcome, Exception):
            raise outcome

        return ExecutorResponse(data=outcome, response_time_ms=self.response_time_ms)
