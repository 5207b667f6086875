"""
apimesh - HTTP Executor

Executor that calls providers over HTTP with httpx. Each provider's
invocation descriptor tells it how:

    {"method": "GET", "url": "https://api.example.com/{operation}",
     "headers": {"X-Key": "..."}, "params": {"units": "metric"}}

Transport failures and error statuses are translated into ExecutorError
with a structured ErrorKind; the error text is never parsed downstream.
"""

import asyncio
import random
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from .base import Executor
from ..core.errors import ErrorKind, ExecutorError, is_retryable
from ..core.models import ExecutorResponse, Operation, Provider
from ..observability.logging import get_logger

logger = get_logger(__name__)


@dataclass
class RetryConfig:
    """In-attempt retry behavior; retries stay inside the attempt timeout."""
    max_retries: int = 3
    base_delay: float = 1.0    # seconds
    max_delay: float = 30.0    # seconds
    exponential_base: float = 2.0
    jitter_factor: float = 0.25


def calculate_backoff(
    attempt: int,
    base_delay: float = 1.0,
    max_delay: float = 30.0,
    exponential_base: float = 2.0,
    jitter_factor: float = 0.25,
) -> float:
    """
    Calculate delay with exponential backoff and jitter.

    Sequence: 1s, 2s, 4s, 8s, ... capped at max_delay (with +-25% jitter)
    """
    delay = min(base_delay * (exponential_base ** attempt), max_delay)
    jitter_range = delay * jitter_factor
    delay = delay + random.uniform(-jitter_range, jitter_range)
    return max(0.0, delay)


def classify_status(status_code: int) -> Optional[ErrorKind]:
    """Map an HTTP status to an ErrorKind, or None for success."""
    if status_code < 400:
        return None
    if status_code in (401, 403):
        return ErrorKind.AUTHENTICATION_ERROR
    if status_code == 429:
        return ErrorKind.RATE_LIMITED
    if status_code == 408:
        return ErrorKind.TIMEOUT
    if status_code >= 500:
        return ErrorKind.SERVICE_UNAVAILABLE
    return ErrorKind.UNKNOWN_ERROR


class HttpExecutor(Executor):
    """
    httpx-backed executor.

    Retries are disabled unless a RetryConfig is given; failover between
    providers is the resilience manager's job.
    """

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        default_timeout_ms: float = 10000,
        retry_config: Optional[RetryConfig] = None,
    ):
        self._client = client
        self._owns_client = client is None
        self.default_timeout_ms = default_timeout_ms
        self.retry_config = retry_config

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient()
            self._owns_client = True
        return self._client

    async def close(self) -> None:
        if self._owns_client and self._client is not None and not self._client.is_closed:
            await self._client.aclose()

    async def invoke(
        self,
        provider: Provider,
        operation: Operation,
        parameters: Dict[str, Any],
        timeout_ms: Optional[float] = None,
    ) -> ExecutorResponse:
        invocation = provider.invocation
        if "url" not in invocation:
            raise ExecutorError(
                ErrorKind.UNKNOWN_ERROR,
                f"Provider '{provider.provider_id}' has no invocation url",
                provider=provider.provider_id,
            )

        max_retries = self.retry_config.max_retries if self.retry_config else 0
        for attempt in range(max_retries + 1):
            try:
                return await self._send(provider, operation, parameters, timeout_ms)
            except ExecutorError as e:
                if attempt >= max_retries or not is_retryable(e.kind):
                    raise
                delay = calculate_backoff(
                    attempt,
                    self.retry_config.base_delay,
                    self.retry_config.max_delay,
                    self.retry_config.exponential_base,
                    self.retry_config.jitter_factor,
                )
                logger.debug(
                    "Retrying provider call",
                    provider=provider.provider_id,
                    retry=attempt + 1,
                    delay_seconds=round(delay, 2),
                    error_kind=e.kind.value,
                )
                await asyncio.sleep(delay)

        # Should not reach here
        raise ExecutorError(ErrorKind.UNKNOWN_ERROR, "Unexpected retry loop exit",
                            provider=provider.provider_id)

    async def _send(
        self,
        provider: Provider,
        operation: Operation,
        parameters: Dict[str, Any],
        timeout_ms: Optional[float],
    ) -> ExecutorResponse:
        invocation = provider.invocation
        method = invocation.get("method", "GET").upper()
        url = invocation["url"].format(operation=operation.type, domain=operation.domain)
        params = {**invocation.get("params", {})}
        body = None
        if method in ("GET", "DELETE"):
            params.update(parameters)
        else:
            body = dict(parameters)

        timeout_seconds = (timeout_ms or self.default_timeout_ms) / 1000.0
        client = await self._get_client()
        start_time = time.perf_counter()

        try:
            response = await client.request(
                method,
                url,
                params=params or None,
                json=body,
                headers=invocation.get("headers"),
                timeout=timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise ExecutorError(ErrorKind.TIMEOUT, f"Request timed out: {e}",
                                provider=provider.provider_id)
        except httpx.TransportError as e:
            raise ExecutorError(ErrorKind.NETWORK_ERROR, f"Transport error: {e}",
                                provider=provider.provider_id)

        latency_ms = (time.perf_counter() - start_time) * 1000

        kind = classify_status(response.status_code)
        if kind is not None:
            retry_after = None
            if kind == ErrorKind.RATE_LIMITED:
                try:
                    retry_after = int(response.headers.get("Retry-After", "60"))
                except ValueError:
                    retry_after = 60
            raise ExecutorError(
                kind,
                f"{provider.provider_id} returned status {response.status_code}",
                provider=provider.provider_id,
                status_code=response.status_code,
                retry_after=retry_after,
            )

        try:
            data = response.json()
        except ValueError:
            data = response.text

        return ExecutorResponse(
            data=data,
            response_time_ms=latency_ms,
            cached=response.headers.get("X-Cache", "").upper() == "HIT",
        )
