"""
apimesh - Circuit Breaker

Per-provider circuit breakers that stop calls to an unhealthy provider
until it has had time to recover.

States:
- CLOSED: Normal operation, calls pass through
- OPEN: Provider is failing, calls are skipped
- HALF_OPEN: A limited number of trial calls test recovery

Transitions:
- CLOSED -> OPEN: When net failures reach the threshold (each success
  cancels one earlier failure)
- OPEN -> HALF_OPEN: On the first state read after the reset timeout
- HALF_OPEN -> CLOSED: After half_open_max_calls successful trials
- HALF_OPEN -> OPEN: On any failed trial
"""

import time
from threading import Lock
from typing import Callable, Dict, List, Optional, Tuple

from ..core.config import CircuitBreakerConfig
from ..core.models import CircuitState
from ..observability.logging import get_logger

logger = get_logger(__name__)

Transition = Tuple[CircuitState, CircuitState]
StateChangeListener = Callable[[str, CircuitState, CircuitState], None]


class CircuitBreaker:
    """
    Circuit breaker for a single provider.

    All state lives behind one lock; no method blocks or awaits while
    holding it.
    """

    def __init__(
        self,
        provider_id: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.provider_id = provider_id
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._lock = Lock()

        self._state = CircuitState.CLOSED
        self.failure_count = 0
        self.half_open_call_count = 0
        self.half_open_in_flight = 0
        self.next_retry_time: Optional[float] = None
        self.last_failure_time: Optional[float] = None
        self.last_failure_reason: Optional[str] = None
        self.state_changed_at = clock()

    @property
    def state(self) -> CircuitState:
        """Current state; reading it may move OPEN to HALF_OPEN."""
        return self.read_state()[0]

    def read_state(self) -> Tuple[CircuitState, Optional[Transition]]:
        """Current state plus the transition the read caused, if any."""
        with self._lock:
            transition = self._maybe_half_open()
            return self._state, transition

    def _maybe_half_open(self) -> Optional[Transition]:
        """Lazy OPEN -> HALF_OPEN once the reset timeout has passed (must hold lock)."""
        if (
            self._state == CircuitState.OPEN
            and self.next_retry_time is not None
            and self._clock() >= self.next_retry_time
        ):
            self.half_open_call_count = 0
            self.half_open_in_flight = 0
            return self._transition_to(CircuitState.HALF_OPEN)
        return None

    def allow_request(self) -> Tuple[bool, Optional[Transition]]:
        """
        Admit a call.

        HALF_OPEN admits at most half_open_max_calls trials at a time; each
        admitted trial must be settled with record_success/record_failure,
        or handed back with release() when it ends without an outcome.
        """
        with self._lock:
            transition = self._maybe_half_open()

            if self._state == CircuitState.CLOSED:
                return True, transition
            if self._state == CircuitState.OPEN:
                return False, transition

            if self.half_open_in_flight >= self.config.half_open_max_calls:
                return False, transition
            self.half_open_in_flight += 1
            return True, transition

    def record_success(self) -> Optional[Transition]:
        """Record a successful call."""
        with self._lock:
            transition = self._maybe_half_open()

            if self._state == CircuitState.CLOSED:
                self.failure_count = max(0, self.failure_count - 1)
            elif self._state == CircuitState.HALF_OPEN:
                self.half_open_in_flight = max(0, self.half_open_in_flight - 1)
                self.half_open_call_count += 1
                if self.half_open_call_count >= self.config.half_open_max_calls:
                    self.failure_count = 0
                    transition = self._transition_to(CircuitState.CLOSED)
            return transition

    def record_failure(self, reason: Optional[str] = None) -> Optional[Transition]:
        """Record a failed call."""
        with self._lock:
            transition = self._maybe_half_open()
            now = self._clock()
            self.last_failure_time = now
            self.last_failure_reason = reason

            if self._state == CircuitState.HALF_OPEN:
                # Any failed trial reopens the circuit
                self.half_open_in_flight = max(0, self.half_open_in_flight - 1)
                self.next_retry_time = now + self.config.reset_timeout_seconds
                return self._transition_to(CircuitState.OPEN)

            self.failure_count += 1
            if self._state == CircuitState.CLOSED and self.failure_count >= self.config.failure_threshold:
                self.next_retry_time = now + self.config.reset_timeout_seconds
                return self._transition_to(CircuitState.OPEN)
            return transition

    def release(self) -> None:
        """Return an admitted HALF_OPEN trial slot that ended without an outcome."""
        with self._lock:
            if self._state == CircuitState.HALF_OPEN:
                self.half_open_in_flight = max(0, self.half_open_in_flight - 1)

    def _transition_to(self, new_state: CircuitState) -> Optional[Transition]:
        """Transition to a new state (must hold lock)."""
        old_state = self._state
        if old_state == new_state:
            return None
        self._state = new_state
        self.state_changed_at = self._clock()
        if new_state == CircuitState.CLOSED:
            self.next_retry_time = None
            self.half_open_call_count = 0
            self.half_open_in_flight = 0
        return old_state, new_state

    def get_status(self) -> Dict:
        """Get current circuit breaker status."""
        with self._lock:
            self._maybe_half_open()
            now = self._clock()
            return {
                "provider": self.provider_id,
                "state": self._state.value,
                "failure_count": self.failure_count,
                "half_open_call_count": self.half_open_call_count,
                "next_retry_time": self.next_retry_time,
                "last_failure_time": self.last_failure_time,
                "last_failure_reason": self.last_failure_reason,
                "time_in_current_state": round(now - self.state_changed_at, 2),
            }

    def force_open(self) -> Optional[Transition]:
        """Manually open the circuit (for testing or emergency)."""
        with self._lock:
            self.next_retry_time = self._clock() + self.config.reset_timeout_seconds
            return self._transition_to(CircuitState.OPEN)

    def force_close(self) -> Optional[Transition]:
        """Manually close the circuit (for testing or recovery)."""
        with self._lock:
            self.failure_count = 0
            return self._transition_to(CircuitState.CLOSED)


class CircuitBreakerRegistry:
    """
    Registry managing circuit breakers for all providers.

    Breakers are created on the first recorded failure; a provider without
    a breaker is treated as CLOSED.
    """

    def __init__(
        self,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = time.time,
        on_state_change: Optional[StateChangeListener] = None,
    ):
        self.config = config or CircuitBreakerConfig()
        self._clock = clock
        self._on_state_change = on_state_change
        self._breakers: Dict[str, CircuitBreaker] = {}
        self._lock = Lock()

    def get_breaker(self, provider_id: str, create: bool = False) -> Optional[CircuitBreaker]:
        """Get a provider's breaker, optionally creating it."""
        with self._lock:
            breaker = self._breakers.get(provider_id)
            if breaker is None and create:
                breaker = CircuitBreaker(provider_id, self.config, self._clock)
                self._breakers[provider_id] = breaker
            return breaker

    def _notify(self, provider_id: str, transition: Optional[Transition]) -> None:
        if transition is None:
            return
        old_state, new_state = transition
        if new_state == CircuitState.OPEN:
            logger.warning(
                "Circuit opened",
                provider=provider_id,
                previous_state=old_state.value,
            )
        else:
            logger.info(
                "Circuit state changed",
                provider=provider_id,
                previous_state=old_state.value,
                new_state=new_state.value,
            )
        if self._on_state_change is not None:
            self._on_state_change(provider_id, old_state, new_state)

    def get_state(self, provider_id: str) -> CircuitState:
        """Current state of a provider's circuit (CLOSED if it has none)."""
        breaker = self.get_breaker(provider_id)
        if breaker is None:
            return CircuitState.CLOSED
        state, transition = breaker.read_state()
        self._notify(provider_id, transition)
        return state

    def allow_request(self, provider_id: str) -> bool:
        """Admit a call to a provider."""
        breaker = self.get_breaker(provider_id)
        if breaker is None:
            return True
        allowed, transition = breaker.allow_request()
        self._notify(provider_id, transition)
        return allowed

    def record_success(self, provider_id: str) -> None:
        """Record a successful call; no-op for providers without a breaker."""
        breaker = self.get_breaker(provider_id)
        if breaker is not None:
            self._notify(provider_id, breaker.record_success())

    def record_failure(self, provider_id: str, reason: Optional[str] = None) -> None:
        """Record a failed call."""
        breaker = self.get_breaker(provider_id, create=True)
        self._notify(provider_id, breaker.record_failure(reason))

    def release(self, provider_id: str) -> None:
        """Give back an admitted call that was cancelled or cut short."""
        breaker = self.get_breaker(provider_id)
        if breaker is not None:
            breaker.release()

    def force_open(self, provider_id: str) -> None:
        breaker = self.get_breaker(provider_id, create=True)
        self._notify(provider_id, breaker.force_open())

    def reset(self, provider_id: Optional[str] = None) -> None:
        """Drop one provider's breaker, or all of them."""
        with self._lock:
            if provider_id is None:
                removed = list(self._breakers.items())
                self._breakers.clear()
            else:
                breaker = self._breakers.pop(provider_id, None)
                removed = [(provider_id, breaker)] if breaker else []
        for pid, breaker in removed:
            logger.info("Circuit breaker reset", provider=pid)
            old = breaker.state
            if self._on_state_change is not None and old != CircuitState.CLOSED:
                self._on_state_change(pid, old, CircuitState.CLOSED)

    def known_providers(self) -> List[str]:
        with self._lock:
            return list(self._breakers)

    def get_all_status(self) -> Dict[str, Dict]:
        """Get status of all circuit breakers."""
        with self._lock:
            breakers = list(self._breakers.items())
        return {pid: breaker.get_status() for pid, breaker in breakers}
