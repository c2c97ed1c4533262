"""
Circuit breakers for outbound calls made by rule actions.

One breaker guards one target (for CALL_API, one host). A target that keeps
failing is cut off for ``recovery_timeout`` seconds; the first call after
that window is a trial call that either closes the breaker or re-opens it.
"""

import time
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional

from shared.logging import get_logger


class CircuitBreakerState(Enum):
    """Circuit breaker states."""
    CLOSED = "closed"      # Calls pass through
    OPEN = "open"          # Calls blocked until the recovery window ends
    HALF_OPEN = "half_open"  # One trial call decides


class CircuitBreakerOpenException(Exception):
    """Raised instead of calling a target whose breaker is open."""

    def __init__(self, name: str, retry_after: float):
        super().__init__(f"Circuit breaker '{name}' is OPEN - blocking call")
        self.name = name
        self.retry_after = retry_after


class CircuitBreaker:
    """Failure counter with an open/half-open/closed state machine.

    Any exception raised by the guarded call counts as a failure. A call
    that returns normally also counts as one when ``is_failure(result)`` is
    true; the result is still handed back to the caller.
    """

    def __init__(self,
                 name: str = "default",
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 is_failure: Optional[Callable[[Any], bool]] = None):
        self.name = name
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.is_failure = is_failure
        self.logger = get_logger(f"rules.circuit_breaker.{name}")

        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0

    @property
    def state(self) -> CircuitBreakerState:
        return self._state

    def retry_after(self) -> float:
        """Seconds left before an open breaker lets a trial call through."""
        if self._state != CircuitBreakerState.OPEN:
            return 0.0
        return max(0.0, self.recovery_timeout - (time.monotonic() - self._opened_at))

    def _allow_call(self) -> bool:
        if self._state != CircuitBreakerState.OPEN:
            return True
        if self.retry_after() > 0:
            return False
        self._state = CircuitBreakerState.HALF_OPEN
        self.logger.info("Circuit breaker half-open, allowing trial call")
        return True

    async def call(self, func: Callable[..., Awaitable[Any]], *args, **kwargs) -> Any:
        """Run ``func`` unless the breaker is open."""
        if not self._allow_call():
            raise CircuitBreakerOpenException(self.name, self.retry_after())

        try:
            result = await func(*args, **kwargs)
        except Exception as e:
            self.record_failure(str(e) or type(e).__name__)
            raise

        if self.is_failure is not None and self.is_failure(result):
            self.record_failure("result rejected")
        else:
            self.record_success()
        return result

    def record_success(self) -> None:
        if self._state == CircuitBreakerState.HALF_OPEN:
            self.logger.info("Circuit breaker closed after successful trial call")
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count += 1

    def record_failure(self, reason: str = "") -> None:
        self._failure_count += 1
        self._success_count = 0

        trial_failed = self._state == CircuitBreakerState.HALF_OPEN
        if trial_failed or (
            self._state == CircuitBreakerState.CLOSED and self._failure_count >= self.failure_threshold
        ):
            self._state = CircuitBreakerState.OPEN
            self._opened_at = time.monotonic()
            self.logger.warning(
                "Circuit breaker opened",
                failure_count=self._failure_count,
                threshold=self.failure_threshold,
                trial_failed=trial_failed,
                reason=reason
            )

    def reset(self) -> None:
        """Force the breaker closed and forget past failures."""
        self._state = CircuitBreakerState.CLOSED
        self._failure_count = 0
        self._success_count = 0
        self._opened_at = 0.0

    def is_open(self) -> bool:
        return self._state == CircuitBreakerState.OPEN

    def get_state(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self._state.value,
            "failure_count": self._failure_count,
            "success_count": self._success_count,
            "failure_threshold": self.failure_threshold,
            "recovery_timeout": self.recovery_timeout,
            "retry_after": round(self.retry_after(), 3),
        }


class CircuitBreakerManager:
    """Breakers keyed by target, created on first use with shared settings."""

    def __init__(self,
                 failure_threshold: int = 5,
                 recovery_timeout: float = 60.0,
                 is_failure: Optional[Callable[[Any], bool]] = None):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self.is_failure = is_failure
        self.circuit_breakers: Dict[str, CircuitBreaker] = {}
        self.logger = get_logger("rules.circuit_breaker_manager")

    def get_circuit_breaker(self, name: str) -> CircuitBreaker:
        """Get or create the breaker for a target."""
        breaker = self.circuit_breakers.get(name)
        if breaker is None:
            breaker = CircuitBreaker(
                name=name,
                failure_threshold=self.failure_threshold,
                recovery_timeout=self.recovery_timeout,
                is_failure=self.is_failure
            )
            self.circuit_breakers[name] = breaker
            self.logger.debug("Created circuit breaker", name=name)
        return breaker

    def open_circuits(self) -> List[str]:
        """Targets currently cut off."""
        return sorted(name for name, breaker in self.circuit_breakers.items() if breaker.is_open())

    def reset_all(self) -> None:
        for breaker in self.circuit_breakers.values():
            breaker.reset()

    def get_all_states(self) -> Dict[str, Dict[str, Any]]:
        return {name: breaker.get_state() for name, breaker in self.circuit_breakers.items()}
