"""
Circuit breaker for external dependencies (model inference, source lookups).

Every call is bounded by a timeout. After ``failure_threshold`` consecutive
failures the circuit for that service opens and calls short-circuit with
CircuitOpenError until ``reset_timeout`` elapses; then one trial call is let
through (half-open) and its outcome closes or re-opens the circuit.
"""

import time
import asyncio
import logging
from typing import Any, Callable, Optional

logger = logging.getLogger(__name__)

STATE_CLOSED = "closed"
STATE_OPEN = "open"
STATE_HALF_OPEN = "half_open"


class CircuitOpenError(Exception):
    """Raised when a call is short-circuited because the service is degraded."""

    def __init__(self, service: str, retry_after: float):
        self.service = service
        self.retry_after = retry_after
        super().__init__(f"Circuit open for {service}; retry in {retry_after:.0f}s")


class CircuitBreaker:
    """Per-service failure counting with timed recovery."""

    def __init__(
        self,
        failure_threshold: int = 5,
        reset_timeout: float = 300.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.failure_threshold = failure_threshold
        self.reset_timeout = reset_timeout
        self._clock = clock or time.monotonic
        self._states: dict[str, dict] = {}

    def _state(self, service: str) -> dict:
        return self._states.setdefault(
            service, {"state": STATE_CLOSED, "failures": 0, "opened_at": None},
        )

    def state_of(self, service: str) -> str:
        state = self._state(service)
        if state["state"] == STATE_OPEN and self._clock() - state["opened_at"] >= self.reset_timeout:
            state["state"] = STATE_HALF_OPEN
            logger.info(f"Circuit breaker half-open for {service}")
        return state["state"]

    def is_open(self, service: str) -> bool:
        return self.state_of(service) == STATE_OPEN

    def record_success(self, service: str) -> None:
        state = self._state(service)
        if state["state"] != STATE_CLOSED:
            logger.info(f"Circuit breaker closed for {service}")
        state.update(state=STATE_CLOSED, failures=0, opened_at=None)

    def record_failure(self, service: str) -> None:
        state = self._state(service)
        state["failures"] += 1
        if state["state"] == STATE_HALF_OPEN or state["failures"] >= self.failure_threshold:
            state.update(state=STATE_OPEN, opened_at=self._clock())
            logger.warning(f"Circuit breaker opened for {service} after {state['failures']} failures")

    async def call(self, service: str, func: Callable, *args, timeout: float = 30.0) -> Any:
        """
        Run ``func(*args)`` under the breaker with a timeout.

        Coroutine functions are awaited; plain callables run in a worker
        thread so blocking clients never stall the event loop.

        Raises:
            CircuitOpenError: the circuit is open
            asyncio.TimeoutError: the call exceeded ``timeout``
        """
        if self.is_open(service):
            opened_at = self._state(service)["opened_at"]
            raise CircuitOpenError(service, self.reset_timeout - (self._clock() - opened_at))

        try:
            if asyncio.iscoroutinefunction(func):
                result = await asyncio.wait_for(func(*args), timeout=timeout)
            else:
                result = await asyncio.wait_for(asyncio.to_thread(func, *args), timeout=timeout)
        except Exception:
            self.record_failure(service)
            raise
        self.record_success(service)
        return result

    def to_dict(self) -> dict:
        return {
            service: {"state": self.state_of(service), "failures": s["failures"]}
            for service, s in self._states.items()
        }
