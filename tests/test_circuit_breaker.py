"""
Tests for execution/regulatory_truth/circuit_breaker.py

Covers: state transitions (closed, open, half-open), timed recovery,
        timeouts on sync and async calls, and per-service isolation.
"""

import time
import asyncio

import pytest


class FakeMonotonic:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def monotonic():
    return FakeMonotonic()


@pytest.fixture
def breaker(monotonic):
    from execution.regulatory_truth.circuit_breaker import CircuitBreaker
    return CircuitBreaker(failure_threshold=2, reset_timeout=60.0, clock=monotonic)


async def _boom():
    raise ConnectionError("down")


# ---------------------------------------------------------------------------
# State machine
# ---------------------------------------------------------------------------

class TestCircuitState:
    """Failure counting and recovery."""

    def test_starts_closed(self, breaker):
        assert breaker.state_of("llm") == "closed"
        assert breaker.is_open("llm") is False

    def test_opens_after_threshold(self, breaker):
        breaker.record_failure("llm")
        assert breaker.state_of("llm") == "closed"
        breaker.record_failure("llm")
        assert breaker.is_open("llm")

    def test_half_open_after_timeout(self, breaker, monotonic):
        breaker.record_failure("llm")
        breaker.record_failure("llm")
        monotonic.now += 61
        assert breaker.state_of("llm") == "half_open"

    def test_half_open_failure_reopens(self, breaker, monotonic):
        breaker.record_failure("llm")
        breaker.record_failure("llm")
        monotonic.now += 61
        breaker.state_of("llm")
        breaker.record_failure("llm")
        assert breaker.is_open("llm")

    def test_success_closes_and_resets(self, breaker):
        breaker.record_failure("llm")
        breaker.record_success("llm")
        breaker.record_failure("llm")
        assert breaker.state_of("llm") == "closed"

    def test_services_are_isolated(self, breaker):
        breaker.record_failure("llm")
        breaker.record_failure("llm")
        assert breaker.state_of("sources") == "closed"

    def test_to_dict(self, breaker):
        breaker.record_failure("sources")
        assert breaker.to_dict() == {"sources": {"state": "closed", "failures": 1}}


# ---------------------------------------------------------------------------
# Calls
# ---------------------------------------------------------------------------

class TestCircuitCall:
    """Bounded calls through the breaker."""

    @pytest.mark.asyncio
    async def test_async_call_returns_result(self, breaker):
        async def fetch(x):
            return x * 2

        assert await breaker.call("sources", fetch, 21) == 42

    @pytest.mark.asyncio
    async def test_sync_call_runs_in_thread(self, breaker):
        assert await breaker.call("sources", lambda a, b: a + b, 1, 2) == 3

    @pytest.mark.asyncio
    async def test_timeout_counts_as_failure(self, breaker):
        async def slow():
            await asyncio.sleep(5)

        with pytest.raises(asyncio.TimeoutError):
            await breaker.call("llm", slow, timeout=0.01)
        assert breaker.to_dict()["llm"]["failures"] == 1

    @pytest.mark.asyncio
    async def test_blocking_sync_call_times_out(self, breaker):
        with pytest.raises(asyncio.TimeoutError):
            await breaker.call("llm", time.sleep, 0.5, timeout=0.01)

    @pytest.mark.asyncio
    async def test_open_circuit_short_circuits(self, breaker):
        from execution.regulatory_truth.circuit_breaker import CircuitOpenError
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call("llm", _boom)

        calls = []

        async def never():
            calls.append(1)

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call("llm", never)
        assert calls == []
        assert exc_info.value.service == "llm"
        assert exc_info.value.retry_after == pytest.approx(60.0)

    @pytest.mark.asyncio
    async def test_trial_call_closes_circuit(self, breaker, monotonic):
        for _ in range(2):
            with pytest.raises(ConnectionError):
                await breaker.call("llm", _boom)
        monotonic.now += 61

        async def ok():
            return "ok"

        assert await breaker.call("llm", ok) == "ok"
        assert breaker.state_of("llm") == "closed"
