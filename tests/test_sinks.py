"""
Tests for execution/regulatory_truth/sinks.py

Covers: SinkRegistry ordering and get_or_create, SinkFanout delivery modes
        (nonBlocking fire-and-forget, criticalAwait on critical events),
        per-sink ordering, single flush, and the provided sinks.
"""

import asyncio
from dataclasses import dataclass
from typing import Optional

import pytest

from tests.conftest import InMemoryPipelineStore


@dataclass
class _Event:
    id: str
    seq: int
    severity: Optional[str] = None
    request_id: str = "req-1"
    stage: str = "SOURCES"
    status: str = "progress"
    message: Optional[str] = None

    def to_dict(self):
        return {
            "id": self.id, "request_id": self.request_id, "seq": self.seq,
            "stage": self.stage, "status": self.status, "severity": self.severity,
        }


def _event(seq, severity=None):
    return _Event(id=f"req-1_{seq:04d}", seq=seq, severity=severity)


def _recording_sink(name, mode=None, delay=0.0, fail=False):
    from execution.regulatory_truth.sinks import EventSink, SinkMode

    class RecordingSink(EventSink):
        def __init__(self):
            self.name = name
            self.mode = mode or SinkMode.NON_BLOCKING
            self.written = []
            self.flushes = 0

        async def write(self, event):
            if delay:
                await asyncio.sleep(delay)
            if fail:
                raise ConnectionError(f"{name} unavailable")
            self.written.append(event.seq)

        async def flush(self):
            self.flushes += 1

    return RecordingSink()


# ---------------------------------------------------------------------------
# Registry
# ---------------------------------------------------------------------------

class TestSinkRegistry:
    """Ordered registration."""

    def test_registration_order_kept(self):
        from execution.regulatory_truth.sinks import SinkRegistry
        registry = SinkRegistry([_recording_sink("b"), _recording_sink("a")])
        assert registry.names() == ["b", "a"]
        assert len(registry) == 2

    def test_duplicate_name_rejected(self):
        from execution.regulatory_truth.sinks import SinkRegistry
        registry = SinkRegistry([_recording_sink("log")])
        with pytest.raises(ValueError):
            registry.register(_recording_sink("log"))

    def test_get_or_create_is_idempotent(self):
        from execution.regulatory_truth.sinks import SinkRegistry, LoggingSink
        registry = SinkRegistry()
        created = []

        def factory():
            created.append(1)
            return LoggingSink()

        first = registry.get_or_create("ops-log", factory)
        second = registry.get_or_create("ops-log", factory)
        assert first is second
        assert created == [1]
        assert registry.get("ops-log").name == "ops-log"


# ---------------------------------------------------------------------------
# Fan-out
# ---------------------------------------------------------------------------

class TestSinkFanout:
    """Delivery semantics per mode."""

    @pytest.mark.asyncio
    async def test_non_blocking_does_not_wait(self):
        from execution.regulatory_truth.sinks import SinkFanout
        slow = _recording_sink("slow", delay=0.05)
        fanout = SinkFanout([slow])
        await fanout.emit(_event(0))
        assert slow.written == []
        await fanout.flush()
        assert slow.written == [0]

    @pytest.mark.asyncio
    async def test_critical_await_waits_on_critical(self):
        from execution.regulatory_truth.sinks import SinkFanout, SinkMode
        audit = _recording_sink("audit", SinkMode.CRITICAL_AWAIT, delay=0.01)
        fanout = SinkFanout([audit])
        await fanout.emit(_event(0))
        await fanout.emit(_event(1, severity="critical"))
        # The critical write is awaited, and per-sink order means seq 0 landed first
        assert audit.written == [0, 1]

    @pytest.mark.asyncio
    async def test_per_sink_order_preserved(self):
        from execution.regulatory_truth.sinks import SinkFanout
        sink = _recording_sink("live", delay=0.001)
        fanout = SinkFanout([sink])
        for seq in range(10):
            await fanout.emit(_event(seq))
        await fanout.flush()
        assert sink.written == list(range(10))

    @pytest.mark.asyncio
    async def test_non_blocking_failure_is_swallowed(self, caplog):
        from execution.regulatory_truth.sinks import SinkFanout, SinkMode
        broken = _recording_sink("broken", fail=True)
        audit = _recording_sink("audit", SinkMode.CRITICAL_AWAIT)
        fanout = SinkFanout([broken, audit])
        await fanout.emit(_event(0, severity="critical"))
        await fanout.flush()
        assert audit.written == [0]
        assert "broken" in caplog.text

    @pytest.mark.asyncio
    async def test_critical_failure_raises(self):
        from execution.regulatory_truth.sinks import SinkFanout, SinkMode, CriticalDeliveryError
        audit = _recording_sink("audit", SinkMode.CRITICAL_AWAIT, fail=True)
        fanout = SinkFanout([audit])
        with pytest.raises(CriticalDeliveryError) as exc_info:
            await fanout.emit(_event(3, severity="critical"))
        assert exc_info.value.sink_name == "audit"
        assert exc_info.value.event_id == "req-1_0003"

    @pytest.mark.asyncio
    async def test_critical_sink_failure_on_non_critical_event_is_logged(self):
        from execution.regulatory_truth.sinks import SinkFanout, SinkMode
        audit = _recording_sink("audit", SinkMode.CRITICAL_AWAIT, fail=True)
        fanout = SinkFanout([audit])
        await fanout.emit(_event(0))
        assert await fanout.flush() == []

    @pytest.mark.asyncio
    async def test_flush_runs_once(self):
        from execution.regulatory_truth.sinks import SinkFanout
        sinks = [_recording_sink("a"), _recording_sink("b")]
        fanout = SinkFanout(sinks)
        await fanout.emit(_event(0))
        await fanout.flush()
        await fanout.flush()
        assert [s.flushes for s in sinks] == [1, 1]
        assert fanout.flushed


# ---------------------------------------------------------------------------
# Provided sinks
# ---------------------------------------------------------------------------

class TestProvidedSinks:
    """LoggingSink, QueueSink, AuditLogSink."""

    @pytest.mark.asyncio
    async def test_logging_sink(self, caplog):
        import logging
        from execution.regulatory_truth.sinks import LoggingSink
        with caplog.at_level(logging.INFO):
            await LoggingSink().write(_event(4))
        assert "[req-1] #4 SOURCES/progress" in caplog.text

    @pytest.mark.asyncio
    async def test_queue_sink_listen_until_flush(self):
        from execution.regulatory_truth.sinks import QueueSink
        sink = QueueSink()
        await sink.write(_event(0))
        await sink.write(_event(1))
        await sink.flush()
        assert [e.seq async for e in sink.listen()] == [0, 1]

    @pytest.mark.asyncio
    async def test_audit_sink_buffers_until_critical(self):
        from execution.regulatory_truth.sinks import AuditLogSink
        store = InMemoryPipelineStore()
        sink = AuditLogSink(store)
        await sink.write(_event(0))
        assert store.reasoning_events == []
        await sink.write(_event(1, severity="critical"))
        assert [e["seq"] for e in store.reasoning_events] == [0, 1]

    @pytest.mark.asyncio
    async def test_audit_sink_flush_drains(self):
        from execution.regulatory_truth.sinks import AuditLogSink
        store = InMemoryPipelineStore()
        sink = AuditLogSink(store)
        await sink.write(_event(0))
        await sink.flush()
        assert len(store.reasoning_events) == 1

    @pytest.mark.asyncio
    async def test_audit_sink_failure_keeps_buffer(self):
        from execution.regulatory_truth.sinks import AuditLogSink
        store = InMemoryPipelineStore()
        store.fail_event_writes = True
        sink = AuditLogSink(store)
        with pytest.raises(ConnectionError):
            await sink.write(_event(0, severity="critical"))
        store.fail_event_writes = False
        await sink.flush()
        assert [e["seq"] for e in store.reasoning_events] == [0]
