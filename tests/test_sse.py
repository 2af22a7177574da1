"""
Tests for execution/regulatory_truth/sse.py

Covers: SSE frame formatting, distinct frame types for reasoning, terminal
        and heartbeat frames, heartbeat interleaving for slow runs, and
        closing the run when the stream ends or is abandoned.
"""

import json
import asyncio

import pytest

QUERY = "Koja je stopa PDV-a?"


def _parse(frame):
    fields = {}
    for line in frame.strip().split("\n"):
        key, _, value = line.partition(": ")
        fields[key] = value
    return fields


class SlowRun:
    """Minimal run handle that yields prepared events after a delay."""

    def __init__(self, events, delay):
        self.request_id = "req"
        self._events = list(events)
        self._delay = delay
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self):
        if not self._events:
            raise StopAsyncIteration
        await asyncio.sleep(self._delay)
        return self._events.pop(0)

    async def aclose(self):
        self.closed = True


def _event(seq, stage="SOURCES", status="started"):
    from execution.regulatory_truth.reasoning import ReasoningEvent
    return ReasoningEvent(
        schema_version=1, id=f"req_{seq:04d}", request_id="req", seq=seq,
        timestamp="2026-03-02T09:30:00+00:00", stage=stage, status=status,
    )


# ---------------------------------------------------------------------------
# Framing
# ---------------------------------------------------------------------------

class TestFrameFormatting:
    """Wire format of individual frames."""

    def test_format_sse_with_id(self):
        from execution.regulatory_truth.sse import format_sse
        frame = format_sse("reasoning", {"a": "č"}, event_id="req_0001")
        assert frame == 'id: req_0001\nevent: reasoning\ndata: {"a": "č"}\n\n'

    def test_format_sse_without_id(self):
        from execution.regulatory_truth.sse import format_sse
        assert format_sse("heartbeat", {}) == "event: heartbeat\ndata: {}\n\n"

    def test_event_and_terminal_frames_differ(self):
        from execution.regulatory_truth.sse import format_event_frame, format_terminal_frame
        event = _event(3)
        assert _parse(format_event_frame(event))["event"] == "reasoning"
        terminal = _parse(format_terminal_frame(_event(4, "ANSWER", "complete")))
        assert terminal["event"] == "terminal"
        assert terminal["id"] == "req_0004"
        assert json.loads(terminal["data"])["stage"] == "ANSWER"

    def test_heartbeat_frame(self):
        from execution.regulatory_truth.sse import format_heartbeat_frame
        fields = _parse(format_heartbeat_frame())
        assert fields["event"] == "heartbeat"
        assert "id" not in fields
        assert isinstance(json.loads(fields["data"])["ts"], int)


# ---------------------------------------------------------------------------
# Streaming
# ---------------------------------------------------------------------------

class TestStreamReasoningFrames:
    """Converting a run into frames."""

    @pytest.mark.asyncio
    async def test_full_run_ends_with_terminal_frame(self, memory_store):
        from execution.regulatory_truth.reasoning import ReasoningPipeline
        from execution.regulatory_truth.sse import stream_reasoning_frames
        run = ReasoningPipeline(memory_store).start("req", QUERY)
        frames = [f async for f in stream_reasoning_frames(run, heartbeat_seconds=5)]

        kinds = [_parse(f)["event"] for f in frames]
        assert kinds[-1] == "terminal"
        assert set(kinds[:-1]) == {"reasoning"}
        seqs = [json.loads(_parse(f)["data"])["seq"] for f in frames]
        assert seqs == list(range(len(frames)))
        assert json.loads(_parse(frames[-1])["data"])["data"]["outcome"] == "ANSWER"

    @pytest.mark.asyncio
    async def test_heartbeats_interleave_without_reordering(self):
        from execution.regulatory_truth.sse import stream_reasoning_frames
        run = SlowRun([_event(0), _event(1, "ANSWER", "complete")], delay=0.05)
        frames = [f async for f in stream_reasoning_frames(run, heartbeat_seconds=0.01)]

        kinds = [_parse(f)["event"] for f in frames]
        assert "heartbeat" in kinds
        non_heartbeat = [f for f in frames if _parse(f)["event"] != "heartbeat"]
        assert [_parse(f)["id"] for f in non_heartbeat] == ["req_0000", "req_0001"]
        assert kinds[-1] == "terminal"
        assert run.closed

    @pytest.mark.asyncio
    async def test_abandoned_stream_closes_run(self):
        from execution.regulatory_truth.sse import stream_reasoning_frames
        run = SlowRun([_event(0), _event(1), _event(2, "ANSWER", "complete")], delay=0.0)
        stream = stream_reasoning_frames(run, heartbeat_seconds=1)
        first = await stream.__anext__()
        await stream.aclose()

        assert _parse(first)["id"] == "req_0000"
        assert run.closed

    @pytest.mark.asyncio
    async def test_abandoned_pipeline_stream_flushes_sinks(self, memory_store):
        from execution.regulatory_truth.reasoning import ReasoningPipeline
        from execution.regulatory_truth.sinks import AuditLogSink
        from execution.regulatory_truth.sse import stream_reasoning_frames
        pipeline = ReasoningPipeline(memory_store, sink_factories={"audit": lambda: AuditLogSink(memory_store)})
        stream = stream_reasoning_frames(pipeline.start("req", QUERY), heartbeat_seconds=1)
        await stream.__anext__()
        await stream.__anext__()
        await stream.aclose()

        assert [e["seq"] for e in memory_store.reasoning_events] == [0, 1]
