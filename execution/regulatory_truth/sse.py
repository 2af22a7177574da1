"""
Server-Sent Events framing for reasoning runs.

Three frame types keep intermediate progress, the terminal payload and
keep-alives distinguishable on the wire:

    event: reasoning   one intermediate ReasoningEvent (id = event id)
    event: terminal    the final ANSWER or ERROR event (id = event id)
    event: heartbeat   sent while no event arrived for ``heartbeat_seconds``
"""

import json
import time
import asyncio
import logging

logger = logging.getLogger(__name__)

SSE_EVENT_REASONING = "reasoning"
SSE_EVENT_TERMINAL = "terminal"
SSE_EVENT_HEARTBEAT = "heartbeat"

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",  # Disable nginx buffering
}


def format_sse(event: str, data, event_id: str = None) -> str:
    """Format a Server-Sent Event."""
    lines = []
    if event_id is not None:
        lines.append(f"id: {event_id}")
    lines.append(f"event: {event}")
    lines.append(f"data: {json.dumps(data, ensure_ascii=False, default=str)}")
    return "\n".join(lines) + "\n\n"


def format_event_frame(event) -> str:
    return format_sse(SSE_EVENT_REASONING, event.to_dict(), event_id=event.id)


def format_terminal_frame(event) -> str:
    return format_sse(SSE_EVENT_TERMINAL, event.to_dict(), event_id=event.id)


def format_heartbeat_frame() -> str:
    return format_sse(SSE_EVENT_HEARTBEAT, {"ts": int(time.time() * 1000)})


async def stream_reasoning_frames(run, heartbeat_seconds: float = 15.0):
    """
    Convert a ReasoningRun into SSE frames.

    Heartbeats never consume the pending event, so a slow phase does not
    reorder or drop events. When the client disconnects the run is closed,
    which cancels remaining work and flushes its sinks.
    """
    pending = None
    try:
        while True:
            if pending is None:
                pending = asyncio.ensure_future(run.__anext__())
            done, _ = await asyncio.wait({pending}, timeout=heartbeat_seconds)
            if not done:
                yield format_heartbeat_frame()
                continue

            task, pending = pending, None
            try:
                event = task.result()
            except StopAsyncIteration:
                return
            if event.is_terminal:
                yield format_terminal_frame(event)
            else:
                yield format_event_frame(event)
    finally:
        if pending is not None:
            pending.cancel()
            try:
                await pending
            except (asyncio.CancelledError, StopAsyncIteration):
                pass
            except Exception as e:
                logger.warning(f"[{run.request_id}] run raised while closing stream: {e}")
        await run.aclose()
