"""
Reasoning Event Delivery

Fans a reasoning run's events out to every registered sink. Each sink
declares a delivery mode:

- nonBlocking: writes are scheduled and the pipeline continues immediately;
  failures are logged and dropped
- criticalAwait: for events with severity "critical" the pipeline awaits
  the write; a failure surfaces as CriticalDeliveryError

Writes to one sink are applied in emission order. flush() runs once per run,
after the terminal event, and drains every sink.
"""

import asyncio
import logging
from enum import Enum
from typing import Callable, Optional

logger = logging.getLogger(__name__)

SEVERITY_CRITICAL = "critical"


class SinkMode(str, Enum):
    NON_BLOCKING = "nonBlocking"
    CRITICAL_AWAIT = "criticalAwait"


class CriticalDeliveryError(Exception):
    """A criticalAwait sink failed to record a critical event."""

    def __init__(self, sink_name: str, event_id: str, cause: Exception):
        self.sink_name = sink_name
        self.event_id = event_id
        self.cause = cause
        super().__init__(f"Sink {sink_name} failed to record critical event {event_id}: {cause}")


class EventSink:
    """Base class for event consumers."""
    name = "sink"
    mode = SinkMode.NON_BLOCKING

    async def write(self, event) -> None:
        raise NotImplementedError

    async def flush(self) -> None:
        """Drain anything buffered. Called once per run."""
        return None


# =============================================================================
# Provided Sinks
# =============================================================================

class LoggingSink(EventSink):
    """Writes a one-line summary of each event to the application log."""
    name = "log"

    def __init__(self, level: int = logging.INFO):
        self._level = level

    async def write(self, event) -> None:
        message = f" - {event.message}" if event.message else ""
        logger.log(
            self._level,
            f"[{event.request_id}] #{event.seq} {event.stage}/{event.status}{message}",
        )


class QueueSink(EventSink):
    """Live transport: hands events to a listener through an asyncio.Queue."""
    name = "live"

    _CLOSED = object()

    def __init__(self, maxsize: int = 0):
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)

    async def write(self, event) -> None:
        self.queue.put_nowait(event)

    async def flush(self) -> None:
        self.queue.put_nowait(self._CLOSED)

    async def listen(self):
        """Yield events until the run flushes."""
        while True:
            item = await self.queue.get()
            if item is self._CLOSED:
                return
            yield item


class AuditLogSink(EventSink):
    """
    Compliance trail. Buffers events and writes them to the store in a
    worker thread; a critical event forces the buffer to disk before the
    pipeline continues.
    """
    name = "audit"
    mode = SinkMode.CRITICAL_AWAIT

    def __init__(self, store):
        self._store = store
        self._buffer: list[dict] = []

    async def write(self, event) -> None:
        self._buffer.append(event.to_dict())
        if event.severity == SEVERITY_CRITICAL:
            await self._drain()

    async def flush(self) -> None:
        await self._drain()

    async def _drain(self) -> None:
        if not self._buffer:
            return
        batch = list(self._buffer)
        await asyncio.to_thread(self._store.log_reasoning_events, batch)
        del self._buffer[:len(batch)]


# =============================================================================
# Registry and Fan-out
# =============================================================================

class SinkRegistry:
    """Ordered mapping of sink name to sink."""

    def __init__(self, sinks: Optional[list[EventSink]] = None):
        self._sinks: dict[str, EventSink] = {}
        for sink in sinks or []:
            self.register(sink)

    def register(self, sink: EventSink) -> EventSink:
        if sink.name in self._sinks:
            raise ValueError(f"Sink {sink.name!r} already registered")
        self._sinks[sink.name] = sink
        return sink

    def get_or_create(self, name: str, factory: Callable[[], EventSink]) -> EventSink:
        sink = self._sinks.get(name)
        if sink is None:
            sink = factory()
            sink.name = name
            self._sinks[name] = sink
        return sink

    def get(self, name: str) -> Optional[EventSink]:
        return self._sinks.get(name)

    def names(self) -> list[str]:
        return list(self._sinks)

    def __iter__(self):
        return iter(list(self._sinks.values()))

    def __len__(self) -> int:
        return len(self._sinks)


class SinkFanout:
    """
    Delivers one run's events to every sink in the registry.

    Usage:
        fanout = SinkFanout(registry)
        await fanout.emit(event)      # may raise CriticalDeliveryError
        ...
        await fanout.flush()          # once, after the terminal event
    """

    def __init__(self, sinks):
        self._sinks = list(sinks)
        self._last: dict[int, asyncio.Task] = {}
        self._pending: set[asyncio.Task] = set()
        self._flushed = False

    @property
    def flushed(self) -> bool:
        return self._flushed

    async def emit(self, event) -> None:
        """
        Write an event to every sink.

        Raises:
            CriticalDeliveryError: a criticalAwait sink failed on a critical event
        """
        critical = event.severity == SEVERITY_CRITICAL
        failure: Optional[CriticalDeliveryError] = None

        for sink in self._sinks:
            awaited = critical and sink.mode == SinkMode.CRITICAL_AWAIT
            task = self._schedule(sink, event, propagate=awaited)
            if not awaited:
                continue
            try:
                await task
            except Exception as e:
                logger.error(f"Critical sink {sink.name} failed on event {event.id}: {e}")
                if failure is None:
                    failure = CriticalDeliveryError(sink.name, event.id, e)

        if failure is not None:
            raise failure

    def _schedule(self, sink: EventSink, event, propagate: bool) -> asyncio.Task:
        previous = self._last.get(id(sink))
        task = asyncio.create_task(self._deliver(sink, event, previous, propagate))
        self._last[id(sink)] = task
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @staticmethod
    async def _deliver(sink: EventSink, event, previous: Optional[asyncio.Task], propagate: bool) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait({previous})
        try:
            await sink.write(event)
        except Exception as e:
            if propagate:
                raise
            logger.warning(f"Sink {sink.name} dropped event {event.id}: {e}")

    async def flush(self) -> list[str]:
        """Await pending writes, then flush every sink once. Returns failed sink names."""
        if self._flushed:
            return []
        self._flushed = True
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

        failed = []
        for sink in self._sinks:
            try:
                await sink.flush()
            except Exception as e:
                failed.append(sink.name)
                if sink.mode == SinkMode.CRITICAL_AWAIT:
                    logger.error(f"Critical sink {sink.name} failed to flush: {e}")
                else:
                    logger.warning(f"Sink {sink.name} failed to flush: {e}")
        return failed
