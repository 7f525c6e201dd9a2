import asyncio
import logging
import threading
from typing import Callable, List, Optional

from ..models.detection_models import ProctorEvent

logger = logging.getLogger(__name__)


class EventAggregator:
    """Session-scoped event buffer shared by both analyzers and the flusher"""

    def __init__(self):
        self._lock = threading.Lock()
        self._events: List[ProctorEvent] = []

    def append(self, event: ProctorEvent):
        with self._lock:
            self._events.append(event)

    def drain(self) -> List[ProctorEvent]:
        """Atomically empty the buffer and return what it held"""
        with self._lock:
            events, self._events = self._events, []
        return events

    def __len__(self) -> int:
        with self._lock:
            return len(self._events)


class EventFlusher:
    """Periodically delivers drained batches to storage.

    Delivery is at-most-once: a batch that fails to append is logged,
    reported and dropped, not requeued.
    """

    def __init__(self, aggregator: EventAggregator, storage, session_id: str,
                 interval_seconds: float = 2.0, on_error: Optional[Callable[[str], None]] = None):
        self.aggregator = aggregator
        self.storage = storage
        self.session_id = session_id
        self.interval_seconds = interval_seconds
        self.on_error = on_error
        self.delivered = 0
        self.dropped = 0
        self._task: Optional[asyncio.Task] = None
        self._pending: Optional[asyncio.Future] = None

    def start(self):
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.create_task(self._run(), name=f"event-flusher-{self.session_id}")

    async def _run(self):
        while True:
            await asyncio.sleep(self.interval_seconds)
            # A drained batch must reach storage even if stop() cancels us mid-flush
            self._pending = asyncio.ensure_future(self.flush())
            await asyncio.shield(self._pending)

    async def flush(self) -> int:
        """Deliver whatever is buffered; returns the number of events delivered"""
        batch = self.aggregator.drain()
        if not batch:
            return 0

        try:
            await self.storage.append_events(self.session_id, batch)
        except Exception as e:
            self.dropped += len(batch)
            logger.error(f"Failed to append {len(batch)} events for session {self.session_id}: {e}")
            if self.on_error is not None:
                self.on_error(str(e) or "Failed to append events")
            return 0

        self.delivered += len(batch)
        logger.debug(f"Flushed {len(batch)} events for session {self.session_id}")
        return len(batch)

    async def stop(self) -> int:
        """Stop the periodic flush and force a final one"""
        task = self._task
        self._task = None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass

        pending, self._pending = self._pending, None
        if pending is not None:
            await pending
        return await self.flush()
