"""Server-sent event channel between a running turn and its HTTP response.

The orchestrator produces events with ``await writer.send(...)``; the
response body consumes them from ``writer.frames()``. The queue is bounded,
so a slow client slows the producer down instead of buffering a whole turn
in memory.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from typing import Any

logger = logging.getLogger(__name__)

TERMINAL_EVENTS = frozenset({"done", "error"})

_END = object()


def format_sse(event: str, payload: dict[str, Any]) -> str:
    data = json.dumps(payload, ensure_ascii=False, default=str)
    return f"event: {event}\ndata: {data}\n\n"


class TransportWriter:
    def __init__(self, max_queue: int = 256):
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max(int(max_queue), 1))
        self._closed = False
        self._client_gone = False
        self._terminal_sent = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def client_disconnected(self) -> bool:
        return self._client_gone

    async def send(self, event: str, payload: dict[str, Any] | None = None) -> bool:
        """Queue one framed event. Returns False (never raises) once closed."""
        if self._closed:
            return False
        if event in TERMINAL_EVENTS:
            if self._terminal_sent:
                return False
            self._terminal_sent = True
        frame = format_sse(event, payload or {})
        await self._queue.put(frame)
        # The client may have left while we waited for room.
        return not self._client_gone

    def close(self) -> None:
        """Stop accepting events; the consumer drains what is queued then ends."""
        if self._closed:
            return
        self._closed = True
        self._push_end()

    def mark_closed(self) -> None:
        """The receiving side went away. Drop queued frames and wake any blocked sender."""
        if self._client_gone:
            return
        self._client_gone = True
        self._closed = True
        logger.info("Stream client disconnected")
        drained = 0
        while True:
            try:
                self._queue.get_nowait()
            except asyncio.QueueEmpty:
                break
            drained += 1
        # A full queue means the sender may be blocked and a consumer is not;
        # draining is enough to wake it. Only an empty queue can have a
        # consumer waiting on get().
        if not drained:
            self._push_end()

    def _push_end(self) -> None:
        try:
            self._queue.put_nowait(_END)
        except asyncio.QueueFull:
            # The consumer is not blocked on an empty queue; it will see the
            # closed flag once it drains.
            pass

    async def frames(self) -> AsyncIterator[str]:
        completed = False
        try:
            while True:
                if self._closed and self._queue.empty():
                    completed = True
                    return
                item = await self._queue.get()
                if item is _END:
                    if self._queue.empty():
                        completed = True
                        return
                    continue
                yield item
        finally:
            if not completed:
                self.mark_closed()
