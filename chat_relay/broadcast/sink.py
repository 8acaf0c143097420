"""
Subscriber sink, one per connected SSE client.

The fan-out side pushes pre-rendered frames in with deliver(); the HTTP handler
drains the queue. close() wakes the reader with a None sentinel.
"""
from __future__ import annotations

import asyncio
import itertools

from chat_relay.config import SINK_QUEUE_MAXSIZE

_ids = itertools.count(1)


class SinkWriteError(Exception):
    pass


class SinkClosedError(SinkWriteError):
    pass


class SinkFullError(SinkWriteError):
    pass


class SubscriberSink:
    def __init__(self, maxsize: int = SINK_QUEUE_MAXSIZE) -> None:
        self.id = next(_ids)
        self.alive = True
        # one extra slot so close() can always enqueue its sentinel
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=maxsize + 1)
        self._maxsize = maxsize

    def deliver(self, frame: str) -> None:
        if not self.alive:
            raise SinkClosedError(f"sink {self.id} is closed")
        if self._queue.qsize() >= self._maxsize:
            raise SinkFullError(f"sink {self.id} queue full ({self._maxsize})")
        self._queue.put_nowait(frame)

    async def next_frame(self, timeout: float | None = None) -> str | None:
        """Next queued frame, or None once closed. Raises asyncio.TimeoutError on timeout."""
        if timeout is None:
            return await self._queue.get()
        return await asyncio.wait_for(self._queue.get(), timeout=timeout)

    def close(self) -> None:
        if not self.alive:
            return
        self.alive = False
        self._queue.put_nowait(None)

    def __repr__(self) -> str:
        return f"<SubscriberSink {self.id} alive={self.alive}>"
