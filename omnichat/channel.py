"""
Bounded, non-blocking event channel.
"""

import asyncio
from typing import AsyncIterator, Optional

from loguru import logger

from .events import ChatEvent

_CLOSED = object()


class EventChannel:
    """
    Single-consumer queue of ``ChatEvent``.

    ``publish`` never awaits. When the queue is full the oldest queued event
    is dropped and counted in ``dropped``.
    """

    def __init__(self, maxsize: int = 10000, name: str = "events"):
        self.name = name
        self.dropped = 0
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ChatEvent) -> bool:
        if self._closed:
            return False
        while True:
            try:
                self._queue.put_nowait(event)
                return True
            except asyncio.QueueFull:
                try:
                    self._queue.get_nowait()
                except asyncio.QueueEmpty:
                    continue
                self.dropped += 1
                if self.dropped == 1 or self.dropped % 1000 == 0:
                    logger.warning(f"[EventChannel] {self.name}: consumer is behind, {self.dropped} events dropped")

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        try:
            self._queue.put_nowait(_CLOSED)
        except asyncio.QueueFull:
            self._queue.get_nowait()
            self.dropped += 1
            self._queue.put_nowait(_CLOSED)

    async def get(self) -> Optional[ChatEvent]:
        """Return the next event, or None once the channel is closed and drained."""
        item = await self._queue.get()
        if item is _CLOSED:
            # keep the sentinel for any further readers
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def get_nowait(self) -> Optional[ChatEvent]:
        item = self._queue.get_nowait()
        if item is _CLOSED:
            self._queue.put_nowait(_CLOSED)
            return None
        return item

    def qsize(self) -> int:
        return self._queue.qsize()

    def drain(self) -> list:
        """Return every event currently queued without waiting."""
        items = []
        while True:
            try:
                item = self.get_nowait()
            except asyncio.QueueEmpty:
                break
            if item is None:
                break
            items.append(item)
        return items

    async def __aiter__(self) -> AsyncIterator[ChatEvent]:
        while True:
            event = await self.get()
            if event is None:
                return
            yield event
