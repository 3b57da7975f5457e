"""Bounded single-producer, single-consumer event channel with explicit close."""

from __future__ import annotations

import asyncio
from collections import deque
from typing import Generic, TypeVar

T = TypeVar("T")


class EventChannel(Generic[T]):
    """Buffer of at most ``maxsize`` items between one producer and one consumer.

    ``send`` waits for room, so a slow consumer applies backpressure.
    ``try_send`` and ``offer`` never wait on the consumer and report whether
    the item was queued. ``close`` ends iteration once the buffer drains;
    ``abandon`` (the consumer went away) discards the buffer and turns every
    later send into a no-op so the producer can always reach its close path.
    """

    def __init__(self, maxsize: int = 1):
        self._maxsize = max(1, maxsize)
        self._items: deque[T] = deque()
        self._closed = False
        self._abandoned = False
        self._ready = asyncio.Event()
        self._space = asyncio.Event()
        self._space.set()

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def abandoned(self) -> bool:
        return self._abandoned

    def _put(self, item: T) -> None:
        self._items.append(item)
        self._ready.set()
        if len(self._items) >= self._maxsize:
            self._space.clear()

    async def send(self, item: T) -> bool:
        while not (self._closed or self._abandoned) and len(self._items) >= self._maxsize:
            self._space.clear()
            await self._space.wait()
        if self._closed or self._abandoned:
            return False
        self._put(item)
        return True

    def try_send(self, item: T) -> bool:
        if self._closed or self._abandoned or len(self._items) >= self._maxsize:
            return False
        self._put(item)
        return True

    async def offer(self, item: T) -> bool:
        """Best-effort send: yields once to a reading consumer, then gives up."""
        if self.try_send(item):
            return True
        await asyncio.sleep(0)
        return self.try_send(item)

    def close(self) -> None:
        self._closed = True
        self._ready.set()

    def abandon(self) -> None:
        self._abandoned = True
        self._items.clear()
        self._space.set()
        self._ready.set()

    async def receive(self) -> T:
        """Next item, or ``StopAsyncIteration`` once closed and drained."""
        while True:
            if self._items:
                item = self._items.popleft()
                self._space.set()
                return item
            if self._closed or self._abandoned:
                raise StopAsyncIteration
            self._ready.clear()
            await self._ready.wait()

    def __aiter__(self) -> EventChannel[T]:
        return self

    async def __anext__(self) -> T:
        return await self.receive()
