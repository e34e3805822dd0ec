"""Ordered FIFO of pending messages for one partition."""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING

from .exceptions import QueueClosedError, QueueFullError

if TYPE_CHECKING:
    from datetime import datetime

    from .envelope import Message

logger = logging.getLogger("partitioned_messaging.queue")


class PartitionQueue:
    """FIFO of pending messages, safe for many producers and one consumer.

    Every mutation happens under one ``asyncio.Condition`` so enqueue order is
    exactly the order the consumer observes. ``dequeue`` suspends while the
    queue is empty.
    """

    def __init__(self, index: int, capacity: int | None = None) -> None:
        if capacity is not None and capacity <= 0:
            raise ValueError("capacity must be > 0")
        self.index = index
        self._capacity = capacity
        self._items: deque[Message] = deque()
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def capacity(self) -> int | None:
        return self._capacity

    @property
    def size(self) -> int:
        return len(self._items)

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._items)

    async def enqueue(self, message: Message) -> None:
        """Append *message* at the tail.

        Raises:
            QueueClosedError: the queue was closed for shutdown.
            QueueFullError: the queue is bounded and at capacity.
        """
        async with self._cond:
            if self._closed:
                raise QueueClosedError(f"Partition queue {self.index} is closed")
            if self._capacity is not None and len(self._items) >= self._capacity:
                raise QueueFullError(
                    f"Partition queue {self.index} is full ({self._capacity})"
                )
            self._items.append(message)
            self._cond.notify()
        logger.debug(
            "Enqueued %s on partition %d (size=%d)",
            message.message_id,
            self.index,
            len(self._items),
        )

    async def requeue_front(self, message: Message) -> None:
        """Put *message* back at the head for immediate redelivery (ignores capacity)."""
        async with self._cond:
            self._items.appendleft(message)
            self._cond.notify()

    def _ready(self) -> bool:
        return bool(self._items) or self._closed

    async def dequeue(self, timeout: float | None = None) -> Message:
        """Remove and return the head message, waiting while the queue is empty.

        Raises:
            asyncio.TimeoutError: nothing arrived within *timeout* seconds.
            QueueClosedError: the queue is closed and drained.
        """
        async with self._cond:
            if timeout is None:
                await self._cond.wait_for(self._ready)
            else:
                await asyncio.wait_for(self._cond.wait_for(self._ready), timeout)
            if self._items:
                return self._items.popleft()
            raise QueueClosedError(f"Partition queue {self.index} is closed")

    async def remove_expired(self, now: datetime) -> list[Message]:
        """Drop and return every pending message past its TTL, keeping order of the rest."""
        async with self._cond:
            expired = [m for m in self._items if m.is_expired(now)]
            if expired:
                self._items = deque(m for m in self._items if not m.is_expired(now))
        return expired

    async def close(self) -> None:
        """Refuse further enqueues and wake a waiting consumer."""
        async with self._cond:
            self._closed = True
            self._cond.notify_all()

    def snapshot(self) -> list[Message]:
        """Pending messages in delivery order (copy)."""
        return list(self._items)
