"""DeadLetterSink — ordered queue of rejected or expired messages.

Entries are handed out at-least-once: :meth:`DeadLetterSink.receive` moves the
head entry to an outstanding table and it only leaves the sink on
:meth:`DeadLetterSink.ack`. :meth:`DeadLetterSink.nack` puts it back at the
head so the next ``receive`` retries it.
"""

from __future__ import annotations

import asyncio
import logging
from collections import deque
from typing import TYPE_CHECKING, Any

from .clock import SystemClock
from .envelope import DeadLetterEntry, DeadLetterReason
from .exceptions import QueueClosedError, UnknownHandleError

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine

    from .clock import Clock
    from .envelope import Message

logger = logging.getLogger("partitioned_messaging.dead_letter")


class DeadLetterSink:
    """Single logical partition of dead-lettered messages."""

    def __init__(
        self,
        name: str = "dlq",
        *,
        clock: Clock | None = None,
        on_dead_letter: (
            Callable[[DeadLetterEntry], Coroutine[Any, Any, None]] | None
        ) = None,
    ) -> None:
        """Configure the sink.

        Args:
            name: Label used in logs (queue name on a real broker).
            clock: Source of ``enqueued_at`` timestamps.
            on_dead_letter: Optional async callback awaited for every new entry,
                e.g. for alerting. Its failures are logged, the entry is kept.
        """
        self.name = name
        self._clock = clock or SystemClock()
        self._on_dead_letter = on_dead_letter
        self._pending: deque[DeadLetterEntry] = deque()
        self._outstanding: dict[str, DeadLetterEntry] = {}
        self._cond = asyncio.Condition()
        self._closed = False

    @property
    def size(self) -> int:
        """Entries still in the sink (pending plus handed out but not acked)."""
        return len(self._pending) + len(self._outstanding)

    @property
    def outstanding(self) -> int:
        return len(self._outstanding)

    def entries(self) -> list[DeadLetterEntry]:
        """Pending entries in hand-out order (copy)."""
        return list(self._pending)

    def all_entries(self) -> list[DeadLetterEntry]:
        return list(self._outstanding.values()) + list(self._pending)

    async def put(
        self,
        message: Message,
        reason: DeadLetterReason,
        partition_index: int | None = None,
    ) -> DeadLetterEntry:
        """Dead-letter *message* and return the created entry."""
        entry = DeadLetterEntry(
            original_message=message,
            reason=reason,
            enqueued_at=self._clock.now(),
            partition_index=partition_index,
        )
        await self.put_entry(entry)
        return entry

    async def put_entry(self, entry: DeadLetterEntry) -> None:
        async with self._cond:
            self._pending.append(entry)
            self._cond.notify()
        logger.warning(
            "[%s] Dead-lettered %s (key=%r, reason=%s, attempt=%d)",
            self.name,
            entry.message_id,
            entry.partition_key,
            entry.reason.value,
            entry.original_message.attempt_count,
        )
        if self._on_dead_letter is not None:
            try:
                await self._on_dead_letter(entry)
            except Exception:
                logger.exception("[%s] on_dead_letter callback failed", self.name)

    def _ready(self) -> bool:
        return bool(self._pending) or self._closed

    async def receive(self, timeout: float | None = None) -> DeadLetterEntry:
        """Hand out the head entry; it stays in the sink until acked.

        Raises:
            asyncio.TimeoutError: nothing arrived within *timeout* seconds.
            QueueClosedError: the sink is closed and has no pending entries.
        """
        async with self._cond:
            if timeout is None:
                await self._cond.wait_for(self._ready)
            else:
                await asyncio.wait_for(self._cond.wait_for(self._ready), timeout)
            if not self._pending:
                raise QueueClosedError(f"Dead-letter sink {self.name} is closed")
            entry = self._pending.popleft()
            self._outstanding[entry.entry_id] = entry
            return entry

    async def ack(self, entry_id: str) -> DeadLetterEntry:
        """Remove a handed-out entry from the sink for good."""
        async with self._cond:
            entry = self._outstanding.pop(entry_id, None)
        if entry is None:
            raise UnknownHandleError(entry_id)
        return entry

    async def nack(self, entry_id: str) -> DeadLetterEntry:
        """Return a handed-out entry to the head of the sink for redelivery."""
        async with self._cond:
            entry = self._outstanding.pop(entry_id, None)
            if entry is None:
                raise UnknownHandleError(entry_id)
            self._pending.appendleft(entry)
            self._cond.notify()
        return entry

    async def close(self) -> None:
        async with self._cond:
            self._closed = True
            self._cond.notify_all()
