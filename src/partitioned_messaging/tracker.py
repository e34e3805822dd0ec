"""DeliveryTracker — owns outstanding deliveries and applies ack/reject/expiry."""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING

from . import metrics
from .clock import SystemClock
from .envelope import DeadLetterReason, DeliveryHandle
from .exceptions import (
    AlreadyInFlightError,
    DeliveryError,
    PartitionBusyError,
    UnknownHandleError,
)

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .clock import Clock
    from .dead_letter import DeadLetterSink
    from .envelope import DeadLetterEntry, Message
    from .partition_queue import PartitionQueue

logger = logging.getLogger("partitioned_messaging.tracker")

_HISTORY_LIMIT = 10_000


class MessageState(str, Enum):
    """Lifecycle of a message inside the pipeline.

    ``PENDING -> IN_FLIGHT -> ACKED`` or ``-> REJECTED/EXPIRED -> DEAD_LETTERED``.
    REJECTED and EXPIRED stay terminal only when dead-lettering is disabled.
    """

    PENDING = "pending"
    IN_FLIGHT = "in_flight"
    ACKED = "acked"
    REJECTED = "rejected"
    EXPIRED = "expired"
    DEAD_LETTERED = "dead_lettered"


_TERMINAL = frozenset(
    {MessageState.ACKED, MessageState.REJECTED, MessageState.EXPIRED, MessageState.DEAD_LETTERED}
)


@dataclass
class _Record:
    message: Message
    partition_index: int
    state: MessageState
    handle: DeliveryHandle | None = None


class DeliveryTracker:
    """Tracks pending and in-flight messages for every partition.

    Guarantees at most one outstanding handle per message and at most
    ``max_in_flight_per_partition`` outstanding handles per partition (1 keeps
    strict per-partition ordering). Dead-lettering happens exactly once per
    message because a handle is resolved under the tracker lock before the
    entry is written to the sink.
    """

    def __init__(
        self,
        sink: DeadLetterSink,
        queues: Sequence[PartitionQueue],
        *,
        clock: Clock | None = None,
        max_in_flight_per_partition: int = 1,
        dead_letter_enabled: bool = True,
    ) -> None:
        if max_in_flight_per_partition < 1:
            raise ValueError("max_in_flight_per_partition must be >= 1")
        self._sink = sink
        self._queues = list(queues)
        self._clock = clock or SystemClock()
        self._max_in_flight = max_in_flight_per_partition
        self._dead_letter_enabled = dead_letter_enabled
        self._records: dict[str, _Record] = {}
        self._handles: dict[str, DeliveryHandle] = {}
        self._in_flight: dict[int, set[str]] = {q.index: set() for q in self._queues}
        self._history: OrderedDict[str, MessageState] = OrderedDict()
        self._lock = asyncio.Lock()

    @property
    def clock(self) -> Clock:
        return self._clock

    # ── Queries ──────────────────────────────────────────────────────

    def state_of(self, message_id: str) -> MessageState | None:
        record = self._records.get(message_id)
        if record is not None:
            return record.state
        return self._history.get(message_id)

    def in_flight_count(self, partition_index: int) -> int:
        return len(self._in_flight.get(partition_index, ()))

    def outstanding(self) -> list[DeliveryHandle]:
        return list(self._handles.values())

    # ── Transitions ──────────────────────────────────────────────────

    async def track_pending(self, message: Message, partition_index: int) -> None:
        """Record *message* as pending in *partition_index* (called on enqueue)."""
        async with self._lock:
            self._records[message.message_id] = _Record(
                message, partition_index, MessageState.PENDING
            )

    async def untrack(self, message_id: str) -> None:
        """Forget a pending record whose enqueue failed."""
        async with self._lock:
            record = self._records.get(message_id)
            if record is not None and record.state is MessageState.PENDING:
                del self._records[message_id]

    async def deliver(
        self, message: Message, partition_index: int, consumer_id: str
    ) -> DeliveryHandle:
        """Mark *message* in flight and issue its DeliveryHandle.

        Raises:
            AlreadyInFlightError: the message already has an outstanding handle.
            PartitionBusyError: the partition's in-flight window is full.
            DeliveryError: the message already reached a terminal state.
        """
        async with self._lock:
            record = self._records.get(message.message_id)
            if record is not None and record.state is MessageState.IN_FLIGHT:
                raise AlreadyInFlightError(message.message_id)
            if record is None and message.message_id in self._history:
                raise DeliveryError(
                    f"Message {message.message_id!r} already resolved as "
                    f"{self._history[message.message_id].value}"
                )
            slots = self._in_flight.setdefault(partition_index, set())
            if len(slots) >= self._max_in_flight:
                raise PartitionBusyError(partition_index, self._max_in_flight)
            handle = DeliveryHandle(
                message_id=message.message_id,
                partition_index=partition_index,
                consumer_id=consumer_id,
            )
            self._records[message.message_id] = _Record(
                message, partition_index, MessageState.IN_FLIGHT, handle
            )
            self._handles[handle.delivery_tag] = handle
            slots.add(handle.delivery_tag)
            metrics.set_in_flight(partition_index, len(slots))
        logger.debug(
            "Delivered %s on partition %d to %s (tag=%s)",
            message.message_id,
            partition_index,
            consumer_id,
            handle.delivery_tag,
        )
        return handle

    async def ack(self, handle: DeliveryHandle) -> MessageState:
        """Resolve *handle* as processed.

        Returns ``ACKED``, or ``EXPIRED`` when the message passed its TTL before
        the ack arrived (it is dead-lettered instead).

        Raises:
            UnknownHandleError: the handle was already resolved or never issued.
        """
        now = self._clock.now()
        async with self._lock:
            record = self._release(handle)
            if record.message.is_expired(now):
                self._finish(record, self._dead_letter_state(MessageState.EXPIRED))
                expired = True
            else:
                self._finish(record, MessageState.ACKED)
                expired = False
        if expired:
            await self._dead_letter(record, DeadLetterReason.EXPIRED)
            return MessageState.EXPIRED
        metrics.record_acked(record.partition_index)
        logger.debug("Acked %s on partition %d", handle.message_id, handle.partition_index)
        return MessageState.ACKED

    async def reject(self, handle: DeliveryHandle, requeue: bool = False) -> MessageState:
        """Resolve *handle* as failed.

        ``requeue=False`` dead-letters the message with reason REJECTED and
        returns ``REJECTED``. ``requeue=True`` puts it back at the head of its
        partition queue and returns ``PENDING``.

        Raises:
            UnknownHandleError: the handle was already resolved or never issued.
        """
        async with self._lock:
            record = self._release(handle)
            if requeue:
                record.state = MessageState.PENDING
                record.handle = None
            else:
                self._finish(record, self._dead_letter_state(MessageState.REJECTED))
        if requeue:
            await self._queue(record.partition_index).requeue_front(record.message)
            logger.info(
                "Requeued %s at head of partition %d",
                record.message.message_id,
                record.partition_index,
            )
            return MessageState.PENDING
        await self._dead_letter(record, DeadLetterReason.REJECTED)
        return MessageState.REJECTED

    async def abandon(self, handle: DeliveryHandle) -> None:
        """Give up an outstanding delivery at shutdown; the message goes back to the head."""
        await self.reject(handle, requeue=True)

    async def expire_pending(self, message: Message, partition_index: int) -> None:
        """Expire a message taken off a queue before it was delivered."""
        async with self._lock:
            if message.message_id in self._history:
                return
            record = self._records.get(message.message_id) or _Record(
                message, partition_index, MessageState.PENDING
            )
            if record.state is not MessageState.PENDING:
                return
            self._records.pop(message.message_id, None)
            self._finish(record, self._dead_letter_state(MessageState.EXPIRED))
        await self._dead_letter(record, DeadLetterReason.EXPIRED)

    async def expire_due(self) -> list[DeadLetterEntry]:
        """Sweep in-flight deliveries and pending queue contents past their TTL."""
        now = self._clock.now()
        expired: list[_Record] = []
        async with self._lock:
            for handle in list(self._handles.values()):
                record = self._records[handle.message_id]
                if record.message.is_expired(now):
                    self._release(handle)
                    self._finish(record, self._dead_letter_state(MessageState.EXPIRED))
                    expired.append(record)
        for queue in self._queues:
            for message in await queue.remove_expired(now):
                async with self._lock:
                    record = self._records.pop(message.message_id, None) or _Record(
                        message, queue.index, MessageState.PENDING
                    )
                    self._finish(record, self._dead_letter_state(MessageState.EXPIRED))
                expired.append(record)

        entries: list[DeadLetterEntry] = []
        for record in expired:
            entry = await self._dead_letter(record, DeadLetterReason.EXPIRED)
            if entry is not None:
                entries.append(entry)
        if expired:
            logger.info("Expiry sweep moved %d message(s) past TTL", len(expired))
        return entries

    # ── Internals (lock held unless noted) ───────────────────────────

    def _queue(self, partition_index: int) -> PartitionQueue:
        for queue in self._queues:
            if queue.index == partition_index:
                return queue
        raise DeliveryError(f"No queue for partition {partition_index}")

    def _release(self, handle: DeliveryHandle) -> _Record:
        issued = self._handles.pop(handle.delivery_tag, None)
        if issued is None:
            raise UnknownHandleError(handle.delivery_tag)
        slots = self._in_flight.get(issued.partition_index, set())
        slots.discard(issued.delivery_tag)
        metrics.set_in_flight(issued.partition_index, len(slots))
        return self._records[issued.message_id]

    def _dead_letter_state(self, reason_state: MessageState) -> MessageState:
        return MessageState.DEAD_LETTERED if self._dead_letter_enabled else reason_state

    def _finish(self, record: _Record, state: MessageState) -> None:
        record.state = state
        record.handle = None
        message_id = record.message.message_id
        self._records.pop(message_id, None)
        if state in _TERMINAL:
            self._history[message_id] = state
            self._history.move_to_end(message_id)
            while len(self._history) > _HISTORY_LIMIT:
                self._history.popitem(last=False)

    async def _dead_letter(
        self, record: _Record, reason: DeadLetterReason
    ) -> DeadLetterEntry | None:
        """Write the dead-letter entry (lock not held)."""
        if not self._dead_letter_enabled:
            logger.warning(
                "Discarding %s from partition %d (%s, dead-lettering disabled)",
                record.message.message_id,
                record.partition_index,
                reason.value,
            )
            return None
        metrics.record_dead_lettered(record.partition_index, reason.value)
        return await self._sink.put(record.message, reason, record.partition_index)
