"""DeliveryEngine — wires assigner, partition queues, tracker, sink and workers."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from . import metrics
from .assigner import PartitionAssigner
from .clock import SystemClock
from .consumer import PartitionConsumer
from .dead_letter import DeadLetterSink
from .envelope import Message
from .exceptions import PartitionedMessagingError
from .partition_queue import PartitionQueue
from .reprocessor import Reprocessor
from .tracker import DeliveryTracker
from .watchdog import ExpiryWatchdog, default_interval

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Mapping
    from types import TracebackType

    from .clock import Clock
    from .consumer import MessageHandler
    from .envelope import DeadLetterEntry
    from .ports.background_worker import IBackgroundWorker
    from .retry import RetryPolicy
    from .topology import TopologyConfig

logger = logging.getLogger("partitioned_messaging.engine")


@dataclass(frozen=True)
class EngineHealth:
    """Point-in-time view of the pipeline."""

    running: bool
    queue_sizes: dict[int, int] = field(default_factory=dict)
    in_flight: dict[int, int] = field(default_factory=dict)
    dead_letter_size: int = 0
    parked: int = 0
    acked: int = 0
    rejected: int = 0
    expired: int = 0
    reprocessed: int = 0

    @property
    def idle(self) -> bool:
        return (
            not any(self.queue_sizes.values())
            and not any(self.in_flight.values())
            and self.dead_letter_size == 0
        )


class DeliveryEngine:
    """In-process partitioned delivery pipeline.

    ``publish`` routes a message by its partition key to one of the partition
    queues; one :class:`PartitionConsumer` per partition hands messages to
    *handler* in order; rejected or expired messages land in the dead-letter
    sink, from where the :class:`Reprocessor` resubmits them (when
    ``config.reprocess_enabled``).

    Usage::

        async with DeliveryEngine(config, handler) as engine:
            await engine.publish("user-1", b"hello")
    """

    def __init__(
        self,
        config: TopologyConfig,
        handler: MessageHandler,
        *,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        watchdog_interval: float | None = None,
        on_dead_letter: (
            Callable[[DeadLetterEntry], Coroutine[Any, Any, None]] | None
        ) = None,
    ) -> None:
        self.config = config
        self.clock = clock or SystemClock()
        self.assigner = PartitionAssigner(config.partitions)
        self.queues = [
            PartitionQueue(p.index, capacity=config.queue_capacity)
            for p in config.partitions
        ]
        self.sink = DeadLetterSink(
            config.dead_letter_queue, clock=self.clock, on_dead_letter=on_dead_letter
        )
        self.parking_sink: DeadLetterSink | None = None
        if config.max_reprocess_attempts is not None:
            self.parking_sink = DeadLetterSink(config.parking_queue, clock=self.clock)
        self.tracker = DeliveryTracker(
            self.sink,
            self.queues,
            clock=self.clock,
            max_in_flight_per_partition=config.max_in_flight_per_partition,
            dead_letter_enabled=config.dead_letter_enabled,
        )
        self.consumers = [
            PartitionConsumer(
                queue,
                self.tracker,
                handler,
                clock=self.clock,
                max_in_flight=config.max_in_flight_per_partition,
            )
            for queue in self.queues
        ]
        self.reprocessor: Reprocessor | None = None
        if config.reprocess_enabled:
            self.reprocessor = Reprocessor(
                self.sink,
                self.assigner,
                self.submit,
                clock=self.clock,
                retry_policy=retry_policy,
                max_attempts=config.max_reprocess_attempts,
                parking_sink=self.parking_sink,
            )
        self.watchdog = ExpiryWatchdog(
            self.tracker, watchdog_interval or default_interval(config.message_ttl)
        )
        self._producers: list[IBackgroundWorker] = []
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    def add_producer(self, producer: IBackgroundWorker) -> None:
        """Register a producer so :meth:`shutdown` stops it first."""
        self._producers.append(producer)

    async def publish(
        self,
        partition_key: str,
        payload: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> Message:
        """Create a message, assign its partition and enqueue it.

        Raises:
            QueueFullError / QueueClosedError: the target partition refused it.
        """
        message = Message(
            partition_key=partition_key,
            payload=payload,
            created_at=self.clock.now(),
            ttl=self.config.message_ttl,
            headers=dict(headers or {}),
        )
        index = self.assigner.assign(partition_key)
        await self.submit(message, index)
        logger.info(
            "[Producer] Sent with routing-key '%s' to partition %d: %s",
            partition_key,
            index,
            message.text(),
        )
        return message

    async def submit(self, message: Message, partition_index: int) -> None:
        """Enqueue an already-built message onto *partition_index*."""
        queue = self.queues[partition_index]
        await self.tracker.track_pending(message, partition_index)
        try:
            await queue.enqueue(message)
        except PartitionedMessagingError:
            await self.tracker.untrack(message.message_id)
            raise
        metrics.record_published(partition_index)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        for consumer in self.consumers:
            await consumer.start()
        if self.reprocessor is not None:
            await self.reprocessor.start()
        ttl = self.config.message_ttl
        if ttl is not None:
            await self.watchdog.start()
        logger.info(
            "DeliveryEngine started (%d partition(s), weights=%s, ttl=%s)",
            len(self.queues),
            list(self.config.weights),
            f"{ttl.total_seconds()}s" if ttl is not None else "none",
        )

    async def shutdown(self, grace_period: float = 5.0) -> None:
        """Stop producers, drain in-flight work for *grace_period*, stop the rest."""
        if not self._running:
            return
        self._running = False
        for producer in self._producers:
            await producer.stop()
        await asyncio.gather(
            *(consumer.stop(grace_period) for consumer in self.consumers)
        )
        if self.reprocessor is not None:
            await self.reprocessor.stop()
        await self.watchdog.stop()
        for queue in self.queues:
            await queue.close()
        await self.sink.close()
        if self.parking_sink is not None:
            await self.parking_sink.close()
        logger.info("DeliveryEngine stopped")

    async def wait_idle(self, timeout: float = 10.0, poll: float = 0.01) -> None:
        """Wait until queues, in-flight deliveries and the dead-letter sink are empty.

        Raises:
            asyncio.TimeoutError: still busy after *timeout* seconds.
        """

        async def _poll() -> None:
            while not self.health().idle:
                await asyncio.sleep(poll)

        await asyncio.wait_for(_poll(), timeout)

    def health(self) -> EngineHealth:
        return EngineHealth(
            running=self._running,
            queue_sizes={q.index: q.size for q in self.queues},
            in_flight={c.partition_index: c.in_flight for c in self.consumers},
            dead_letter_size=self.sink.size,
            parked=self.parking_sink.size if self.parking_sink is not None else 0,
            acked=sum(c.acked for c in self.consumers),
            rejected=sum(c.rejected for c in self.consumers),
            expired=sum(c.expired for c in self.consumers),
            reprocessed=self.reprocessor.requeued if self.reprocessor is not None else 0,
        )

    async def __aenter__(self) -> DeliveryEngine:
        await self.start()
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        await self.shutdown()
