"""Broker-backed pipeline: topology declaration and the BrokerRelay worker.

The relay runs the same consume / ack / reject / reprocess cycle as
:class:`~partitioned_messaging.engine.DeliveryEngine`, but the queues live on a
:class:`~partitioned_messaging.ports.Transport` (RabbitMQ or the in-memory
double) and the broker does the routing, dead-lettering and TTL expiry.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import TYPE_CHECKING

from . import metrics
from .clock import SystemClock
from .consumer import ProcessingResult, normalize_result
from .envelope import DeadLetterReason, Message
from .exceptions import SerializationError, TransportError, UnknownHandleError
from .ports.transport import DEATH_REASON, DeadLetterTarget, ExchangeKind
from .reprocessor import ReprocessOutcome
from .retry import RetryPolicy
from .serialization import MessageSerializer

if TYPE_CHECKING:
    from collections.abc import Callable, Mapping

    from .clock import Clock
    from .consumer import MessageHandler
    from .ports.transport import DeliveryCallback, Transport
    from .topology import TopologyConfig

logger = logging.getLogger("partitioned_messaging.relay")


async def declare_topology(transport: Transport, config: TopologyConfig) -> None:
    """Declare exchanges, partition queues and dead-letter plumbing for *config*.

    Partition queue *i* is bound to the consistent-hash exchange with its
    weight as the routing key. With dead-lettering enabled every partition
    queue carries the dead-letter exchange/routing key and the message TTL.
    """
    logger.info("Setting up partitioned topology (%d queues)...", config.partition_count)
    dead_letter_target: DeadLetterTarget | None = None
    ttl = None
    if config.dead_letter_enabled:
        await transport.declare_exchange(config.dead_letter_exchange, ExchangeKind.DIRECT)
        await transport.declare_queue(config.dead_letter_queue)
        await transport.bind(
            config.dead_letter_queue,
            config.dead_letter_exchange,
            config.dead_letter_routing_key,
        )
        if config.max_reprocess_attempts is not None:
            await transport.declare_queue(config.parking_queue)
            await transport.bind(
                config.parking_queue, config.dead_letter_exchange, config.parking_queue
            )
        dead_letter_target = DeadLetterTarget(
            config.dead_letter_exchange, config.dead_letter_routing_key
        )
        ttl = config.message_ttl

    await transport.declare_exchange(config.exchange_name, ExchangeKind.CONSISTENT_HASH)
    for partition in config.partitions:
        name = config.queue_name(partition.index)
        await transport.declare_queue(name, dead_letter_target=dead_letter_target, ttl=ttl)
        await transport.bind(name, config.exchange_name, str(partition.weight))
    logger.info(
        "Topology setup complete with %d queues%s",
        config.partition_count,
        " and DLQ configured" if config.dead_letter_enabled else "",
    )


class BrokerRelay:
    """Consumes partition queues and the DLQ of a Transport.

    One subscription per partition queue delivers to *handler*; the DLQ
    subscription (when ``config.reprocess_enabled``) republishes each dead
    letter to the consistent-hash exchange with its original partition key and
    ``attempt_count + 1``. A failed republish rejects the dead letter with
    requeue so it stays in the DLQ, then backs off.
    """

    def __init__(
        self,
        transport: Transport,
        config: TopologyConfig,
        handler: MessageHandler,
        *,
        serializer: MessageSerializer | None = None,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self._transport = transport
        self._config = config
        self._handler = handler
        self._serializer = serializer or MessageSerializer()
        self._clock = clock or SystemClock()
        self._retry_policy = retry_policy or RetryPolicy()
        self._running = False
        self._dlq_failures = 0
        self._failed = asyncio.Event()
        self.error: TransportError | None = None
        self.acked = 0
        self.rejected = 0
        self.expired = 0
        self.reprocessed = 0
        self.parked = 0

    @property
    def running(self) -> bool:
        return self._running

    async def start(self) -> None:
        if self._running:
            return
        await declare_topology(self._transport, self._config)
        for partition in self._config.partitions:
            logger.info(
                "Starting consumer for queue %d (%s)...",
                partition.index,
                self._config.queue_name(partition.index),
            )
            await self._transport.subscribe(
                self._config.queue_name(partition.index),
                self._partition_callback(partition.index),
            )
        if self._config.reprocess_enabled:
            logger.info(
                "Starting DLQ consumer for reprocessing (%s)...",
                self._config.dead_letter_queue,
            )
            await self._transport.subscribe(
                self._config.dead_letter_queue, self._guard(self._on_dead_letter)
            )
        self._running = True

    async def stop(self) -> None:
        """Close the transport; unacked deliveries are redelivered by the broker."""
        if not self._running:
            return
        self._running = False
        await self._transport.close()
        logger.info("BrokerRelay stopped")

    async def publish(
        self,
        partition_key: str,
        payload: bytes,
        headers: Mapping[str, str] | None = None,
    ) -> Message:
        message = Message(
            partition_key=partition_key,
            payload=payload,
            created_at=self._clock.now(),
            ttl=self._config.message_ttl,
            headers=dict(headers or {}),
        )
        await self._send(message)
        logger.info(
            "[Producer] Published with routing-key '%s': %s",
            partition_key,
            message.text(),
        )
        return message

    async def _send(self, message: Message) -> None:
        await self._transport.publish(
            self._config.exchange_name,
            message.partition_key,
            self._serializer.serialize(message),
            {
                "content-type": self._serializer.content_type,
                "message-id": message.message_id,
            },
        )

    # ── Partition consumers ──────────────────────────────────────────

    def _partition_callback(self, index: int) -> DeliveryCallback:
        async def on_message(tag: str, body: bytes, attributes: Mapping[str, str]) -> None:  # noqa: ARG001
            await self._handle_delivery(index, tag, body)

        return self._guard(on_message)

    def _guard(self, callback: DeliveryCallback) -> DeliveryCallback:
        """Record the first broker failure raised inside a consumer callback."""

        async def guarded(tag: str, body: bytes, attributes: Mapping[str, str]) -> None:
            try:
                await callback(tag, body, attributes)
            except TransportError as e:
                if self.error is None:
                    self.error = e
                    self._failed.set()
                raise

        return guarded

    async def wait_failed(self) -> None:
        """Block until a consumer callback hits a broker failure, then raise it.

        Raises:
            TransportError: the first failure seen by any subscription.
        """
        await self._failed.wait()
        if self.error is not None:
            raise self.error

    async def _handle_delivery(self, index: int, tag: str, body: bytes) -> None:
        try:
            message = self._serializer.deserialize(body)
        except SerializationError as e:
            logger.warning("[Queue %d] Undecodable message, dead-lettering: %s", index, e)
            await self._settle(tag, ProcessingResult.REJECT)
            return

        if message.is_expired(self._clock.now()):
            self.expired += 1
            logger.warning("[Queue %d] %s expired before delivery", index, message.message_id)
            await self._dead_letter_expired(tag, body, index)
            return

        logger.info(
            "[Queue %d] Received message with routing-key '%s': %s",
            index,
            message.partition_key,
            message.text(),
        )
        started = time.monotonic()
        try:
            result = normalize_result(await self._handler(message))
        except Exception:
            logger.exception(
                "[Queue %d] Processing callback failed for %s", index, message.message_id
            )
            result = ProcessingResult.REJECT
        metrics.observe_processing(index, result.value, time.monotonic() - started)

        if result is ProcessingResult.ACK:
            if message.is_expired(self._clock.now()):
                self.expired += 1
                await self._dead_letter_expired(tag, body, index)
                return
            await self._settle(tag, result)
            self.acked += 1
            metrics.record_acked(index)
            logger.info("[Queue %d] Processed and acknowledged: %s", index, message.text())
        elif result is ProcessingResult.REQUEUE:
            await self._settle(tag, result)
        else:
            self.rejected += 1
            if self._config.dead_letter_enabled:
                metrics.record_dead_lettered(index, DeadLetterReason.REJECTED.value)
            logger.warning(
                "[Queue %d] Rejecting message (will go to DLQ): %s", index, message.text()
            )
            await self._settle(tag, result)

    async def _settle(self, tag: str, result: ProcessingResult) -> None:
        try:
            if result is ProcessingResult.ACK:
                await self._transport.ack(tag)
            else:
                await self._transport.reject(tag, requeue=result is ProcessingResult.REQUEUE)
        except UnknownHandleError as e:
            logger.warning("Delivery already resolved: %s", e)

    async def _dead_letter_expired(self, tag: str, body: bytes, index: int) -> None:
        """Route an expired delivery to the DLX with reason ``expired``, then ack it."""
        if self._config.dead_letter_enabled:
            await self._transport.publish(
                self._config.dead_letter_exchange,
                self._config.dead_letter_routing_key,
                body,
                {DEATH_REASON: DeadLetterReason.EXPIRED.value},
            )
            metrics.record_dead_lettered(index, DeadLetterReason.EXPIRED.value)
        await self._settle(tag, ProcessingResult.ACK)

    # ── DLQ consumer ─────────────────────────────────────────────────

    async def _on_dead_letter(self, tag: str, body: bytes, attributes: Mapping[str, str]) -> None:
        outcome = await self.reprocess(tag, body, attributes)
        if outcome is ReprocessOutcome.RETRY:
            self._dlq_failures += 1
            await self._retry_policy.wait_before_retry(self._dlq_failures)
        else:
            self._dlq_failures = 0

    async def reprocess(
        self, tag: str, body: bytes, attributes: Mapping[str, str]
    ) -> ReprocessOutcome:
        try:
            original = self._serializer.deserialize(body)
        except SerializationError as e:
            logger.error("[DLQ Consumer] Undecodable dead letter dropped: %s", e)
            await self._settle(tag, ProcessingResult.ACK)
            metrics.record_reprocessed(ReprocessOutcome.DROPPED.value)
            return ReprocessOutcome.DROPPED

        reason = attributes.get(DEATH_REASON, DeadLetterReason.REJECTED.value)
        logger.info(
            "[DLQ Consumer] Received dead letter message: %s (reason=%s)",
            original.text(),
            reason,
        )
        limit = self._config.max_reprocess_attempts
        try:
            if limit is not None and original.attempt_count >= limit:
                await self._transport.publish(
                    self._config.dead_letter_exchange,
                    self._config.parking_queue,
                    body,
                    dict(attributes),
                )
                outcome = ReprocessOutcome.PARKED
            else:
                await self._send(original.next_attempt(self._clock.now()))
                outcome = ReprocessOutcome.REQUEUED
        except TransportError as e:
            logger.warning("[DLQ Consumer] Republish failed, keeping dead letter: %s", e)
            await self._settle(tag, ProcessingResult.REQUEUE)
            metrics.record_reprocessed(ReprocessOutcome.RETRY.value)
            return ReprocessOutcome.RETRY

        await self._settle(tag, ProcessingResult.ACK)
        metrics.record_reprocessed(outcome.value)
        if outcome is ReprocessOutcome.PARKED:
            self.parked += 1
            logger.warning(
                "[DLQ Consumer] Parked poison message %s after %d attempt(s)",
                original.message_id,
                original.attempt_count,
            )
        else:
            self.reprocessed += 1
            logger.info(
                "[DLQ Consumer] Successfully reprocessed and acknowledged: %s",
                original.text(),
            )
        return outcome

    async def wait_until(
        self, predicate: Callable[[], bool], timeout: float = 10.0, poll: float = 0.01
    ) -> None:
        """Poll *predicate()* until it is true (test and demo helper)."""

        async def _poll() -> None:
            while not predicate():
                await asyncio.sleep(poll)

        await asyncio.wait_for(_poll(), timeout)
