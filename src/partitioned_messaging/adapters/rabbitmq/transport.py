"""Transport over aio-pika with manual ack and publisher confirms."""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import TYPE_CHECKING, Any

import aio_pika
from aio_pika.exceptions import AMQPError

from ...exceptions import TransportError, UnknownHandleError

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import timedelta

    from aio_pika.abc import AbstractExchange, AbstractIncomingMessage, AbstractQueue

    from ...ports.transport import DeadLetterTarget, DeliveryCallback
    from .connection import RabbitMQConnectionManager

logger = logging.getLogger("partitioned_messaging.transport.rabbitmq")

_FAILURES = (AMQPError, ConnectionError, OSError, asyncio.TimeoutError)


def _attributes(raw: AbstractIncomingMessage) -> dict[str, str]:
    attrs = {
        str(k): str(v)
        for k, v in (raw.headers or {}).items()
        if isinstance(v, (str, int, float, bool))
    }
    if raw.content_type:
        attrs.setdefault("content-type", raw.content_type)
    if raw.message_id:
        attrs.setdefault("message-id", raw.message_id)
    return attrs


class RabbitMQTransport:
    """RabbitMQ adapter implementing the Transport port.

    Consistent-hash exchanges need the ``rabbitmq_consistent_hash_exchange``
    plugin. Deliveries are consumed with manual acknowledgement and a QoS
    prefetch (1 keeps per-queue order); every broker failure surfaces as
    :class:`TransportError`.
    """

    def __init__(
        self,
        connection: RabbitMQConnectionManager,
        *,
        prefetch_count: int = 1,
        persistent: bool = True,
    ) -> None:
        """Configure the transport.

        Args:
            connection: Shared connection manager.
            prefetch_count: QoS prefetch per consumer.
            persistent: Publish with delivery mode PERSISTENT when True.
        """
        self._connection = connection
        self._prefetch_count = prefetch_count
        self._persistent = persistent
        self._exchanges: dict[str, AbstractExchange] = {}
        self._queues: dict[str, AbstractQueue] = {}
        self._deliveries: dict[str, AbstractIncomingMessage] = {}
        self._consumers: list[tuple[AbstractQueue, str]] = []
        self._qos_set = False

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:
        await self._connection.connect()
        try:
            exchange_type = aio_pika.ExchangeType(kind)
            self._exchanges[name] = await self._connection.channel.declare_exchange(
                name, exchange_type, durable=durable
            )
        except ValueError as e:
            raise TransportError(f"Unsupported exchange kind {kind!r}") from e
        except _FAILURES as e:
            raise TransportError(f"Declaring exchange {name!r} failed: {e}") from e
        logger.debug("Declared exchange %s (%s)", name, kind)

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_target: DeadLetterTarget | None = None,
        ttl: timedelta | None = None,
    ) -> None:
        await self._connection.connect()
        arguments: dict[str, Any] = {}
        if dead_letter_target is not None:
            arguments["x-dead-letter-exchange"] = dead_letter_target.exchange
            arguments["x-dead-letter-routing-key"] = dead_letter_target.routing_key
        if ttl is not None:
            arguments["x-message-ttl"] = int(ttl.total_seconds() * 1000)
        try:
            self._queues[name] = await self._connection.channel.declare_queue(
                name, durable=durable, arguments=arguments or None
            )
        except _FAILURES as e:
            raise TransportError(f"Declaring queue {name!r} failed: {e}") from e
        logger.debug("Declared queue %s %s", name, arguments)

    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        try:
            await self._get_queue(queue).bind(self._get_exchange(exchange), routing_key=routing_key)
        except _FAILURES as e:
            raise TransportError(f"Binding {queue!r} to {exchange!r} failed: {e}") from e

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> None:
        await self._connection.connect()
        headers = dict(attributes or {})
        content_type = headers.pop("content-type", None)
        message_id = headers.pop("message-id", None)
        message = aio_pika.Message(
            body=payload,
            content_type=content_type,
            message_id=message_id,
            headers=headers,
            delivery_mode=(
                aio_pika.DeliveryMode.PERSISTENT
                if self._persistent
                else aio_pika.DeliveryMode.NOT_PERSISTENT
            ),
        )
        try:
            target = (
                self._connection.channel.default_exchange
                if exchange == ""
                else self._get_exchange(exchange)
            )
            await target.publish(message, routing_key=routing_key)
        except _FAILURES as e:
            raise TransportError(f"Publish to {exchange!r} failed: {e}") from e

    async def subscribe(self, queue: str, callback: DeliveryCallback) -> str:
        channel = self._connection.channel
        source = self._get_queue(queue)

        async def on_message(raw: AbstractIncomingMessage) -> None:
            tag = str(uuid.uuid4())
            self._deliveries[tag] = raw
            try:
                await callback(tag, raw.body, _attributes(raw))
            except Exception:
                logger.exception("Consumer callback on %r failed", queue)
                if tag in self._deliveries:
                    await self.reject(tag, requeue=False)

        try:
            if not self._qos_set:
                await channel.set_qos(prefetch_count=self._prefetch_count)
                self._qos_set = True
            consumer_tag = await source.consume(on_message, no_ack=False)
        except _FAILURES as e:
            raise TransportError(f"Subscribing to {queue!r} failed: {e}") from e
        self._consumers.append((source, consumer_tag))
        logger.info("Consuming from %s (prefetch=%d)", queue, self._prefetch_count)
        return consumer_tag

    async def ack(self, delivery_tag: str) -> None:
        raw = self._pop_delivery(delivery_tag)
        try:
            await raw.ack()
        except _FAILURES as e:
            raise TransportError(f"Ack failed: {e}") from e

    async def reject(self, delivery_tag: str, requeue: bool) -> None:
        raw = self._pop_delivery(delivery_tag)
        try:
            await raw.reject(requeue=requeue)
        except _FAILURES as e:
            raise TransportError(f"Reject failed: {e}") from e

    async def close(self) -> None:
        for queue, consumer_tag in self._consumers:
            try:
                await queue.cancel(consumer_tag)
            except _FAILURES as e:
                logger.warning("Cancelling consumer %s failed: %s", consumer_tag, e)
        self._consumers.clear()
        self._deliveries.clear()
        await self._connection.close()
        logger.info("RabbitMQ transport closed")

    async def health_check(self) -> bool:
        return await self._connection.health_check()

    def _get_exchange(self, name: str) -> AbstractExchange:
        exchange = self._exchanges.get(name)
        if exchange is None:
            raise TransportError(f"Exchange {name!r} not declared on this transport")
        return exchange

    def _get_queue(self, name: str) -> AbstractQueue:
        queue = self._queues.get(name)
        if queue is None:
            raise TransportError(f"Queue {name!r} not declared on this transport")
        return queue

    def _pop_delivery(self, delivery_tag: str) -> AbstractIncomingMessage:
        raw = self._deliveries.pop(delivery_tag, None)
        if raw is None:
            raise UnknownHandleError(delivery_tag)
        return raw
