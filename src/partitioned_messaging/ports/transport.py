"""Broker port: the Transport protocol plus the exchange and dead-letter vocabulary.

The relay only talks to this protocol; adapters implement it for RabbitMQ
(aio-pika) and for an in-process broker double.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

if TYPE_CHECKING:
    from collections.abc import Callable, Coroutine, Mapping
    from datetime import timedelta

    DeliveryCallback = Callable[
        [str, bytes, Mapping[str, str]], Coroutine[Any, Any, None]
    ]
else:
    DeliveryCallback = Any


class ExchangeKind:
    """Exchange types understood by the transports."""

    DIRECT = "direct"
    CONSISTENT_HASH = "x-consistent-hash"


#: Attribute carrying why a message was dead-lettered ("rejected" or "expired").
DEATH_REASON = "x-first-death-reason"


@dataclass(frozen=True)
class DeadLetterTarget:
    """Where a queue sends rejected or expired messages."""

    exchange: str
    routing_key: str


@runtime_checkable
class Transport(Protocol):
    """
    Port for the external message broker (RabbitMQ, in-memory, …).

    The pipeline only needs topology declaration, publish, subscribe and
    explicit ack/reject. Failures surface as ``TransportError``.
    """

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:
        """Declare exchange *name* of *kind* (see :class:`ExchangeKind`)."""
        ...

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,
        dead_letter_target: DeadLetterTarget | None = None,
        ttl: timedelta | None = None,
    ) -> None:
        """Declare queue *name*; rejected/expired messages go to *dead_letter_target*."""
        ...

    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        """
        Bind *queue* to *exchange*.

        For consistent-hash exchanges *routing_key* is the queue's weight.
        """
        ...

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> None:
        """Publish *payload*; for consistent-hash exchanges *routing_key* is the partition key."""
        ...

    async def subscribe(self, queue: str, callback: DeliveryCallback) -> str:
        """
        Deliver messages from *queue* to ``callback(delivery_tag, payload, attributes)``.

        Returns a subscription id. Deliveries must be resolved with
        :meth:`ack` or :meth:`reject`.
        """
        ...

    async def ack(self, delivery_tag: str) -> None: ...

    async def reject(self, delivery_tag: str, requeue: bool) -> None: ...

    async def close(self) -> None: ...
