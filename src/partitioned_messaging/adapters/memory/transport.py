"""In-memory broker double with direct and consistent-hash routing."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import uuid
from collections import deque
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from ...assigner import assign
from ...clock import SystemClock
from ...exceptions import InvalidTopologyError, TransportError, UnknownHandleError
from ...ports.transport import DEATH_REASON, ExchangeKind

if TYPE_CHECKING:
    from collections.abc import Mapping
    from datetime import datetime, timedelta

    from ...clock import Clock
    from ...ports.transport import DeadLetterTarget, DeliveryCallback

logger = logging.getLogger("partitioned_messaging.transport.memory")

DEFAULT_EXCHANGE = ""


@dataclass
class _Envelope:
    body: bytes
    attributes: dict[str, str]
    enqueued_at: datetime


@dataclass
class _Queue:
    name: str
    dead_letter_target: DeadLetterTarget | None
    ttl: timedelta | None
    items: deque[_Envelope] = field(default_factory=deque)
    cond: asyncio.Condition = field(default_factory=asyncio.Condition)
    consumer: asyncio.Task[None] | None = None


@dataclass
class _Unacked:
    queue: _Queue
    envelope: _Envelope
    resolved: asyncio.Event = field(default_factory=asyncio.Event)


class InMemoryTransport:
    """In-process :class:`~partitioned_messaging.ports.Transport` for tests and demos.

    Routing follows the broker semantics the pipeline relies on:

    * ``direct`` exchanges route to every queue bound with the same routing key;
    * ``x-consistent-hash`` exchanges route to exactly one bound queue, chosen by
      the partition assigner over the binding weights (binding order = index);
    * the default exchange ``""`` routes to the queue named by the routing key;
    * ``reject(requeue=False)`` sends the message to the queue's dead-letter
      target with ``x-first-death-reason: rejected``.

    Each queue has at most one subscriber and delivers one message at a time
    (prefetch 1). There are no TTL timers: call :meth:`expire` to dead-letter
    queued messages past the queue TTL.
    """

    def __init__(self, *, clock: Clock | None = None) -> None:
        self._clock = clock or SystemClock()
        self._exchanges: dict[str, str] = {}
        self._bindings: dict[str, list[tuple[str, str]]] = {}
        self._queues: dict[str, _Queue] = {}
        self._unacked: dict[str, _Unacked] = {}
        self._fail_publishes = 0
        self._closed = False
        self.published: list[tuple[str, str, bytes, dict[str, str]]] = []

    # ── Topology ─────────────────────────────────────────────────────

    async def declare_exchange(self, name: str, kind: str, durable: bool = True) -> None:  # noqa: ARG002
        self._check_open()
        existing = self._exchanges.get(name)
        if existing is not None and existing != kind:
            raise TransportError(
                f"Exchange {name!r} already declared as {existing!r}, not {kind!r}"
            )
        self._exchanges[name] = kind
        self._bindings.setdefault(name, [])

    async def declare_queue(
        self,
        name: str,
        durable: bool = True,  # noqa: ARG002
        dead_letter_target: DeadLetterTarget | None = None,
        ttl: timedelta | None = None,
    ) -> None:
        self._check_open()
        existing = self._queues.get(name)
        if existing is not None:
            if existing.dead_letter_target != dead_letter_target or existing.ttl != ttl:
                raise TransportError(f"Queue {name!r} already declared with other arguments")
            return
        self._queues[name] = _Queue(name, dead_letter_target, ttl)

    async def bind(self, queue: str, exchange: str, routing_key: str) -> None:
        self._check_open()
        self._queue(queue)
        if exchange not in self._exchanges:
            raise TransportError(f"Exchange {exchange!r} not declared")
        bindings = self._bindings[exchange]
        if (queue, routing_key) not in bindings:
            bindings.append((queue, routing_key))

    # ── Publish / consume ────────────────────────────────────────────

    def fail_next_publishes(self, count: int = 1) -> None:
        """Make the next *count* publishes raise TransportError."""
        self._fail_publishes = count

    async def publish(
        self,
        exchange: str,
        routing_key: str,
        payload: bytes,
        attributes: Mapping[str, str] | None = None,
    ) -> None:
        self._check_open()
        if self._fail_publishes > 0:
            self._fail_publishes -= 1
            raise TransportError(f"Simulated publish failure on {exchange!r}")
        attrs = dict(attributes or {})
        self.published.append((exchange, routing_key, payload, attrs))
        routed = await self._route(exchange, routing_key, payload, attrs)
        if not routed:
            logger.debug("Unroutable message on %r (routing-key %r)", exchange, routing_key)

    async def subscribe(self, queue: str, callback: DeliveryCallback) -> str:
        self._check_open()
        state = self._queue(queue)
        if state.consumer is not None:
            raise TransportError(f"Queue {queue!r} already has a consumer")
        state.consumer = asyncio.create_task(
            self._dispatch(state, callback), name=f"memory-consumer-{queue}"
        )
        return f"ctag-{queue}"

    async def ack(self, delivery_tag: str) -> None:
        unacked = self._pop_unacked(delivery_tag)
        unacked.resolved.set()

    async def reject(self, delivery_tag: str, requeue: bool) -> None:
        unacked = self._pop_unacked(delivery_tag)
        try:
            if requeue:
                async with unacked.queue.cond:
                    unacked.queue.items.appendleft(unacked.envelope)
                    unacked.queue.cond.notify()
            else:
                await self._dead_letter(unacked.queue, unacked.envelope, "rejected")
        finally:
            unacked.resolved.set()

    async def expire(self, now: datetime | None = None) -> int:
        """Dead-letter queued (not yet delivered) messages past their queue TTL."""
        now = now or self._clock.now()
        count = 0
        for state in list(self._queues.values()):
            if state.ttl is None:
                continue
            async with state.cond:
                expired = [e for e in state.items if now - e.enqueued_at > state.ttl]
                if expired:
                    state.items = deque(e for e in state.items if e not in expired)
            for envelope in expired:
                await self._dead_letter(state, envelope, "expired")
            count += len(expired)
        return count

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for state in self._queues.values():
            if state.consumer is not None:
                state.consumer.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await state.consumer
                state.consumer = None
        # Unacked deliveries go back to the head of their queue, as on a broker.
        for tag in list(self._unacked):
            unacked = self._unacked.pop(tag)
            unacked.queue.items.appendleft(unacked.envelope)
            unacked.resolved.set()
        logger.info("InMemoryTransport closed")

    # ── Inspection helpers ───────────────────────────────────────────

    def queue_size(self, queue: str) -> int:
        return len(self._queue(queue).items)

    def queue_bodies(self, queue: str) -> list[bytes]:
        return [e.body for e in self._queue(queue).items]

    @property
    def unacked_count(self) -> int:
        return len(self._unacked)

    # ── Internals ────────────────────────────────────────────────────

    def _check_open(self) -> None:
        if self._closed:
            raise TransportError("Transport is closed")

    def _queue(self, name: str) -> _Queue:
        state = self._queues.get(name)
        if state is None:
            raise TransportError(f"Queue {name!r} not declared")
        return state

    def _pop_unacked(self, delivery_tag: str) -> _Unacked:
        unacked = self._unacked.pop(delivery_tag, None)
        if unacked is None:
            raise UnknownHandleError(delivery_tag)
        return unacked

    def _targets(self, exchange: str, routing_key: str) -> list[str]:
        if exchange == DEFAULT_EXCHANGE:
            return [routing_key] if routing_key in self._queues else []
        kind = self._exchanges.get(exchange)
        if kind is None:
            raise TransportError(f"Exchange {exchange!r} not declared")
        bindings = self._bindings[exchange]
        if kind == ExchangeKind.CONSISTENT_HASH:
            if not bindings:
                return []
            try:
                weights = [int(key) for _, key in bindings]
                index = assign(routing_key, len(bindings), weights)
            except (ValueError, InvalidTopologyError) as e:
                raise TransportError(f"Bad consistent-hash binding on {exchange!r}: {e}") from e
            return [bindings[index][0]]
        return [queue for queue, key in bindings if key == routing_key]

    async def _route(
        self, exchange: str, routing_key: str, body: bytes, attributes: dict[str, str]
    ) -> int:
        targets = self._targets(exchange, routing_key)
        now = self._clock.now()
        for name in targets:
            state = self._queues[name]
            async with state.cond:
                state.items.append(_Envelope(body, dict(attributes), now))
                state.cond.notify()
        return len(targets)

    async def _dead_letter(self, state: _Queue, envelope: _Envelope, reason: str) -> None:
        target = state.dead_letter_target
        if target is None:
            logger.debug("Dropping %s message from %r (no dead-letter target)", reason, state.name)
            return
        attrs = dict(envelope.attributes)
        attrs.setdefault(DEATH_REASON, reason)
        await self._route(target.exchange, target.routing_key, envelope.body, attrs)

    async def _dispatch(self, state: _Queue, callback: DeliveryCallback) -> None:
        while True:
            async with state.cond:
                await state.cond.wait_for(lambda: bool(state.items))
                envelope = state.items.popleft()
            tag = str(uuid.uuid4())
            unacked = _Unacked(state, envelope)
            self._unacked[tag] = unacked
            try:
                await callback(tag, envelope.body, dict(envelope.attributes))
            except Exception:
                logger.exception("Consumer callback on %r failed", state.name)
                if tag in self._unacked:
                    await self.reject(tag, requeue=False)
            await unacked.resolved.wait()
