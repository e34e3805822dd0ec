"""Tests for BrokerRelay and declare_topology over the in-memory transport."""

from __future__ import annotations

import asyncio
from collections.abc import Mapping
from datetime import timedelta
from typing import Any

import pytest

from partitioned_messaging.adapters.memory import InMemoryTransport
from partitioned_messaging.clock import ManualClock
from partitioned_messaging.consumer import ProcessingResult
from partitioned_messaging.envelope import Message
from partitioned_messaging.exceptions import TransportError
from partitioned_messaging.relay import BrokerRelay, declare_topology
from partitioned_messaging.reprocessor import ReprocessOutcome
from partitioned_messaging.retry import RetryPolicy
from partitioned_messaging.serialization import MessageSerializer
from partitioned_messaging.topology import TopologyConfig


class RecordingRelay(BrokerRelay):
    """BrokerRelay that keeps every DLQ outcome for assertions."""

    def __init__(self, *args: object, **kwargs: object) -> None:
        super().__init__(*args, **kwargs)  # type: ignore[arg-type]
        self.outcomes: list[ReprocessOutcome] = []

    async def reprocess(
        self, tag: str, body: bytes, attributes: Mapping[str, str]
    ) -> ReprocessOutcome:
        outcome = await super().reprocess(tag, body, attributes)
        self.outcomes.append(outcome)
        return outcome


@pytest.mark.asyncio
async def test_declare_topology_builds_partitions_and_dead_letter_plumbing() -> None:
    transport = InMemoryTransport()
    config = TopologyConfig.weighted([10, 20], max_reprocess_attempts=2)
    await declare_topology(transport, config)

    for index in range(2):
        assert transport.queue_size(config.queue_name(index)) == 0
    assert transport.queue_size(config.dead_letter_queue) == 0
    assert transport.queue_size(config.parking_queue) == 0

    # Idempotent for identical arguments.
    await declare_topology(transport, config)


@pytest.mark.asyncio
async def test_declare_topology_without_dead_lettering_skips_dlq() -> None:
    transport = InMemoryTransport()
    config = TopologyConfig.uniform(2, dead_letter_enabled=False, reprocess_enabled=False)
    await declare_topology(transport, config)
    with pytest.raises(TransportError):
        transport.queue_size(config.dead_letter_queue)


@pytest.mark.asyncio
async def test_failed_message_is_reprocessed_once(
    topology: TopologyConfig, handler: Any, fast_retry: RetryPolicy
) -> None:
    transport = InMemoryTransport()
    relay = RecordingRelay(transport, topology, handler, retry_policy=fast_retry)
    await relay.start()
    try:
        await relay.publish("user-1", b"Message 1 for user-1")
        await relay.publish("user-2", b"Message 2 for user-2 - FAIL")
        await relay.wait_until(lambda: relay.acked == 2, timeout=2)
    finally:
        await relay.stop()

    failed = handler.by_key()["user-2"]
    assert [m.attempt_count for m in failed] == [0, 1]
    assert failed[1].parent_id == failed[0].message_id
    assert relay.rejected == 1
    assert relay.reprocessed == 1
    assert relay.outcomes == [ReprocessOutcome.REQUEUED]


@pytest.mark.asyncio
async def test_same_key_keeps_publish_order(
    topology: TopologyConfig, handler: Any
) -> None:
    transport = InMemoryTransport()
    relay = BrokerRelay(transport, topology, handler)
    await relay.start()
    try:
        for i in range(20):
            await relay.publish(f"user-{i % 4}", f"{i}".encode())
        await relay.wait_until(lambda: relay.acked == 20, timeout=2)
    finally:
        await relay.stop()

    for key, messages in handler.by_key().items():
        numbers = [int(m.payload) for m in messages]
        assert numbers == sorted(numbers), key


@pytest.mark.asyncio
async def test_expired_message_goes_through_dlq(
    topology: TopologyConfig, handler: Any, clock: ManualClock
) -> None:
    transport = InMemoryTransport()
    serializer = MessageSerializer()
    await declare_topology(transport, topology)
    stale = Message(partition_key="user-1", payload=b"stale", created_at=clock.now())
    await transport.publish(topology.exchange_name, "user-1", serializer.serialize(stale))
    clock.advance(31)

    relay = RecordingRelay(transport, topology, handler, clock=clock)
    await relay.start()
    try:
        await relay.wait_until(lambda: relay.acked == 1, timeout=2)
    finally:
        await relay.stop()

    assert relay.expired == 1
    assert [m.attempt_count for m in handler.seen] == [1]
    assert relay.outcomes == [ReprocessOutcome.REQUEUED]


@pytest.mark.asyncio
async def test_poison_message_is_parked(
    fast_retry: RetryPolicy, handler_factory: type
) -> None:
    config = TopologyConfig.uniform(3, max_reprocess_attempts=2)
    handler = handler_factory(fail_attempts=100)
    transport = InMemoryTransport()
    relay = RecordingRelay(transport, config, handler, retry_policy=fast_retry)
    await relay.start()
    try:
        await relay.publish("user-3", b"always FAIL")
        await relay.wait_until(lambda: relay.parked == 1, timeout=2)
    finally:
        await relay.stop()

    assert [m.attempt_count for m in handler.seen] == [0, 1, 2]
    assert len(transport.queue_bodies(config.parking_queue)) == 1
    assert relay.outcomes[-1] is ReprocessOutcome.PARKED


@pytest.mark.asyncio
async def test_republish_failure_keeps_dead_letter_and_retries(
    topology: TopologyConfig, fast_retry: RetryPolicy, handler_factory: type
) -> None:
    transport = InMemoryTransport()
    inner = handler_factory()

    async def handler(message: Message) -> ProcessingResult:
        if message.attempt_count == 0:
            transport.fail_next_publishes(1)
        return await inner(message)

    relay = RecordingRelay(transport, topology, handler, retry_policy=fast_retry)
    await relay.start()
    try:
        await relay.publish("user-4", b"flaky FAIL")
        await relay.wait_until(lambda: relay.acked == 1, timeout=2)
    finally:
        await relay.stop()

    assert relay.outcomes == [ReprocessOutcome.RETRY, ReprocessOutcome.REQUEUED]
    assert [m.attempt_count for m in inner.seen] == [0, 1]


@pytest.mark.asyncio
async def test_undecodable_message_is_dropped_from_dlq(
    topology: TopologyConfig, handler: Any
) -> None:
    transport = InMemoryTransport()
    relay = RecordingRelay(transport, topology, handler)
    await relay.start()
    try:
        await transport.publish(topology.exchange_name, "user-1", b"not json")
        await relay.wait_until(lambda: relay.outcomes == [ReprocessOutcome.DROPPED], timeout=2)
    finally:
        await relay.stop()

    assert handler.seen == []
    assert transport.queue_size(topology.dead_letter_queue) == 0


@pytest.mark.asyncio
async def test_handler_exception_is_treated_as_reject(
    topology: TopologyConfig, fast_retry: RetryPolicy
) -> None:
    calls: list[int] = []

    async def handler(message: Message) -> ProcessingResult:
        calls.append(message.attempt_count)
        if message.attempt_count == 0:
            raise RuntimeError("handler blew up")
        return ProcessingResult.ACK

    transport = InMemoryTransport()
    relay = BrokerRelay(transport, topology, handler, retry_policy=fast_retry)
    await relay.start()
    try:
        await relay.publish("user-5", b"boom")
        await relay.wait_until(lambda: relay.acked == 1, timeout=2)
    finally:
        await relay.stop()

    assert calls == [0, 1]
    assert relay.rejected == 1


@pytest.mark.asyncio
async def test_without_dead_lettering_nothing_is_reprocessed(handler_factory: type) -> None:
    config = TopologyConfig.uniform(2, dead_letter_enabled=False, reprocess_enabled=False)
    handler = handler_factory()
    transport = InMemoryTransport()
    relay = BrokerRelay(transport, config, handler)
    await relay.start()
    try:
        await relay.publish("user-1", b"dropped FAIL")
        await relay.publish("user-1", b"kept")
        await relay.wait_until(lambda: relay.acked == 1 and relay.rejected == 1, timeout=2)
    finally:
        await relay.stop()

    assert [m.payload for m in handler.seen] == [b"dropped FAIL", b"kept"]
    assert relay.reprocessed == 0


@pytest.mark.asyncio
async def test_publish_serializes_ttl_and_message_attributes(handler: Any) -> None:
    config = TopologyConfig.uniform(1, message_ttl=timedelta(seconds=5))
    transport = InMemoryTransport()
    await declare_topology(transport, config)
    relay = BrokerRelay(transport, config, handler)

    message = await relay.publish("user-1", b"x", {"trace": "abc"})

    exchange, routing_key, body, attributes = transport.published[-1]
    assert (exchange, routing_key) == (config.exchange_name, "user-1")
    assert attributes["message-id"] == message.message_id
    assert attributes["content-type"] == "application/json"
    decoded = MessageSerializer().deserialize(body)
    assert decoded.ttl == timedelta(seconds=5)
    assert decoded.headers == {"trace": "abc"}


@pytest.mark.asyncio
async def test_publish_failure_propagates(handler: Any) -> None:
    config = TopologyConfig.uniform(1)
    transport = InMemoryTransport()
    await declare_topology(transport, config)
    relay = BrokerRelay(transport, config, handler)
    transport.fail_next_publishes(1)
    with pytest.raises(TransportError):
        await relay.publish("user-1", b"x")


class AckRefusingTransport(InMemoryTransport):
    async def ack(self, delivery_tag: str) -> None:
        raise TransportError("channel closed during ack")


@pytest.mark.asyncio
async def test_broker_failure_in_a_consumer_callback_is_surfaced(handler: Any) -> None:
    config = TopologyConfig.uniform(2, dead_letter_enabled=False, reprocess_enabled=False)
    relay = BrokerRelay(AckRefusingTransport(), config, handler)
    await relay.start()
    try:
        await relay.publish("user-1", b"Message 1 for user-1")
        with pytest.raises(TransportError, match="during ack"):
            await asyncio.wait_for(relay.wait_failed(), timeout=2)
    finally:
        await relay.stop()
    assert isinstance(relay.error, TransportError)
    assert relay.acked == 0


@pytest.mark.asyncio
async def test_stale_backlog_is_delivered_without_dead_lettering(
    handler: Any, clock: ManualClock
) -> None:
    config = TopologyConfig.uniform(2, dead_letter_enabled=False, reprocess_enabled=False)
    transport = InMemoryTransport()
    await declare_topology(transport, config)
    stale = Message(
        partition_key="user-1",
        payload=b"Message 0 for user-1",
        created_at=clock.now(),
        ttl=config.message_ttl,
    )
    await transport.publish(
        config.exchange_name, "user-1", MessageSerializer().serialize(stale)
    )
    clock.advance(31)

    relay = BrokerRelay(transport, config, handler, clock=clock)
    await relay.start()
    try:
        await relay.wait_until(lambda: relay.acked == 1, timeout=2)
    finally:
        await relay.stop()
    assert relay.expired == 0
