"""End-to-end tests for DeliveryEngine (in-process pipeline)."""

from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from partitioned_messaging.assigner import assign
from partitioned_messaging.clock import ManualClock
from partitioned_messaging.config import RunMode, Settings
from partitioned_messaging.consumer import ProcessingResult
from partitioned_messaging.engine import DeliveryEngine
from partitioned_messaging.envelope import DeadLetterReason, Message
from partitioned_messaging.exceptions import QueueFullError
from partitioned_messaging.retry import RetryPolicy
from partitioned_messaging.topology import TopologyConfig
from partitioned_messaging.tracker import MessageState

KEYS = [f"user-{i}" for i in range(1, 6)]


@pytest.mark.asyncio
async def test_round_robin_keys_keep_partition_and_order(
    topology: TopologyConfig, clock: ManualClock, handler_factory: type
) -> None:
    handler = handler_factory(fail_marker=None)
    engine = DeliveryEngine(topology, handler, clock=clock)
    published: dict[str, list[str]] = {k: [] for k in KEYS}
    for n in range(100):
        for key in KEYS:
            message = await engine.publish(key, f"Message {n} for {key}".encode())
            published[key].append(message.message_id)

    # every message of a key sits in exactly the queue the assigner picks
    for key in KEYS:
        expected = assign(key, 3, [10, 10, 10])
        for queue in engine.queues:
            ids = [m.message_id for m in queue.snapshot() if m.partition_key == key]
            assert ids == (published[key] if queue.index == expected else [])

    async with engine:
        await engine.wait_idle(timeout=10)

    grouped = handler.by_key()
    for key in KEYS:
        assert [m.message_id for m in grouped[key]] == published[key]
    assert engine.health().acked == 500
    assert engine.sink.size == 0


@pytest.mark.asyncio
async def test_failed_message_is_reprocessed_once_into_its_partition(
    topology: TopologyConfig, clock: ManualClock, handler_factory: type
) -> None:
    handler = handler_factory(fail_marker=b"FAIL", fail_attempts=1)
    retry = RetryPolicy(base_delay=0.0, max_delay=0.0, jitter=False)
    engine = DeliveryEngine(topology, handler, clock=clock, retry_policy=retry)
    async with engine:
        original = await engine.publish("user-3", b"Message 7 for user-3 - FAIL")
        await engine.wait_idle(timeout=5)

    first, second = handler.seen
    assert first.message_id == original.message_id
    assert first.attempt_count == 0
    assert second.attempt_count == 1
    assert second.parent_id == original.message_id
    assert second.partition_key == "user-3"
    assert engine.tracker.state_of(original.message_id) is MessageState.DEAD_LETTERED
    assert engine.tracker.state_of(second.message_id) is MessageState.ACKED
    health = engine.health()
    assert health.rejected == 1
    assert health.reprocessed == 1
    assert health.acked == 1


@pytest.mark.asyncio
async def test_unacked_message_expires_after_ttl_on_simulated_clock(
    clock: ManualClock,
) -> None:
    topology = TopologyConfig.uniform(
        3, message_ttl=timedelta(seconds=30), reprocess_enabled=False
    )
    started = asyncio.Event()
    release = asyncio.Event()

    async def stuck_handler(message: Message) -> ProcessingResult:
        started.set()
        await release.wait()
        return ProcessingResult.ACK

    engine = DeliveryEngine(topology, stuck_handler, clock=clock, watchdog_interval=3600)
    async with engine:
        message = await engine.publish("user-1", b"Message 0 for user-1")
        await asyncio.wait_for(started.wait(), 1)

        clock.advance(30)
        assert await engine.watchdog.run_once() == 0
        clock.advance(1)
        assert await engine.watchdog.run_once() == 1

        [entry] = engine.sink.entries()
        assert entry.reason is DeadLetterReason.EXPIRED
        assert entry.message_id == message.message_id
        assert engine.tracker.state_of(message.message_id) is MessageState.DEAD_LETTERED

        # the late ack is ignored; still exactly one dead-letter entry
        release.set()
        await asyncio.sleep(0.05)
        assert engine.sink.size == 1
        assert engine.health().acked == 0


@pytest.mark.asyncio
async def test_poison_message_ends_in_parking(clock: ManualClock, handler_factory: type) -> None:
    topology = TopologyConfig.uniform(2, max_reprocess_attempts=2)
    handler = handler_factory(fail_marker=b"FAIL", fail_attempts=100)
    retry = RetryPolicy(base_delay=0.0, max_delay=0.0, jitter=False)
    engine = DeliveryEngine(topology, handler, clock=clock, retry_policy=retry)
    async with engine:
        await engine.publish("user-2", b"Message 1 for user-2 - FAIL")
        await engine.wait_idle(timeout=5)
        assert engine.parking_sink is not None
        [parked] = engine.parking_sink.entries()
    assert parked.original_message.attempt_count == 2
    assert [m.attempt_count for m in handler.seen] == [0, 1, 2]


@pytest.mark.asyncio
async def test_bounded_queue_refuses_publish(clock: ManualClock, handler_factory: type) -> None:
    topology = TopologyConfig.uniform(1, queue_capacity=1)
    engine = DeliveryEngine(topology, handler_factory(), clock=clock)
    first = await engine.publish("k", b"1")
    with pytest.raises(QueueFullError):
        await engine.publish("k", b"2")
    assert engine.tracker.state_of(first.message_id) is MessageState.PENDING
    assert engine.health().queue_sizes == {0: 1}


@pytest.mark.asyncio
async def test_shutdown_returns_in_flight_message_to_queue(clock: ManualClock) -> None:
    topology = TopologyConfig.uniform(1)
    started = asyncio.Event()

    async def slow(message: Message) -> None:
        started.set()
        await asyncio.sleep(60)

    engine = DeliveryEngine(topology, slow, clock=clock)
    await engine.start()
    message = await engine.publish("k", b"slow")
    await asyncio.wait_for(started.wait(), 1)
    await engine.shutdown(grace_period=0.01)

    assert not engine.running
    assert engine.queues[0].snapshot() == [message]
    assert engine.tracker.state_of(message.message_id) is MessageState.PENDING
    assert engine.sink.size == 0


@pytest.mark.asyncio
async def test_consistent_hash_mode_discards_rejections(
    clock: ManualClock, handler_factory: type
) -> None:
    topology = TopologyConfig.uniform(3, dead_letter_enabled=False, reprocess_enabled=False)
    handler = handler_factory(fail_marker=b"FAIL", fail_attempts=1)
    engine = DeliveryEngine(topology, handler, clock=clock)
    assert engine.reprocessor is None
    async with engine:
        message = await engine.publish("user-1", b"x - FAIL")
        await engine.wait_idle(timeout=5)
    assert engine.sink.size == 0
    assert engine.tracker.state_of(message.message_id) is MessageState.REJECTED


@pytest.mark.asyncio
async def test_consistent_hash_mode_delivers_stale_backlog(
    clock: ManualClock, handler_factory: type
) -> None:
    settings = Settings(_env_file=None)  # type: ignore[call-arg]
    topology = settings.to_topology(RunMode.CONSISTENT_HASH)
    handler = handler_factory(fail_marker=None)
    engine = DeliveryEngine(topology, handler, clock=clock)
    message = await engine.publish("user-1", b"Message 0 for user-1")
    clock.advance(31)
    async with engine:
        await engine.wait_idle(timeout=5)
    assert [m.message_id for m in handler.seen] == [message.message_id]
    assert engine.tracker.state_of(message.message_id) is MessageState.ACKED
    assert engine.health().expired == 0
