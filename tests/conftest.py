"""Shared fixtures for the partitioned-messaging tests."""

from __future__ import annotations

from datetime import timedelta

import pytest

from partitioned_messaging.clock import ManualClock
from partitioned_messaging.consumer import ProcessingResult
from partitioned_messaging.envelope import Message
from partitioned_messaging.retry import RetryPolicy
from partitioned_messaging.topology import TopologyConfig


class RecordingHandler:
    """Processing callback that records deliveries and rejects FAIL payloads."""

    def __init__(self, fail_marker: bytes | None = b"FAIL", fail_attempts: int = 1) -> None:
        self.fail_marker = fail_marker
        self.fail_attempts = fail_attempts
        self.seen: list[Message] = []

    async def __call__(self, message: Message) -> ProcessingResult:
        self.seen.append(message)
        if (
            self.fail_marker is not None
            and self.fail_marker in message.payload
            and message.attempt_count < self.fail_attempts
        ):
            return ProcessingResult.REJECT
        return ProcessingResult.ACK

    def by_key(self) -> dict[str, list[Message]]:
        grouped: dict[str, list[Message]] = {}
        for message in self.seen:
            grouped.setdefault(message.partition_key, []).append(message)
        return grouped


@pytest.fixture
def clock() -> ManualClock:
    return ManualClock()


@pytest.fixture
def topology() -> TopologyConfig:
    return TopologyConfig.uniform(3, message_ttl=timedelta(seconds=30))


@pytest.fixture
def handler() -> RecordingHandler:
    return RecordingHandler()


@pytest.fixture
def fast_retry() -> RetryPolicy:
    return RetryPolicy(base_delay=0.0, max_delay=0.0, jitter=False)


@pytest.fixture
def handler_factory() -> type[RecordingHandler]:
    return RecordingHandler
