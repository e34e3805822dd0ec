"""Producer simulator and the failure-marker processing callback used by the demo runs."""

from __future__ import annotations

import asyncio
import logging
import random
from typing import TYPE_CHECKING, Any

from .consumer import ProcessingResult
from .exceptions import QueueError, TransportError
from .ports.background_worker import IBackgroundWorker

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .envelope import Message

logger = logging.getLogger("partitioned_messaging.simulation")

DEFAULT_KEYS = ("user-1", "user-2", "user-3", "user-4", "user-5")
FAIL_MARKER = " - FAIL"


def make_payload(counter: int, partition_key: str, fail: bool) -> bytes:
    text = f"Message {counter} for {partition_key}"
    if fail:
        text += FAIL_MARKER
    return text.encode("utf-8")


class ProducerSimulator(IBackgroundWorker):
    """Publishes messages for randomly chosen partition keys at random intervals.

    Every draw (delay, key, failure) comes from the injected ``random.Random``
    so a seeded run is reproducible. A message is marked to fail with
    probability ``failure_probability``; the delay before each publish is
    ``min_delay + U[0, max_delay)`` seconds.
    """

    def __init__(
        self,
        publish: Callable[[str, bytes], Awaitable[Any]],
        keys: Sequence[str] = DEFAULT_KEYS,
        *,
        rng: random.Random | None = None,
        failure_probability: float = 0.3,
        min_delay: float = 1.0,
        max_delay: float = 2.0,
        count: int | None = None,
        producer_id: int = 1,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if not keys:
            raise ValueError("keys must not be empty")
        if not 0.0 <= failure_probability <= 1.0:
            raise ValueError("failure_probability must be within [0, 1]")
        if min_delay < 0 or max_delay < 0:
            raise ValueError("delays must be >= 0")
        self._publish = publish
        self._keys = tuple(keys)
        self._rng = rng or random.Random()  # noqa: S311
        self._failure_probability = failure_probability
        self._min_delay = min_delay
        self._max_delay = max_delay
        self._count = count
        self.producer_id = producer_id
        self._sleep = sleep
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self.published = 0
        self.failed_marked = 0

    @property
    def failure_probability(self) -> float:
        return self._failure_probability

    @property
    def task(self) -> asyncio.Task[None] | None:
        """The publishing task while started; it fails if a publish raises a broker error."""
        return self._task

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(
            self.run(self._count), name=f"producer-{self.producer_id}"
        )
        logger.info("Starting producer %d...", self.producer_id)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except TransportError as e:
                logger.warning("Producer %d had stopped on: %s", self.producer_id, e)
            self._task = None
        logger.info(
            "Producer %d stopped after %d message(s)", self.producer_id, self.published
        )

    def next_delay(self) -> float:
        return self._min_delay + self._rng.random() * self._max_delay

    def next_message(self, counter: int) -> tuple[str, bytes]:
        key = self._rng.choice(self._keys)
        fail = self._rng.random() < self._failure_probability
        return key, make_payload(counter, key, fail)

    async def run(self, count: int | None = None) -> int:
        """Publish *count* messages (forever when None); returns how many were sent."""
        counter = 0
        while count is None or counter < count:
            delay = self.next_delay()
            if delay > 0:
                await self._sleep(delay)
            key, payload = self.next_message(counter)
            logger.info(
                "[Producer %d] Publishing with routing-key '%s': %s",
                self.producer_id,
                key,
                payload.decode("utf-8"),
            )
            try:
                await self._publish(key, payload)
            except QueueError as e:
                # A full or closed partition drops this message; broker errors propagate.
                logger.warning("[Producer %d] Publish refused: %s", self.producer_id, e)
            else:
                self.published += 1
                if payload.endswith(FAIL_MARKER.encode("utf-8")):
                    self.failed_marked += 1
            counter += 1
        return self.published


class FailureMarkerHandler:
    """Processing callback: sleep a little, reject payloads containing the marker."""

    def __init__(
        self,
        *,
        rng: random.Random | None = None,
        max_delay: float = 0.5,
        marker: bytes = b"FAIL",
        fail_attempts: int | None = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Configure the handler.

        Args:
            rng: Random source for the simulated processing time.
            max_delay: Upper bound of the simulated processing time in seconds.
            marker: Payload substring that makes processing fail.
            fail_attempts: Only fail while ``attempt_count`` is below this
                value; None fails every attempt, as the demo does.
            sleep: Awaitable sleep (swap out in tests).
        """
        self._rng = rng or random.Random()  # noqa: S311
        self._max_delay = max_delay
        self._marker = marker
        self._fail_attempts = fail_attempts
        self._sleep = sleep
        self.seen: list[Message] = []

    async def __call__(self, message: Message) -> ProcessingResult:
        self.seen.append(message)
        if self._max_delay > 0:
            await self._sleep(self._rng.random() * self._max_delay)
        if self._marker in message.payload and (
            self._fail_attempts is None or message.attempt_count < self._fail_attempts
        ):
            return ProcessingResult.REJECT
        return ProcessingResult.ACK
