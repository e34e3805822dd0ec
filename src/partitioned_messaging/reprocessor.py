"""Reprocessor — drains the dead-letter sink back into the live partitions."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from enum import Enum
from typing import TYPE_CHECKING

from . import metrics
from .clock import SystemClock
from .exceptions import InvalidTopologyError, QueueError, TransportError, UnknownHandleError
from .ports.background_worker import IBackgroundWorker
from .retry import RetryPolicy

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .assigner import PartitionAssigner
    from .clock import Clock
    from .dead_letter import DeadLetterSink
    from .envelope import DeadLetterEntry, Message

logger = logging.getLogger("partitioned_messaging.reprocessor")


class ReprocessOutcome(str, Enum):
    REQUEUED = "requeued"
    PARKED = "parked"
    RETRY = "retry"
    DROPPED = "dropped"


class Reprocessor(IBackgroundWorker):
    """Dedicated consumer of a DeadLetterSink.

    For each entry it derives a new Message (``attempt_count + 1``), routes it
    through the assigner by the entry's partition key and hands it to
    *submit*. The entry is acked only after *submit* succeeds; otherwise it is
    nacked back to the head of the sink and retried after a backoff, forever.

    With ``max_attempts`` set, an entry whose message already carries that many
    attempts is moved to *parking_sink* instead of being resubmitted.
    """

    def __init__(
        self,
        sink: DeadLetterSink,
        assigner: PartitionAssigner,
        submit: Callable[[Message, int], Awaitable[None]],
        *,
        clock: Clock | None = None,
        retry_policy: RetryPolicy | None = None,
        max_attempts: int | None = None,
        parking_sink: DeadLetterSink | None = None,
    ) -> None:
        """Configure the reprocessor.

        Args:
            sink: Dead-letter sink to drain.
            assigner: Maps the original partition key to a partition index.
            submit: Async ``(message, partition_index)`` enqueue; raising
                ``QueueError`` or ``TransportError`` means "not submitted".
            clock: Source of ``created_at`` for resubmitted messages.
            retry_policy: Backoff between failed resubmissions.
            max_attempts: Poison threshold; None means no bound.
            parking_sink: Destination for poison entries (required with max_attempts).
        """
        if max_attempts is not None and parking_sink is None:
            raise ValueError("max_attempts requires a parking_sink")
        self._sink = sink
        self._assigner = assigner
        self._submit = submit
        self._clock = clock or SystemClock()
        self._retry_policy = retry_policy or RetryPolicy()
        self._max_attempts = max_attempts
        self._parking_sink = parking_sink
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._failures = 0
        self.requeued = 0
        self.parked = 0

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(self._run_loop(), name="dlq-reprocessor")
        logger.info("Starting DLQ consumer for reprocessing (%s)...", self._sink.name)

    async def stop(self) -> None:
        self._running = False
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        logger.info("DLQ reprocessor stopped")

    async def _run_loop(self) -> None:
        while self._running:
            try:
                entry = await self._sink.receive()
            except QueueError:
                return
            try:
                outcome = await self.reprocess(entry)
            except UnknownHandleError as e:
                logger.warning("[DLQ Consumer] %s", e)
                continue
            if outcome is ReprocessOutcome.RETRY:
                self._failures += 1
                await self._retry_policy.wait_before_retry(self._failures)
            else:
                self._failures = 0

    async def reprocess(self, entry: DeadLetterEntry) -> ReprocessOutcome:
        """Resubmit one handed-out dead-letter entry and settle it in the sink."""
        original = entry.original_message
        logger.info(
            "[DLQ Consumer] Received dead letter message: %s (reason=%s)",
            original.text(),
            entry.reason.value,
        )

        if self._max_attempts is not None and original.attempt_count >= self._max_attempts:
            if self._parking_sink is None:
                await self._sink.nack(entry.entry_id)
                raise InvalidTopologyError("max_attempts is set but there is no parking sink")
            await self._parking_sink.put_entry(entry)
            await self._sink.ack(entry.entry_id)
            self.parked += 1
            metrics.record_reprocessed(ReprocessOutcome.PARKED.value)
            logger.warning(
                "[DLQ Consumer] Parked poison message %s after %d attempt(s)",
                original.message_id,
                original.attempt_count,
            )
            return ReprocessOutcome.PARKED

        resubmitted = original.next_attempt(self._clock.now())
        partition_index = self._assigner.assign(resubmitted.partition_key)
        try:
            await self._submit(resubmitted, partition_index)
        except (QueueError, TransportError) as e:
            await self._sink.nack(entry.entry_id)
            metrics.record_reprocessed(ReprocessOutcome.RETRY.value)
            logger.warning(
                "[DLQ Consumer] Resubmission of %s failed, keeping it in the sink: %s",
                original.message_id,
                e,
            )
            return ReprocessOutcome.RETRY

        await self._sink.ack(entry.entry_id)
        self.requeued += 1
        metrics.record_reprocessed(ReprocessOutcome.REQUEUED.value)
        logger.info(
            "[DLQ Consumer] Republished with routing-key '%s' to partition %d "
            "(attempt %d): %s",
            resubmitted.partition_key,
            partition_index,
            resubmitted.attempt_count,
            resubmitted.text(),
        )
        return ReprocessOutcome.REQUEUED
