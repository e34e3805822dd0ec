"""Single consumer loop that owns one partition queue."""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
from enum import Enum
from typing import TYPE_CHECKING, Any, Union

from . import metrics
from .clock import SystemClock
from .exceptions import (
    AlreadyInFlightError,
    DeliveryError,
    PartitionBusyError,
    QueueClosedError,
    UnknownHandleError,
)
from .ports.background_worker import IBackgroundWorker
from .tracker import MessageState

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from .clock import Clock
    from .envelope import Message
    from .partition_queue import PartitionQueue
    from .tracker import DeliveryTracker

logger = logging.getLogger("partitioned_messaging.consumer")


class ProcessingResult(str, Enum):
    """What the processing callback wants done with a delivery."""

    ACK = "ack"
    REJECT = "reject"
    REQUEUE = "requeue"


HandlerResult = Union[ProcessingResult, bool, None]

if TYPE_CHECKING:
    MessageHandler = Callable[[Message], Awaitable[HandlerResult]]


def normalize_result(result: Any) -> ProcessingResult:
    if isinstance(result, ProcessingResult):
        return result
    if result is None or result is True:
        return ProcessingResult.ACK
    if result is False:
        return ProcessingResult.REJECT
    raise TypeError(f"Unsupported handler result: {result!r}")


class PartitionConsumer(IBackgroundWorker):
    """Delivers one partition's messages to the processing callback in FIFO order.

    The callback returns a :class:`ProcessingResult` (``True``/``None`` mean ACK,
    ``False`` means REJECT); an exception counts as REJECT. With the default
    ``max_in_flight=1`` the next message is not dequeued until the previous one
    is acked or rejected, which is what keeps per-key order.
    """

    def __init__(
        self,
        queue: PartitionQueue,
        tracker: DeliveryTracker,
        handler: MessageHandler,
        *,
        consumer_id: str | None = None,
        clock: Clock | None = None,
        max_in_flight: int = 1,
    ) -> None:
        if max_in_flight < 1:
            raise ValueError("max_in_flight must be >= 1")
        self._queue = queue
        self._tracker = tracker
        self._handler = handler
        self.consumer_id = consumer_id or f"consumer-{queue.index}"
        self._clock = clock or SystemClock()
        self._window = asyncio.Semaphore(max_in_flight)
        self._running = False
        self._task: asyncio.Task[None] | None = None
        self._active: set[asyncio.Task[Any]] = set()
        self.delivered = 0
        self.acked = 0
        self.rejected = 0
        self.requeued = 0
        self.expired = 0

    @property
    def partition_index(self) -> int:
        return self._queue.index

    @property
    def running(self) -> bool:
        return self._running and self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> int:
        return len(self._active)

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        self._task = asyncio.create_task(
            self._run_loop(), name=f"partition-consumer-{self.partition_index}"
        )
        logger.info(
            "[Queue %d] Consumer %s started", self.partition_index, self.consumer_id
        )

    async def stop(self, grace_period: float = 5.0) -> None:
        """Stop dequeuing, let in-flight deliveries finish within *grace_period*.

        Deliveries still running after the grace period are cancelled and their
        messages go back to the head of the partition queue.
        """
        self._running = False
        if self._task is not None:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        if self._active:
            _, pending = await asyncio.wait(set(self._active), timeout=grace_period)
            for task in pending:
                task.cancel()
            if pending:
                logger.warning(
                    "[Queue %d] Abandoning %d in-flight delivery(ies) after %.1fs grace",
                    self.partition_index,
                    len(pending),
                    grace_period,
                )
                await asyncio.gather(*pending, return_exceptions=True)
        logger.info(
            "[Queue %d] Consumer %s stopped", self.partition_index, self.consumer_id
        )

    async def _run_loop(self) -> None:
        while self._running:
            await self._window.acquire()
            try:
                message = await self._queue.dequeue()
            except QueueClosedError:
                self._window.release()
                logger.debug("[Queue %d] Queue closed", self.partition_index)
                return
            except BaseException:
                self._window.release()
                raise
            task = asyncio.create_task(self._process(message))
            self._active.add(task)
            task.add_done_callback(self._on_done)

    def _on_done(self, task: asyncio.Task[Any]) -> None:
        self._active.discard(task)
        self._window.release()
        if not task.cancelled() and task.exception() is not None:
            logger.error(
                "[Queue %d] Delivery task failed",
                self.partition_index,
                exc_info=task.exception(),
            )

    async def process_one(self, message: Message) -> MessageState | None:
        """Deliver a single message (used by the loop; handy in tests)."""
        return await self._process(message)

    async def _process(self, message: Message) -> MessageState | None:
        index = self.partition_index
        try:
            if message.is_expired(self._clock.now()):
                await self._tracker.expire_pending(message, index)
                self.expired += 1
                logger.warning(
                    "[Queue %d] %s expired before delivery", index, message.message_id
                )
                return MessageState.EXPIRED

            try:
                handle = await self._tracker.deliver(message, index, self.consumer_id)
            except AlreadyInFlightError as e:
                logger.warning("[Queue %d] %s", index, e)
                return None
            except PartitionBusyError as e:
                logger.warning("[Queue %d] %s; putting message back", index, e)
                await self._queue.requeue_front(message)
                return MessageState.PENDING
            except DeliveryError as e:
                logger.warning("[Queue %d] Skipping delivery: %s", index, e)
                return None
        except asyncio.CancelledError:
            await self._return_undelivered(message)
            raise

        self.delivered += 1
        logger.info(
            "[Queue %d] Received message with routing-key '%s': %s",
            index,
            message.partition_key,
            message.text(),
        )
        started = time.monotonic()
        try:
            result = normalize_result(await self._handler(message))
        except asyncio.CancelledError:
            with contextlib.suppress(UnknownHandleError):
                await self._tracker.abandon(handle)
            raise
        except Exception:
            logger.exception(
                "[Queue %d] Processing callback failed for %s", index, message.message_id
            )
            result = ProcessingResult.REJECT
        metrics.observe_processing(index, result.value, time.monotonic() - started)

        try:
            if result is ProcessingResult.ACK:
                state = await self._tracker.ack(handle)
                if state is MessageState.ACKED:
                    self.acked += 1
                    logger.info(
                        "[Queue %d] Processed and acknowledged: %s", index, message.text()
                    )
                else:
                    self.expired += 1
                return state
            if result is ProcessingResult.REQUEUE:
                self.requeued += 1
                return await self._tracker.reject(handle, requeue=True)
            self.rejected += 1
            logger.warning(
                "[Queue %d] Rejecting message (will go to DLQ): %s", index, message.text()
            )
            return await self._tracker.reject(handle, requeue=False)
        except UnknownHandleError:
            logger.warning(
                "[Queue %d] Delivery of %s was already resolved (expired?); ignoring %s",
                index,
                message.message_id,
                result.value,
            )
            return None

    async def _return_undelivered(self, message: Message) -> None:
        """Put a dequeued but never delivered message back at the head of its queue."""
        # Once expired or handed out, the tracker owns the message.
        if self._tracker.state_of(message.message_id) not in (None, MessageState.PENDING):
            return
        await self._queue.requeue_front(message)
        logger.debug(
            "[Queue %d] Cancelled before delivery; %s back at head",
            self.partition_index,
            message.message_id,
        )
