"""Exceptions for partitioned-messaging."""

from __future__ import annotations


class PartitionedMessagingError(Exception):
    """Root exception for the entire partitioned-messaging package."""


class InvalidTopologyError(PartitionedMessagingError):
    """Raised when partitions, weights or topology settings are unusable.

    Fatal at setup time: nothing is started with a bad topology.
    """


class DeliveryError(PartitionedMessagingError):
    """Base class for delivery bookkeeping errors (races, programming errors)."""


class AlreadyInFlightError(DeliveryError):
    """Raised when a message that already has an outstanding handle is delivered again."""

    def __init__(self, message_id: str) -> None:
        self.message_id = message_id
        super().__init__(f"Message {message_id!r} is already in flight")


class UnknownHandleError(DeliveryError):
    """Raised when a handle or entry was already resolved or never issued."""

    def __init__(self, delivery_tag: str) -> None:
        self.delivery_tag = delivery_tag
        super().__init__(f"Unknown or already resolved delivery {delivery_tag!r}")


class PartitionBusyError(DeliveryError):
    """Raised when a partition's in-flight window is already full."""

    def __init__(self, partition_index: int, limit: int) -> None:
        self.partition_index = partition_index
        self.limit = limit
        super().__init__(
            f"Partition {partition_index} already has {limit} delivery(ies) in flight"
        )


class QueueError(PartitionedMessagingError):
    """Base class for partition queue and sink errors."""


class QueueFullError(QueueError):
    """Raised when a bounded queue refuses an enqueue."""


class QueueClosedError(QueueError):
    """Raised when enqueuing to, or draining, a closed queue."""


class TransportError(PartitionedMessagingError):
    """Raised when the message broker collaborator fails (network, channel, confirm)."""


class TransportConnectionError(TransportError):
    """Raised when connectivity to the message broker fails."""


class SerializationError(PartitionedMessagingError):
    """Raised when message serialization or deserialization fails."""
