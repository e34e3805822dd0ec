"""Partitioned, per-key-ordered message delivery with dead-lettering and reprocessing."""

from __future__ import annotations

from .adapters.memory import InMemoryTransport
from .assigner import HashRing, PartitionAssigner, assign, stable_hash
from .clock import Clock, ManualClock, SystemClock
from .consumer import PartitionConsumer, ProcessingResult
from .dead_letter import DeadLetterSink
from .engine import DeliveryEngine, EngineHealth
from .envelope import DeadLetterEntry, DeadLetterReason, DeliveryHandle, Message
from .exceptions import (
    AlreadyInFlightError,
    DeliveryError,
    InvalidTopologyError,
    PartitionBusyError,
    PartitionedMessagingError,
    QueueClosedError,
    QueueError,
    QueueFullError,
    SerializationError,
    TransportConnectionError,
    TransportError,
    UnknownHandleError,
)
from .partition_queue import PartitionQueue
from .relay import BrokerRelay, declare_topology
from .reprocessor import ReprocessOutcome, Reprocessor
from .retry import RetryPolicy
from .serialization import MessageSerializer
from .simulation import FailureMarkerHandler, ProducerSimulator
from .topology import Partition, TopologyConfig
from .tracker import DeliveryTracker, MessageState
from .watchdog import ExpiryWatchdog

__all__ = [
    "AlreadyInFlightError",
    "BrokerRelay",
    "Clock",
    "DeadLetterEntry",
    "DeadLetterReason",
    "DeadLetterSink",
    "DeliveryEngine",
    "DeliveryError",
    "DeliveryHandle",
    "DeliveryTracker",
    "EngineHealth",
    "ExpiryWatchdog",
    "FailureMarkerHandler",
    "HashRing",
    "InMemoryTransport",
    "InvalidTopologyError",
    "ManualClock",
    "Message",
    "MessageSerializer",
    "MessageState",
    "Partition",
    "PartitionAssigner",
    "PartitionBusyError",
    "PartitionConsumer",
    "PartitionQueue",
    "PartitionedMessagingError",
    "ProcessingResult",
    "ProducerSimulator",
    "QueueClosedError",
    "QueueError",
    "QueueFullError",
    "ReprocessOutcome",
    "Reprocessor",
    "RetryPolicy",
    "SerializationError",
    "SystemClock",
    "TopologyConfig",
    "TransportConnectionError",
    "TransportError",
    "UnknownHandleError",
    "assign",
    "declare_topology",
    "stable_hash",
]
