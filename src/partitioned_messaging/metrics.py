"""Prometheus metrics for the delivery pipeline.

Collectors live in the default ``prometheus_client`` REGISTRY; importing this
module registers them once per process. Label ``partition`` is the partition
index as a string, ``"dlq"`` for the dead-letter side.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

MESSAGES_PUBLISHED = Counter(
    "partitioned_messages_published_total",
    "Messages enqueued onto a partition (new and reprocessed)",
    ["partition"],
)
MESSAGES_ACKED = Counter(
    "partitioned_messages_acked_total",
    "Deliveries acknowledged by the processing callback",
    ["partition"],
)
MESSAGES_DEAD_LETTERED = Counter(
    "partitioned_messages_dead_lettered_total",
    "Messages moved to the dead-letter sink",
    ["partition", "reason"],
)
MESSAGES_REPROCESSED = Counter(
    "partitioned_messages_reprocessed_total",
    "Dead-letter entries handled by the reprocessor",
    ["outcome"],
)
IN_FLIGHT = Gauge(
    "partitioned_messages_in_flight",
    "Outstanding deliveries per partition",
    ["partition"],
)
PROCESSING_SECONDS = Histogram(
    "partitioned_message_processing_seconds",
    "Processing callback duration",
    ["partition", "outcome"],
)


def _label(partition_index: int | None) -> str:
    return "dlq" if partition_index is None else str(partition_index)


def record_published(partition_index: int) -> None:
    MESSAGES_PUBLISHED.labels(partition=_label(partition_index)).inc()


def record_acked(partition_index: int) -> None:
    MESSAGES_ACKED.labels(partition=_label(partition_index)).inc()


def record_dead_lettered(partition_index: int | None, reason: str) -> None:
    MESSAGES_DEAD_LETTERED.labels(partition=_label(partition_index), reason=reason).inc()


def record_reprocessed(outcome: str) -> None:
    MESSAGES_REPROCESSED.labels(outcome=outcome).inc()


def set_in_flight(partition_index: int, count: int) -> None:
    IN_FLIGHT.labels(partition=_label(partition_index)).set(count)


def observe_processing(partition_index: int, outcome: str, seconds: float) -> None:
    PROCESSING_SECONDS.labels(partition=_label(partition_index), outcome=outcome).observe(
        max(seconds, 0.0)
    )
