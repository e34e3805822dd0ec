"""Explicit partition topology passed to setup."""

from __future__ import annotations

from datetime import timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError, model_validator

from .exceptions import InvalidTopologyError


class Partition(BaseModel):
    """One partition of the live message space; immutable for the process lifetime."""

    model_config = ConfigDict(frozen=True)

    index: int
    weight: int = 10


class TopologyConfig(BaseModel):
    """Names, partitions and delivery policy for one pipeline.

    Construct through :meth:`build` (or :meth:`uniform`) to get
    :class:`InvalidTopologyError` instead of a pydantic ValidationError.
    """

    model_config = ConfigDict(frozen=True)

    exchange_name: str = "study.dlq-reprocess.hash.exchange"
    queue_prefix: str = "study.dlq-reprocess.hash.queue."
    dead_letter_exchange: str = "study.dlq-reprocess.dlx"
    dead_letter_queue: str = "study.dlq-reprocess.dlq"
    dead_letter_routing_key: str = "dlq"
    parking_queue: str = "study.dlq-reprocess.parking"
    partitions: tuple[Partition, ...] = Field(default_factory=tuple)
    message_ttl: timedelta | None = timedelta(seconds=30)
    dead_letter_enabled: bool = True
    reprocess_enabled: bool = True
    max_reprocess_attempts: int | None = None
    max_in_flight_per_partition: int = 1
    queue_capacity: int | None = None

    @model_validator(mode="before")
    @classmethod
    def _no_ttl_without_dead_letters(cls, data: Any) -> Any:
        # Message expiry only exists together with dead-lettering.
        if isinstance(data, dict) and data.get("dead_letter_enabled") is False:
            data = {**data, "message_ttl": None}
        return data

    @model_validator(mode="after")
    def _check(self) -> TopologyConfig:
        if not self.partitions:
            raise ValueError("partition_count must be > 0")
        for expected, partition in enumerate(self.partitions):
            if partition.index != expected:
                raise ValueError(
                    f"partition indexes must be 0..N-1 in order, got {partition.index} "
                    f"at position {expected}"
                )
            if partition.weight <= 0:
                raise ValueError(
                    f"partition {partition.index} weight must be > 0, got {partition.weight}"
                )
        if self.message_ttl is not None and self.message_ttl <= timedelta(0):
            raise ValueError("message_ttl must be positive")
        if self.max_in_flight_per_partition < 1:
            raise ValueError("max_in_flight_per_partition must be >= 1")
        if self.max_reprocess_attempts is not None and self.max_reprocess_attempts < 0:
            raise ValueError("max_reprocess_attempts must be >= 0")
        if self.queue_capacity is not None and self.queue_capacity <= 0:
            raise ValueError("queue_capacity must be > 0")
        if self.reprocess_enabled and not self.dead_letter_enabled:
            raise ValueError("reprocess_enabled requires dead_letter_enabled")
        return self

    @classmethod
    def build(cls, **data: Any) -> TopologyConfig:
        try:
            return cls(**data)
        except ValidationError as e:
            raise InvalidTopologyError(str(e)) from e

    @classmethod
    def uniform(cls, partition_count: int, weight: int = 10, **data: Any) -> TopologyConfig:
        """N partitions sharing one weight (uniform key distribution)."""
        return cls.weighted([weight] * max(partition_count, 0), **data)

    @classmethod
    def weighted(cls, weights: list[int] | tuple[int, ...], **data: Any) -> TopologyConfig:
        partitions = tuple(Partition(index=i, weight=w) for i, w in enumerate(weights))
        return cls.build(partitions=partitions, **data)

    @property
    def partition_count(self) -> int:
        return len(self.partitions)

    @property
    def weights(self) -> tuple[int, ...]:
        return tuple(p.weight for p in self.partitions)

    def queue_name(self, index: int) -> str:
        return f"{self.queue_prefix}{index}"
