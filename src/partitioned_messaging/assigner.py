"""Consistent hashing of partition keys onto a weighted ring.

Each partition occupies ``weight`` virtual-node slots on a 32-bit ring. A key
belongs to the partition owning the first slot at or after the key's hash,
wrapping around past the last slot. The hash is MD5-based so the mapping is
identical across processes and interpreter runs (``hash()`` is salted).
"""

from __future__ import annotations

import bisect
import hashlib
import logging
from functools import lru_cache
from typing import TYPE_CHECKING

from .exceptions import InvalidTopologyError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from .topology import Partition

logger = logging.getLogger("partitioned_messaging.assigner")

RING_SIZE = 2**32


def stable_hash(value: str) -> int:
    """32-bit position on the ring for *value*."""
    digest = hashlib.md5(value.encode("utf-8"), usedforsecurity=False).digest()
    return int.from_bytes(digest[:4], "big")


def _validate(partition_count: int, weights: Sequence[int]) -> None:
    if partition_count <= 0:
        raise InvalidTopologyError(f"partition_count must be > 0, got {partition_count}")
    if len(weights) != partition_count:
        raise InvalidTopologyError(
            f"expected {partition_count} weights, got {len(weights)}"
        )
    for index, weight in enumerate(weights):
        if weight <= 0:
            raise InvalidTopologyError(
                f"partition {index} weight must be > 0, got {weight}"
            )


class HashRing:
    """Sorted virtual-node slots for one (partition_count, weights) topology."""

    def __init__(self, weights: Sequence[int]) -> None:
        _validate(len(weights), weights)
        slots = sorted(
            (stable_hash(f"{index}:{replica}"), index)
            for index, weight in enumerate(weights)
            for replica in range(weight)
        )
        self._positions = [position for position, _ in slots]
        self._owners = [index for _, index in slots]
        self.weights = tuple(weights)

    def __len__(self) -> int:
        return len(self._positions)

    def owner(self, partition_key: str) -> int:
        point = stable_hash(partition_key)
        slot = bisect.bisect_left(self._positions, point)
        if slot == len(self._positions):
            slot = 0
        return self._owners[slot]


@lru_cache(maxsize=64)
def _ring_for(weights: tuple[int, ...]) -> HashRing:
    return HashRing(weights)


def assign(partition_key: str, partition_count: int, weights: Sequence[int]) -> int:
    """Return the partition index owning *partition_key*.

    Raises:
        InvalidTopologyError: ``partition_count <= 0``, a weight count mismatch,
            or any non-positive weight.
    """
    _validate(partition_count, weights)
    return _ring_for(tuple(weights)).owner(partition_key)


class PartitionAssigner:
    """Assigner bound to a fixed set of partitions."""

    def __init__(self, partitions: Sequence[Partition]) -> None:
        weights = tuple(p.weight for p in partitions)
        _validate(len(weights), weights)
        self._ring = _ring_for(weights)
        self.partitions = tuple(partitions)

    @property
    def partition_count(self) -> int:
        return len(self.partitions)

    @property
    def weights(self) -> tuple[int, ...]:
        return self._ring.weights

    def assign(self, partition_key: str) -> int:
        index = self._ring.owner(partition_key)
        logger.debug("Key %r assigned to partition %d", partition_key, index)
        return index
