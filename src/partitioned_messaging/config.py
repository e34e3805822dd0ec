"""Environment configuration for the demo runs and the broker connection."""

from __future__ import annotations

from datetime import timedelta
from enum import Enum
from functools import lru_cache
from typing import Any
from urllib.parse import quote

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .exceptions import InvalidTopologyError
from .topology import TopologyConfig


class RunMode(str, Enum):
    BASIC = "basic"
    CONSISTENT_HASH = "consistent-hash"
    DLQ_REPROCESS = "dlq-reprocess"


_MODE_NAMES: dict[RunMode, dict[str, str]] = {
    RunMode.BASIC: {
        "exchange_name": "study.exchange",
        "queue_prefix": "study.queue.",
        "dead_letter_exchange": "study.dlx",
        "dead_letter_queue": "study.dlq",
        "parking_queue": "study.parking",
    },
    RunMode.CONSISTENT_HASH: {
        "exchange_name": "study.hash.exchange",
        "queue_prefix": "study.hash.queue.",
    },
    RunMode.DLQ_REPROCESS: {},
}


def _split(value: str) -> list[str]:
    return [part.strip() for part in value.split(",") if part.strip()]


class Settings(BaseSettings):
    RABBITMQ_HOST: str = "localhost"
    RABBITMQ_PORT: int = 5672
    RABBITMQ_USER: str = "guest"
    RABBITMQ_PASSWORD: str = "guest"
    RABBITMQ_VHOST: str = "/"
    RABBITMQ_MODE: RunMode = RunMode.DLQ_REPROCESS

    PARTITION_COUNT: int = 3
    PARTITION_WEIGHT: int = 10
    PARTITION_WEIGHTS: str = ""
    PARTITION_KEYS: str = "user-1,user-2,user-3,user-4,user-5"
    MESSAGE_TTL_MS: int = 30_000
    MAX_REPROCESS_ATTEMPTS: int | None = None

    FAILURE_PROBABILITY: float = 0.3
    PUBLISH_DELAY_MIN_MS: int = 1000
    PUBLISH_DELAY_MAX_MS: int = 2000
    PROCESSING_DELAY_MAX_MS: int = 500
    PRODUCER_COUNT: int = 1
    RANDOM_SEED: int | None = None

    SHUTDOWN_GRACE_SECONDS: float = 5.0
    STARTUP_DELAY_SECONDS: float = 0.0
    LOG_LEVEL: str = "INFO"

    model_config = SettingsConfigDict(env_file=".env", case_sensitive=False, extra="ignore")

    @field_validator("MAX_REPROCESS_ATTEMPTS", "RANDOM_SEED", mode="before")
    @classmethod
    def _empty_is_none(cls, value: Any) -> Any:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def amqp_url(self) -> str:
        vhost = quote(self.RABBITMQ_VHOST, safe="")
        return (
            f"amqp://{quote(self.RABBITMQ_USER, safe='')}:{quote(self.RABBITMQ_PASSWORD, safe='')}"
            f"@{self.RABBITMQ_HOST}:{self.RABBITMQ_PORT}/{vhost}"
        )

    @property
    def partition_keys(self) -> list[str]:
        return _split(self.PARTITION_KEYS)

    @property
    def partition_weights(self) -> list[int]:
        """Per-partition weights; PARTITION_WEIGHTS overrides the uniform weight."""
        if self.PARTITION_WEIGHTS.strip():
            try:
                return [int(w) for w in _split(self.PARTITION_WEIGHTS)]
            except ValueError as e:
                raise InvalidTopologyError(
                    f"PARTITION_WEIGHTS must be a comma list of integers: {e}"
                ) from e
        return [self.PARTITION_WEIGHT] * max(self.PARTITION_COUNT, 0)

    def to_topology(self, mode: RunMode | None = None) -> TopologyConfig:
        """Build the TopologyConfig for *mode* (defaults to RABBITMQ_MODE).

        Raises:
            InvalidTopologyError: counts, weights or TTL are unusable.
        """
        mode = mode or self.RABBITMQ_MODE
        common: dict[str, Any] = {
            "message_ttl": timedelta(milliseconds=self.MESSAGE_TTL_MS),
            **_MODE_NAMES[mode],
        }
        if mode is RunMode.BASIC:
            return TopologyConfig.weighted(
                [self.PARTITION_WEIGHT], reprocess_enabled=False, **common
            )
        weights = self.partition_weights
        if self.PARTITION_WEIGHTS.strip() and len(weights) != self.PARTITION_COUNT:
            raise InvalidTopologyError(
                f"expected {self.PARTITION_COUNT} weights, got {len(weights)}"
            )
        if mode is RunMode.CONSISTENT_HASH:
            return TopologyConfig.weighted(
                weights,
                dead_letter_enabled=False,
                reprocess_enabled=False,
                **common,
            )
        return TopologyConfig.weighted(
            weights, max_reprocess_attempts=self.MAX_REPROCESS_ATTEMPTS, **common
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings()
