"""Immutable records moved through the pipeline."""

from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum

from pydantic import BaseModel, ConfigDict, Field

DEFAULT_TTL = timedelta(seconds=30)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


class Message(BaseModel):
    """Immutable message routed by its partition key.

    Never mutated after creation: reprocessing derives a new Message through
    :meth:`next_attempt` with ``attempt_count`` incremented.
    """

    model_config = ConfigDict(frozen=True)

    message_id: str = Field(default_factory=_new_id)
    partition_key: str = Field(..., min_length=1)
    payload: bytes = b""
    created_at: datetime = Field(default_factory=_utcnow)
    attempt_count: int = Field(default=0, ge=0, description="Reprocessing attempts")
    ttl: timedelta | None = Field(default=DEFAULT_TTL, description="None never expires")
    headers: dict[str, str] = Field(default_factory=dict)
    parent_id: str | None = Field(
        default=None, description="message_id of the dead-lettered message this derives from"
    )

    def is_expired(self, now: datetime) -> bool:
        """True once the message has been unresolved for longer than its TTL."""
        if self.ttl is None:
            return False
        return now - self.created_at > self.ttl

    def expires_at(self) -> datetime | None:
        if self.ttl is None:
            return None
        return self.created_at + self.ttl

    def next_attempt(self, now: datetime) -> Message:
        """Derive the resubmission of this message (new id, attempt_count + 1)."""
        return Message(
            partition_key=self.partition_key,
            payload=self.payload,
            created_at=now,
            attempt_count=self.attempt_count + 1,
            ttl=self.ttl,
            headers=dict(self.headers),
            parent_id=self.message_id,
        )

    def text(self, encoding: str = "utf-8") -> str:
        """Payload decoded for logging."""
        return self.payload.decode(encoding, errors="replace")


class DeliveryHandle(BaseModel):
    """One outstanding (unacknowledged) delivery, owned by the DeliveryTracker."""

    model_config = ConfigDict(frozen=True)

    message_id: str
    partition_index: int = Field(..., ge=0)
    delivery_tag: str = Field(default_factory=_new_id)
    consumer_id: str


class DeadLetterReason(str, Enum):
    """Why a message left normal processing."""

    REJECTED = "rejected"
    EXPIRED = "expired"


class DeadLetterEntry(BaseModel):
    """A dead-lettered message waiting in a DeadLetterSink."""

    model_config = ConfigDict(frozen=True)

    entry_id: str = Field(default_factory=_new_id)
    original_message: Message
    reason: DeadLetterReason
    enqueued_at: datetime = Field(default_factory=_utcnow)
    partition_index: int | None = None

    @property
    def partition_key(self) -> str:
        return self.original_message.partition_key

    @property
    def message_id(self) -> str:
        return self.original_message.message_id
