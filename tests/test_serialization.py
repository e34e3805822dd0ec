"""Tests for MessageSerializer."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from partitioned_messaging.envelope import Message
from partitioned_messaging.exceptions import SerializationError
from partitioned_messaging.serialization import MessageSerializer


def test_roundtrip_keeps_every_field() -> None:
    s = MessageSerializer()
    m = Message(
        partition_key="user-4",
        payload=b"\x00\xffMessage 1 for user-4",
        created_at=datetime(2024, 5, 1, 12, tzinfo=timezone.utc),
        attempt_count=2,
        ttl=timedelta(seconds=45),
        headers={"trace": "abc"},
        parent_id="p-1",
    )
    assert s.deserialize(s.serialize(m)) == m


def test_partition_key_is_a_field_of_the_body() -> None:
    body = MessageSerializer().serialize(Message(partition_key="user-9", payload=b"x"))
    assert b'"partition_key":"user-9"' in body


@pytest.mark.parametrize(
    "raw",
    [
        b"not json",
        b"[1, 2]",
        b'{"payload": "!!!"}',
        b'{"partition_key": "", "payload": ""}',
        b"\xff\xfe",
    ],
)
def test_bad_bodies_raise_serialization_error(raw: bytes) -> None:
    with pytest.raises(SerializationError):
        MessageSerializer().deserialize(raw)
