"""JSON wire format for Message."""

from __future__ import annotations

import base64
import binascii
import json
from typing import Any

from pydantic import ValidationError

from .envelope import Message
from .exceptions import SerializationError

CONTENT_TYPE = "application/json"


class MessageSerializer:
    """Serialize/deserialize :class:`Message` to/from JSON bytes.

    The partition key travels as a field of the body, so a reprocessor never
    has to parse it out of the payload text. The payload is base64-encoded.
    """

    content_type = CONTENT_TYPE

    def serialize(self, message: Message) -> bytes:
        """Encode *message* to JSON bytes."""
        try:
            data: dict[str, Any] = message.model_dump(mode="json", exclude={"payload"})
            data["payload"] = base64.b64encode(message.payload).decode("ascii")
            return json.dumps(data, separators=(",", ":")).encode("utf-8")
        except (TypeError, ValueError) as e:
            raise SerializationError(str(e)) from e

    def deserialize(self, raw: bytes) -> Message:
        """Decode JSON bytes to a Message."""
        try:
            data = json.loads(raw.decode("utf-8"))
            if not isinstance(data, dict):
                raise SerializationError("Message body must be a JSON object")
            data["payload"] = base64.b64decode(data.get("payload", ""), validate=True)
            return Message.model_validate(data)
        except (
            json.JSONDecodeError,
            UnicodeDecodeError,
            binascii.Error,
            ValidationError,
            TypeError,
        ) as e:
            raise SerializationError(str(e)) from e
