"""In-memory transport for tests and broker-less demo runs."""

from __future__ import annotations

from .transport import InMemoryTransport

__all__ = ["InMemoryTransport"]
