"""Protocols the pipeline depends on; adapters implement them."""

from __future__ import annotations

from .background_worker import IBackgroundWorker
from .transport import (
    DEATH_REASON,
    DeadLetterTarget,
    DeliveryCallback,
    ExchangeKind,
    Transport,
)

__all__ = [
    "DEATH_REASON",
    "DeadLetterTarget",
    "DeliveryCallback",
    "ExchangeKind",
    "IBackgroundWorker",
    "Transport",
]
