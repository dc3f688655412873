"""Push-based progress delivery with polling as the source of truth."""

from __future__ import annotations

from .bridge import RedisProgressListener, RedisProgressPublisher
from .connection import QueueConnection
from .registry import DONE, Connection, ProgressRelay, format_step

__all__ = [
    "DONE",
    "Connection",
    "ProgressRelay",
    "QueueConnection",
    "RedisProgressListener",
    "RedisProgressPublisher",
    "format_step",
]
