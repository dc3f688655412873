"""Adapter between the thread-safe relay and an asyncio WebSocket handler."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict

from .registry import Connection

LOGGER = logging.getLogger("reelsmith.relay.connection")


class QueueConnection(Connection):
    """Relay connection whose messages are drained by a WebSocket sender task.

    ``send`` may be called from any thread; messages are handed to the owning
    event loop and queued there. A percent step no higher than one already
    queued for the same job is dropped, so the socket never sees progress go
    backwards when a status snapshot and a live event cross.
    """

    def __init__(self, loop: asyncio.AbstractEventLoop, maxsize: int = 256) -> None:
        self._loop = loop
        self.queue: asyncio.Queue[Dict[str, Any]] = asyncio.Queue(maxsize)
        self.closed = False
        self._high_water: Dict[str, int] = {}

    def send(self, message: Dict[str, Any]) -> None:
        if self.closed:
            raise ConnectionError("connection closed")
        self._loop.call_soon_threadsafe(self._put, message)

    def _put(self, message: Dict[str, Any]) -> None:
        step = str(message.get("step"))
        if step.endswith("%"):
            job_id = str(message.get("jobId"))
            percent = int(step[:-1])
            if percent <= self._high_water.get(job_id, -1):
                return
            self._high_water[job_id] = percent
        try:
            self.queue.put_nowait(message)
        except asyncio.QueueFull:
            LOGGER.warning("subscriber queue full, dropping %s", message.get("step"))

    def close(self) -> None:
        self.closed = True
