"""Background stall detection."""

from __future__ import annotations

import logging
import threading

import redis

from .queue import RedisJobQueue

LOGGER = logging.getLogger("reelsmith.queue.sweeper")


class StallSweeper:
    """Periodically returns expired leases to the queue."""

    def __init__(self, queue: RedisJobQueue, interval: float) -> None:
        self._queue = queue
        self._interval = interval
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> "StallSweeper":
        if self._thread is None:
            self._thread = threading.Thread(
                target=self._run, name="stall-sweeper", daemon=True
            )
            self._thread.start()
        return self

    def stop(self, timeout: float | None = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                swept = self._queue.sweep_stalled()
            except redis.RedisError as exc:  # pragma: no cover - network failure path
                LOGGER.warning("stall sweep failed", extra={"error": str(exc)})
                continue
            if swept:
                LOGGER.info("stall sweep reclaimed %d job(s)", len(swept))
