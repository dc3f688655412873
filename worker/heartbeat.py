"""Lease renewal while a job is running."""

from __future__ import annotations

import logging
import threading

import redis

from app.errors import JobNotFoundError, NotOwnerError
from jobs.queue import RedisJobQueue

LOGGER = logging.getLogger("reelsmith.worker.heartbeat")


class Heartbeat:
    """Renews a job lease on a fixed interval from a background thread.

    Once the queue reports that the lease belongs to someone else the
    heartbeat stops and :attr:`lost` turns true; the worker must then abandon
    the job.
    """

    def __init__(
        self,
        queue: RedisJobQueue,
        job_id: str,
        worker_id: str,
        interval: float,
        lease_seconds: float,
    ) -> None:
        self._queue = queue
        self._job_id = job_id
        self._worker_id = worker_id
        self._interval = interval
        self._lease_seconds = lease_seconds
        self._stop = threading.Event()
        self._lost = threading.Event()
        self._thread: threading.Thread | None = None
        self.beats = 0

    @property
    def lost(self) -> bool:
        return self._lost.is_set()

    def start(self) -> "Heartbeat":
        self._thread = threading.Thread(
            target=self._run, name=f"heartbeat-{self._job_id}", daemon=True
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            try:
                self._queue.heartbeat(self._job_id, self._worker_id, self._lease_seconds)
            except (NotOwnerError, JobNotFoundError) as exc:
                LOGGER.warning(
                    "lease lost",
                    extra={"job_id": self._job_id, "worker_id": self._worker_id, "error": str(exc)},
                )
                self._lost.set()
                return
            except redis.RedisError as exc:
                # Keep trying; the lease only lapses if this persists past its expiry.
                LOGGER.warning(
                    "heartbeat failed", extra={"job_id": self._job_id, "error": str(exc)}
                )
                continue
            self.beats += 1
