from __future__ import annotations

import logging
import threading
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Set

LOGGER = logging.getLogger("reelsmith.relay")

DONE = "done"


def format_step(value: int | str) -> str:
    """Render a progress value as ``"45%"`` or the ``"done"`` sentinel."""

    if value == DONE:
        return DONE
    text = str(value).strip()
    if text.endswith("%"):
        text = text[:-1]
    percent = max(0, min(100, int(float(text))))
    return f"{percent}%"


class Connection:
    """Anything the relay can push a message to."""

    def send(self, message: Dict[str, Any]) -> None:  # pragma: no cover - interface method
        raise NotImplementedError


class ProgressRelay:
    """Fans per-job progress events out to subscribed connections.

    A connection follows at most one job; subscribing again moves it. Delivery
    is best effort: a connection that fails to accept a message is dropped and
    the remaining subscribers are unaffected. Clients that miss events recover
    by polling the job status.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: DefaultDict[str, Set[Connection]] = defaultdict(set)
        self._followed: Dict[Connection, str] = {}

    def subscribe(self, job_id: str, connection: Connection) -> None:
        with self._lock:
            previous = self._followed.get(connection)
            if previous is not None and previous != job_id:
                self._discard(previous, connection)
            self._subscribers[job_id].add(connection)
            self._followed[connection] = job_id

    def unsubscribe(self, connection: Connection) -> None:
        with self._lock:
            job_id = self._followed.pop(connection, None)
            if job_id is not None:
                self._discard(job_id, connection)

    def publish(self, job_id: str, value: int | str) -> int:
        """Deliver one event to every subscriber of ``job_id``; returns the delivered count."""

        step = format_step(value)
        message = {"jobId": job_id, "step": step}
        with self._lock:
            targets: List[Connection] = list(self._subscribers.get(job_id, ()))

        delivered = 0
        for connection in targets:
            try:
                connection.send(message)
            except Exception as exc:
                LOGGER.debug(
                    "dropping subscriber that failed to receive",
                    extra={"job_id": job_id, "error": str(exc)},
                )
                self.unsubscribe(connection)
                continue
            delivered += 1

        if step == DONE:
            with self._lock:
                for connection in self._subscribers.pop(job_id, set()):
                    if self._followed.get(connection) == job_id:
                        del self._followed[connection]
        return delivered

    def subscriber_count(self, job_id: str) -> int:
        with self._lock:
            return len(self._subscribers.get(job_id, ()))

    def connection_count(self) -> int:
        with self._lock:
            return len(self._followed)

    def clear(self) -> None:
        with self._lock:
            self._subscribers.clear()
            self._followed.clear()

    def _discard(self, job_id: str, connection: Connection) -> None:
        subscribers = self._subscribers.get(job_id)
        if subscribers is None:
            return
        subscribers.discard(connection)
        if not subscribers:
            del self._subscribers[job_id]
