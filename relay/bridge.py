"""Carries progress events from worker processes to the API's relay."""

from __future__ import annotations

import json
import logging
import threading
from typing import Any

import redis

from .registry import ProgressRelay, format_step

LOGGER = logging.getLogger("reelsmith.relay.bridge")


class RedisProgressPublisher:
    """Publishes progress events on a Redis pub/sub channel."""

    def __init__(self, client: redis.Redis, channel: str) -> None:
        self._client = client
        self._channel = channel

    def publish(self, job_id: str, value: int | str) -> None:
        message = json.dumps({"jobId": job_id, "step": format_step(value)})
        try:
            self._client.publish(self._channel, message)
        except redis.RedisError as exc:
            # Events are an optimization; the job record is the source of truth.
            LOGGER.warning(
                "progress publish failed", extra={"job_id": job_id, "error": str(exc)}
            )


class RedisProgressListener:
    """Background thread feeding channel messages into a :class:`ProgressRelay`."""

    def __init__(
        self,
        client: redis.Redis,
        channel: str,
        relay: ProgressRelay,
        poll_timeout: float = 1.0,
    ) -> None:
        self._client = client
        self._channel = channel
        self._relay = relay
        self._poll_timeout = poll_timeout
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._pubsub: Any = None

    def start(self) -> "RedisProgressListener":
        if self._thread is not None:
            return self
        self._pubsub = self._client.pubsub(ignore_subscribe_messages=True)
        self._pubsub.subscribe(self._channel)
        self._thread = threading.Thread(
            target=self._run, name="progress-listener", daemon=True
        )
        self._thread.start()
        LOGGER.info("listening for progress on %s", self._channel)
        return self

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        if self._pubsub is not None:
            self._pubsub.close()
            self._pubsub = None

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                message = self._pubsub.get_message(timeout=self._poll_timeout)
            except redis.RedisError as exc:  # pragma: no cover - network failure path
                LOGGER.warning("progress listener error", extra={"error": str(exc)})
                self._stop.wait(1.0)
                continue
            if message is not None:
                self.handle_message(message)

    def handle_message(self, message: dict[str, Any]) -> bool:
        """Relay one pub/sub message; malformed messages are ignored."""

        data = message.get("data")
        if isinstance(data, bytes):
            data = data.decode()
        try:
            event = json.loads(data)
            job_id = str(event["jobId"])
            step = event["step"]
            self._relay.publish(job_id, step)
        except (TypeError, ValueError, KeyError) as exc:
            LOGGER.debug("ignoring malformed progress message", extra={"error": str(exc)})
            return False
        return True
