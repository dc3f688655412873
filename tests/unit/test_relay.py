from __future__ import annotations

import asyncio
import json
import time
from typing import Any

import pytest

from relay.bridge import RedisProgressListener, RedisProgressPublisher
from relay.connection import QueueConnection
from relay.registry import Connection, ProgressRelay, format_step


class RecordingConnection(Connection):
    def __init__(self) -> None:
        self.messages: list[dict[str, Any]] = []

    def send(self, message: dict[str, Any]) -> None:
        self.messages.append(message)


class BrokenConnection(Connection):
    def send(self, message: dict[str, Any]) -> None:
        raise ConnectionError("socket closed")


def test_format_step() -> None:
    assert format_step(45) == "45%"
    assert format_step("45%") == "45%"
    assert format_step("130") == "100%"
    assert format_step("done") == "done"


def test_publish_reaches_subscribers_of_that_job_only() -> None:
    relay = ProgressRelay()
    first, second, other = RecordingConnection(), RecordingConnection(), RecordingConnection()
    relay.subscribe("job-1", first)
    relay.subscribe("job-1", second)
    relay.subscribe("job-2", other)

    assert relay.publish("job-1", 40) == 2

    assert first.messages == [{"jobId": "job-1", "step": "40%"}]
    assert second.messages == first.messages
    assert other.messages == []


def test_failed_connection_is_dropped_and_others_still_receive() -> None:
    relay = ProgressRelay()
    healthy = RecordingConnection()
    relay.subscribe("job-1", BrokenConnection())
    relay.subscribe("job-1", healthy)

    assert relay.publish("job-1", 55) == 1
    assert relay.subscriber_count("job-1") == 1

    relay.publish("job-1", 80)
    assert [m["step"] for m in healthy.messages] == ["55%", "80%"]


def test_done_removes_the_subscriber_set() -> None:
    relay = ProgressRelay()
    connection = RecordingConnection()
    relay.subscribe("job-1", connection)

    relay.publish("job-1", "done")
    relay.publish("job-1", 100)

    assert connection.messages == [{"jobId": "job-1", "step": "done"}]
    assert relay.subscriber_count("job-1") == 0
    assert relay.connection_count() == 0


def test_resubscribe_moves_the_connection() -> None:
    relay = ProgressRelay()
    connection = RecordingConnection()
    relay.subscribe("job-1", connection)
    relay.subscribe("job-2", connection)

    relay.publish("job-1", 20)
    relay.publish("job-2", 40)

    assert connection.messages == [{"jobId": "job-2", "step": "40%"}]
    assert relay.subscriber_count("job-1") == 0

    relay.unsubscribe(connection)
    assert relay.publish("job-2", 45) == 0


def test_queue_connection_delivers_across_threads() -> None:
    async def scenario() -> list[dict[str, Any]]:
        connection = QueueConnection(asyncio.get_running_loop())
        relay = ProgressRelay()
        relay.subscribe("job-1", connection)
        await asyncio.to_thread(relay.publish, "job-1", 20)
        first = await asyncio.wait_for(connection.queue.get(), 1)
        connection.close()
        delivered = await asyncio.to_thread(relay.publish, "job-1", 40)
        assert delivered == 0
        return [first]

    assert asyncio.run(scenario()) == [{"jobId": "job-1", "step": "20%"}]


def test_listener_feeds_the_relay(redis_client, settings) -> None:
    relay = ProgressRelay()
    connection = RecordingConnection()
    relay.subscribe("job-1", connection)
    listener = RedisProgressListener(
        redis_client, settings.progress_channel, relay, poll_timeout=0.05
    ).start()
    try:
        publisher = RedisProgressPublisher(redis_client, settings.progress_channel)
        publisher.publish("job-1", 45)
        deadline = time.monotonic() + 2
        while not connection.messages and time.monotonic() < deadline:
            time.sleep(0.02)
    finally:
        listener.stop()

    assert connection.messages == [{"jobId": "job-1", "step": "45%"}]


@pytest.mark.parametrize(
    "data", [b"not json", json.dumps({"step": "10%"}), json.dumps(["job-1", 10]), None]
)
def test_listener_ignores_malformed_messages(data: Any) -> None:
    relay = ProgressRelay()
    listener = RedisProgressListener(None, "channel", relay)  # type: ignore[arg-type]

    assert listener.handle_message({"type": "message", "data": data}) is False


def test_subscriber_leaving_early_does_not_affect_the_others() -> None:
    relay = ProgressRelay()
    leaving, staying = RecordingConnection(), RecordingConnection()
    relay.subscribe("job-1", leaving)
    relay.subscribe("job-1", staying)
    relay.publish("job-1", 20)

    relay.unsubscribe(leaving)
    relay.unsubscribe(leaving)

    assert relay.subscriber_count("job-1") == 1
    assert relay.publish("job-1", 45) == 1
    assert relay.publish("job-1", "done") == 1
    assert [m["step"] for m in leaving.messages] == ["20%"]
    assert [m["step"] for m in staying.messages] == ["20%", "45%", "done"]
    assert relay.subscriber_count("job-1") == 0
    assert relay.connection_count() == 0


def test_queue_connection_never_goes_backwards() -> None:
    async def scenario() -> list[str]:
        connection = QueueConnection(asyncio.get_running_loop())
        connection.send({"jobId": "job-1", "step": "55%"})
        await asyncio.to_thread(connection.send, {"jobId": "job-1", "step": "45%"})
        connection.send({"jobId": "job-1", "step": "55%"})
        connection.send({"jobId": "job-2", "step": "20%"})
        connection.send({"jobId": "job-1", "step": "80%"})
        connection.send({"jobId": "job-1", "step": "done"})
        await asyncio.sleep(0.05)
        steps = []
        while not connection.queue.empty():
            message = connection.queue.get_nowait()
            steps.append(f"{message['jobId']}:{message['step']}")
        return steps

    assert asyncio.run(scenario()) == ["job-1:55%", "job-2:20%", "job-1:80%", "job-1:done"]
