from __future__ import annotations

import threading
import time
from pathlib import Path

import fakeredis
import pytest

from jobs.queue import RedisJobQueue
from jobs.schemas import JobState
from pipeline.orchestrator import PipelineOrchestrator
from relay.registry import DONE
from worker.heartbeat import Heartbeat
from worker.worker import Worker


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, int | str]] = []

    def publish(self, job_id: str, value: int | str) -> None:
        self.events.append((job_id, value))


def make_worker(redis_server, settings, generators, worker_id: str = "worker-a") -> Worker:
    return Worker(
        redis_client_factory=lambda: fakeredis.FakeRedis(
            server=redis_server, decode_responses=True
        ),
        settings=settings,
        orchestrator=PipelineOrchestrator.from_settings(settings, generators),
        publisher=RecordingPublisher(),  # type: ignore[arg-type]
        worker_id=worker_id,
    )


@pytest.fixture
def queue(redis_client, settings) -> RedisJobQueue:
    return RedisJobQueue(redis_client, settings)


def test_worker_completes_a_full_job(queue, redis_server, settings, generators) -> None:
    job_id = queue.submit({"prompt": "Tabs versus spaces"})
    worker = make_worker(redis_server, settings, generators)

    assert worker.run_once() is True

    job = queue.get_status(job_id)
    assert job.state is JobState.COMPLETED
    assert job.progress == 100
    assert Path(job.result["output"]).is_file()
    steps = [value for _, value in worker._publisher.events]
    assert steps == [20, 40, 45, 55, 80, 90, 95, 100, DONE]
    assert worker.run_once() is False


def test_script_only_job_reports_single_step(queue, redis_server, settings, generators) -> None:
    job_id = queue.submit({"prompt": "Tabs versus spaces", "stageSubset": "script-only"})
    worker = make_worker(redis_server, settings, generators)

    worker.run_once()

    job = queue.get_status(job_id)
    assert job.state is JobState.COMPLETED
    assert job.result["script"] == generators.writer.text
    assert [value for _, value in worker._publisher.events] == [100, DONE]


def test_stage_failure_is_recorded_with_stage(queue, redis_server, settings, generators) -> None:
    generators.media.fail_on = "mix_audio"
    job_id = queue.submit({"prompt": "Tabs versus spaces"})
    worker = make_worker(redis_server, settings, generators)

    worker.run_once()

    job = queue.get_status(job_id)
    assert job.state is JobState.FAILED
    assert job.error is not None
    assert job.error.kind == "StageFailure"
    assert job.error.stage == "mix"
    assert job.progress == 40
    assert DONE not in [value for _, value in worker._publisher.events]


def test_unexpected_error_fails_job_as_internal(queue, redis_server, settings, generators) -> None:
    job_id = queue.submit({"prompt": "Tabs versus spaces"})
    worker = make_worker(redis_server, settings, generators)

    def explode(*_args, **_kwargs):
        raise KeyError("surprise")

    worker._orchestrator.run = explode  # type: ignore[method-assign]
    worker.run_once()

    job = queue.get_status(job_id)
    assert job.state is JobState.FAILED
    assert job.error.kind == "Internal"


def test_heartbeat_keeps_slow_job_leased(queue, redis_server, settings, generators) -> None:
    settings.lease_seconds = 0.6
    settings.heartbeat_seconds = 0.1
    generators.writer.delay = 1.2
    job_id = queue.submit({"prompt": "Tabs versus spaces", "scriptOnly": True})
    worker = make_worker(redis_server, settings, generators)

    runner = threading.Thread(target=worker.run_once)
    runner.start()
    time.sleep(0.9)
    rival = RedisJobQueue(
        fakeredis.FakeRedis(server=redis_server, decode_responses=True), settings
    )
    assert rival.claim_next("worker-b") is None
    runner.join()

    job = queue.get_status(job_id)
    assert job.state is JobState.COMPLETED
    assert job.attempts == 1
    assert job.stalled_count == 0


def test_lost_lease_abandons_the_job(queue, redis_server, settings, generators) -> None:
    settings.lease_seconds = 0.3
    settings.heartbeat_seconds = 5.0
    generators.writer.delay = 0.6
    job_id = queue.submit({"prompt": "Tabs versus spaces"})
    worker = make_worker(redis_server, settings, generators)

    runner = threading.Thread(target=worker.run_once)
    runner.start()
    time.sleep(0.45)
    rival = RedisJobQueue(
        fakeredis.FakeRedis(server=redis_server, decode_responses=True), settings
    )
    reclaimed = rival.claim_next("worker-b", lease_seconds=60)
    runner.join()

    assert reclaimed is not None and reclaimed.id == job_id
    job = queue.get_status(job_id)
    assert job.state is JobState.ACTIVE
    assert job.worker_id == "worker-b"
    assert job.stalled_count == 1
    assert job.progress == 0
    assert worker._publisher.events == []


def test_heartbeat_marks_lost_lease(queue) -> None:
    job_id = queue.submit({})
    queue.claim_next("worker-a")
    heartbeat = Heartbeat(queue, job_id, "worker-b", interval=0.01, lease_seconds=5).start()

    deadline = time.monotonic() + 2
    while not heartbeat.lost and time.monotonic() < deadline:
        time.sleep(0.01)
    heartbeat.stop()

    assert heartbeat.lost
    assert heartbeat.beats == 0


def test_stopped_worker_claims_nothing(queue, redis_server, settings, generators) -> None:
    queue.submit({"prompt": "Tabs versus spaces"})
    worker = make_worker(redis_server, settings, generators)

    worker.stop()

    assert worker.stopping
    assert worker.run_once() is False
    assert queue.queue_depth() == 1


def test_run_forever_exits_after_stop(queue, redis_server, settings, generators) -> None:
    job_id = queue.submit({"prompt": "Tabs versus spaces", "scriptOnly": True})
    worker = make_worker(redis_server, settings, generators)

    runner = threading.Thread(target=worker.run_forever)
    runner.start()
    deadline = time.monotonic() + 5
    while queue.get_status(job_id).state is not JobState.COMPLETED and time.monotonic() < deadline:
        time.sleep(0.02)
    worker.stop()
    runner.join(5)

    assert not runner.is_alive()
    assert queue.get_status(job_id).state is JobState.COMPLETED


def test_jobs_with_identical_prompts_never_share_a_run_directory(
    queue, redis_server, settings, generators
) -> None:
    payload = {"prompt": "explain sql injection", "stageSubset": "script-only"}
    first_id = queue.submit(payload)
    second_id = queue.submit(payload)
    worker = make_worker(redis_server, settings, generators)

    assert worker.run_once() is True
    assert worker.run_once() is True

    first = Path(queue.get_status(first_id).result["runDir"])
    second = Path(queue.get_status(second_id).result["runDir"])
    assert first != second
    assert first.name.endswith(first_id[:8])
    assert (second / ".job").read_text(encoding="utf-8") == second_id
