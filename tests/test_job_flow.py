from __future__ import annotations

import time

import fakeredis
import pytest

pytest.importorskip("fastapi")

from fastapi.testclient import TestClient

from api.main import create_app
from pipeline.orchestrator import PipelineOrchestrator
from relay.bridge import RedisProgressPublisher
from worker.worker import Worker


def make_client(redis_server):
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


def test_job_lifecycle(settings, redis_server, generators) -> None:
    app = create_app(settings, redis_factory=lambda _: make_client(redis_server))
    worker_redis = make_client(redis_server)
    worker = Worker(
        redis_client_factory=lambda: worker_redis,
        settings=settings,
        orchestrator=PipelineOrchestrator.from_settings(settings, generators),
        publisher=RedisProgressPublisher(worker_redis, settings.progress_channel),
        worker_id="worker-flow",
    )

    with TestClient(app) as client:
        relay = client.app.state.relay
        created = client.post(
            "/jobs", json={"prompt": "The history of semicolons", "persona": "grumpy linter"}
        )
        assert created.status_code == 202
        job_id = created.json()["jobId"]

        with client.websocket_connect("/ws") as websocket:
            websocket.send_json({"type": "subscribe", "jobId": job_id})
            deadline = time.monotonic() + 2
            while relay.subscriber_count(job_id) == 0 and time.monotonic() < deadline:
                time.sleep(0.01)
            assert worker.run_once() is True
            steps: list[str] = []
            while not steps or steps[-1] != "done":
                steps.append(websocket.receive_json()["step"])

        assert list(dict.fromkeys(steps)) == ["20%", "40%", "45%", "55%", "80%", "90%", "95%", "100%", "done"]

        status = client.get(f"/jobs/{job_id}").json()
        assert status["state"] == "completed"
        assert status["progress"] == 100
        assert status["stage"] == "burn-subtitles"
        assert "history_semicolons_" in status["result"]["runDir"]

        video = client.get(f"/jobs/{job_id}/result")
        assert video.status_code == 200
        assert video.content == b"media:burn_subtitles"

    assert generators.writer.requests[0].persona == "grumpy linter"


def test_failed_job_is_visible_through_the_api(settings, redis_server, generators) -> None:
    generators.media.fail_on = "burn_subtitles"
    app = create_app(settings, redis_factory=lambda _: make_client(redis_server))
    worker = Worker(
        redis_client_factory=lambda: make_client(redis_server),
        settings=settings,
        orchestrator=PipelineOrchestrator.from_settings(settings, generators),
        worker_id="worker-flow",
    )

    with TestClient(app) as client:
        job_id = client.post("/jobs", json={"prompt": "Regex for everything"}).json()["jobId"]
        worker.run_once()

        status = client.get(f"/jobs/{job_id}").json()
        result = client.get(f"/jobs/{job_id}/result")

    assert status["state"] == "failed"
    assert status["progress"] == 95
    assert status["error"]["kind"] == "StageFailure"
    assert status["error"]["stage"] == "burn-subtitles"
    assert result.status_code == 400
