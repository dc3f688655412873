"""Worker runtime loop."""

from __future__ import annotations

import logging
import os
import socket
import threading
import time
from collections.abc import Callable
from typing import Any
from uuid import uuid4

import redis

from app.errors import AlreadyTerminalError, NotOwnerError, StageFailure
from app.logging import configure_logging, log_event
from app.settings import Settings, get_settings
from jobs.queue import RedisJobQueue
from jobs.schemas import Job, JobError
from jobs.sweeper import StallSweeper
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.stages import Stage
from relay.bridge import RedisProgressPublisher
from relay.registry import DONE

from .heartbeat import Heartbeat

LOGGER = logging.getLogger("reelsmith.worker")


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}:{uuid4().hex[:6]}"


class Worker:
    """Pulls jobs from the queue and runs them one at a time."""

    def __init__(
        self,
        redis_client_factory: Callable[[], redis.Redis] | None = None,
        settings: Settings | None = None,
        orchestrator: PipelineOrchestrator | None = None,
        publisher: RedisProgressPublisher | None = None,
        worker_id: str | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._settings = settings or get_settings()
        self._redis_factory = redis_client_factory or (
            lambda: redis.from_url(self._settings.redis_url, decode_responses=True)
        )
        self._orchestrator = orchestrator
        self._publisher = publisher
        self._clock = clock
        self.worker_id = worker_id or default_worker_id()
        self._queue: RedisJobQueue | None = None
        self._stop = threading.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def stop(self) -> None:
        """Stop claiming new jobs; an in-flight job runs to completion."""
        if not self._stop.is_set():
            LOGGER.info("worker stopping", extra={"worker_id": self.worker_id})
        self._stop.set()

    def _ensure_queue(self) -> RedisJobQueue:
        if self._queue is None:
            client = self._redis_factory()
            self._queue = RedisJobQueue(client, self._settings, clock=self._clock)
            if self._publisher is None:
                self._publisher = RedisProgressPublisher(
                    client, self._settings.progress_channel
                )
        return self._queue

    def _ensure_orchestrator(self) -> PipelineOrchestrator:
        if self._orchestrator is None:
            self._orchestrator = PipelineOrchestrator.from_settings(self._settings)
        return self._orchestrator

    def run_forever(self) -> None:
        configure_logging(self._settings)
        queue = self._ensure_queue()
        sweeper = StallSweeper(queue, self._settings.stall_sweep_seconds).start()
        LOGGER.info(
            "worker started",
            extra={
                "service": self._settings.service_name,
                "worker_id": self.worker_id,
                "lease_seconds": self._settings.lease_seconds,
            },
        )
        backoff = 1
        try:
            while not self._stop.is_set():
                try:
                    handled = self.run_once()
                except redis.RedisError as exc:  # pragma: no cover - network failure path
                    LOGGER.exception("redis error", extra={"error": str(exc)})
                    self._stop.wait(backoff)
                    backoff = min(backoff * 2, self._settings.max_backoff_seconds)
                    continue
                backoff = 1
                if not handled:
                    self._stop.wait(self._settings.poll_interval_seconds)
        finally:
            sweeper.stop()
            LOGGER.info("worker stopped", extra={"worker_id": self.worker_id})

    def run_once(self) -> bool:
        """Claim and process at most one job. Returns True if a job was handled."""

        if self._stop.is_set():
            return False
        queue = self._ensure_queue()
        job = queue.claim_next(self.worker_id, self._settings.lease_seconds)
        if job is None:
            return False
        self._handle_job(queue, job)
        return True

    def _handle_job(self, queue: RedisJobQueue, job: Job) -> None:
        log_event(
            LOGGER,
            "job_claimed",
            job_id=job.id,
            worker_id=self.worker_id,
            attempt=job.attempts,
        )
        heartbeat = Heartbeat(
            queue,
            job.id,
            self.worker_id,
            self._settings.heartbeat_interval,
            self._settings.lease_seconds,
        ).start()

        def on_progress(stage: Stage, percent: int) -> None:
            if heartbeat.lost:
                raise NotOwnerError(job.id, self.worker_id)
            queue.report_progress(job.id, percent, stage.value, worker_id=self.worker_id)
            self._publish(job.id, percent)

        try:
            result = self._ensure_orchestrator().run(
                job.id,
                job.payload,
                on_progress=on_progress,
                started_at=job.submitted_at,
            )
        except NotOwnerError:
            LOGGER.warning(
                "lease lost, abandoning job",
                extra={"job_id": job.id, "worker_id": self.worker_id},
            )
            return
        except StageFailure as exc:
            error = JobError(kind="StageFailure", message=str(exc), stage=exc.stage)
            self._settle(queue.fail, job.id, error)
            return
        except redis.RedisError:
            # Leave the job to its lease; the stall sweep hands it out again.
            raise
        except Exception as exc:
            LOGGER.exception("job failed", extra={"job_id": job.id, "error": str(exc)})
            error = JobError(kind="Internal", message=str(exc) or exc.__class__.__name__)
            self._settle(queue.fail, job.id, error)
            return
        finally:
            heartbeat.stop()

        if self._settle(queue.complete, job.id, result):
            self._publish(job.id, DONE)

    def _settle(self, action: Callable[..., bool], job_id: str, outcome: Any) -> bool:
        try:
            action(job_id, outcome, worker_id=self.worker_id)
        except NotOwnerError:
            LOGGER.warning(
                "lease lost before the job could be settled",
                extra={"job_id": job_id, "worker_id": self.worker_id},
            )
            return False
        except AlreadyTerminalError as exc:
            LOGGER.warning("job already terminal", extra={"job_id": job_id, "error": str(exc)})
            return False
        return True

    def _publish(self, job_id: str, value: int | str) -> None:
        if self._publisher is not None:
            self._publisher.publish(job_id, value)
