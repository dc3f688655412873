"""Redis-backed job queue with lease-based mutual exclusion."""

from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from datetime import datetime, timezone
from functools import partial
from typing import Any
from uuid import uuid4

import redis

from app.errors import (
    AlreadyTerminalError,
    JobNotFoundError,
    NotOwnerError,
    QueueUnavailableError,
)
from app.logging import log_event
from app.settings import Settings, get_settings

from .schemas import Job, JobError, JobState

LOGGER = logging.getLogger("reelsmith.queue")

# Marker returned by a claim attempt that discarded a stale list entry.
_SKIPPED = object()


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


def _decode_mapping(data: Mapping[Any, Any]) -> dict[str, str]:
    return {_decode(key): _decode(value) for key, value in data.items()}


def _serialize(job: Job) -> dict[str, str]:
    mapping = {
        "id": job.id,
        "payload": json.dumps(job.payload),
        "state": job.state.value,
        "progress": str(job.progress),
        "attempts": str(job.attempts),
        "stalled_count": str(job.stalled_count),
        "submitted_at": job.submitted_at.isoformat(),
        "updated_at": job.updated_at.isoformat(),
    }
    if job.stage:
        mapping["stage"] = job.stage
    return mapping


def _deserialize(data: Mapping[str, str]) -> Job:
    result = data.get("result")
    error = data.get("error")
    lock = data.get("lock_expires_at")
    return Job(
        id=data["id"],
        payload=json.loads(data.get("payload") or "{}"),
        state=JobState(data.get("state", JobState.QUEUED.value)),
        progress=int(data.get("progress") or 0),
        stage=data.get("stage") or None,
        result=json.loads(result) if result else None,
        error=JobError.model_validate_json(error) if error else None,
        worker_id=data.get("worker_id") or None,
        lock_expires_at=float(lock) if lock else None,
        attempts=int(data.get("attempts") or 0),
        stalled_count=int(data.get("stalled_count") or 0),
        submitted_at=datetime.fromisoformat(data["submitted_at"]),
        updated_at=datetime.fromisoformat(data["updated_at"]),
    )


class RedisJobQueue:
    """Durable, at-least-once work queue.

    Layout under the configured prefix:

    * ``<prefix>:job:<id>`` hash holding the job record
    * ``<prefix>:queued`` list of claimable job ids (FIFO)
    * ``<prefix>:active`` sorted set of leased job ids scored by lease expiry

    Every state transition runs inside a WATCH/MULTI transaction so two
    workers can never hold the same job.
    """

    def __init__(
        self,
        client: redis.Redis,
        settings: Settings | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()
        self._clock = clock

    @property
    def queued_key(self) -> str:
        return f"{self._settings.redis_prefix}:queued"

    @property
    def active_key(self) -> str:
        return f"{self._settings.redis_prefix}:active"

    def _job_key(self, job_id: str) -> str:
        return f"{self._settings.redis_prefix}:job:{job_id}"

    def _now_iso(self) -> str:
        return datetime.fromtimestamp(self._clock(), tz=timezone.utc).isoformat()

    @contextmanager
    def _store_guard(self) -> Iterator[None]:
        try:
            yield
        except (redis.ConnectionError, redis.TimeoutError) as exc:
            raise QueueUnavailableError(f"queue backing store unavailable: {exc}") from exc

    # -- submission and inspection -------------------------------------

    def submit(self, payload: Mapping[str, Any]) -> str:
        """Store a new job and append it to the claimable list."""

        now = datetime.fromtimestamp(self._clock(), tz=timezone.utc)
        job = Job(
            id=uuid4().hex,
            payload=dict(payload),
            submitted_at=now,
            updated_at=now,
        )
        with self._store_guard():
            with self._client.pipeline() as pipe:
                pipe.hset(self._job_key(job.id), mapping=_serialize(job))
                pipe.rpush(self.queued_key, job.id)
                pipe.execute()
        log_event(LOGGER, "job_submitted", job_id=job.id)
        return job.id

    def get_status(self, job_id: str) -> Job:
        with self._store_guard():
            data = self._client.hgetall(self._job_key(job_id))
        if not data:
            raise JobNotFoundError(job_id)
        return _deserialize(_decode_mapping(data))

    def queue_depth(self) -> int:
        with self._store_guard():
            return int(self._client.llen(self.queued_key))

    def active_count(self) -> int:
        with self._store_guard():
            return int(self._client.zcard(self.active_key))

    # -- leases --------------------------------------------------------

    def claim_next(self, worker_id: str, lease_seconds: float | None = None) -> Job | None:
        """Lease the oldest claimable job to ``worker_id``."""

        self.sweep_stalled()
        lease = lease_seconds or self._settings.lease_seconds
        while True:
            claimed = self._client.transaction(
                partial(self._claim_head, worker_id=worker_id, lease=lease),
                self.queued_key,
                value_from_callable=True,
            )
            if claimed is _SKIPPED:
                continue
            if claimed is not None:
                LOGGER.info(
                    "job claimed",
                    extra={"job_id": claimed.id, "worker_id": worker_id},
                )
            return claimed

    def _claim_head(self, pipe: Any, *, worker_id: str, lease: float) -> Any:
        job_id = _decode(pipe.lindex(self.queued_key, 0))
        if job_id is None:
            return None
        job_key = self._job_key(job_id)
        pipe.watch(job_key)
        data = _decode_mapping(pipe.hgetall(job_key))
        if not data or JobState(data.get("state", "queued")).is_terminal:
            pipe.multi()
            pipe.lpop(self.queued_key)
            return _SKIPPED

        expires_at = self._clock() + lease
        updates = {
            "state": JobState.ACTIVE.value,
            "worker_id": worker_id,
            "lock_expires_at": repr(expires_at),
            "attempts": str(int(data.get("attempts") or 0) + 1),
            "updated_at": self._now_iso(),
        }
        pipe.multi()
        pipe.lpop(self.queued_key)
        pipe.hset(job_key, mapping=updates)
        pipe.zadd(self.active_key, {job_id: expires_at})
        return _deserialize({**data, **updates})

    def heartbeat(self, job_id: str, worker_id: str, lease_seconds: float | None = None) -> float:
        """Renew the lease and return the new expiry timestamp."""

        lease = lease_seconds or self._settings.lease_seconds
        job_key = self._job_key(job_id)

        def renew(pipe: Any) -> float:
            data = _decode_mapping(pipe.hgetall(job_key))
            if not data:
                raise JobNotFoundError(job_id)
            if data.get("state") != JobState.ACTIVE.value or data.get("worker_id") != worker_id:
                raise NotOwnerError(job_id, worker_id)
            expires_at = self._clock() + lease
            pipe.multi()
            pipe.hset(
                job_key,
                mapping={"lock_expires_at": repr(expires_at), "updated_at": self._now_iso()},
            )
            pipe.zadd(self.active_key, {job_id: expires_at})
            return expires_at

        return self._client.transaction(renew, job_key, value_from_callable=True)

    # -- progress and terminal transitions -----------------------------

    def report_progress(
        self,
        job_id: str,
        percent: int,
        stage: str | None = None,
        worker_id: str | None = None,
    ) -> int:
        """Raise the stored progress to ``percent``; lower values are ignored.

        With ``worker_id`` the update is refused unless that worker holds the lease.
        """

        percent = max(0, min(100, int(percent)))
        job_key = self._job_key(job_id)

        def update(pipe: Any) -> int:
            data = _decode_mapping(pipe.hgetall(job_key))
            if not data:
                raise JobNotFoundError(job_id)
            current = int(data.get("progress") or 0)
            if JobState(data["state"]).is_terminal:
                return current
            if worker_id is not None and (
                data.get("state") != JobState.ACTIVE.value or data.get("worker_id") != worker_id
            ):
                raise NotOwnerError(job_id, worker_id)
            mapping: dict[str, str] = {}
            if percent > current:
                mapping["progress"] = str(percent)
            if stage:
                mapping["stage"] = stage
            if not mapping:
                return current
            mapping["updated_at"] = self._now_iso()
            pipe.multi()
            pipe.hset(job_key, mapping=mapping)
            return max(current, percent)

        return self._client.transaction(update, job_key, value_from_callable=True)

    def complete(
        self, job_id: str, result: Mapping[str, Any], worker_id: str | None = None
    ) -> bool:
        """Mark the job completed. Returns False when it already was."""

        fields = {"result": json.dumps(dict(result)), "progress": "100"}
        changed = self._finish(job_id, JobState.COMPLETED, fields, worker_id)
        if changed:
            log_event(LOGGER, "job_completed", job_id=job_id, worker_id=worker_id)
        return changed

    def fail(self, job_id: str, error: JobError, worker_id: str | None = None) -> bool:
        """Mark the job failed. Returns False when it already was."""

        fields = {"error": error.model_dump_json()}
        changed = self._finish(job_id, JobState.FAILED, fields, worker_id)
        if changed:
            log_event(
                LOGGER,
                "job_failed",
                job_id=job_id,
                worker_id=worker_id,
                kind=error.kind,
                stage=error.stage,
                message=error.message,
            )
        return changed

    def _finish(
        self,
        job_id: str,
        target: JobState,
        fields: dict[str, str],
        worker_id: str | None,
    ) -> bool:
        job_key = self._job_key(job_id)

        def finish(pipe: Any) -> bool:
            data = _decode_mapping(pipe.hgetall(job_key))
            if not data:
                raise JobNotFoundError(job_id)
            state = JobState(data["state"])
            if state is target:
                return False
            if state.is_terminal:
                raise AlreadyTerminalError(job_id, state.value)
            if worker_id is not None and (
                state is not JobState.ACTIVE or data.get("worker_id") != worker_id
            ):
                raise NotOwnerError(job_id, worker_id)
            pipe.multi()
            pipe.hset(
                job_key,
                mapping={"state": target.value, "updated_at": self._now_iso(), **fields},
            )
            pipe.hdel(job_key, "worker_id", "lock_expires_at")
            pipe.zrem(self.active_key, job_id)
            pipe.lrem(self.queued_key, 0, job_id)
            pipe.expire(job_key, self._settings.result_ttl_seconds)
            return True

        return self._client.transaction(finish, job_key, value_from_callable=True)

    # -- stall detection -----------------------------------------------

    def sweep_stalled(self) -> list[str]:
        """Return expired leases to the queue, failing jobs that stall too often."""

        now = self._clock()
        expired = self._client.zrangebyscore(self.active_key, "-inf", now)
        swept: list[str] = []
        for raw_id in expired:
            job_id = _decode(raw_id)
            outcome = self._client.transaction(
                partial(self._reclaim, job_id=job_id, now=now),
                self._job_key(job_id),
                value_from_callable=True,
            )
            if outcome is None:
                continue
            swept.append(job_id)
            if outcome is JobState.FAILED:
                LOGGER.error("job failed after repeated stalls", extra={"job_id": job_id})
            else:
                LOGGER.warning("job stalled, returned to queue", extra={"job_id": job_id})
        return swept

    def _reclaim(self, pipe: Any, *, job_id: str, now: float) -> JobState | None:
        job_key = self._job_key(job_id)
        data = _decode_mapping(pipe.hgetall(job_key))
        if not data or data.get("state") != JobState.ACTIVE.value:
            pipe.multi()
            pipe.zrem(self.active_key, job_id)
            return None
        if float(data.get("lock_expires_at") or 0) > now:
            return None

        stalled_count = int(data.get("stalled_count") or 0) + 1
        pipe.multi()
        pipe.hdel(job_key, "worker_id", "lock_expires_at")
        pipe.zrem(self.active_key, job_id)
        if stalled_count > self._settings.max_stalled_retries:
            stage = data.get("stage") or None
            error = JobError(
                kind="Stalled",
                message=(
                    f"job stalled {stalled_count} times without completing "
                    f"(last stage: {stage or 'unknown'})"
                ),
                stage=stage,
            )
            pipe.hset(
                job_key,
                mapping={
                    "state": JobState.FAILED.value,
                    "stalled_count": str(stalled_count),
                    "error": error.model_dump_json(),
                    "updated_at": self._now_iso(),
                },
            )
            pipe.expire(job_key, self._settings.result_ttl_seconds)
            return JobState.FAILED

        pipe.hset(
            job_key,
            mapping={
                "state": JobState.STALLED.value,
                "stalled_count": str(stalled_count),
                "updated_at": self._now_iso(),
            },
        )
        pipe.lpush(self.queued_key, job_id)
        return JobState.STALLED
