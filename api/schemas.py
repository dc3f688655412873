"""Pydantic models returned by the API."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import Field

from jobs.schemas import CamelModel, Job, JobError, JobState


class JobCreateResponse(CamelModel):
    """Response returned after a job is enqueued."""

    job_id: str
    state: JobState = JobState.QUEUED
    submitted_at: datetime


class JobStatusResponse(CamelModel):
    """Describes the runtime state of a job."""

    job_id: str
    state: JobState
    progress: int
    stage: str | None = None
    result: dict[str, Any] | None = None
    error: JobError | None = None
    submitted_at: datetime
    updated_at: datetime

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            state=job.state,
            progress=job.progress,
            stage=job.stage,
            result=job.result,
            error=job.error,
            submitted_at=job.submitted_at,
            updated_at=job.updated_at,
        )


class ScriptResult(CamelModel):
    job_id: str
    script: str
    script_path: str | None = None


class ImageResult(CamelModel):
    job_id: str
    images: list[str] = Field(default_factory=list)
    image_path: str | None = None
    ready: bool = False


class SubscribeMessage(CamelModel):
    """Client message on the progress WebSocket."""

    type: Literal["subscribe"]
    job_id: str = Field(min_length=1)


class HealthResponse(CamelModel):
    """Simple health status payload."""

    status: Literal["ok"] = "ok"
    service: str
    time: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    queued: int = 0
    active: int = 0
