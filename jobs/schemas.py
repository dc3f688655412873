"""Schemas describing queued work and its lifecycle."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobState(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    STALLED = "stalled"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobState.COMPLETED, JobState.FAILED)


ErrorKind = Literal["Stalled", "StageFailure", "Internal"]


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class JobError(CamelModel):
    """Terminal error attached to a failed job."""

    kind: ErrorKind
    message: str
    stage: str | None = None


class Job(CamelModel):
    """A unit of work tracked by the queue."""

    id: str
    payload: dict[str, Any] = Field(default_factory=dict)
    state: JobState = JobState.QUEUED
    progress: int = Field(default=0, ge=0, le=100)
    stage: str | None = None
    result: dict[str, Any] | None = None
    error: JobError | None = None
    worker_id: str | None = None
    lock_expires_at: float | None = None
    attempts: int = 0
    stalled_count: int = 0
    submitted_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
