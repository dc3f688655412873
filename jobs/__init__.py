"""Durable job queue shared by the API and the workers."""

from __future__ import annotations

from .queue import RedisJobQueue
from .schemas import Job, JobError, JobState
from .sweeper import StallSweeper

__all__ = ["Job", "JobError", "JobState", "RedisJobQueue", "StallSweeper"]
