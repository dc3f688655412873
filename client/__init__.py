"""Client helpers for submitting jobs and following their progress."""

from .api_client import (
    ApiClient,
    ApiError,
    JobHandle,
    JobState,
    UnknownJobError,
    websocket_url,
)
from .watcher import ProgressWatcher, websocket_relay

__all__ = [
    "ApiClient",
    "ApiError",
    "JobHandle",
    "JobState",
    "ProgressWatcher",
    "UnknownJobError",
    "websocket_relay",
    "websocket_url",
]
