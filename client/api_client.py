"""HTTP client for the Reelsmith API."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

import httpx

from pipeline.schemas import JobPayload

LOGGER = logging.getLogger("reelsmith.client")

_TERMINAL_STATES = {"completed", "failed"}


class ApiError(RuntimeError):
    """The API answered with an error status."""

    def __init__(self, detail: str, status_code: int) -> None:
        super().__init__(detail)
        self.detail = detail
        self.status_code = status_code


class UnknownJobError(ApiError):
    """The API has no record of the job (never submitted, or expired)."""


@dataclass(slots=True)
class JobHandle:
    """Represents the initial response after submitting a job."""

    job_id: str
    state: str
    submitted_at: datetime


@dataclass(slots=True)
class JobState:
    """Represents the current state of a job."""

    job_id: str
    state: str
    progress: int
    submitted_at: datetime
    updated_at: datetime
    stage: str | None = None
    result: dict[str, Any] | None = None
    error: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.state in _TERMINAL_STATES

    @classmethod
    def from_response(cls, data: Mapping[str, Any]) -> "JobState":
        return cls(
            job_id=data["jobId"],
            state=data["state"],
            progress=int(data.get("progress") or 0),
            submitted_at=datetime.fromisoformat(data["submittedAt"]),
            updated_at=datetime.fromisoformat(data["updatedAt"]),
            stage=data.get("stage"),
            result=data.get("result"),
            error=data.get("error"),
        )

    def as_dict(self) -> dict[str, Any]:
        """Return a serialisable representation for display."""

        return {
            "job_id": self.job_id,
            "state": self.state,
            "progress": self.progress,
            "stage": self.stage or "",
            "submitted_at": self.submitted_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "error": (self.error or {}).get("message", ""),
        }


def websocket_url(base_url: str, path: str = "/ws") -> str:
    """Translate an HTTP base URL into the progress WebSocket URL."""

    url = httpx.URL(base_url.rstrip("/") + path)
    scheme = "wss" if url.scheme == "https" else "ws"
    return str(url.copy_with(scheme=scheme))


class ApiClient:
    """Thin wrapper around the API HTTP endpoints."""

    def __init__(
        self,
        base_url: str,
        timeout: float = 30.0,
        client: httpx.Client | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._client = client or httpx.Client(base_url=self.base_url, timeout=timeout)

    @property
    def ws_url(self) -> str:
        return websocket_url(self.base_url)

    def submit_job(self, payload: JobPayload | Mapping[str, Any]) -> JobHandle:
        if isinstance(payload, JobPayload):
            body = payload.model_dump(mode="json", by_alias=True, exclude_none=True)
        else:
            body = dict(payload)
        response = self._client.post("/jobs", json=body)
        self._raise_for_status(response)
        data = response.json()
        return JobHandle(
            job_id=data["jobId"],
            state=data.get("state", "queued"),
            submitted_at=datetime.fromisoformat(data["submittedAt"]),
        )

    def get_status(self, job_id: str) -> JobState:
        response = self._client.get(f"/jobs/{job_id}")
        self._raise_for_status(response, not_found=UnknownJobError)
        return JobState.from_response(response.json())

    def fetch_result(self, job_id: str, destination: Path) -> Path | dict[str, Any]:
        """Download a file artifact into ``destination`` or return the JSON result."""

        response = self._client.get(f"/jobs/{job_id}/result")
        self._raise_for_status(response)
        content_type = response.headers.get("content-type", "")
        if content_type.startswith("application/json"):
            return response.json()
        filename = self._resolve_filename(response.headers.get("content-disposition"))
        destination.mkdir(parents=True, exist_ok=True)
        target = destination / filename
        target.write_bytes(response.content)
        LOGGER.info("downloaded %s for job %s", target.name, job_id)
        return target

    def close(self) -> None:
        self._client.close()

    def _raise_for_status(
        self, response: httpx.Response, not_found: type[ApiError] = ApiError
    ) -> None:
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail: str
            try:
                detail = exc.response.json().get("detail", str(exc))
            except ValueError:
                detail = str(exc)
            error = not_found if exc.response.status_code == 404 else ApiError
            raise error(detail, exc.response.status_code) from exc

    def _resolve_filename(self, content_disposition: str | None) -> str:
        if not content_disposition:
            return "artifact.bin"
        for part in content_disposition.split(";"):
            part = part.strip()
            if part.startswith("filename="):
                return part.split("=", 1)[1].strip('"') or "artifact.bin"
        return "artifact.bin"

    def __enter__(self) -> "ApiClient":  # pragma: no cover - convenience
        return self

    def __exit__(self, *_: Any) -> None:  # pragma: no cover - convenience
        self.close()
