"""API route definitions."""

from __future__ import annotations

import asyncio
import json
import logging
from contextlib import suppress
from pathlib import Path
from typing import Annotated, Any

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect
from fastapi.responses import FileResponse, JSONResponse
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool

from app.errors import (
    ArtifactMissingError,
    JobNotFoundError,
    QueueUnavailableError,
    ResultNotReadyError,
)
from app.settings import Settings
from jobs.queue import RedisJobQueue
from jobs.schemas import JobState
from pipeline.schemas import JobPayload
from relay.connection import QueueConnection
from relay.registry import DONE, ProgressRelay, format_step

from .dependencies import get_app_settings, get_queue, get_relay
from .schemas import (
    HealthResponse,
    ImageResult,
    JobCreateResponse,
    JobStatusResponse,
    ScriptResult,
    SubscribeMessage,
)

LOGGER = logging.getLogger("reelsmith.api")

router = APIRouter()

QueueDep = Annotated[RedisJobQueue, Depends(get_queue)]


@router.get("/healthz", response_model=HealthResponse, tags=["system"])
def healthz(
    settings: Annotated[Settings, Depends(get_app_settings)], queue: QueueDep
) -> HealthResponse:
    """Simple health-check endpoint."""

    return HealthResponse(
        service=settings.service_name,
        queued=queue.queue_depth(),
        active=queue.active_count(),
    )


@router.post("/jobs", response_model=JobCreateResponse, status_code=202, tags=["jobs"])
def submit_job(payload: JobPayload, queue: QueueDep) -> JobCreateResponse:
    """Submit a new generation job into the queue."""

    job_id = queue.submit(payload.model_dump(mode="json", by_alias=True))
    job = queue.get_status(job_id)
    LOGGER.info(
        "job submitted",
        extra={"job_id": job_id, "stage_subset": payload.stage_subset.value},
    )
    return JobCreateResponse(
        job_id=job_id, state=job.state, submitted_at=job.submitted_at
    )


@router.get("/jobs/{job_id}", response_model=JobStatusResponse, tags=["jobs"])
def job_status(job_id: str, queue: QueueDep) -> JobStatusResponse:
    return JobStatusResponse.from_job(queue.get_status(job_id))


def _file_response(job_id: str, location: Any, media_type: str) -> FileResponse:
    path = Path(str(location))
    if not path.is_file():
        raise ArtifactMissingError(f"artifact {path.name} for job {job_id} is missing")
    return FileResponse(
        path, media_type=media_type, filename=path.name, headers={"X-Job-Id": job_id}
    )


@router.get("/jobs/{job_id}/result", response_model=None, tags=["jobs"])
def job_result(job_id: str, queue: QueueDep) -> FileResponse | JSONResponse:
    """Return the primary artifact of a completed job."""

    job = queue.get_status(job_id)
    if job.state is not JobState.COMPLETED:
        raise ResultNotReadyError(job_id, job.state.value)

    result = job.result or {}
    if result.get("output"):
        return _file_response(job_id, result["output"], "video/mp4")
    if result.get("audio"):
        return _file_response(job_id, result["audio"], "audio/mpeg")
    if "script" in result:
        body = ScriptResult(
            job_id=job_id,
            script=result["script"],
            script_path=result.get("scriptPath"),
        )
        return JSONResponse(body.model_dump(mode="json", by_alias=True))
    if "images" in result:
        body = ImageResult(
            job_id=job_id,
            images=result.get("images") or [],
            image_path=result.get("imagePath"),
            ready=bool(result.get("ready")),
        )
        return JSONResponse(body.model_dump(mode="json", by_alias=True))
    raise ArtifactMissingError(f"job {job_id} produced no artifact")


async def _drain(websocket: WebSocket, connection: QueueConnection) -> None:
    while True:
        message = await connection.queue.get()
        try:
            await websocket.send_json(message)
        except (WebSocketDisconnect, RuntimeError):
            connection.close()
            return


async def _push_current(
    queue: RedisJobQueue, relay: ProgressRelay, job_id: str, connection: QueueConnection
) -> None:
    try:
        job = await run_in_threadpool(queue.get_status, job_id)
    except (JobNotFoundError, QueueUnavailableError):
        return
    if job.state is JobState.COMPLETED:
        connection.send({"jobId": job_id, "step": DONE})
        relay.unsubscribe(connection)
    elif job.progress > 0:
        connection.send({"jobId": job_id, "step": format_step(job.progress)})


@router.websocket("/ws")
async def progress_socket(
    websocket: WebSocket,
    relay: Annotated[ProgressRelay, Depends(get_relay)],
    queue: QueueDep,
) -> None:
    """Push progress events for the job named by the latest subscribe message."""

    await websocket.accept()
    connection = QueueConnection(asyncio.get_running_loop())
    sender = asyncio.create_task(_drain(websocket, connection))
    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = SubscribeMessage.model_validate(json.loads(raw))
            except (ValueError, ValidationError):
                LOGGER.debug("ignoring malformed websocket message")
                continue
            relay.subscribe(message.job_id, connection)
            await _push_current(queue, relay, message.job_id, connection)
    except WebSocketDisconnect:
        pass
    finally:
        connection.close()
        relay.unsubscribe(connection)
        sender.cancel()
        with suppress(asyncio.CancelledError):
            await sender
