"""Sequences stages for a job and maps them onto overall progress."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable, Mapping
from datetime import datetime
from typing import Any

from pydantic import ValidationError

from app.errors import StageFailure
from app.settings import Settings, get_settings

from .executor import StageExecutor
from .generators import Generators, build_generators
from .outputs import OutputManager, RunDirectory
from .schemas import JobPayload, StageSubset
from .stages import Stage, progress_for, stages_for

LOGGER = logging.getLogger("reelsmith.pipeline")

ProgressCallback = Callable[[Stage, int], None]


class PipelineOrchestrator:
    """Runs the stage sequence selected by a job payload, strictly in order."""

    def __init__(self, executor: StageExecutor, output_manager: OutputManager) -> None:
        self._executor = executor
        self._outputs = output_manager

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, generators: Generators | None = None
    ) -> "PipelineOrchestrator":
        settings = settings or get_settings()
        executor = StageExecutor(generators or build_generators(settings), settings)
        return cls(executor, OutputManager.from_settings(settings))

    def run(
        self,
        job_id: str,
        payload: JobPayload | Mapping[str, Any],
        on_progress: ProgressCallback | None = None,
        started_at: datetime | None = None,
    ) -> dict[str, Any]:
        """Execute the job and return its result map.

        ``on_progress`` is called after every stage with the overall percent;
        an exception raised from it aborts the remaining stages. The run
        directory is keyed on ``job_id`` and ``started_at`` (the submission
        time), so a retried job picks up its earlier directory.
        """
        if not isinstance(payload, JobPayload):
            try:
                payload = JobPayload.model_validate(payload)
            except ValidationError as exc:
                raise StageFailure("payload", str(exc)) from exc

        subset = payload.stage_subset
        sequence = stages_for(subset)
        try:
            run_dir = self._outputs.allocate_run_directory(
                payload.label_text, job_id=job_id, started_at=started_at
            )
            if subset in (StageSubset.VOICE_ONLY, StageSubset.IMAGE_ONLY):
                run_dir.script_file.write_text(payload.script or "", encoding="utf-8")
        except OSError as exc:
            raise StageFailure(
                sequence[0].value, f"could not prepare run directory: {exc}"
            ) from exc

        LOGGER.info(
            "pipeline started",
            extra={"job_id": job_id, "subset": subset.value, "run_dir": str(run_dir.path)},
        )
        for stage in sequence:
            self._executor.execute(stage, run_dir, payload)
            percent = progress_for(subset, stage)
            LOGGER.info(
                "job %s progress %d%% after %s", job_id, percent, stage.value,
                extra={"job_id": job_id, "stage": stage.value},
            )
            if on_progress is not None:
                on_progress(stage, percent)

        return self._result(subset, run_dir)

    def _result(self, subset: StageSubset, run_dir: RunDirectory) -> dict[str, Any]:
        result: dict[str, Any] = {"runDir": str(run_dir.path)}
        if subset is StageSubset.SCRIPT_ONLY:
            result["script"] = run_dir.script_file.read_text(encoding="utf-8")
            result["scriptPath"] = str(run_dir.script_file)
        elif subset is StageSubset.VOICE_ONLY:
            result["audio"] = str(run_dir.voice_file)
        elif subset is StageSubset.IMAGE_ONLY:
            report = json.loads(run_dir.image_report_file.read_text(encoding="utf-8"))
            images = [str(run_dir.images_dir / name) for name in report.get("images", [])]
            result["images"] = images
            result["imagePath"] = images[0] if images else None
            result["ready"] = bool(images)
        else:
            result["output"] = str(run_dir.final_video_file)
        return result
