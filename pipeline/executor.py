"""Runs a single pipeline stage against a run directory."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from pathlib import Path

from app.errors import StageFailure
from app.settings import Settings, get_settings

from .generators import Generators, ScriptRequest
from .outputs import RunDirectory
from .schemas import JobPayload
from .stages import Stage
from .subtitles import read_ass_timings, slide_durations, write_ass

LOGGER = logging.getLogger("reelsmith.pipeline.executor")

StageOutputs = dict[str, str]


def _require(path: Path, stage: Stage) -> Path:
    if not path.is_file() or path.stat().st_size == 0:
        raise StageFailure(stage.value, f"missing input {path.parent.name}/{path.name}")
    return path


class StageExecutor:
    """Executes one stage, reading inputs from and writing outputs to the run directory.

    Stages never hand data to each other in memory, so any stage can be
    re-run given only the directory state.
    """

    def __init__(self, generators: Generators, settings: Settings | None = None) -> None:
        self._generators = generators
        self._settings = settings or get_settings()
        self._handlers: dict[Stage, Callable[[RunDirectory, JobPayload], StageOutputs]] = {
            Stage.SCRIPT: self._script,
            Stage.VOICE: self._voice,
            Stage.MIX: self._mix,
            Stage.SUBTITLES: self._subtitles,
            Stage.IMAGES: self._images,
            Stage.ASSEMBLE: self._assemble,
            Stage.ATTACH_AUDIO: self._attach_audio,
            Stage.BURN_SUBTITLES: self._burn_subtitles,
        }

    def execute(self, stage: Stage, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        LOGGER.info("stage started", extra={"stage": stage.value, "run_dir": str(run_dir.path)})
        try:
            outputs = self._handlers[stage](run_dir, payload)
        except StageFailure:
            raise
        except Exception as exc:
            LOGGER.exception("stage failed", extra={"stage": stage.value})
            raise StageFailure(stage.value, str(exc) or exc.__class__.__name__) from exc
        LOGGER.info("stage finished", extra={"stage": stage.value, "outputs": outputs})
        return outputs

    def _script(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        request = ScriptRequest(
            prompt=payload.prompt or "",
            persona=payload.persona,
            style=payload.style,
            max_length=payload.max_length,
            model=payload.model,
            provider=payload.provider,
            prompt_style=payload.prompt_style,
        )
        script = self._generators.writer.write_script(request).strip()
        if not script:
            raise StageFailure(Stage.SCRIPT.value, "script writer returned no text")
        run_dir.script_file.write_text(script, encoding="utf-8")
        return {"script": str(run_dir.script_file)}

    def _voice(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        script = _require(run_dir.script_file, Stage.VOICE).read_text(encoding="utf-8")
        self._generators.speech.synthesize(script, run_dir.voice_file, payload.voice)
        return {"audio": str(_require(run_dir.voice_file, Stage.VOICE))}

    def _mix(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        voice = _require(run_dir.voice_file, Stage.MIX)
        music = self._settings.background_music
        if music is not None and not music.is_file():
            LOGGER.warning("background music %s not found, using voice only", music)
            music = None
        self._generators.media.mix_audio(
            voice, music, run_dir.mixed_audio_file, self._settings.music_volume_db
        )
        return {"mixedAudio": str(_require(run_dir.mixed_audio_file, Stage.MIX))}

    def _subtitles(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        audio = _require(run_dir.mixed_audio_file, Stage.SUBTITLES)
        captions = self._generators.transcriber.transcribe(audio)
        write_ass(captions, run_dir.subtitles_file)
        return {"subtitles": str(run_dir.subtitles_file)}

    def _images(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        script = _require(run_dir.script_file, Stage.IMAGES).read_text(encoding="utf-8")
        images = self._generators.images.generate_images(
            script, run_dir.images_dir, payload.style, self._settings.images_per_job
        )
        if not images:
            raise StageFailure(Stage.IMAGES.value, "image generator produced no images")
        report = {
            "style": payload.style,
            "images": [Path(image).name for image in images],
        }
        run_dir.image_report_file.write_text(json.dumps(report, indent=2), encoding="utf-8")
        return {"images": ",".join(str(image) for image in images)}

    def _assemble(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        report = json.loads(
            _require(run_dir.image_report_file, Stage.ASSEMBLE).read_text(encoding="utf-8")
        )
        images = [
            _require(run_dir.images_dir / name, Stage.ASSEMBLE) for name in report.get("images", [])
        ]
        if not images:
            raise StageFailure(Stage.ASSEMBLE.value, "image report lists no images")
        timings = read_ass_timings(_require(run_dir.subtitles_file, Stage.ASSEMBLE))
        durations = slide_durations(timings, len(images))
        self._generators.media.assemble_slideshow(images, durations, run_dir.silent_video_file)
        return {"video": str(_require(run_dir.silent_video_file, Stage.ASSEMBLE))}

    def _attach_audio(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        video = _require(run_dir.silent_video_file, Stage.ATTACH_AUDIO)
        audio = _require(run_dir.mixed_audio_file, Stage.ATTACH_AUDIO)
        self._generators.media.attach_audio(video, audio, run_dir.video_with_audio_file)
        return {"video": str(_require(run_dir.video_with_audio_file, Stage.ATTACH_AUDIO))}

    def _burn_subtitles(self, run_dir: RunDirectory, payload: JobPayload) -> StageOutputs:
        video = _require(run_dir.video_with_audio_file, Stage.BURN_SUBTITLES)
        subtitles = _require(run_dir.subtitles_file, Stage.BURN_SUBTITLES)
        self._generators.media.burn_subtitles(video, subtitles, run_dir.final_video_file)
        return {"output": str(_require(run_dir.final_video_file, Stage.BURN_SUBTITLES))}
