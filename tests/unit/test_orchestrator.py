from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path

import pytest

from app.errors import NotOwnerError, StageFailure
from pipeline.executor import StageExecutor
from pipeline.orchestrator import PipelineOrchestrator
from pipeline.outputs import OutputManager
from pipeline.schemas import JobPayload
from pipeline.stages import Stage


@pytest.fixture
def orchestrator(settings, generators) -> PipelineOrchestrator:
    return PipelineOrchestrator.from_settings(settings, generators)


def collect(calls: list[tuple[str, int]]):
    def on_progress(stage: Stage, percent: int) -> None:
        calls.append((stage.value, percent))

    return on_progress


def test_full_pipeline_reports_every_stage(orchestrator, generators) -> None:
    calls: list[tuple[str, int]] = []

    result = orchestrator.run("job-1", {"prompt": "Tabs versus spaces"}, on_progress=collect(calls))

    assert calls == [
        ("script", 20),
        ("voice", 40),
        ("mix", 45),
        ("subtitles", 55),
        ("images", 80),
        ("assemble", 90),
        ("attach-audio", 95),
        ("burn-subtitles", 100),
    ]
    output = Path(result["output"])
    assert output.is_file()
    assert output.name == "final_video_with_audio_and_subs.mp4"
    run_dir = Path(result["runDir"])
    assert (run_dir / "subtitles" / "final-mixed.ass").is_file()
    report = json.loads((run_dir / "images" / "generation_report.json").read_text())
    assert report["images"] == ["image_1.png", "image_2.png"]
    assert generators.media.calls == [
        "mix_audio",
        "assemble_slideshow",
        "attach_audio",
        "burn_subtitles",
    ]
    assert generators.media.durations == [3.0, 2.0]


def test_script_only_goes_straight_to_100(orchestrator, generators) -> None:
    calls: list[tuple[str, int]] = []

    result = orchestrator.run(
        "job-2", {"prompt": "Tabs versus spaces", "scriptOnly": True}, on_progress=collect(calls)
    )

    assert calls == [("script", 100)]
    assert result["script"] == generators.writer.text
    assert Path(result["scriptPath"]).read_text(encoding="utf-8") == generators.writer.text
    assert not Path(result["runDir"], "audio", "voice.mp3").exists()


def test_voice_only_uses_the_supplied_script(orchestrator, generators) -> None:
    calls: list[tuple[str, int]] = []

    result = orchestrator.run(
        "job-3",
        {"script": "Read me aloud.", "stageSubset": "voice-only", "voice": "sage"},
        on_progress=collect(calls),
    )

    assert calls == [("voice", 100)]
    assert Path(result["audio"]).read_bytes() == b"ID3Read me aloud."
    assert generators.speech.voices == ["sage"]
    assert generators.writer.requests == []


def test_image_only_result(orchestrator) -> None:
    result = orchestrator.run("job-4", {"script": "Scene one. Scene two.", "imageOnly": True})

    assert result["ready"] is True
    assert len(result["images"]) == 2
    assert result["imagePath"] == result["images"][0]


def test_stage_failure_aborts_remaining_stages(orchestrator, generators) -> None:
    generators.media.fail_on = "attach_audio"
    calls: list[tuple[str, int]] = []

    with pytest.raises(StageFailure) as excinfo:
        orchestrator.run("job-5", {"prompt": "Tabs versus spaces"}, on_progress=collect(calls))

    assert excinfo.value.stage == "attach-audio"
    assert "attach_audio exploded" in str(excinfo.value)
    assert calls[-1] == ("assemble", 90)
    assert "burn_subtitles" not in generators.media.calls


def test_invalid_payload_is_a_stage_failure(orchestrator) -> None:
    with pytest.raises(StageFailure) as excinfo:
        orchestrator.run("job-6", {"stageSubset": "voice-only"})
    assert excinfo.value.stage == "payload"


def test_progress_callback_error_stops_the_run(orchestrator, generators) -> None:
    def on_progress(stage: Stage, percent: int) -> None:
        raise NotOwnerError("job-7", "worker-a")

    with pytest.raises(NotOwnerError):
        orchestrator.run("job-7", {"prompt": "Tabs versus spaces"}, on_progress=on_progress)
    assert len(generators.writer.requests) == 1
    assert generators.speech.voices == []


def test_stage_needs_its_inputs_on_disk(settings, generators, tmp_path: Path) -> None:
    executor = StageExecutor(generators, settings)
    run_dir = OutputManager(tmp_path / "runs").allocate_run_directory("empty run")
    payload = JobPayload(prompt="empty run")

    with pytest.raises(StageFailure) as excinfo:
        executor.execute(Stage.VOICE, run_dir, payload)

    assert excinfo.value.stage == "voice"
    assert "script/script.txt" in str(excinfo.value)


def test_run_directory_belongs_to_one_job(orchestrator) -> None:
    submitted = datetime(2026, 10, 19, 15, 7, tzinfo=timezone.utc)
    payload = {"prompt": "explain sql injection", "scriptOnly": True}

    first = orchestrator.run("job-A", payload, started_at=submitted)
    other = orchestrator.run("job-B", payload, started_at=submitted)
    retry = orchestrator.run("job-A", payload, started_at=submitted)

    assert first["runDir"] != other["runDir"]
    assert retry["runDir"] == first["runDir"]
    assert Path(first["runDir"]).name.endswith("_job-A")
