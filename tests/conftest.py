import sys
import time
from collections.abc import Sequence
from pathlib import Path

import fakeredis
import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app.settings import Settings  # noqa: E402
from pipeline.generators import (  # noqa: E402
    Generators,
    ImageGenerator,
    MediaToolkit,
    ScriptRequest,
    ScriptWriter,
    SpeechSynthesizer,
    Transcriber,
)
from pipeline.subtitles import Caption  # noqa: E402

SCRIPT_TEXT = "Tabs versus spaces. The eternal war. Nobody wins. Except YAML."


class FakeWriter(ScriptWriter):
    def __init__(self, text: str = SCRIPT_TEXT) -> None:
        self.text = text
        self.delay = 0.0
        self.requests: list[ScriptRequest] = []

    def write_script(self, request: ScriptRequest) -> str:
        self.requests.append(request)
        if self.delay:
            time.sleep(self.delay)
        return self.text


class FakeSpeech(SpeechSynthesizer):
    def __init__(self) -> None:
        self.voices: list[str | None] = []

    def synthesize(self, text: str, output_path: Path, voice: str | None = None) -> Path:
        self.voices.append(voice)
        output_path.write_bytes(b"ID3" + text.encode())
        return output_path


class FakeTranscriber(Transcriber):
    def transcribe(self, audio_path: Path) -> list[Caption]:
        return [
            Caption(0.0, 1.5, "Tabs versus spaces."),
            Caption(1.5, 3.0, "The eternal war."),
            Caption(3.0, 4.2, "Nobody wins."),
            Caption(4.2, 5.0, "Except YAML."),
        ]


class FakeImages(ImageGenerator):
    def __init__(self) -> None:
        self.styles: list[str] = []

    def generate_images(self, script: str, output_dir: Path, style: str, count: int) -> list[Path]:
        self.styles.append(style)
        paths = []
        for index in range(count):
            path = output_dir / f"image_{index + 1}.png"
            path.write_bytes(b"\x89PNG" + bytes([index]))
            paths.append(path)
        return paths


class FakeMedia(MediaToolkit):
    def __init__(self) -> None:
        self.fail_on: str | None = None
        self.calls: list[str] = []
        self.durations: list[float] = []

    def _write(self, name: str, output_path: Path) -> Path:
        self.calls.append(name)
        if self.fail_on == name:
            raise RuntimeError(f"{name} exploded")
        output_path.write_bytes(f"media:{name}".encode())
        return output_path

    def mix_audio(
        self, voice_path: Path, music_path: Path | None, output_path: Path, music_volume_db: float
    ) -> Path:
        return self._write("mix_audio", output_path)

    def assemble_slideshow(
        self, images: Sequence[Path], durations: Sequence[float], output_path: Path
    ) -> Path:
        self.durations = list(durations)
        return self._write("assemble_slideshow", output_path)

    def attach_audio(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        return self._write("attach_audio", output_path)

    def burn_subtitles(self, video_path: Path, subtitles_path: Path, output_path: Path) -> Path:
        return self._write("burn_subtitles", output_path)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        output_dir=tmp_path / "results",
        redis_prefix="test",
        lease_seconds=60.0,
        max_stalled_retries=3,
        poll_interval_seconds=0.05,
        images_per_job=2,
        result_ttl_seconds=3600,
    )


@pytest.fixture
def redis_server() -> fakeredis.FakeServer:
    return fakeredis.FakeServer()


@pytest.fixture
def redis_client(redis_server: fakeredis.FakeServer) -> fakeredis.FakeRedis:
    return fakeredis.FakeRedis(server=redis_server, decode_responses=True)


@pytest.fixture
def generators() -> Generators:
    return Generators(
        writer=FakeWriter(),
        speech=FakeSpeech(),
        transcriber=FakeTranscriber(),
        images=FakeImages(),
        media=FakeMedia(),
    )
