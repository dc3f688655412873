"""External collaborators used by the stage executor.

Each collaborator is a small interface so the executor never depends on a
particular provider. The defaults talk to an OpenAI-compatible HTTP API and
shell out to ``ffmpeg``; scripts can also come from Anthropic, Gemini or
Cohere, selected per job by the payload's ``provider``.
"""

from __future__ import annotations

import base64
import logging
import re
import shutil
import subprocess
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from app.settings import Settings, get_settings

from .subtitles import Caption

LOGGER = logging.getLogger("reelsmith.generators")

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")

_STYLE_HINTS = {
    "dev-meme": "Use meme references and developer in-jokes.",
    "documentary": "Use a calm, factual documentary narration.",
    "dialogue": "Write it as a short back-and-forth between two speakers.",
    "narrator": "Use a single engaging storyteller voice.",
    "what-if": "Frame it as a playful what-if scenario.",
}


@dataclass(frozen=True)
class ScriptRequest:
    prompt: str
    persona: str
    style: str
    max_length: int
    model: str | None
    provider: str
    prompt_style: str


class ScriptWriter:
    def write_script(self, request: ScriptRequest) -> str:  # pragma: no cover - interface method
        raise NotImplementedError


class SpeechSynthesizer:
    def synthesize(self, text: str, output_path: Path, voice: str | None = None) -> Path:  # pragma: no cover - interface method
        raise NotImplementedError


class Transcriber:
    def transcribe(self, audio_path: Path) -> list[Caption]:  # pragma: no cover - interface method
        raise NotImplementedError


class ImageGenerator:
    def generate_images(
        self, script: str, output_dir: Path, style: str, count: int
    ) -> list[Path]:  # pragma: no cover - interface method
        raise NotImplementedError


class MediaToolkit:
    def mix_audio(
        self, voice_path: Path, music_path: Path | None, output_path: Path, music_volume_db: float
    ) -> Path:  # pragma: no cover - interface method
        raise NotImplementedError

    def assemble_slideshow(
        self, images: Sequence[Path], durations: Sequence[float], output_path: Path
    ) -> Path:  # pragma: no cover - interface method
        raise NotImplementedError

    def attach_audio(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:  # pragma: no cover - interface method
        raise NotImplementedError

    def burn_subtitles(self, video_path: Path, subtitles_path: Path, output_path: Path) -> Path:  # pragma: no cover - interface method
        raise NotImplementedError


@dataclass
class Generators:
    """Bundle of collaborators handed to the stage executor."""

    writer: ScriptWriter
    speech: SpeechSynthesizer
    transcriber: Transcriber
    images: ImageGenerator
    media: MediaToolkit


def split_scenes(script: str, count: int) -> list[str]:
    """Split a script into at most ``count`` consecutive chunks of sentences."""

    sentences = [part.strip() for part in _SENTENCE_END.split(script.strip()) if part.strip()]
    if not sentences:
        return []
    count = max(1, min(count, len(sentences)))
    base, extra = divmod(len(sentences), count)
    scenes: list[str] = []
    index = 0
    for scene in range(count):
        size = base + (1 if scene < extra else 0)
        scenes.append(" ".join(sentences[index:index + size]))
        index += size
    return scenes


def script_instructions(request: ScriptRequest) -> str:
    return (
        f"You are a {request.persona}. Write a narration script for a short vertical "
        f"video in this style: {request.style}. "
        f"{_STYLE_HINTS.get(request.prompt_style, '')} "
        f"Keep it under {request.max_length} characters. "
        "Return only the spoken words, no stage directions or headings."
    )


def _script_text(content: Any) -> str:
    script = (content or "").strip()
    if not script:
        raise RuntimeError("script model returned an empty response")
    return script


class _HttpBackend:
    """Shared plumbing for the remote generator APIs."""

    def __init__(
        self,
        settings: Settings | None,
        client: httpx.Client | None,
        base_url: str,
        headers: dict[str, str],
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client or httpx.Client(
            base_url=base_url.rstrip("/"),
            headers=headers,
            timeout=self._settings.generator_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def _post(self, path: str, **kwargs: Any) -> httpx.Response:
        response = self._client.post(path, **kwargs)
        try:
            response.raise_for_status()
        except httpx.HTTPStatusError as exc:
            detail = exc.response.text[:500]
            raise RuntimeError(f"{path} returned {exc.response.status_code}: {detail}") from exc
        return response


class OpenAIGenerator(
    _HttpBackend, ScriptWriter, SpeechSynthesizer, Transcriber, ImageGenerator
):
    """Script, speech, transcription and images from an OpenAI-compatible API."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = settings or get_settings()
        headers: dict[str, str] = {}
        if settings.openai_api_key:
            headers["Authorization"] = f"Bearer {settings.openai_api_key}"
        super().__init__(settings, client, settings.openai_base_url, headers)

    def write_script(self, request: ScriptRequest) -> str:
        response = self._post(
            "/chat/completions",
            json={
                "model": request.model or self._settings.script_model,
                "messages": [
                    {"role": "system", "content": script_instructions(request)},
                    {"role": "user", "content": request.prompt},
                ],
            },
        )
        return _script_text(response.json()["choices"][0]["message"]["content"])

    def synthesize(self, text: str, output_path: Path, voice: str | None = None) -> Path:
        response = self._post(
            "/audio/speech",
            json={
                "model": self._settings.tts_model,
                "input": text,
                "voice": voice or self._settings.tts_voice,
                "response_format": "mp3",
            },
        )
        output_path.parent.mkdir(parents=True, exist_ok=True)
        output_path.write_bytes(response.content)
        return output_path

    def transcribe(self, audio_path: Path) -> list[Caption]:
        with audio_path.open("rb") as handle:
            response = self._post(
                "/audio/transcriptions",
                files={"file": (audio_path.name, handle, "audio/mpeg")},
                data={
                    "model": self._settings.transcription_model,
                    "response_format": "verbose_json",
                    "timestamp_granularities[]": "segment",
                },
            )
        segments = response.json().get("segments") or []
        captions = [
            Caption(
                start=float(segment["start"]),
                end=float(segment["end"]),
                text=str(segment.get("text", "")).strip(),
            )
            for segment in segments
            if str(segment.get("text", "")).strip()
        ]
        if not captions:
            raise RuntimeError("transcription returned no segments")
        return captions

    def generate_images(
        self, script: str, output_dir: Path, style: str, count: int
    ) -> list[Path]:
        scenes = split_scenes(script, count)
        if not scenes:
            raise RuntimeError("script has no scenes to illustrate")
        output_dir.mkdir(parents=True, exist_ok=True)
        paths: list[Path] = []
        for index, scene in enumerate(scenes, start=1):
            response = self._post(
                "/images/generations",
                json={
                    "model": self._settings.image_model,
                    "prompt": f"{scene}\nVisual style: {style}",
                    "n": 1,
                    "size": "1024x1792",
                    "response_format": "b64_json",
                },
            )
            encoded = response.json()["data"][0]["b64_json"]
            path = output_dir / f"image_{index:02d}.png"
            path.write_bytes(base64.b64decode(encoded))
            LOGGER.info("generated image %d/%d", index, len(scenes))
            paths.append(path)
        return paths


class AnthropicScriptWriter(_HttpBackend, ScriptWriter):
    """Script writer backed by the Anthropic Messages API."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = settings or get_settings()
        headers = {"anthropic-version": "2023-06-01"}
        if settings.anthropic_api_key:
            headers["x-api-key"] = settings.anthropic_api_key
        super().__init__(settings, client, settings.anthropic_base_url, headers)

    def write_script(self, request: ScriptRequest) -> str:
        response = self._post(
            "/messages",
            json={
                "model": request.model or self._settings.anthropic_model,
                "max_tokens": 1024,
                "system": script_instructions(request),
                "messages": [{"role": "user", "content": request.prompt}],
            },
        )
        blocks = response.json().get("content") or []
        return _script_text(
            "".join(block.get("text", "") for block in blocks if block.get("type") == "text")
        )


class GoogleScriptWriter(_HttpBackend, ScriptWriter):
    """Script writer backed by the Gemini ``generateContent`` endpoint."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = settings or get_settings()
        headers: dict[str, str] = {}
        if settings.google_api_key:
            headers["x-goog-api-key"] = settings.google_api_key
        super().__init__(settings, client, settings.google_base_url, headers)

    def write_script(self, request: ScriptRequest) -> str:
        model = request.model or self._settings.google_model
        response = self._post(
            f"/models/{model}:generateContent",
            json={
                "systemInstruction": {"parts": [{"text": script_instructions(request)}]},
                "contents": [{"role": "user", "parts": [{"text": request.prompt}]}],
            },
        )
        candidates = response.json().get("candidates") or [{}]
        parts = (candidates[0].get("content") or {}).get("parts") or []
        return _script_text("".join(part.get("text", "") for part in parts))


class CohereScriptWriter(_HttpBackend, ScriptWriter):
    """Script writer backed by the Cohere v2 chat API."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.Client | None = None,
    ) -> None:
        settings = settings or get_settings()
        headers: dict[str, str] = {}
        if settings.cohere_api_key:
            headers["Authorization"] = f"Bearer {settings.cohere_api_key}"
        super().__init__(settings, client, settings.cohere_base_url, headers)

    def write_script(self, request: ScriptRequest) -> str:
        response = self._post(
            "/chat",
            json={
                "model": request.model or self._settings.cohere_model,
                "messages": [
                    {"role": "system", "content": script_instructions(request)},
                    {"role": "user", "content": request.prompt},
                ],
            },
        )
        blocks = (response.json().get("message") or {}).get("content") or []
        return _script_text("".join(block.get("text", "") for block in blocks))


class ProviderScriptWriter(ScriptWriter):
    """Dispatches each request to the writer registered for its provider."""

    def __init__(self, writers: Mapping[str, ScriptWriter]) -> None:
        self._writers = dict(writers)

    @property
    def providers(self) -> list[str]:
        return sorted(self._writers)

    def write_script(self, request: ScriptRequest) -> str:
        writer = self._writers.get(request.provider)
        if writer is None:
            raise RuntimeError(
                f"no script writer configured for provider {request.provider!r} "
                f"(available: {', '.join(self.providers) or 'none'})"
            )
        return writer.write_script(request)


def _filter_path(path: Path) -> str:
    # ffmpeg filter arguments treat ':' and '\' as syntax.
    return str(path).replace("\\", "/").replace(":", r"\:").replace("'", r"\'")


class FfmpegToolkit(MediaToolkit):
    """Media operations implemented with the ``ffmpeg`` command line tool."""

    def __init__(self, binary: str = "ffmpeg", timeout: float | None = None) -> None:
        self._binary = binary
        self._timeout = timeout

    def _run(self, args: Sequence[str]) -> None:
        cmd = [self._binary, "-y", "-hide_banner", "-loglevel", "error", *args]
        LOGGER.debug("running %s", " ".join(cmd))
        try:
            proc = subprocess.run(
                cmd,
                capture_output=True,
                text=True,
                timeout=self._timeout,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            raise RuntimeError(f"ffmpeg could not run: {exc}") from exc
        if proc.returncode != 0:
            raise RuntimeError(f"ffmpeg exited with {proc.returncode}: {proc.stderr.strip()[-500:]}")

    def mix_audio(
        self, voice_path: Path, music_path: Path | None, output_path: Path, music_volume_db: float
    ) -> Path:
        if music_path is None:
            shutil.copyfile(voice_path, output_path)
            return output_path
        self._run(
            [
                "-i", str(voice_path),
                "-i", str(music_path),
                "-filter_complex",
                f"[1:a]volume={music_volume_db}dB[music];"
                "[0:a][music]amix=inputs=2:duration=first:dropout_transition=2[aout]",
                "-map", "[aout]",
                str(output_path),
            ]
        )
        return output_path

    def assemble_slideshow(
        self, images: Sequence[Path], durations: Sequence[float], output_path: Path
    ) -> Path:
        if not images:
            raise ValueError("no images to assemble")
        concat_file = output_path.with_suffix(".concat.txt")
        lines: list[str] = []
        for image, duration in zip(images, durations):
            lines.append(f"file '{image.resolve().as_posix()}'")
            lines.append(f"duration {duration:.3f}")
        # The concat demuxer ignores the last duration unless the file repeats.
        lines.append(f"file '{images[-1].resolve().as_posix()}'")
        concat_file.write_text("\n".join(lines) + "\n", encoding="utf-8")
        self._run(
            [
                "-f", "concat", "-safe", "0",
                "-i", str(concat_file),
                "-vf",
                "scale=1080:1920:force_original_aspect_ratio=decrease,"
                "pad=1080:1920:(ow-iw)/2:(oh-ih)/2,format=yuv420p",
                "-r", "30",
                "-c:v", "libx264",
                str(output_path),
            ]
        )
        return output_path

    def attach_audio(self, video_path: Path, audio_path: Path, output_path: Path) -> Path:
        self._run(
            [
                "-i", str(video_path),
                "-i", str(audio_path),
                "-c:v", "copy",
                "-map", "0:v:0",
                "-map", "1:a:0",
                "-shortest",
                str(output_path),
            ]
        )
        return output_path

    def burn_subtitles(self, video_path: Path, subtitles_path: Path, output_path: Path) -> Path:
        self._run(
            [
                "-i", str(video_path),
                "-vf", f"ass='{_filter_path(subtitles_path)}'",
                "-c:a", "copy",
                str(output_path),
            ]
        )
        return output_path


def build_generators(settings: Settings | None = None) -> Generators:
    settings = settings or get_settings()
    remote = OpenAIGenerator(settings)
    writers: dict[str, ScriptWriter] = {"openai": remote}
    if settings.anthropic_api_key:
        writers["anthropic"] = AnthropicScriptWriter(settings)
    if settings.google_api_key:
        writers["google"] = GoogleScriptWriter(settings)
    if settings.cohere_api_key:
        writers["cohere"] = CohereScriptWriter(settings)
    return Generators(
        writer=ProviderScriptWriter(writers),
        speech=remote,
        transcriber=remote,
        images=remote,
        media=FfmpegToolkit(settings.ffmpeg_binary, settings.generator_timeout_seconds),
    )
