"""Per-job run directories."""

from __future__ import annotations

import logging
import re
import shutil
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from uuid import uuid4

from app.settings import DEFAULT_SUBFOLDERS, Settings, get_settings

LOGGER = logging.getLogger("reelsmith.outputs")

STOPWORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "to", "of", "in", "on",
        "for", "with", "is", "are", "as", "by", "at", "from",
    }
)

_UNSAFE = re.compile(r"[^a-zA-Z0-9_-]")

OWNER_FILE = ".job"


def extract_keyword(prompt: str | None, limit: int = 2) -> str:
    """Join the first ``limit`` distinct non-stopwords of ``prompt``."""

    if not prompt:
        return "run"
    words: list[str] = []
    for word in prompt.lower().split():
        if word in STOPWORDS or word in words:
            continue
        words.append(word)
        if len(words) == limit:
            break
    return _UNSAFE.sub("_", "_".join(words)) or "run"


def timestamp_label(moment: datetime) -> str:
    """Compact minute-granularity label such as ``Oct19_3-07pm``."""

    hour = moment.hour % 12 or 12
    suffix = "pm" if moment.hour >= 12 else "am"
    return f"{moment:%b}{moment.day}_{hour}-{moment:%M}{suffix}"


@dataclass(frozen=True)
class RunDirectory:
    """Artifact workspace for one job; the only handoff channel between stages."""

    path: Path

    def subdir(self, name: str) -> Path:
        return self.path / name

    def path_for(self, folder: str, filename: str) -> Path:
        return self.path / folder / filename

    @property
    def script_file(self) -> Path:
        return self.path_for("script", "script.txt")

    @property
    def voice_file(self) -> Path:
        return self.path_for("audio", "voice.mp3")

    @property
    def mixed_audio_file(self) -> Path:
        return self.path_for("audio", "final-mixed.mp3")

    @property
    def subtitles_file(self) -> Path:
        return self.path_for("subtitles", "final-mixed.ass")

    @property
    def images_dir(self) -> Path:
        return self.subdir("images")

    @property
    def image_report_file(self) -> Path:
        return self.path_for("images", "generation_report.json")

    @property
    def silent_video_file(self) -> Path:
        return self.path_for("video", "video_no_audio.mp4")

    @property
    def video_with_audio_file(self) -> Path:
        return self.path_for("final", "final_video_with_audio.mp4")

    @property
    def final_video_file(self) -> Path:
        return self.path_for("final", "final_video_with_audio_and_subs.mp4")


class OutputManager:
    """Allocates run directories under a base directory."""

    def __init__(
        self,
        base_dir: Path,
        subfolders: Sequence[str] = DEFAULT_SUBFOLDERS,
        clock: Callable[[], datetime] = datetime.now,
    ) -> None:
        self.base_dir = Path(base_dir)
        self.subfolders = tuple(subfolders)
        self._clock = clock

    @classmethod
    def from_settings(cls, settings: Settings | None = None) -> "OutputManager":
        settings = settings or get_settings()
        return cls(settings.output_dir, settings.output_subfolders)

    def run_dir_name(
        self,
        prompt_text: str | None,
        job_id: str | None = None,
        started_at: datetime | None = None,
        id_length: int | None = 8,
    ) -> str:
        moment = started_at or self._clock()
        if moment.tzinfo is not None:
            moment = moment.astimezone()
        name = f"{extract_keyword(prompt_text)}_{timestamp_label(moment)}"
        if job_id:
            name = f"{name}_{_UNSAFE.sub('_', job_id)[:id_length]}"
        return name

    def allocate_run_directory(
        self,
        prompt_text: str | None,
        job_id: str | None = None,
        started_at: datetime | None = None,
    ) -> RunDirectory:
        """Create the run directory for ``prompt_text`` or reuse an existing one.

        With a ``job_id`` the directory belongs to that job: every attempt of
        the job resolves to the same path (name derived from ``started_at``)
        and a directory marked for another job is never handed out.
        """

        run_dir = self.base_dir / self.run_dir_name(prompt_text, job_id, started_at)
        if job_id and self._owner(run_dir) not in (None, job_id):
            run_dir = self.base_dir / self.run_dir_name(
                prompt_text, job_id, started_at, id_length=None
            )
        if run_dir.is_dir():
            self._heal(run_dir, job_id)
            LOGGER.info("reusing run directory %s", run_dir)
            return RunDirectory(run_dir)

        self.base_dir.mkdir(parents=True, exist_ok=True)
        # Build next to the target and rename into place, so the final name
        # only ever appears with every subfolder present.
        staging = self.base_dir / f".{run_dir.name}.tmp-{uuid4().hex[:8]}"
        try:
            for sub in self.subfolders:
                (staging / sub).mkdir(parents=True, exist_ok=True)
            if job_id:
                (staging / OWNER_FILE).write_text(job_id, encoding="utf-8")
            staging.rename(run_dir)
        except OSError:
            shutil.rmtree(staging, ignore_errors=True)
            if not run_dir.is_dir():
                raise
            # Lost a creation race; the winner's directory is complete.
            self._heal(run_dir, job_id)
            LOGGER.info("reusing run directory %s", run_dir)
            return RunDirectory(run_dir)

        LOGGER.info(
            "created run directory %s (%s)", run_dir, ", ".join(self.subfolders)
        )
        return RunDirectory(run_dir)

    @staticmethod
    def _owner(run_dir: Path) -> str | None:
        marker = run_dir / OWNER_FILE
        if not marker.is_file():
            return None
        return marker.read_text(encoding="utf-8").strip() or None

    def _heal(self, run_dir: Path, job_id: str | None = None) -> None:
        for sub in self.subfolders:
            (run_dir / sub).mkdir(exist_ok=True)
        if job_id and self._owner(run_dir) is None:
            (run_dir / OWNER_FILE).write_text(job_id, encoding="utf-8")
