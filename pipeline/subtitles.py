"""ASS subtitle writing and timing helpers."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path

_ASS_TIME = re.compile(r"^(?P<hours>\d+):(?P<minutes>\d{2}):(?P<seconds>\d{2})\.(?P<centis>\d{2})$")

_ASS_HEADER = """[Script Info]
ScriptType: v4.00+
PlayResX: 1080
PlayResY: 1920
WrapStyle: 0

[V4+ Styles]
Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding
Style: Default,Arial,72,&H00FFFFFF,&H000000FF,&H00000000,&H64000000,-1,0,0,0,100,100,0,0,1,4,0,2,60,60,320,1

[Events]
Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text
"""


@dataclass(frozen=True)
class Caption:
    start: float
    end: float
    text: str


def format_ass_time(seconds: float) -> str:
    total_centis = int(round(max(seconds, 0.0) * 100))
    hours, remainder = divmod(total_centis, 360000)
    minutes, remainder = divmod(remainder, 6000)
    secs, centis = divmod(remainder, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{centis:02d}"


def parse_ass_time(value: str) -> float:
    match = _ASS_TIME.fullmatch(value.strip())
    if not match:
        raise ValueError(f"invalid ASS timestamp: {value!r}")
    return (
        int(match.group("hours")) * 3600
        + int(match.group("minutes")) * 60
        + int(match.group("seconds"))
        + int(match.group("centis")) / 100
    )


def write_ass(captions: list[Caption], path: Path) -> Path:
    lines = [_ASS_HEADER]
    for caption in captions:
        text = " ".join(caption.text.split()).replace("{", "(").replace("}", ")")
        lines.append(
            "Dialogue: 0,{start},{end},Default,,0,0,0,,{text}\n".format(
                start=format_ass_time(caption.start),
                end=format_ass_time(caption.end),
                text=text,
            )
        )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("".join(lines), encoding="utf-8")
    return path


def read_ass_timings(path: Path) -> list[tuple[float, float]]:
    """Return ``(start, end)`` for every dialogue line of an ASS file."""

    timings: list[tuple[float, float]] = []
    for line in path.read_text(encoding="utf-8").splitlines():
        if not line.startswith("Dialogue:"):
            continue
        parts = line.split(",", 9)
        if len(parts) < 3:
            continue
        try:
            timings.append((parse_ass_time(parts[1]), parse_ass_time(parts[2])))
        except ValueError:
            continue
    return timings


def group_timings(
    timings: list[tuple[float, float]], groups: int
) -> list[list[tuple[float, float]]]:
    """Split ``timings`` into ``groups`` consecutive runs of near-equal size."""

    if groups <= 0:
        return []
    base, extra = divmod(len(timings), groups)
    result: list[list[tuple[float, float]]] = []
    index = 0
    for group in range(groups):
        size = base + (1 if group < extra else 0)
        result.append(timings[index:index + size])
        index += size
    return result


def slide_durations(
    timings: list[tuple[float, float]], slides: int, fallback: float = 3.0
) -> list[float]:
    """On-screen seconds for each of ``slides`` images, following caption timing."""

    if slides <= 0:
        return []
    durations: list[float] = []
    cursor = 0.0
    for group in group_timings(timings, slides):
        if not group:
            durations.append(fallback)
            continue
        end = group[-1][1]
        durations.append(max(end - cursor, 0.5))
        cursor = end
    return durations
