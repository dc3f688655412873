"""Stage identities, sequences and the progress mapping."""

from __future__ import annotations

from enum import Enum

from .schemas import StageSubset


class Stage(str, Enum):
    SCRIPT = "script"
    VOICE = "voice"
    MIX = "mix"
    SUBTITLES = "subtitles"
    IMAGES = "images"
    ASSEMBLE = "assemble"
    ATTACH_AUDIO = "attach-audio"
    BURN_SUBTITLES = "burn-subtitles"


FULL_SEQUENCE: tuple[Stage, ...] = (
    Stage.SCRIPT,
    Stage.VOICE,
    Stage.MIX,
    Stage.SUBTITLES,
    Stage.IMAGES,
    Stage.ASSEMBLE,
    Stage.ATTACH_AUDIO,
    Stage.BURN_SUBTITLES,
)

# Generation time varies wildly between stages, so the spans are not equal.
PROGRESS_RANGES: dict[Stage, tuple[int, int]] = {
    Stage.SCRIPT: (0, 20),
    Stage.VOICE: (20, 40),
    Stage.MIX: (40, 45),
    Stage.SUBTITLES: (45, 55),
    Stage.IMAGES: (55, 80),
    Stage.ASSEMBLE: (80, 90),
    Stage.ATTACH_AUDIO: (90, 95),
    Stage.BURN_SUBTITLES: (95, 100),
}

_SUBSET_SEQUENCES: dict[StageSubset, tuple[Stage, ...]] = {
    StageSubset.FULL: FULL_SEQUENCE,
    StageSubset.SCRIPT_ONLY: (Stage.SCRIPT,),
    StageSubset.VOICE_ONLY: (Stage.VOICE,),
    StageSubset.IMAGE_ONLY: (Stage.IMAGES,),
}


def stages_for(subset: StageSubset) -> tuple[Stage, ...]:
    return _SUBSET_SEQUENCES[subset]


def progress_range(subset: StageSubset, stage: Stage) -> tuple[int, int]:
    """Percent span a stage covers for the given subset.

    A single-stage subset owns the whole 0-100 span.
    """
    sequence = stages_for(subset)
    if stage not in sequence:
        raise ValueError(f"stage {stage.value} is not part of {subset.value}")
    if len(sequence) == 1:
        return (0, 100)
    return PROGRESS_RANGES[stage]


def progress_for(subset: StageSubset, stage: Stage) -> int:
    """Overall percent reached once ``stage`` has finished."""
    return progress_range(subset, stage)[1]
