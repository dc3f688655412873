"""Pydantic models describing a generation request."""

from __future__ import annotations

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


Provider = Literal["openai", "anthropic", "google", "cohere"]


class StageSubset(str, Enum):
    FULL = "full"
    SCRIPT_ONLY = "script-only"
    VOICE_ONLY = "voice-only"
    IMAGE_ONLY = "image-only"


_LEGACY_FLAGS = {
    "scriptOnly": StageSubset.SCRIPT_ONLY,
    "voiceOnly": StageSubset.VOICE_ONLY,
    "imageOnly": StageSubset.IMAGE_ONLY,
}


class JobPayload(BaseModel):
    """Input a worker needs to run the pipeline for one job."""

    prompt: str | None = Field(default=None, description="Topic of the video")
    persona: str = Field(default="funny, sharp-tongued tech explainer")
    style: str = Field(default="memes, sarcasm, relatable developer humor")
    max_length: int = Field(default=700, ge=50, le=5000, description="Script length in characters")
    model: str | None = Field(
        default=None, description="Script model name; the provider default when unset"
    )
    provider: Provider = Field(default="openai")
    prompt_style: Literal["dev-meme", "documentary", "dialogue", "narrator", "what-if"] = (
        "dev-meme"
    )
    script: str | None = Field(
        default=None, description="Existing script for voice-only and image-only jobs"
    )
    voice: str | None = Field(default=None, description="Voice preset for narration")
    stage_subset: StageSubset = Field(default=StageSubset.FULL)

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        extra="ignore",
        protected_namespaces=(),
    )

    @model_validator(mode="before")
    @classmethod
    def map_legacy_flags(cls, data: Any) -> Any:
        if not isinstance(data, dict):
            return data
        if "stageSubset" in data or "stage_subset" in data:
            return data
        for flag, subset in _LEGACY_FLAGS.items():
            if data.get(flag):
                return {**data, "stageSubset": subset.value}
        return data

    @field_validator("prompt", "script")
    @classmethod
    def strip_text(cls, value: str | None) -> str | None:
        if value is None:
            return None
        stripped = value.strip()
        return stripped or None

    @model_validator(mode="after")
    def ensure_inputs(self) -> "JobPayload":
        if self.stage_subset in (StageSubset.FULL, StageSubset.SCRIPT_ONLY):
            if not self.prompt:
                raise ValueError(f"prompt is required for {self.stage_subset.value} jobs")
        elif not self.script:
            raise ValueError(f"script is required for {self.stage_subset.value} jobs")
        return self

    @property
    def label_text(self) -> str:
        """Text the run directory name is derived from."""
        return self.prompt or self.script or ""
