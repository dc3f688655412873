"""Content-generation pipeline: run directories, stages and orchestration."""

from __future__ import annotations

from .orchestrator import PipelineOrchestrator
from .outputs import OutputManager, RunDirectory
from .schemas import JobPayload, StageSubset
from .stages import Stage

__all__ = [
    "JobPayload",
    "OutputManager",
    "PipelineOrchestrator",
    "RunDirectory",
    "Stage",
    "StageSubset",
]
