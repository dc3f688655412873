from __future__ import annotations


class ReelsmithError(Exception):
    """Base error for Reelsmith."""


class QueueUnavailableError(ReelsmithError):
    """The queue backing store cannot be reached."""


class JobNotFoundError(ReelsmithError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"job {job_id} not found")
        self.job_id = job_id


class NotOwnerError(ReelsmithError):
    """The caller no longer holds the lease on the job."""

    def __init__(self, job_id: str, worker_id: str | None) -> None:
        super().__init__(f"worker {worker_id} does not hold the lease on job {job_id}")
        self.job_id = job_id
        self.worker_id = worker_id


class AlreadyTerminalError(ReelsmithError):
    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} is already {state}")
        self.job_id = job_id
        self.state = state


class StageFailure(ReelsmithError):
    """A pipeline stage raised; carries the stage name."""

    def __init__(self, stage: str, message: str) -> None:
        super().__init__(f"stage {stage} failed: {message}")
        self.stage = stage
        self.message = message


class ResultNotReadyError(ReelsmithError):
    def __init__(self, job_id: str, state: str) -> None:
        super().__init__(f"job {job_id} is not completed (current state: {state})")
        self.job_id = job_id
        self.state = state


class ArtifactMissingError(ReelsmithError):
    pass
