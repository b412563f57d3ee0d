"""Exception taxonomy for the release pipeline.

Configuration and matrix errors abort a run before any job starts. Job errors
(build, publish) terminate a single job and are recorded in its JobResult.
Notification errors are best-effort and never escalate past the notifier hooks.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from release_pipeline.schemas import MatrixEntry


class PipelineError(Exception):
    """Base for every error raised by the pipeline."""


class ConfigError(PipelineError):
    """Raised when pipeline.yaml cannot be read, parsed, or validated."""


class MatrixError(PipelineError, ValueError):
    """Raised when the build matrix is empty or has colliding asset names."""


class JobError(PipelineError):
    """A job-local terminal error. Stops that job only."""

    def __init__(self, entry: MatrixEntry, message: str) -> None:
        super().__init__(message)
        self.entry = entry


class BuildError(JobError):
    """Toolchain exited nonzero, could not be started, or produced no artifact."""

    def __init__(
        self,
        entry: MatrixEntry,
        message: str,
        returncode: int | None = None,
        log_tail: str = "",
    ) -> None:
        super().__init__(entry, message)
        self.returncode = returncode
        self.log_tail = log_tail


class PublishError(JobError):
    """Upload rejected, release missing, or transport failure."""

    def __init__(
        self, entry: MatrixEntry, message: str, status_code: int | None = None
    ) -> None:
        super().__init__(entry, message)
        self.status_code = status_code


class NotifyError(PipelineError):
    """A notification could not be delivered."""
