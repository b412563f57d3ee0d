"""Pydantic models for everything that flows through a release run.

- ReleaseTrigger: the pushed tag, read by every component, never mutated
- MatrixEntry / BuildMatrix: the statically declared build targets
- JobResult: terminal record of one job
- RunSummary: the aggregate derived from all JobResults
- Notification: one message handed to a notifier transport

Matrix entries accept the same keys as a GitHub Actions matrix
(os, target, artifact_name, asset_name) so an existing workflow matrix can be
copied into pipeline.yaml unchanged.
"""

from __future__ import annotations

from collections import Counter
from collections.abc import Iterable
from enum import StrEnum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

TAG_REF_PREFIX = "refs/tags/"


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class JobStatus(StrEnum):
    """Terminal status of a job or of a whole run.

    Uses the GitHub Actions job.status vocabulary.
    """

    SUCCESS = "success"
    FAILURE = "failure"
    CANCELLED = "cancelled"


class JobState(StrEnum):
    """Lifecycle of a single job.

    pending -> building -> {build_failed | built}
    built -> publishing -> {publish_failed | published}
    any non-terminal state -> cancelled
    """

    PENDING = "pending"
    BUILDING = "building"
    BUILD_FAILED = "build_failed"
    BUILT = "built"
    PUBLISHING = "publishing"
    PUBLISH_FAILED = "publish_failed"
    PUBLISHED = "published"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in _TERMINAL_STATES

    @property
    def status(self) -> JobStatus:
        """The JobStatus a terminal state maps to."""
        if self == JobState.PUBLISHED:
            return JobStatus.SUCCESS
        if self == JobState.CANCELLED:
            return JobStatus.CANCELLED
        if self in (JobState.BUILD_FAILED, JobState.PUBLISH_FAILED):
            return JobStatus.FAILURE
        raise ValueError(f"State {self.value} is not terminal")


_TERMINAL_STATES = frozenset(
    {
        JobState.BUILD_FAILED,
        JobState.PUBLISH_FAILED,
        JobState.PUBLISHED,
        JobState.CANCELLED,
    }
)

ALLOWED_TRANSITIONS: dict[JobState, frozenset[JobState]] = {
    JobState.PENDING: frozenset({JobState.BUILDING, JobState.CANCELLED}),
    JobState.BUILDING: frozenset(
        {JobState.BUILD_FAILED, JobState.BUILT, JobState.CANCELLED}
    ),
    JobState.BUILT: frozenset({JobState.PUBLISHING, JobState.CANCELLED}),
    JobState.PUBLISHING: frozenset(
        {JobState.PUBLISH_FAILED, JobState.PUBLISHED, JobState.CANCELLED}
    ),
}


# ---------------------------------------------------------------------------
# Trigger and matrix
# ---------------------------------------------------------------------------


class ReleaseTrigger(BaseModel):
    """The tag reference that started a run.

    Attributes:
        ref: Full ref ("refs/tags/v1.4.0") or bare tag name ("v1.4.0")
    """

    model_config = ConfigDict(frozen=True)

    ref: str = Field(..., min_length=1, description="Tag ref that triggered the run")

    @field_validator("ref")
    @classmethod
    def check_tag_ref(cls, value: str) -> str:
        value = value.strip()
        if value.startswith("refs/") and not value.startswith(TAG_REF_PREFIX):
            raise ValueError(f"Ref {value!r} is not a tag ref")
        if value in ("", TAG_REF_PREFIX.rstrip("/"), TAG_REF_PREFIX):
            raise ValueError("Tag name must not be empty")
        return value

    @property
    def tag(self) -> str:
        """Bare tag name, as used to look up the release."""
        return self.ref.removeprefix(TAG_REF_PREFIX)


class MatrixEntry(BaseModel):
    """One build target.

    Attributes:
        operating_system: Runner OS label (e.g. "ubuntu-latest")
        target_triple: Rust target triple (e.g. "x86_64-unknown-linux-gnu")
        artifact_name: File name the toolchain produces (e.g. "diamant.exe")
        asset_name: Name of the uploaded release asset; unique per run
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    operating_system: str = Field(..., alias="os", min_length=1)
    target_triple: str = Field(..., alias="target", min_length=1)
    artifact_name: str = Field(..., min_length=1)
    asset_name: str = Field(..., min_length=1)

    @field_validator("artifact_name", "asset_name")
    @classmethod
    def check_plain_file_name(cls, value: str) -> str:
        if "/" in value or "\\" in value:
            raise ValueError(f"{value!r} must be a file name, not a path")
        return value


def find_duplicate_asset_names(entries: Iterable[MatrixEntry]) -> list[str]:
    """Return every asset_name that appears more than once, sorted."""
    counts = Counter(entry.asset_name for entry in entries)
    return sorted(name for name, count in counts.items() if count > 1)


class BuildMatrix(BaseModel):
    """The statically declared list of build targets."""

    include: list[MatrixEntry] = Field(..., description="Build targets, in order")

    @model_validator(mode="after")
    def check_asset_names_unique(self) -> BuildMatrix:
        """Reject matrices whose jobs would race on the same release asset."""
        if not self.include:
            raise ValueError("Build matrix must contain at least one entry")
        duplicates = find_duplicate_asset_names(self.include)
        if duplicates:
            raise ValueError(
                f"Duplicate asset_name in build matrix: {', '.join(duplicates)}"
            )
        return self


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------


class JobResult(BaseModel):
    """Terminal record of one job.

    Attributes:
        entry: The matrix entry this job built
        outcome: success only when both build and publish succeeded
        state: The terminal JobState the job stopped in
        produced_artifact_path: Where the build wrote the binary, if it did
        asset_url: Download URL of the published asset, if published
        error: Human-readable reason for a non-success outcome
        duration_seconds: Wall time from job start to terminal state
    """

    entry: MatrixEntry
    outcome: JobStatus
    state: JobState
    produced_artifact_path: Path | None = None
    asset_url: str | None = None
    error: str | None = None
    duration_seconds: float = Field(0.0, ge=0.0)

    @model_validator(mode="after")
    def check_outcome_matches_state(self) -> JobResult:
        if not self.state.is_terminal:
            raise ValueError(f"JobResult requires a terminal state, got {self.state.value}")
        if self.state.status != self.outcome:
            raise ValueError(
                f"Outcome {self.outcome.value} does not match state {self.state.value}"
            )
        return self

    @property
    def job_id(self) -> str:
        return f"{self.entry.operating_system} {self.entry.target_triple}"


class RunSummary(BaseModel):
    """Aggregate of every JobResult in a run.

    status is failure if any job failed, cancelled if none failed but some
    were cancelled, and success only if every job succeeded.
    """

    trigger: ReleaseTrigger
    results: list[JobResult]
    aborted: bool = False

    @property
    def status(self) -> JobStatus:
        outcomes = {result.outcome for result in self.results}
        if JobStatus.FAILURE in outcomes:
            return JobStatus.FAILURE
        if JobStatus.CANCELLED in outcomes or self.aborted:
            return JobStatus.CANCELLED
        return JobStatus.SUCCESS

    @property
    def succeeded(self) -> list[JobResult]:
        return [r for r in self.results if r.outcome == JobStatus.SUCCESS]

    @property
    def failed(self) -> list[JobResult]:
        return [r for r in self.results if r.outcome != JobStatus.SUCCESS]


# ---------------------------------------------------------------------------
# Notifications
# ---------------------------------------------------------------------------


class Notification(BaseModel):
    """A message for the notification channel.

    Attributes:
        status: Status being reported; drives colour and mention policy
        username: Display identity of the sender
        title: Headline text
        mention: Who to mention ("channel", "here", "everyone" or a user id)
        mention_if: "always" or the status for which the mention applies
        icon_emoji: Sender icon, with or without surrounding colons
        fields: Extra key/value details shown with the message
    """

    status: JobStatus
    username: str
    title: str
    mention: str | None = None
    mention_if: str = "always"
    icon_emoji: str | None = None
    fields: dict[str, str] = Field(default_factory=dict)
