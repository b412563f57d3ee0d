"""Pipeline configuration loaded from YAML, plus secrets from the environment.

pipeline.yaml describes the build matrix, how to invoke the toolchain, which
repository to publish to, and how notifications look. Every section has
defaults matching the diamant release workflow, so a missing file yields a
working configuration.

Secrets (the GitHub token, the Slack webhook URL) never live in the YAML file.
They are read from the environment and passed through unmodified.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, ValidationError, field_validator

from release_pipeline.errors import ConfigError
from release_pipeline.matrix import DEFAULT_MATRIX
from release_pipeline.schemas import BuildMatrix, JobStatus

DEFAULT_CONFIG_PATH = Path("pipeline.yaml")


# ---------------------------------------------------------------------------
# Sections
# ---------------------------------------------------------------------------


class BuildSettings(BaseModel):
    """How the cross-compilation toolchain is invoked.

    Attributes:
        project_dir: Directory containing Cargo.toml
        use_cross: Build with `cross` instead of plain `cargo`
        toolchain: Rust toolchain override (e.g. "nightly"); None for default
        all_features: Pass --all-features
        verbose: Pass --verbose
        extra_args: Additional arguments appended to the build command
        timeout_seconds: Abort a build that runs longer than this
        workspace: Keep job artifacts under this directory instead of
                   discarding temporary job directories after each job
    """

    project_dir: Path = Path(".")
    use_cross: bool = True
    toolchain: str | None = "nightly"
    all_features: bool = True
    verbose: bool = True
    extra_args: list[str] = Field(default_factory=list)
    timeout_seconds: float | None = Field(None, gt=0)
    workspace: Path | None = None


class ReleaseSettings(BaseModel):
    """Where artifacts are published.

    Attributes:
        repository: "owner/name"; falls back to GITHUB_REPOSITORY
        create_missing: Create the release when the tag has none yet
    """

    repository: str | None = Field(None, pattern=r"^[^/\s]+/[^/\s]+$")
    create_missing: bool = False


class NotificationSettings(BaseModel):
    """Presentation of one kind of notification."""

    username: str
    title: str
    mention: str | None = None
    mention_if: str = "always"
    icon_emoji: str | None = "github"

    @field_validator("title")
    @classmethod
    def check_title_placeholders(cls, value: str) -> str:
        """Titles may only use {ref}, {tag}, {os}, {target} and {asset}."""
        try:
            value.format(ref="", tag="", os="", target="", asset="")
        except (KeyError, IndexError, ValueError) as exc:
            raise ValueError(f"Invalid placeholder in title {value!r}: {exc}") from exc
        return value

    @field_validator("mention_if")
    @classmethod
    def check_mention_policy(cls, value: str) -> str:
        allowed = {"always", *(status.value for status in JobStatus)}
        if value not in allowed:
            raise ValueError(f"mention_if must be one of {sorted(allowed)}")
        return value


def _job_failure_defaults() -> NotificationSettings:
    return NotificationSettings(
        username="GitHub Actions (Failure)",
        title=":diamant-bus: Release {ref} ({os} {target})",
        mention="channel",
        mention_if="always",
    )


def _run_summary_defaults() -> NotificationSettings:
    return NotificationSettings(
        username="GitHub Actions (Success)",
        title=":diamant-bus: Release {ref}",
    )


class NotificationsConfig(BaseModel):
    """Settings for the per-job and per-run notifications."""

    job_failure: NotificationSettings = Field(default_factory=_job_failure_defaults)
    run_summary: NotificationSettings = Field(default_factory=_run_summary_defaults)


class PipelineConfig(BaseModel):
    """Top-level configuration loaded from pipeline.yaml."""

    matrix: BuildMatrix = Field(
        default_factory=lambda: BuildMatrix(include=list(DEFAULT_MATRIX))
    )
    max_parallel: int | None = Field(None, ge=1)
    build: BuildSettings = Field(default_factory=BuildSettings)
    release: ReleaseSettings = Field(default_factory=ReleaseSettings)
    notifications: NotificationsConfig = Field(default_factory=NotificationsConfig)


def load_pipeline_config(path: str | Path = DEFAULT_CONFIG_PATH) -> PipelineConfig:
    """Load and validate a pipeline.yaml file.

    Args:
        path: Path to the YAML configuration file.

    Returns:
        A validated PipelineConfig. Returns defaults if the file doesn't exist.

    Raises:
        ConfigError: If the YAML is malformed or fails validation
                     (including duplicate asset names in the matrix).
    """
    config_path = Path(path)
    if not config_path.exists():
        return PipelineConfig()

    try:
        raw = yaml.safe_load(config_path.read_text()) or {}
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc

    if not isinstance(raw, dict):
        raise ConfigError(f"Expected a mapping at the top of {path}")

    try:
        return PipelineConfig.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(f"Invalid pipeline config in {path}: {exc}") from exc


# ---------------------------------------------------------------------------
# Secrets
# ---------------------------------------------------------------------------


class Secrets(BaseModel):
    """Credentials provided by the environment.

    Attributes:
        github_token: Token for the releases API (GITHUB_TOKEN)
        slack_webhook: Incoming webhook URL (SLACK_WEBHOOK)
        webhook_secret: Shared secret for GitHub webhook signatures
                        (RELEASE_WEBHOOK_SECRET)
        repository: "owner/name" of the running repo (GITHUB_REPOSITORY)
    """

    github_token: str | None = None
    slack_webhook: str | None = None
    webhook_secret: str | None = None
    repository: str | None = None

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Secrets:
        env = os.environ if environ is None else environ
        return cls(
            github_token=env.get("GITHUB_TOKEN") or None,
            slack_webhook=env.get("SLACK_WEBHOOK") or None,
            webhook_secret=env.get("RELEASE_WEBHOOK_SECRET") or None,
            repository=env.get("GITHUB_REPOSITORY") or None,
        )
