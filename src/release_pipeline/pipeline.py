"""Release orchestrator.

Ties the components together for one tag:

1. Expand the build matrix into independent jobs
2. Run every job concurrently: build, then publish, then fire the
   job-terminal hooks
3. Wait for every job to reach a terminal state (the only join point)
4. Derive the RunSummary and fire the run-terminal hooks exactly once

A failing job never affects its siblings: build and publish errors, and any
unexpected error raised inside a job, end that job as a failure. Cancelling
run() cancels every in-flight job cooperatively, records those jobs as
cancelled, still fires the run-terminal hooks, and then re-raises.

This is also the CLI entry point:

    release-pipeline --tag refs/tags/v1.4.0 --config pipeline.yaml
"""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import os
import signal
import sys
import tempfile
import time
from collections.abc import Iterator, Sequence
from pathlib import Path

from pydantic import ValidationError

from release_pipeline.config import (
    DEFAULT_CONFIG_PATH,
    PipelineConfig,
    Secrets,
    load_pipeline_config,
)
from release_pipeline.errors import BuildError, ConfigError, MatrixError, PublishError
from release_pipeline.hooks import JobFailureNotifier, PipelineHooks, RunSummaryNotifier
from release_pipeline.logging_config import bind_job_context, get_logger, setup_logging
from release_pipeline.matrix import BuildJob, expand_matrix
from release_pipeline.schemas import (
    ALLOWED_TRANSITIONS,
    JobResult,
    JobState,
    JobStatus,
    MatrixEntry,
    ReleaseTrigger,
    RunSummary,
)
from release_pipeline.services.build import BuildExecutorProtocol, CargoBuildExecutor
from release_pipeline.services.releases import (
    ArtifactPublisherProtocol,
    GitHubReleasePublisher,
    MockPublisher,
)
from release_pipeline.services.slack import LogNotifier, NotifierProtocol, SlackNotifier

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_RELEASE_FAILED = 1
EXIT_CONFIG_ERROR = 2
EXIT_ABORTED = 130


class _JobTracker:
    """Walks one job through its state machine and produces its JobResult."""

    def __init__(self, job: BuildJob, states: dict[str, JobState]) -> None:
        self.job = job
        self.state = JobState.PENDING
        self.artifact: Path | None = None
        self.asset_url: str | None = None
        self.error: str | None = None
        self._states = states
        self._started = time.monotonic()

    def advance(self, new_state: JobState, error: str | None = None) -> None:
        if new_state not in ALLOWED_TRANSITIONS.get(self.state, frozenset()):
            raise RuntimeError(
                f"Illegal transition {self.state.value} -> {new_state.value} "
                f"for job {self.job.job_id}"
            )
        self.state = new_state
        self._states[self.job.entry.asset_name] = new_state
        if error:
            self.error = error
        logger.debug("job_state_changed", state=new_state.value)

    def cancel(self) -> None:
        if not self.state.is_terminal:
            self.advance(JobState.CANCELLED, "Run was cancelled")

    def result(self) -> JobResult:
        return JobResult(
            entry=self.job.entry,
            outcome=self.state.status,
            state=self.state,
            produced_artifact_path=self.artifact,
            asset_url=self.asset_url,
            error=self.error,
            duration_seconds=time.monotonic() - self._started,
        )


class ReleasePipeline:
    """Runs the build matrix for one tag and reports the outcome.

    Usage:
        pipeline = ReleasePipeline(
            matrix=config.matrix.include,
            builder=CargoBuildExecutor(config.build),
            publisher=GitHubReleasePublisher("myorg/diamant", token=token),
            hooks=hooks,
        )
        summary = await pipeline.run(ReleaseTrigger(ref="refs/tags/v1.4.0"))
    """

    def __init__(
        self,
        matrix: Sequence[MatrixEntry],
        builder: BuildExecutorProtocol,
        publisher: ArtifactPublisherProtocol,
        hooks: PipelineHooks | None = None,
        max_parallel: int | None = None,
        workspace: Path | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            matrix: Declared build targets; asset names must be unique
            builder: Build executor
            publisher: Release publisher
            hooks: Job- and run-terminal observers
            max_parallel: Upper bound on concurrently running jobs
            workspace: Keep job directories here instead of temporary ones

        Raises:
            MatrixError: If the matrix is empty or has duplicate asset names
        """
        self.jobs: list[BuildJob] = expand_matrix(matrix)
        self.builder = builder
        self.publisher = publisher
        self.hooks = hooks or PipelineHooks()
        self.max_parallel = max_parallel
        self.workspace = workspace
        self._states: dict[str, JobState] = {}

    @property
    def job_states(self) -> dict[str, JobState]:
        """Current state of every job in the active run, keyed by asset name."""
        return dict(self._states)

    async def run(self, trigger: ReleaseTrigger) -> RunSummary:
        """Build and publish every matrix entry for a tag.

        Args:
            trigger: The tag that started the run

        Returns:
            The RunSummary of all terminal JobResults

        Raises:
            asyncio.CancelledError: If the run was cancelled, after the
                run-terminal hooks have reported the aborted run
        """
        self._states = {job.entry.asset_name: JobState.PENDING for job in self.jobs}
        results: dict[int, JobResult] = {}
        limiter = asyncio.Semaphore(self.max_parallel) if self.max_parallel else None

        logger.info("run_started", tag=trigger.tag, jobs=len(self.jobs))
        tasks = [
            asyncio.create_task(
                self._run_job(job, trigger, results, limiter),
                name=f"release-job-{job.slug}",
            )
            for job in self.jobs
        ]

        aborted = False
        try:
            await asyncio.gather(*tasks)
        except asyncio.CancelledError:
            aborted = True
            logger.warning("run_cancelled", tag=trigger.tag)
            # gather() has already cancelled the jobs; let them record their
            # results and fire their hooks
            await asyncio.gather(*tasks, return_exceptions=True)

        for job in self.jobs:
            if job.index not in results:
                # Cancelled before the task body ever ran
                self._states[job.entry.asset_name] = JobState.CANCELLED
                results[job.index] = JobResult(
                    entry=job.entry,
                    outcome=JobStatus.CANCELLED,
                    state=JobState.CANCELLED,
                    error="Run was cancelled before the job started",
                )

        summary = RunSummary(
            trigger=trigger,
            results=[results[job.index] for job in self.jobs],
            aborted=aborted,
        )
        logger.info(
            "run_complete",
            tag=trigger.tag,
            status=summary.status.value,
            succeeded=len(summary.succeeded),
            failed=len(summary.failed),
        )
        await self.hooks.run_terminal(summary)

        if aborted:
            raise asyncio.CancelledError()
        return summary

    async def _run_job(
        self,
        job: BuildJob,
        trigger: ReleaseTrigger,
        results: dict[int, JobResult],
        limiter: asyncio.Semaphore | None,
    ) -> None:
        bind_job_context(job=job.job_id, asset=job.entry.asset_name, tag=trigger.tag)
        tracker = _JobTracker(job, self._states)
        try:
            async with limiter or contextlib.nullcontext():
                logger.info("job_started")
                await self._execute(job, trigger, tracker)
        except asyncio.CancelledError:
            tracker.cancel()
            results[job.index] = tracker.result()
            logger.warning("job_cancelled", state=tracker.state.value)
            await self.hooks.job_terminal(results[job.index], trigger)
            raise

        result = tracker.result()
        results[job.index] = result
        logger.info(
            "job_finished",
            outcome=result.outcome.value,
            state=result.state.value,
            duration_seconds=round(result.duration_seconds, 2),
        )
        await self.hooks.job_terminal(result, trigger)

    async def _execute(
        self, job: BuildJob, trigger: ReleaseTrigger, tracker: _JobTracker
    ) -> None:
        with self._job_directory(job) as job_dir:
            tracker.advance(JobState.BUILDING)
            try:
                artifact = await self.builder.build(job, job_dir)
            except BuildError as exc:
                logger.error(
                    "build_failed",
                    error=str(exc),
                    returncode=exc.returncode,
                    log_tail=exc.log_tail,
                )
                tracker.advance(JobState.BUILD_FAILED, str(exc))
                return
            except Exception as exc:
                logger.error("build_crashed", error=str(exc), exc_info=True)
                tracker.advance(JobState.BUILD_FAILED, f"Unexpected build error: {exc}")
                return

            tracker.artifact = artifact
            tracker.advance(JobState.BUILT)
            tracker.advance(JobState.PUBLISHING)
            try:
                asset = await self.publisher.publish(job.entry, artifact, trigger)
            except PublishError as exc:
                logger.error("publish_failed", error=str(exc), status_code=exc.status_code)
                tracker.advance(JobState.PUBLISH_FAILED, str(exc))
                return
            except Exception as exc:
                logger.error("publish_crashed", error=str(exc), exc_info=True)
                tracker.advance(JobState.PUBLISH_FAILED, f"Unexpected publish error: {exc}")
                return

            tracker.asset_url = asset.url
            tracker.advance(JobState.PUBLISHED)

    @contextlib.contextmanager
    def _job_directory(self, job: BuildJob) -> Iterator[Path]:
        """Job-scoped storage: private to one job, discarded afterwards
        unless a workspace is configured."""
        if self.workspace is not None:
            job_dir = self.workspace / job.slug
            job_dir.mkdir(parents=True, exist_ok=True)
            yield job_dir
            return
        with tempfile.TemporaryDirectory(
            prefix=f"release-{job.slug}-", ignore_cleanup_errors=True
        ) as tmp:
            yield Path(tmp)


# ---------------------------------------------------------------------------
# Wiring
# ---------------------------------------------------------------------------


def build_pipeline(
    config: PipelineConfig,
    secrets: Secrets,
    dry_run: bool = False,
) -> ReleasePipeline:
    """Assemble a ReleasePipeline from configuration and secrets.

    In dry-run mode binaries are still built, but uploads go to an in-memory
    store and notifications are only logged.

    Raises:
        ConfigError: If publishing is requested without a repository or token
        MatrixError: If the configured matrix is invalid
    """
    publisher: ArtifactPublisherProtocol
    notifier: NotifierProtocol

    if dry_run:
        publisher = MockPublisher()
        notifier = LogNotifier()
    else:
        repository = config.release.repository or secrets.repository
        if not repository:
            raise ConfigError(
                "No release repository configured; set release.repository "
                "in pipeline.yaml or GITHUB_REPOSITORY"
            )
        if not secrets.github_token:
            raise ConfigError("GITHUB_TOKEN is required to publish release assets")
        publisher = GitHubReleasePublisher(
            repository,
            token=secrets.github_token,
            create_missing=config.release.create_missing,
        )
        notifier = SlackNotifier(secrets.slack_webhook) if secrets.slack_webhook else LogNotifier()

    hooks = PipelineHooks()
    hooks.add_job_hook(JobFailureNotifier(notifier, config.notifications.job_failure))
    hooks.add_run_hook(RunSummaryNotifier(notifier, config.notifications.run_summary))

    return ReleasePipeline(
        matrix=config.matrix.include,
        builder=CargoBuildExecutor(config.build),
        publisher=publisher,
        hooks=hooks,
        max_parallel=config.max_parallel,
        workspace=config.build.workspace,
    )


async def _run_until_signalled(
    pipeline: ReleasePipeline, trigger: ReleaseTrigger
) -> RunSummary:
    """Run the pipeline, turning SIGTERM into a cooperative cancellation."""
    task = asyncio.current_task()
    loop = asyncio.get_running_loop()
    with contextlib.suppress(NotImplementedError):
        loop.add_signal_handler(signal.SIGTERM, task.cancel)
    return await pipeline.run(trigger)


# ---------------------------------------------------------------------------
# CLI Entry Point
# ---------------------------------------------------------------------------


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point.

    Usage:
        release-pipeline --tag v1.4.0
        GITHUB_REF=refs/tags/v1.4.0 release-pipeline --config pipeline.yaml
        release-pipeline --tag v1.4.0 --dry-run

    Returns:
        0 if every job succeeded, 1 if any job failed, 2 on configuration
        errors, 130 if the run was aborted
    """
    parser = argparse.ArgumentParser(
        prog="release-pipeline",
        description="Cross-compile, publish and announce a tagged release",
    )
    parser.add_argument(
        "--tag", "-t",
        default=os.environ.get("GITHUB_REF"),
        help="Tag ref that triggered the release (defaults to GITHUB_REF)",
    )
    parser.add_argument(
        "--config", "-c",
        type=Path,
        default=DEFAULT_CONFIG_PATH,
        help="Path to pipeline.yaml",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Build, but keep uploads in memory and only log notifications",
    )
    args = parser.parse_args(argv)
    setup_logging()

    if not args.tag:
        parser.error("--tag is required when GITHUB_REF is not set")
    try:
        trigger = ReleaseTrigger(ref=args.tag)
    except ValidationError as exc:
        parser.error(f"invalid tag {args.tag!r}: {exc.errors()[0]['msg']}")

    try:
        config = load_pipeline_config(args.config)
        pipeline = build_pipeline(config, Secrets.from_env(), dry_run=args.dry_run)
    except (ConfigError, MatrixError) as exc:
        logger.error("config_invalid", error=str(exc))
        return EXIT_CONFIG_ERROR

    try:
        summary = asyncio.run(_run_until_signalled(pipeline, trigger))
    except (KeyboardInterrupt, asyncio.CancelledError):
        logger.warning("run_aborted", tag=trigger.tag)
        return EXIT_ABORTED

    print(summary.model_dump_json(indent=2))
    return EXIT_SUCCESS if summary.status == JobStatus.SUCCESS else EXIT_RELEASE_FAILED


if __name__ == "__main__":
    sys.exit(main())
