"""Cross-compilation build executor.

Runs one release build per job:

    cross +nightly build --release --target <triple> --all-features --verbose

Each job gets its own CARGO_TARGET_DIR, so concurrent jobs never write into a
shared target directory, and the artifact lands at a path determined only by
the job directory, the target triple and the artifact name:

    <job_dir>/<target_triple>/release/<artifact_name>

Design notes:
- The toolchain runs as a child process driven by asyncio, so several builds
  run in parallel while the orchestrating coroutines stay responsive
- Output is streamed line by line to the structured logger; the last lines
  are kept for the BuildError message
- Cancelling the job terminates the child process before the cancellation
  propagates
"""

from __future__ import annotations

import asyncio
import os
from collections import deque
from pathlib import Path
from typing import Protocol

from release_pipeline.config import BuildSettings
from release_pipeline.errors import BuildError
from release_pipeline.logging_config import get_logger
from release_pipeline.matrix import BuildJob

logger = get_logger(__name__)

# ---------------------------------------------------------------------------
# Protocol
# ---------------------------------------------------------------------------


class BuildExecutorProtocol(Protocol):
    """Interface for anything that turns a BuildJob into a binary on disk."""

    async def build(self, job: BuildJob, job_dir: Path) -> Path:
        """Build the job's target into job-scoped storage.

        Args:
            job: The job to build
            job_dir: Directory owned exclusively by this job

        Returns:
            Path to the produced binary

        Raises:
            BuildError: On any compilation or linkage failure
        """
        ...


def artifact_path(target_dir: Path, target_triple: str, artifact_name: str) -> Path:
    """Where cargo places a release binary for a target."""
    return target_dir / target_triple / "release" / artifact_name


# ---------------------------------------------------------------------------
# Cargo / cross implementation
# ---------------------------------------------------------------------------


class CargoBuildExecutor:
    """Builds release binaries with cargo or cross.

    Usage:
        executor = CargoBuildExecutor(BuildSettings(use_cross=True))
        binary = await executor.build(job, Path("/tmp/job-00"))
    """

    TAIL_LINES = 40
    STOP_GRACE_SECONDS = 10.0
    # cargo --verbose can print very long rustc command lines
    STREAM_LIMIT = 1024 * 1024

    def __init__(self, settings: BuildSettings | None = None) -> None:
        self.settings = settings or BuildSettings()

    def build_command(self, target_triple: str) -> list[str]:
        """The toolchain invocation for one target."""
        command = ["cross" if self.settings.use_cross else "cargo"]
        if self.settings.toolchain:
            command.append(f"+{self.settings.toolchain}")
        command += ["build", "--release", "--target", target_triple]
        if self.settings.all_features:
            command.append("--all-features")
        if self.settings.verbose:
            command.append("--verbose")
        command += self.settings.extra_args
        return command

    async def build(self, job: BuildJob, job_dir: Path) -> Path:
        entry = job.entry
        command = self.build_command(entry.target_triple)
        target_dir = job_dir.resolve()
        env = {**os.environ, "CARGO_TARGET_DIR": str(target_dir)}

        logger.info(
            "build_started",
            command=" ".join(command),
            project_dir=str(self.settings.project_dir),
            target_dir=str(target_dir),
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=self.settings.project_dir,
                env=env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                limit=self.STREAM_LIMIT,
            )
        except FileNotFoundError as exc:
            raise BuildError(
                entry, f"Toolchain executable {command[0]!r} not found"
            ) from exc

        tail: deque[str] = deque(maxlen=self.TAIL_LINES)
        try:
            async with asyncio.timeout(self.settings.timeout_seconds):
                await self._stream_output(process, tail)
                returncode = await process.wait()
        except TimeoutError as exc:
            await self._stop(process)
            raise BuildError(
                entry,
                f"Build timed out after {self.settings.timeout_seconds}s",
                log_tail="\n".join(tail),
            ) from exc
        except asyncio.CancelledError:
            await self._stop(process)
            raise

        if returncode != 0:
            raise BuildError(
                entry,
                f"{command[0]} exited with status {returncode}",
                returncode=returncode,
                log_tail="\n".join(tail),
            )

        binary = artifact_path(target_dir, entry.target_triple, entry.artifact_name)
        if not binary.is_file():
            raise BuildError(
                entry,
                f"Build finished but {binary} was not produced",
                returncode=returncode,
                log_tail="\n".join(tail),
            )

        logger.info("build_complete", artifact=str(binary), size=binary.stat().st_size)
        return binary

    async def _stream_output(
        self, process: asyncio.subprocess.Process, tail: deque[str]
    ) -> None:
        assert process.stdout is not None
        async for raw in process.stdout:
            line = raw.decode(errors="replace").rstrip()
            tail.append(line)
            logger.debug("build_output", line=line)

    async def _stop(self, process: asyncio.subprocess.Process) -> None:
        """Terminate the toolchain, escalating to kill after a grace period."""
        if process.returncode is not None:
            return
        try:
            process.terminate()
            await asyncio.wait_for(process.wait(), self.STOP_GRACE_SECONDS)
        except TimeoutError:
            process.kill()
            await process.wait()
        except ProcessLookupError:
            pass
        logger.warning("build_process_stopped", returncode=process.returncode)


# ---------------------------------------------------------------------------
# Mock Implementation
# ---------------------------------------------------------------------------


class MockBuildExecutor:
    """Build executor that writes a placeholder binary instead of compiling.

    Use this in tests and when rehearsing a pipeline configuration.

    Usage:
        executor = MockBuildExecutor(fail_targets={"x86_64-unknown-linux-gnu"})
    """

    def __init__(
        self,
        fail_targets: set[str] | None = None,
        delays: dict[str, float] | None = None,
        content: bytes = b"\x7fELF mock binary for ",
    ) -> None:
        """Initialize with optional failures and per-target delays.

        Args:
            fail_targets: Target triples whose build should fail
            delays: Seconds to sleep before finishing, per target triple
            content: Prefix of the written binary; the target triple is appended
        """
        self._fail_targets = fail_targets or set()
        self._delays = delays or {}
        self._content = content
        self.built: list[str] = []

    async def build(self, job: BuildJob, job_dir: Path) -> Path:
        entry = job.entry
        delay = self._delays.get(entry.target_triple, 0.0)
        if delay:
            await asyncio.sleep(delay)

        if entry.target_triple in self._fail_targets:
            raise BuildError(
                entry,
                f"error: could not compile `{entry.artifact_name}`",
                returncode=101,
            )

        binary = artifact_path(job_dir, entry.target_triple, entry.artifact_name)
        binary.parent.mkdir(parents=True, exist_ok=True)
        binary.write_bytes(self._content + entry.target_triple.encode())
        self.built.append(entry.target_triple)
        return binary
