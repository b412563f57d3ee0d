"""Tests for the build executor.

CargoBuildExecutor is exercised against small shell scripts standing in for
the toolchain, placed first on PATH. They record nothing about Rust; they
only reproduce the contract: exit status, output on stdout, and a binary
written under CARGO_TARGET_DIR.

Run with: pytest tests/test_build.py -v
"""

from __future__ import annotations

import asyncio
import os
import stat
import sys
from pathlib import Path

import pytest

from release_pipeline.config import BuildSettings
from release_pipeline.errors import BuildError
from release_pipeline.matrix import BuildJob
from release_pipeline.schemas import MatrixEntry
from release_pipeline.services.build import (
    CargoBuildExecutor,
    MockBuildExecutor,
    artifact_path,
)

posix_only = pytest.mark.skipif(sys.platform == "win32", reason="uses sh scripts")

SUCCESSFUL_CARGO = """#!/bin/sh
target=""
while [ $# -gt 0 ]; do
  if [ "$1" = "--target" ]; then target="$2"; fi
  shift
done
echo "   Compiling diamant v0.3.0 ($target)"
mkdir -p "$CARGO_TARGET_DIR/$target/release"
printf 'built-for-%s' "$target" > "$CARGO_TARGET_DIR/$target/release/diamant"
echo "    Finished release [optimized] target(s)"
"""

FAILING_CARGO = """#!/bin/sh
echo "error[E0425]: cannot find value \\`x\\` in this scope"
echo "error: could not compile \\`diamant\\`"
exit 101
"""

SILENT_CARGO = """#!/bin/sh
echo "    Finished release [optimized] target(s)"
"""

HANGING_CARGO = """#!/bin/sh
exec sleep 30
"""


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def job() -> BuildJob:
    return BuildJob(
        index=0,
        entry=MatrixEntry(
            os="ubuntu-latest",
            target="x86_64-unknown-linux-gnu",
            artifact_name="diamant",
            asset_name="diamant-x86_64-unknown-linux-gnu",
        ),
    )


@pytest.fixture
def fake_toolchain(tmp_path: Path, monkeypatch: pytest.MonkeyPatch):
    """Install a script as `cargo` at the front of PATH."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def install(script: str) -> Path:
        path = bin_dir / "cargo"
        path.write_text(script)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    monkeypatch.setenv("PATH", f"{bin_dir}{os.pathsep}{os.environ.get('PATH', '')}")
    return install


def _executor(tmp_path: Path, **overrides) -> CargoBuildExecutor:
    settings = BuildSettings(use_cross=False, toolchain=None, project_dir=tmp_path, **overrides)
    return CargoBuildExecutor(settings)


# ---------------------------------------------------------------------------
# Command construction
# ---------------------------------------------------------------------------


class TestBuildCommand:
    def test_default_command_uses_cross_nightly(self) -> None:
        command = CargoBuildExecutor().build_command("x86_64-unknown-linux-musl")
        assert command == [
            "cross",
            "+nightly",
            "build",
            "--release",
            "--target",
            "x86_64-unknown-linux-musl",
            "--all-features",
            "--verbose",
        ]

    def test_plain_cargo_without_toolchain(self) -> None:
        executor = CargoBuildExecutor(BuildSettings(use_cross=False, toolchain=None))
        command = executor.build_command("x86_64-apple-darwin")
        assert command[:2] == ["cargo", "build"]

    def test_optional_flags_and_extra_args(self) -> None:
        executor = CargoBuildExecutor(
            BuildSettings(all_features=False, verbose=False, extra_args=["--locked"])
        )
        command = executor.build_command("x86_64-pc-windows-msvc")
        assert "--all-features" not in command
        assert "--verbose" not in command
        assert command[-1] == "--locked"

    def test_artifact_path_is_deterministic(self, tmp_path: Path) -> None:
        path = artifact_path(tmp_path, "x86_64-pc-windows-msvc", "diamant.exe")
        assert path == tmp_path / "x86_64-pc-windows-msvc" / "release" / "diamant.exe"


# ---------------------------------------------------------------------------
# CargoBuildExecutor against a fake toolchain
# ---------------------------------------------------------------------------


@posix_only
class TestCargoBuildExecutor:
    @pytest.mark.asyncio
    async def test_successful_build(self, tmp_path: Path, job: BuildJob, fake_toolchain) -> None:
        fake_toolchain(SUCCESSFUL_CARGO)
        job_dir = tmp_path / "job"
        job_dir.mkdir()

        binary = await _executor(tmp_path).build(job, job_dir)

        assert binary == artifact_path(job_dir.resolve(), "x86_64-unknown-linux-gnu", "diamant")
        assert binary.read_text() == "built-for-x86_64-unknown-linux-gnu"

    @pytest.mark.asyncio
    async def test_jobs_use_separate_target_dirs(
        self, tmp_path: Path, job: BuildJob, fake_toolchain
    ) -> None:
        fake_toolchain(SUCCESSFUL_CARGO)
        first, second = tmp_path / "a", tmp_path / "b"
        first.mkdir()
        second.mkdir()
        executor = _executor(tmp_path)

        one = await executor.build(job, first)
        two = await executor.build(job, second)

        assert one != two
        assert one.is_relative_to(first.resolve())
        assert two.is_relative_to(second.resolve())

    @pytest.mark.asyncio
    async def test_nonzero_exit_is_build_error(
        self, tmp_path: Path, job: BuildJob, fake_toolchain
    ) -> None:
        fake_toolchain(FAILING_CARGO)

        with pytest.raises(BuildError) as excinfo:
            await _executor(tmp_path).build(job, tmp_path)

        assert excinfo.value.returncode == 101
        assert "could not compile" in excinfo.value.log_tail
        assert excinfo.value.entry == job.entry

    @pytest.mark.asyncio
    async def test_missing_artifact_is_build_error(
        self, tmp_path: Path, job: BuildJob, fake_toolchain
    ) -> None:
        fake_toolchain(SILENT_CARGO)

        with pytest.raises(BuildError, match="was not produced"):
            await _executor(tmp_path).build(job, tmp_path)

    @pytest.mark.asyncio
    async def test_missing_toolchain_is_build_error(
        self, tmp_path: Path, job: BuildJob, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        empty = tmp_path / "empty"
        empty.mkdir()
        monkeypatch.setenv("PATH", str(empty))

        with pytest.raises(BuildError, match="not found"):
            await _executor(tmp_path).build(job, tmp_path)

    @pytest.mark.asyncio
    async def test_timeout_stops_the_build(
        self, tmp_path: Path, job: BuildJob, fake_toolchain
    ) -> None:
        fake_toolchain(HANGING_CARGO)

        with pytest.raises(BuildError, match="timed out"):
            await _executor(tmp_path, timeout_seconds=0.2).build(job, tmp_path)

    @pytest.mark.asyncio
    async def test_cancellation_stops_the_build(
        self,
        tmp_path: Path,
        job: BuildJob,
        fake_toolchain,
        monkeypatch: pytest.MonkeyPatch,
    ) -> None:
        fake_toolchain(HANGING_CARGO)
        spawned: list[asyncio.subprocess.Process] = []
        real_exec = asyncio.create_subprocess_exec

        async def recording_exec(*args, **kwargs):
            process = await real_exec(*args, **kwargs)
            spawned.append(process)
            return process

        monkeypatch.setattr(asyncio, "create_subprocess_exec", recording_exec)

        task = asyncio.create_task(_executor(tmp_path).build(job, tmp_path))
        for _ in range(500):
            if spawned:
                break
            await asyncio.sleep(0.01)
        await asyncio.sleep(0.05)
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        [process] = spawned
        assert process.returncode is not None


# ---------------------------------------------------------------------------
# MockBuildExecutor
# ---------------------------------------------------------------------------


class TestMockBuildExecutor:
    @pytest.mark.asyncio
    async def test_writes_binary_at_cargo_path(self, tmp_path: Path, job: BuildJob) -> None:
        binary = await MockBuildExecutor().build(job, tmp_path)
        assert binary == artifact_path(tmp_path, "x86_64-unknown-linux-gnu", "diamant")
        assert binary.read_bytes().endswith(b"x86_64-unknown-linux-gnu")

    @pytest.mark.asyncio
    async def test_configured_failure(self, tmp_path: Path, job: BuildJob) -> None:
        executor = MockBuildExecutor(fail_targets={"x86_64-unknown-linux-gnu"})
        with pytest.raises(BuildError):
            await executor.build(job, tmp_path)
        assert executor.built == []
