"""Tests for build matrix expansion.

Run with: pytest tests/test_matrix.py -v
"""

from __future__ import annotations

import dataclasses

import pytest

from release_pipeline.errors import MatrixError
from release_pipeline.matrix import DEFAULT_MATRIX, BuildJob, expand_matrix
from release_pipeline.schemas import MatrixEntry, find_duplicate_asset_names


@pytest.fixture
def two_entries() -> list[MatrixEntry]:
    return [
        MatrixEntry(
            os="ubuntu-latest",
            target="x86_64-unknown-linux-gnu",
            artifact_name="diamant",
            asset_name="diamant-x86_64-unknown-linux-gnu",
        ),
        MatrixEntry(
            os="windows-latest",
            target="x86_64-pc-windows-msvc",
            artifact_name="diamant.exe",
            asset_name="diamant-x86_64-pc-windows-msvc",
        ),
    ]


class TestExpandMatrix:
    def test_one_job_per_entry_in_order(self, two_entries: list[MatrixEntry]) -> None:
        jobs = expand_matrix(two_entries)
        assert [job.entry for job in jobs] == two_entries
        assert [job.index for job in jobs] == [0, 1]

    def test_input_is_not_mutated(self, two_entries: list[MatrixEntry]) -> None:
        snapshot = list(two_entries)
        expand_matrix(two_entries)
        assert two_entries == snapshot

    def test_jobs_are_immutable(self, two_entries: list[MatrixEntry]) -> None:
        job = expand_matrix(two_entries)[0]
        with pytest.raises(dataclasses.FrozenInstanceError):
            job.index = 5  # type: ignore[misc]

    def test_duplicate_asset_name_rejected(self, two_entries: list[MatrixEntry]) -> None:
        clash = two_entries[1].model_copy(update={"asset_name": two_entries[0].asset_name})
        with pytest.raises(MatrixError, match="diamant-x86_64-unknown-linux-gnu"):
            expand_matrix([two_entries[0], clash])

    def test_matrix_error_is_a_value_error(self) -> None:
        with pytest.raises(ValueError):
            expand_matrix([])

    def test_job_id_and_slug(self, two_entries: list[MatrixEntry]) -> None:
        job = BuildJob(index=1, entry=two_entries[1])
        assert job.job_id == "windows-latest x86_64-pc-windows-msvc"
        assert job.slug == "01-diamant-x86_64-pc-windows-msvc"


class TestDefaultMatrix:
    def test_asset_names_unique(self) -> None:
        assert find_duplicate_asset_names(DEFAULT_MATRIX) == []

    def test_every_asset_names_its_target(self) -> None:
        for entry in DEFAULT_MATRIX:
            assert entry.asset_name == f"diamant-{entry.target_triple}"

    def test_windows_artifact_has_exe_suffix(self) -> None:
        windows = [e for e in DEFAULT_MATRIX if "windows" in e.target_triple]
        assert windows and all(e.artifact_name.endswith(".exe") for e in windows)

    def test_expands_to_four_jobs(self) -> None:
        jobs = expand_matrix(DEFAULT_MATRIX)
        assert len(jobs) == 4
        assert len({job.slug for job in jobs}) == 4
