"""Build matrix expansion.

Turns the declared list of MatrixEntry records into one independent BuildJob
per entry. Jobs are immutable and carry no references to each other, so they
can run in any order or all at once.
"""

from __future__ import annotations

import re
from collections.abc import Sequence
from dataclasses import dataclass

from release_pipeline.errors import MatrixError
from release_pipeline.schemas import MatrixEntry, find_duplicate_asset_names

# The diamant release targets
DEFAULT_MATRIX: tuple[MatrixEntry, ...] = (
    MatrixEntry(
        os="ubuntu-latest",
        target="x86_64-unknown-linux-gnu",
        artifact_name="diamant",
        asset_name="diamant-x86_64-unknown-linux-gnu",
    ),
    MatrixEntry(
        os="ubuntu-latest",
        target="x86_64-unknown-linux-musl",
        artifact_name="diamant",
        asset_name="diamant-x86_64-unknown-linux-musl",
    ),
    MatrixEntry(
        os="windows-latest",
        target="x86_64-pc-windows-msvc",
        artifact_name="diamant.exe",
        asset_name="diamant-x86_64-pc-windows-msvc",
    ),
    MatrixEntry(
        os="macos-latest",
        target="x86_64-apple-darwin",
        artifact_name="diamant",
        asset_name="diamant-x86_64-apple-darwin",
    ),
)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


@dataclass(frozen=True)
class BuildJob:
    """One unit of work produced by the expander.

    Attributes:
        index: Position of the entry in the declared matrix
        entry: The matrix entry to build and publish
    """

    index: int
    entry: MatrixEntry

    @property
    def job_id(self) -> str:
        """Human-readable identifier: "<os> <target>"."""
        return f"{self.entry.operating_system} {self.entry.target_triple}"

    @property
    def slug(self) -> str:
        """Filesystem-safe name, unique within a run."""
        return f"{self.index:02d}-{_UNSAFE_CHARS.sub('_', self.entry.asset_name)}"


def expand_matrix(entries: Sequence[MatrixEntry]) -> list[BuildJob]:
    """Produce exactly one BuildJob per matrix entry, in declaration order.

    Args:
        entries: The declared build targets

    Returns:
        A new list of immutable BuildJob records

    Raises:
        MatrixError: If the matrix is empty or two entries share an asset_name
    """
    if not entries:
        raise MatrixError("Build matrix is empty; nothing to release")

    duplicates = find_duplicate_asset_names(entries)
    if duplicates:
        raise MatrixError(
            f"Duplicate asset_name in build matrix: {', '.join(duplicates)}. "
            "Each job must publish a distinct release asset."
        )

    return [BuildJob(index=i, entry=entry) for i, entry in enumerate(entries)]
