"""
Discovery of test binaries in a build output directory.

A build directory such as target/debug holds the test binaries we want
to measure next to a lot of other files with the same name prefix
(dependency files, build scripts, object files). Only entries that are
regular files with the execute bit set for the current user qualify.

Discovery is not recursive: only direct children of the build directory
are considered.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from ..errors import DiscoveryError


@dataclass(frozen=True)
class Artifact:
    """A test binary eligible for coverage measurement."""
    path: Path
    name: str
    executable: bool = True

    @classmethod
    def from_path(cls, path: Path) -> "Artifact":
        """Create an Artifact from a file path."""
        path = Path(path)
        return cls(
            path=path,
            name=path.name,
            executable=os.access(path, os.X_OK),
        )

    def output_dir(self, coverage_root: Path) -> Path:
        """Coverage output directory for this artifact: <coverage_root>/<name>."""
        return Path(coverage_root) / self.name


def is_eligible(path: Path, prefix: str) -> bool:
    """
    Check whether a directory entry is a test binary we should run.

    Args:
        path: Directory entry to check
        prefix: Required file name prefix

    Returns:
        True if the name starts with prefix and the entry is a regular,
        executable file
    """
    if not path.name.startswith(prefix):
        return False
    # is_file() follows symlinks, so a link to a binary still counts
    if not path.is_file():
        return False
    return os.access(path, os.X_OK)


def discover_artifacts(build_dir: Path, prefix: str) -> list[Artifact]:
    """
    Discover all eligible test binaries directly under build_dir.

    Args:
        build_dir: Build output directory (e.g. target/debug)
        prefix: File name prefix the binaries share (e.g. "async_fs-")

    Returns:
        List of Artifact sorted by name. An empty list is a valid result.

    Raises:
        DiscoveryError: If build_dir is missing, not a directory or unreadable
    """
    build_dir = Path(build_dir)

    if not build_dir.exists():
        raise DiscoveryError(f"Build directory does not exist: {build_dir}")
    if not build_dir.is_dir():
        raise DiscoveryError(f"Build path is not a directory: {build_dir}")

    try:
        entries = sorted(build_dir.iterdir())
    except OSError as e:
        raise DiscoveryError(f"Cannot list build directory {build_dir}: {e}") from e

    artifacts = []
    try:
        for item in entries:
            if is_eligible(item, prefix):
                artifacts.append(Artifact.from_path(item))
    except OSError as e:
        raise DiscoveryError(f"Cannot inspect build directory {build_dir}: {e}") from e

    return artifacts
