"""
Version information for the deployed application.

VersionInfo is derived on demand and never persisted:
- version: semantic label read from the project's version file
  (package.json, pyproject.toml, or a plain text file)
- commit_hash, commit_date: HEAD of the working tree
- branch: currently checked-out branch
"""

from __future__ import annotations

import json
import re
import tomllib
from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field

from site_updater.errors import InvalidArgumentError
from site_updater.logging import get_logger
from site_updater.updates.commands import CommandRunner, run_command

logger = get_logger(__name__)

DEFAULT_VERSION = "0.0.0"
DEFAULT_BRANCH = "main"
UNKNOWN_COMMIT = "unknown"

GIT_TIMEOUT_SECONDS = 15.0

# Semantic versioning regex pattern
# Accepts: 1.0.0, 1.2.3, 2.0.0-beta.1, 1.0.0-alpha+build.123
SEMVER_PATTERN = re.compile(
    r"^(?P<major>0|[1-9]\d*)"
    r"\.(?P<minor>0|[1-9]\d*)"
    r"\.(?P<patch>0|[1-9]\d*)"
    r"(?:-(?P<prerelease>(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*)"
    r"(?:\.(?:0|[1-9]\d*|\d*[a-zA-Z-][0-9a-zA-Z-]*))*))?"
    r"(?:\+(?P<buildmetadata>[0-9a-zA-Z-]+(?:\.[0-9a-zA-Z-]+)*))?$"
)


def parse_semantic_version(version: str) -> dict[str, Any]:
    """
    Parse and validate a semantic version string.

    Args:
        version: Version string (e.g., "1.0.0", "1.2.3-beta.1").

    Returns:
        Dictionary with major, minor, patch, prerelease and buildmetadata.

    Raises:
        InvalidArgumentError: If version string is invalid.
    """
    if not version:
        raise InvalidArgumentError(
            "Version string cannot be empty",
            details={"version": version},
        )

    match = SEMVER_PATTERN.match(version)
    if not match:
        raise InvalidArgumentError(
            f"Invalid semantic version: {version}",
            details={
                "version": version,
                "format": "MAJOR.MINOR.PATCH[-PRERELEASE][+BUILDMETADATA]",
            },
        )

    return {
        "major": int(match.group("major")),
        "minor": int(match.group("minor")),
        "patch": int(match.group("patch")),
        "prerelease": match.group("prerelease"),
        "buildmetadata": match.group("buildmetadata"),
    }


class CommitSummary(BaseModel):
    """One upstream commit."""

    hash: str
    message: str
    date: str
    author: str


class VersionInfo(BaseModel):
    """
    Version of the deployed working tree.

    Attributes:
        version: Semantic version label ("0.0.0" when unreadable).
        commit_hash: HEAD commit hash ("unknown" when unreadable).
        commit_date: HEAD commit date (ISO 8601), if known.
        branch: Checked-out branch ("main" when unreadable or detached).
    """

    version: str = Field(default=DEFAULT_VERSION)
    commit_hash: str = Field(default=UNKNOWN_COMMIT)
    commit_date: str | None = Field(default=None)
    branch: str = Field(default=DEFAULT_BRANCH)

    @property
    def short_hash(self) -> str:
        """First eight characters of the commit hash."""
        return self.commit_hash[:8]


def _label_from_file(path: Path) -> str | None:
    if path.name == "package.json":
        data = json.loads(path.read_text())
        return data.get("version") if isinstance(data, dict) else None
    if path.suffix == ".toml":
        data = tomllib.loads(path.read_text())
        project = data.get("project") or data.get("tool", {}).get("poetry", {})
        return project.get("version")
    text = path.read_text().strip()
    return text.splitlines()[0] if text else None


def read_version_label(project_root: Path | str, version_file: str = "package.json") -> str:
    """
    Read the semantic version label of the project.

    Args:
        project_root: Root of the working tree.
        version_file: File holding the label, relative to ``project_root``.

    Returns:
        The label, or "0.0.0" when the file is missing or unreadable.
    """
    path = Path(project_root) / version_file
    try:
        label = _label_from_file(path)
    except (OSError, ValueError) as e:
        logger.debug(f"Could not read version from {path}: {e}")
        return DEFAULT_VERSION

    if not label:
        return DEFAULT_VERSION

    label = str(label).strip().removeprefix("v")
    try:
        parse_semantic_version(label)
    except InvalidArgumentError:
        logger.warning(
            f"Version label is not a semantic version: {label}",
            extra={"version_file": str(path)},
        )
    return label


async def get_version_info(
    project_root: Path | str,
    version_file: str = "package.json",
    runner: CommandRunner = run_command,
) -> VersionInfo:
    """
    Compute VersionInfo for the working tree.

    Never raises; every field falls back to its default independently.
    """
    info = VersionInfo(version=read_version_label(project_root, version_file))

    try:
        result = await runner(
            "git",
            "log",
            "-1",
            "--format=%H%x1f%cI",
            cwd=project_root,
            timeout=GIT_TIMEOUT_SECONDS,
        )
        if result.ok and result.stdout.strip():
            commit_hash, _, commit_date = result.stdout.strip().partition("\x1f")
            info.commit_hash = commit_hash
            info.commit_date = commit_date or None
    except Exception as e:
        logger.debug(f"Could not read HEAD commit: {e}")

    try:
        result = await runner(
            "git",
            "branch",
            "--show-current",
            cwd=project_root,
            timeout=GIT_TIMEOUT_SECONDS,
        )
        if result.ok and result.stdout.strip():
            info.branch = result.stdout.strip()
    except Exception as e:
        logger.debug(f"Could not read current branch: {e}")

    return info
