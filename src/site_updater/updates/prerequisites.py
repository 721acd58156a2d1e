"""
Prerequisite probes for the update orchestrator.

Each probe is independent and side-effect free. Probes never raise: any error
(missing executable, timeout, permission problem) collapses to ``False``.
"""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from site_updater.logging import get_logger
from site_updater.updates.commands import CommandRunner, run_command

logger = get_logger(__name__)

PROBE_TIMEOUT_SECONDS = 10.0


@dataclass
class PrerequisiteReport:
    """Result of running every probe.

    Attributes:
        is_git_repo: The project root is a git working tree.
        has_git: The git client is installed.
        has_supervisor: The process supervisor command is installed.
        has_db_dump: The database dump tool is installed.
    """

    is_git_repo: bool
    has_git: bool
    has_supervisor: bool
    has_db_dump: bool

    def missing_required(self) -> list[str]:
        """Names of the hard requirements that are not met."""
        missing = []
        if not self.has_git:
            missing.append("git")
        if not self.is_git_repo:
            missing.append("git_repository")
        if not self.has_supervisor:
            missing.append("supervisor")
        return missing

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "is_git_repo": self.is_git_repo,
            "has_git": self.has_git,
            "has_supervisor": self.has_supervisor,
            "has_db_dump": self.has_db_dump,
        }


class PrerequisiteChecker:
    """Probes for the external tools an update depends on."""

    def __init__(
        self,
        project_root: Path | str,
        supervisor_command: Sequence[str],
        dump_command: Sequence[str],
        runner: CommandRunner = run_command,
        timeout: float = PROBE_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the PrerequisiteChecker.

        Args:
            project_root: Root of the deployed working tree.
            supervisor_command: Configured restart command; its executable is
                probed.
            dump_command: Configured database dump command; its executable is
                probed.
            runner: Command runner.
            timeout: Per-probe timeout in seconds.
        """
        self.project_root = Path(project_root)
        self._supervisor_tool = supervisor_command[0]
        self._dump_tool = dump_command[0]
        self._runner = runner
        self._timeout = timeout

    async def _probe(self, tool: str) -> bool:
        try:
            result = await self._runner(tool, "--version", timeout=self._timeout)
            return result.ok
        except Exception as e:
            logger.debug(f"Probe for {tool} failed: {e}", extra={"tool": tool})
            return False

    async def is_git_repo(self) -> bool:
        """Whether the project root contains a ``.git`` entry."""
        try:
            return (self.project_root / ".git").exists()
        except OSError:
            return False

    async def has_git(self) -> bool:
        """Whether the git client runs."""
        return await self._probe("git")

    async def has_supervisor(self) -> bool:
        """Whether the process supervisor runs."""
        return await self._probe(self._supervisor_tool)

    async def has_db_dump(self) -> bool:
        """Whether the database dump tool runs."""
        return await self._probe(self._dump_tool)

    async def check_all(self) -> PrerequisiteReport:
        """Run every probe concurrently."""
        is_repo, has_git, has_supervisor, has_db_dump = await asyncio.gather(
            self.is_git_repo(),
            self.has_git(),
            self.has_supervisor(),
            self.has_db_dump(),
        )
        report = PrerequisiteReport(
            is_git_repo=is_repo,
            has_git=has_git,
            has_supervisor=has_supervisor,
            has_db_dump=has_db_dump,
        )
        logger.debug("Prerequisites checked", extra=report.to_dict())
        return report
