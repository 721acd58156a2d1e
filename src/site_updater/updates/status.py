"""
Status reporting for the update dashboard.

The status is a collage of independent sub-queries. Each one is guarded on
its own and falls back to a default, so a broken git binary, a missing
database or an unreadable process table degrades one field and never the
whole response.
"""

from __future__ import annotations

import os
import time
from typing import TYPE_CHECKING, Any

import psutil

from site_updater.logging import get_logger
from site_updater.updates.version import (
    DEFAULT_BRANCH,
    DEFAULT_VERSION,
    UNKNOWN_COMMIT,
    VersionInfo,
    get_version_info,
)

if TYPE_CHECKING:
    from site_updater.updates.executor import UpdateExecutor

logger = get_logger(__name__)


def get_process_uptime_seconds(pid: int | None = None) -> int:
    """
    Seconds since the process started, from psutil.

    Returns:
        Uptime in whole seconds, or 0 when the process cannot be inspected.
    """
    try:
        create_time = psutil.Process(pid or os.getpid()).create_time()
    except (psutil.Error, OSError) as e:
        logger.debug(f"Could not read process create time: {e}")
        return 0
    return max(0, int(time.time() - create_time))


class StatusReporter:
    """
    Builds the ``/status`` payload.

    Attributes:
        executor: Executor whose components are queried.
    """

    def __init__(self, executor: UpdateExecutor) -> None:
        """
        Initialize the StatusReporter.

        Args:
            executor: Executor whose components are queried.
        """
        self.executor = executor

    async def _version(self) -> VersionInfo:
        try:
            return await get_version_info(
                self.executor.project_root,
                self.executor.version_file,
                runner=self.executor.runner,
            )
        except Exception as e:
            logger.warning(f"Version lookup failed: {e}")
            return VersionInfo(
                version=DEFAULT_VERSION, commit_hash=UNKNOWN_COMMIT, branch=DEFAULT_BRANCH
            )

    async def _prerequisites(self) -> dict[str, bool]:
        checker = self.executor.prerequisites
        probes = {
            "is_git_repo": checker.is_git_repo,
            "has_git": checker.has_git,
            "has_supervisor": checker.has_supervisor,
            "has_db_dump": checker.has_db_dump,
        }
        results: dict[str, bool] = {}
        for name, probe in probes.items():
            try:
                results[name] = bool(await probe())
            except Exception as e:
                logger.warning(f"Prerequisite probe {name} failed: {e}")
                results[name] = False
        return results

    async def _lock_held(self) -> bool:
        try:
            return await self.executor.locks.is_held()
        except Exception as e:
            logger.warning(f"Lock lookup failed: {e}")
            return False

    async def _latest_log(self) -> dict[str, Any] | None:
        try:
            entry = await self.executor.store.latest_log()
        except Exception as e:
            logger.warning(f"Latest log lookup failed: {e}")
            return None
        return entry.to_dict() if entry is not None else None

    async def get_status(self) -> dict[str, Any]:
        """
        Collect the current update status.

        Never raises. Stale locks are reclaimed first so that ``lock_held``
        and the latest entry reflect the cleanup.

        Returns:
            Dictionary with version, commit, branch, uptime, prerequisite
            flags, lock state, latest log entry and the configured upstream.
        """
        try:
            await self.executor.locks.clean_stale()
        except Exception as e:
            logger.warning(f"Stale lock cleanup failed: {e}")

        version = await self._version()
        prerequisites = await self._prerequisites()

        return {
            "version": version.version,
            "commit_hash": version.commit_hash,
            "commit_date": version.commit_date,
            "branch": version.branch,
            "uptime_seconds": get_process_uptime_seconds(),
            **prerequisites,
            "lock_held": await self._lock_held(),
            "last_update": await self._latest_log(),
            "repo_url": self.executor.repo_url,
            "configured_branch": self.executor.branch,
        }
