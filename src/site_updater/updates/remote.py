"""
Remote diff checking: how far the deployed tree is behind upstream.

``git fetch <repo_url> <branch>`` updates FETCH_HEAD only, so the working
tree is never touched. Commits reachable from FETCH_HEAD but not from HEAD
are listed newest first.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any
from urllib.parse import urlparse

from site_updater.errors import (
    InvalidArgumentError,
    InvalidRefError,
    RemoteUnreachableError,
    UnavailableError,
)
from site_updater.logging import get_logger
from site_updater.updates.commands import CommandResult, CommandRunner, run_command
from site_updater.updates.version import CommitSummary

logger = get_logger(__name__)

FETCH_TIMEOUT_SECONDS = 120.0
MAX_BRANCH_LENGTH = 100

# ASCII unit / record separators keep commit subjects with any punctuation parseable
_FIELD_SEP = "\x1f"
_RECORD_SEP = "\x1e"
LOG_FORMAT = "--format=%H%x1f%s%x1f%cI%x1f%an%x1e"

_URL_SCHEMES = {"http", "https", "ssh", "git", "file"}
_SCP_LIKE = re.compile(r"^[\w.-]+@[\w.-]+:[^\s]+$")

_INVALID_REF_MARKERS = (
    "couldn't find remote ref",
    "unknown revision",
    "invalid refspec",
    "not a valid ref",
)


@dataclass
class RemoteDiff:
    """Result of comparing HEAD with the fetched remote branch.

    Attributes:
        ahead: Number of remote commits not in HEAD.
        commits: Those commits, newest first.
        latest_remote_hash: Tip of the fetched branch.
    """

    ahead: int
    latest_remote_hash: str
    commits: list[CommitSummary] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "ahead": self.ahead,
            "commits": [c.model_dump() for c in self.commits],
            "latest_remote_hash": self.latest_remote_hash,
        }


def validate_repo_url(repo_url: str) -> str:
    """
    Validate a remote repository location.

    Accepts http(s)/ssh/git/file URLs, scp-like ``user@host:path`` and
    existing local paths.

    Raises:
        InvalidArgumentError: If the location is not usable.
    """
    repo_url = (repo_url or "").strip()
    if not repo_url:
        raise InvalidArgumentError("repo_url is required", details={"repo_url": repo_url})
    if repo_url.startswith("-"):
        raise InvalidArgumentError(
            "repo_url must not start with '-'", details={"repo_url": repo_url}
        )

    parsed = urlparse(repo_url)
    if parsed.scheme in _URL_SCHEMES and (parsed.netloc or parsed.scheme == "file"):
        return repo_url
    if _SCP_LIKE.match(repo_url):
        return repo_url
    if Path(repo_url).exists():
        return repo_url

    raise InvalidArgumentError(
        f"repo_url is not a valid repository URL: {repo_url}",
        details={"repo_url": repo_url},
    )


def validate_branch(branch: str) -> str:
    """
    Validate a branch name.

    Raises:
        InvalidArgumentError: If the name is empty, longer than 100
            characters, contains whitespace, or starts with '-'.
    """
    if not branch or len(branch) > MAX_BRANCH_LENGTH:
        raise InvalidArgumentError(
            f"branch must be 1-{MAX_BRANCH_LENGTH} characters",
            details={"branch": branch},
        )
    if branch.startswith("-") or any(ch.isspace() for ch in branch):
        raise InvalidArgumentError(
            "branch must not start with '-' or contain whitespace",
            details={"branch": branch},
        )
    return branch


def parse_commit_log(output: str) -> list[CommitSummary]:
    """Parse ``git log`` output produced with ``LOG_FORMAT``."""
    commits = []
    for record in output.split(_RECORD_SEP):
        record = record.strip()
        if not record:
            continue
        parts = record.split(_FIELD_SEP)
        if len(parts) != 4:
            logger.warning("Skipping unparseable commit record", extra={"record": record})
            continue
        commit_hash, message, date, author = parts
        commits.append(
            CommitSummary(hash=commit_hash, message=message, date=date, author=author)
        )
    return commits


def _classify_git_failure(
    action: str,
    result: CommandResult,
    repo_url: str,
    branch: str,
) -> InvalidRefError | RemoteUnreachableError:
    output = result.output
    details = {
        "repo_url": repo_url,
        "branch": branch,
        "returncode": result.returncode,
        "stderr": output[-2000:],
    }
    if any(marker in output.lower() for marker in _INVALID_REF_MARKERS):
        return InvalidRefError(
            f"Branch {branch} not found on remote", details=details
        )
    return RemoteUnreachableError(f"git {action} failed: {output}", details=details)


class RemoteDiffChecker:
    """Answers "are we behind the remote branch, and by which commits?"."""

    def __init__(
        self,
        project_root: Path | str,
        runner: CommandRunner = run_command,
        timeout: float = FETCH_TIMEOUT_SECONDS,
    ) -> None:
        """
        Initialize the RemoteDiffChecker.

        Args:
            project_root: Root of the deployed working tree.
            runner: Command runner.
            timeout: Timeout for each git invocation.
        """
        self.project_root = Path(project_root)
        self._runner = runner
        self._timeout = timeout

    async def _git(self, *args: str) -> CommandResult:
        try:
            return await self._runner(
                "git", *args, cwd=self.project_root, timeout=self._timeout
            )
        except UnavailableError as e:
            raise RemoteUnreachableError(e.message, details=e.details) from e

    async def check(self, repo_url: str, branch: str) -> RemoteDiff:
        """
        Fetch the remote branch and list the commits HEAD is missing.

        Args:
            repo_url: Remote repository location.
            branch: Remote branch name.

        Returns:
            RemoteDiff with ahead count, commits and the remote tip.

        Raises:
            InvalidArgumentError: If repo_url or branch is malformed.
            InvalidRefError: If the branch does not exist on the remote.
            RemoteUnreachableError: For network, auth or git failures.
        """
        validate_repo_url(repo_url)
        validate_branch(branch)

        fetch = await self._git("fetch", "--no-tags", repo_url, branch)
        if not fetch.ok:
            error = _classify_git_failure("fetch", fetch, repo_url, branch)
            logger.warning(
                f"Remote check failed: {error.message}",
                extra={"repo_url": repo_url, "branch": branch},
            )
            raise error

        log = await self._git("log", LOG_FORMAT, "HEAD..FETCH_HEAD")
        if not log.ok:
            raise _classify_git_failure("log", log, repo_url, branch)

        commits = parse_commit_log(log.stdout)
        if commits:
            latest = commits[0].hash
        else:
            head = await self._git("rev-parse", "FETCH_HEAD")
            if not head.ok:
                raise _classify_git_failure("rev-parse", head, repo_url, branch)
            latest = head.stdout.strip()

        logger.info(
            f"Remote check: {len(commits)} commit(s) ahead",
            extra={"repo_url": repo_url, "branch": branch, "latest_remote_hash": latest},
        )
        return RemoteDiff(ahead=len(commits), latest_remote_hash=latest, commits=commits)
