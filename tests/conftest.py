"""
Pytest configuration for the site updater tests.

Provides a scripted command runner so git, the package manager and the
process supervisor never run for real, while tar, cat and cp do (backup and
restore round-trips are exercised against the real file system).
"""

from __future__ import annotations

import inspect
import json
import tempfile
from collections.abc import Callable, Generator
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any

import pytest

from site_updater.config import (
    AppConfig,
    CommandsConfig,
    DatabaseConfig,
    RepositoryConfig,
    StorageConfig,
    SupervisorConfig,
)
from site_updater.updates.commands import CommandResult, run_command
from site_updater.updates.remote import LOG_FORMAT

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


# =============================================================================
# Fakes
# =============================================================================


class FakeRunner:
    """
    Scripted CommandRunner.

    Handlers are matched by argv prefix, most recently registered first. A
    handler is either a fixed CommandResult or a callable ``effect(*args,
    cwd=...)`` returning one (optionally awaitable, optionally raising).
    Unmatched ``<tool> --version`` probes succeed; unmatched tar/cat/cp run
    for real; anything else succeeds with no output.
    """

    PASSTHROUGH = frozenset({"tar", "cat", "cp"})

    def __init__(self) -> None:
        self.calls: list[tuple[str, ...]] = []
        self._handlers: list[tuple[tuple[str, ...], Any]] = []

    def on(
        self,
        *prefix: str,
        returncode: int = 0,
        stdout: str = "",
        stderr: str = "",
        effect: Callable[..., Any] | None = None,
    ) -> FakeRunner:
        handler = effect or CommandResult(returncode=returncode, stdout=stdout, stderr=stderr)
        self._handlers.insert(0, (tuple(prefix), handler))
        return self

    def calls_matching(self, *prefix: str) -> list[tuple[str, ...]]:
        return [call for call in self.calls if call[: len(prefix)] == prefix]

    def called(self, *prefix: str) -> bool:
        return bool(self.calls_matching(*prefix))

    async def __call__(
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Any = None,
        timeout: float = 60.0,
    ) -> CommandResult:
        self.calls.append(tuple(args))
        for prefix, handler in self._handlers:
            if tuple(args[: len(prefix)]) != prefix:
                continue
            if callable(handler):
                result = handler(*args, cwd=cwd)
                if inspect.isawaitable(result):
                    result = await result
                return result
            return handler

        if len(args) == 2 and args[1] == "--version":
            return CommandResult(returncode=0, stdout=f"{args[0]} 1.0.0\n")
        if args and args[0] in self.PASSTHROUGH:
            return await run_command(*args, cwd=cwd, env=env, timeout=timeout)
        return CommandResult(returncode=0)


class ManualClock:
    """Settable UTC clock for lock TTL tests."""

    def __init__(self, start: datetime | None = None) -> None:
        self.current = start or datetime(2026, 1, 15, 12, 0, 0, tzinfo=UTC)

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


HEAD_HASH = "a" * 40
REMOTE_HASHES = ["c" * 40, "b" * 40, "9" * 40]


def git_log_output(hashes: list[str] | None = None) -> str:
    """Render ``git log`` output in the remote checker's record format."""
    hashes = REMOTE_HASHES if hashes is None else hashes
    records = []
    for i, commit_hash in enumerate(hashes):
        records.append(
            "\x1f".join(
                [
                    commit_hash,
                    f"Commit number {len(hashes) - i}: fix, tidy | etc",
                    f"2026-01-1{i}T10:00:00+00:00",
                    "Dev Eloper",
                ]
            )
            + "\x1e\n"
        )
    return "".join(records)


def script_git(
    runner: FakeRunner,
    *,
    ahead: list[str] | None = None,
    head: str = HEAD_HASH,
    branch: str = "main",
) -> FakeRunner:
    """Script the git calls made by version lookups and remote checks."""
    runner.on("git", "log", "-1", stdout=f"{head}\x1f2026-01-01T09:00:00+00:00\n")
    runner.on("git", "branch", "--show-current", stdout=f"{branch}\n")
    runner.on("git", "fetch", stdout="")
    commits = REMOTE_HASHES if ahead is None else ahead
    runner.on("git", "log", LOG_FORMAT, stdout=git_log_output(commits))
    runner.on("git", "rev-parse", "FETCH_HEAD", stdout=f"{commits[0] if commits else head}\n")
    return runner


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def fake_runner() -> FakeRunner:
    """A fresh scripted runner."""
    return FakeRunner()


@pytest.fixture
def clock() -> ManualClock:
    """A manual clock starting at a fixed instant."""
    return ManualClock()


@pytest.fixture
def workspace() -> Generator[Path, None, None]:
    """
    Temporary directory holding a deployed project under ``site/``.

    The project is a (fake) git working tree with a version file and one
    application file.
    """
    with tempfile.TemporaryDirectory() as tmpdir:
        base = Path(tmpdir)
        root = base / "site"
        root.mkdir()
        (root / ".git").mkdir()
        (root / ".git" / "HEAD").write_text("ref: refs/heads/main\n")
        (root / "package.json").write_text(json.dumps({"name": "site", "version": "1.0.0"}))
        (root / "app.txt").write_text("release one\n")
        (root / "node_modules").mkdir()
        (root / "node_modules" / "dep.js").write_text("module.exports = 1\n")
        yield base


# =============================================================================
# Executor wiring
# =============================================================================

REPO_URL = "https://example.com/site.git"
NEW_HEAD_HASH = REMOTE_HASHES[0]


def make_config(base: Path, **sections: Any) -> AppConfig:
    """
    Configuration for a project at ``base/site`` with the store outside it.

    Keyword arguments replace whole config sections.
    """
    values: dict[str, Any] = {
        "storage": StorageConfig(db_path=str(base / "updater.db")),
        "repository": RepositoryConfig(project_root=str(base / "site"), repo_url=REPO_URL),
        "commands": CommandsConfig(
            install=[["npm", "ci"]],
            migrate=[["npx", "prisma", "migrate", "deploy"]],
            build=[["npm", "run", "build"]],
        ),
        "supervisor": SupervisorConfig(restart_delay_seconds=0),
        "database": DatabaseConfig(url=""),
    }
    values.update(sections)
    return AppConfig(**values)


def script_update(runner: FakeRunner) -> FakeRunner:
    """
    Script a remote three commits ahead whose ``git reset`` rewrites the tree.

    After the reset the tree holds release two (version 2.0.0) and HEAD is
    the remote tip.
    """
    script_git(runner)

    def reset(*args: str, cwd: Path | str | None = None) -> CommandResult:
        root = Path(cwd or ".")
        (root / "app.txt").write_text("release two\n")
        (root / "package.json").write_text(json.dumps({"name": "site", "version": "2.0.0"}))
        runner.on("git", "log", "-1", stdout=f"{NEW_HEAD_HASH}\x1f2026-01-14T10:00:00+00:00\n")
        return CommandResult(returncode=0)

    runner.on("git", "reset", "--hard", effect=reset)
    return runner
