"""
Tests for the update executor.

git, npm and the supervisor are scripted; tar runs for real so backups and
automatic restores change files on disk.

Tests cover:
- Successful updates and up-to-date trees
- Failures before the pull (no restore) and after it (automatic restore)
- Restore failures: failed, partial, and restored trees that cannot be rebuilt
- Lock handling: concurrency, stale reclaim, release on every path
- Manual rollback to a recorded backup
- Background execution
"""

from __future__ import annotations

import asyncio
import json
import shutil
from collections.abc import Callable
from pathlib import Path
from unittest.mock import AsyncMock, patch

import pytest

from site_updater.config import CommandsConfig, DatabaseConfig
from site_updater.errors import (
    ConcurrentUpdateInProgressError,
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
)
from site_updater.updates.commands import CommandResult
from site_updater.updates.executor import (
    KIND_ROLLBACK,
    KIND_UPDATE,
    RESTORE_FAILED,
    RESTORE_NOT_ATTEMPTED,
    RESTORE_PARTIAL,
    RESTORE_ROLLED_BACK,
    UP_TO_DATE_NOTE,
    UpdateExecutor,
    UpdateRequest,
    UpdateRun,
    UpdateState,
)
from site_updater.updates.lock import STALE_LOCK_ERROR, LockToken
from site_updater.updates.storage import (
    OUTCOME_FAILED,
    OUTCOME_ROLLED_BACK,
    OUTCOME_RUNNING,
    OUTCOME_SUCCEEDED,
    UpdateLogEntry,
)

from .conftest import (
    HEAD_HASH,
    NEW_HEAD_HASH,
    FakeRunner,
    ManualClock,
    make_config,
    script_git,
    script_update,
)

pytestmark = pytest.mark.skipif(shutil.which("tar") is None, reason="tar not installed")

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def site(workspace: Path) -> Path:
    """The deployed project root."""
    return workspace / "site"


@pytest.fixture
def executor(workspace: Path, fake_runner: FakeRunner, clock: ManualClock) -> UpdateExecutor:
    """Executor wired from configuration with the scripted runner."""
    return UpdateExecutor.from_config(make_config(workspace), runner=fake_runner, clock=clock)


def step_status(entry: UpdateLogEntry) -> dict[str, str]:
    return {step.name: step.status for step in entry.steps}


def fail_first(*, ok_first: bool = False, stderr: str = "") -> Callable[..., CommandResult]:
    """
    Effect that fails exactly one call.

    By default the first call fails; with ``ok_first`` the first call
    succeeds and the second fails. Every other call succeeds.
    """
    calls = 0
    failing_call = 2 if ok_first else 1

    def effect(*args: str, cwd: object = None) -> CommandResult:
        nonlocal calls
        calls += 1
        if calls == failing_call:
            return CommandResult(returncode=1, stderr=stderr)
        return CommandResult(returncode=0)

    return effect


# =============================================================================
# Successful runs
# =============================================================================


class TestSuccessfulUpdate:
    """Tests for runs that complete."""

    @pytest.mark.asyncio
    async def test_update_completes(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a full update reaches COMPLETED and records before/after."""
        script_update(fake_runner)

        result = await executor.run_update(UpdateRequest(triggered_by="alice"))

        assert result.state == UpdateState.COMPLETED
        assert result.outcome == OUTCOME_SUCCEEDED
        assert result.restore == RESTORE_NOT_ATTEMPTED
        assert result.kind == KIND_UPDATE
        assert (site / "app.txt").read_text() == "release two\n"

        entry = await executor.store.get_log(result.run_id)
        assert entry is not None
        assert entry.outcome == OUTCOME_SUCCEEDED
        assert entry.version_before == "1.0.0"
        assert entry.version_after == "2.0.0"
        assert entry.commit_before == HEAD_HASH
        assert entry.commit_after == NEW_HEAD_HASH
        assert entry.triggered_by == "alice"
        assert entry.branch == "main"
        assert entry.backup_id is not None
        assert entry.finished_at is not None
        assert set(step_status(entry).values()) == {"success"}

        assert fake_runner.called("git", "reset", "--hard", NEW_HEAD_HASH)
        assert fake_runner.called("npm", "ci")
        assert fake_runner.called("npx", "prisma", "migrate", "deploy")
        assert fake_runner.called("npm", "run", "build")
        assert fake_runner.called("pm2", "restart", "all")
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_commands_run_in_order(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test pull, install, migrate, build and restart run in sequence."""
        script_update(fake_runner)

        await executor.run_update()

        expected = [
            ("git", "reset"),
            ("npm", "ci"),
            ("npx", "prisma"),
            ("npm", "run"),
            ("pm2", "restart"),
        ]
        order = [
            call[:2]
            for call in fake_runner.calls
            if call[:2] in expected
        ]
        assert order == expected

    @pytest.mark.asyncio
    async def test_already_up_to_date(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test nothing is pulled when the remote has no new commits."""
        script_git(fake_runner, ahead=[])

        result = await executor.run_update()

        assert result.state == UpdateState.COMPLETED
        assert result.note == UP_TO_DATE_NOTE
        assert not fake_runner.called("git", "reset")
        assert not fake_runner.called("npm")
        statuses = step_status(result.entry)
        assert statuses["pull"] == "success"
        assert statuses["build"] == "skipped"
        assert result.entry.version_after == result.entry.version_before

    @pytest.mark.asyncio
    async def test_request_overrides_defaults(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test repo_url and branch from the request are used."""
        script_git(fake_runner, ahead=[])

        result = await executor.run_update(
            UpdateRequest(repo_url="git@example.com:team/site.git", branch="release")
        )

        assert result.entry.branch == "release"
        assert fake_runner.called(
            "git", "fetch", "--no-tags", "git@example.com:team/site.git", "release"
        )

    @pytest.mark.asyncio
    async def test_empty_command_lists_skip(
        self, workspace: Path, fake_runner: FakeRunner, clock: ManualClock
    ) -> None:
        """Test unconfigured install/migrate/build steps are skipped."""
        executor = UpdateExecutor.from_config(
            make_config(workspace, commands=CommandsConfig()), runner=fake_runner, clock=clock
        )
        script_update(fake_runner)

        result = await executor.run_update()

        assert result.state == UpdateState.COMPLETED
        statuses = step_status(result.entry)
        assert statuses["install"] == "skipped"
        assert statuses["migrate"] == "skipped"
        assert statuses["build"] == "skipped"
        assert statuses["restart"] == "success"

    @pytest.mark.asyncio
    async def test_invalid_branch_rejected_before_locking(
        self, executor: UpdateExecutor
    ) -> None:
        """Test a malformed branch is rejected without taking the lock."""
        with pytest.raises(InvalidArgumentError):
            await executor.run_update(UpdateRequest(branch="-bad"))

        assert not await executor.locks.is_held()
        assert (await executor.store.list_logs()).total == 0


# =============================================================================
# Failures without restore
# =============================================================================


class TestFailureBeforePull:
    """Tests for failures that leave the tree untouched."""

    @pytest.mark.asyncio
    async def test_prerequisite_missing(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a missing supervisor fails the run before any backup."""
        script_update(fake_runner)
        fake_runner.on("pm2", "--version", returncode=127)

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.outcome == OUTCOME_FAILED
        assert result.failing_step == "prerequisites"
        assert "supervisor" in (result.error or "")
        assert result.restore == RESTORE_NOT_ATTEMPTED
        assert result.entry.backup_id is None
        assert step_status(result.entry)["backup"] == "skipped"
        assert not fake_runner.called("tar")
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_backup_failure(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a failed backup stops the run before the pull."""
        script_update(fake_runner)
        fake_runner.on("tar", "czf", returncode=2, stderr="tar: No space left on device")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.failing_step == "backup"
        assert result.restore == RESTORE_NOT_ATTEMPTED
        assert not fake_runner.called("git", "reset")
        assert (site / "app.txt").read_text() == "release one\n"

    @pytest.mark.asyncio
    async def test_remote_unreachable(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a fetch failure fails the pull step without restoring."""
        script_update(fake_runner)
        fake_runner.on("git", "fetch", returncode=128, stderr="Could not resolve host")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.failing_step == "pull"
        assert result.restore == RESTORE_NOT_ATTEMPTED

    @pytest.mark.asyncio
    async def test_restart_failure_keeps_new_release(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a failed restart is recorded without restoring the backup."""
        script_update(fake_runner)
        fake_runner.on("pm2", "restart", returncode=1, stderr="[PM2] Process not found")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.failing_step == "restart"
        assert result.restore == RESTORE_NOT_ATTEMPTED
        assert "Process not found" in (result.error or "")
        assert (site / "app.txt").read_text() == "release two\n"
        assert not await executor.locks.is_held()


# =============================================================================
# Failures with automatic restore
# =============================================================================


class TestAutomaticRestore:
    """Tests for failures after the pull."""

    @pytest.mark.asyncio
    async def test_migration_failure_rolls_back(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a failed migration restores the pre-update tree."""
        script_update(fake_runner)
        fake_runner.on("npx", returncode=1, stderr="P3009: migrate found failed migrations")

        result = await executor.run_update()

        assert result.state == UpdateState.ROLLED_BACK
        assert result.outcome == OUTCOME_ROLLED_BACK
        assert result.restore == RESTORE_ROLLED_BACK
        assert result.failing_step == "migrate"
        assert "failed migrations" in (result.error or "")
        assert (site / "app.txt").read_text() == "release one\n"
        assert (site / "node_modules" / "dep.js").exists()

        statuses = step_status(result.entry)
        assert statuses["migrate"] == "failed"
        assert statuses["build"] == "skipped"
        assert statuses["restore"] == "success"
        assert statuses["reinstall"] == "success"
        assert statuses["rebuild"] == "success"
        assert result.entry.version_after == "1.0.0"
        assert result.entry.commit_after == HEAD_HASH

        stored = await executor.store.get_log(result.run_id)
        assert stored is not None and stored.outcome == OUTCOME_ROLLED_BACK
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_restored_tree_is_reinstalled(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test dependencies are installed again against the restored manifest."""
        script_update(fake_runner)
        fake_runner.on("npx", returncode=1, stderr="migration error")
        installed_versions: list[str] = []

        def install(*args: str, cwd: object = None) -> CommandResult:
            manifest = json.loads((site / "package.json").read_text())
            installed_versions.append(manifest["version"])
            return CommandResult(returncode=0)

        fake_runner.on("npm", "ci", effect=install)

        result = await executor.run_update()

        assert result.state == UpdateState.ROLLED_BACK
        assert installed_versions == ["2.0.0", "1.0.0"]
        assert len(fake_runner.calls_matching("npm", "run", "build")) == 1

    @pytest.mark.asyncio
    async def test_build_failure_rolls_back(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a failed build restores the pre-update tree and rebuilds it."""
        script_update(fake_runner)
        fake_runner.on(
            "npm", "run", "build", effect=fail_first(stderr="Type error in page.tsx")
        )

        result = await executor.run_update()

        assert result.state == UpdateState.ROLLED_BACK
        assert result.failing_step == "build"
        assert (site / "app.txt").read_text() == "release one\n"
        assert len(fake_runner.calls_matching("npm", "ci")) == 2
        assert len(fake_runner.calls_matching("npm", "run", "build")) == 2
        assert not fake_runner.called("pm2", "restart")

    @pytest.mark.asyncio
    async def test_rebuild_failure_is_partial(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a restored tree that cannot be rebuilt is not reported as rolled back."""
        script_update(fake_runner)
        fake_runner.on("npm", "run", "build", returncode=1, stderr="Type error in page.tsx")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.outcome == OUTCOME_FAILED
        assert result.restore == RESTORE_PARTIAL
        assert result.failing_step == "build"
        assert "rebuild failed" in (result.error or "")
        assert (site / "app.txt").read_text() == "release one\n"

        statuses = step_status(result.entry)
        assert statuses["restore"] == "success"
        assert statuses["reinstall"] == "success"
        assert statuses["rebuild"] == "failed"
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_reinstall_failure_is_partial(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a failed reinstall after the restore skips the rebuild."""
        script_update(fake_runner)
        fake_runner.on("npx", returncode=1, stderr="migration error")
        fake_runner.on("npm", "ci", effect=fail_first(ok_first=True, stderr="ERESOLVE"))

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.restore == RESTORE_PARTIAL
        assert "reinstall failed" in (result.error or "")
        statuses = step_status(result.entry)
        assert statuses["reinstall"] == "failed"
        assert "rebuild" not in statuses

    @pytest.mark.asyncio
    async def test_pull_failure_rolls_back(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a failed reset restores the backup."""
        script_update(fake_runner)
        fake_runner.on("git", "reset", returncode=128, stderr="fatal: unable to write index")

        result = await executor.run_update()

        assert result.state == UpdateState.ROLLED_BACK
        assert result.failing_step == "pull"

    @pytest.mark.asyncio
    async def test_restore_failure(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a failed restore leaves the run FAILED with restore failed."""
        script_update(fake_runner)
        fake_runner.on("npx", returncode=1, stderr="migration error")
        fake_runner.on("tar", "xzf", returncode=2, stderr="gzip: unexpected end of file")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.outcome == OUTCOME_FAILED
        assert result.restore == RESTORE_FAILED
        assert result.failing_step == "migrate"
        assert "restore failed" in (result.error or "")
        assert step_status(result.entry)["restore"] == "failed"
        assert (site / "app.txt").read_text() == "release two\n"
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_partial_restore(
        self, workspace: Path, fake_runner: FakeRunner, clock: ManualClock, site: Path
    ) -> None:
        """Test a database restore failure after the files were restored."""
        database = workspace / "app.db"
        database.write_text("rows: 1\n")
        config = make_config(
            workspace,
            database=DatabaseConfig(
                url="sqlite:///app.db",
                dump_command=["cat", str(database)],
                restore_command=["cp", "{dump_path}", str(database)],
            ),
        )
        executor = UpdateExecutor.from_config(config, runner=fake_runner, clock=clock)
        script_update(fake_runner)
        fake_runner.on("npx", returncode=1, stderr="migration error")
        fake_runner.on("cp", returncode=1, stderr="cp: cannot create regular file")

        result = await executor.run_update()

        assert result.state == UpdateState.FAILED
        assert result.restore == RESTORE_PARTIAL
        assert (site / "app.txt").read_text() == "release one\n"

        backup = await executor.backups.get_backup(result.entry.backup_id or "")
        assert backup.db_path is not None

    @pytest.mark.asyncio
    async def test_database_included_when_configured(
        self, workspace: Path, fake_runner: FakeRunner, clock: ManualClock
    ) -> None:
        """Test the dump is taken and restored when a database URL is set."""
        database = workspace / "app.db"
        database.write_text("rows: 1\n")
        config = make_config(
            workspace,
            database=DatabaseConfig(
                url="sqlite:///app.db",
                dump_command=["cat", str(database)],
                restore_command=["cp", "{dump_path}", str(database)],
            ),
        )
        executor = UpdateExecutor.from_config(config, runner=fake_runner, clock=clock)
        script_update(fake_runner)

        def migrate(*args: str, cwd: object = None) -> CommandResult:
            database.write_text("rows: 1\nhalf-applied\n")
            return CommandResult(returncode=1, stderr="migration error")

        fake_runner.on("npx", effect=migrate)

        result = await executor.run_update()

        assert result.state == UpdateState.ROLLED_BACK
        assert database.read_text() == "rows: 1\n"


# =============================================================================
# Locking
# =============================================================================


class TestLocking:
    """Tests for lock handling around runs."""

    @pytest.mark.asyncio
    async def test_concurrent_begin(self, executor: UpdateExecutor, fake_runner: FakeRunner) -> None:
        """Test two simultaneous triggers produce one run and one rejection."""
        script_git(fake_runner)

        results = await asyncio.gather(
            executor.begin(), executor.begin(), return_exceptions=True
        )

        runs = [r for r in results if isinstance(r, UpdateRun)]
        rejected = [r for r in results if isinstance(r, ConcurrentUpdateInProgressError)]
        assert len(runs) == 1
        assert len(rejected) == 1
        assert (await executor.store.list_logs()).total == 1
        assert runs[0].state == UpdateState.LOCKED

        await executor.locks.release(runs[0].token)

    @pytest.mark.asyncio
    async def test_begin_while_running(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a trigger during a run is rejected with the holder."""
        script_git(fake_runner)
        run = await executor.begin()

        with pytest.raises(ConcurrentUpdateInProgressError) as exc_info:
            await executor.begin()

        assert exc_info.value.details["holder"] == run.run_id
        await executor.execute(run)

    @pytest.mark.asyncio
    async def test_stale_lock_reclaimed(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, clock: ManualClock
    ) -> None:
        """Test a crashed run's lock is reclaimed after its TTL."""
        script_git(fake_runner, ahead=[])
        token = await executor.locks.acquire(holder="crashed")
        await executor.store.create_log(
            UpdateLogEntry(id="crashed", started_at=token.acquired_at)
        )

        clock.advance(minutes=31)
        result = await executor.run_update()

        assert result.state == UpdateState.COMPLETED
        crashed = await executor.store.get_log("crashed")
        assert crashed is not None
        assert crashed.outcome == OUTCOME_FAILED
        assert crashed.error == STALE_LOCK_ERROR

    @pytest.mark.asyncio
    async def test_lock_released_when_log_write_fails(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test the lock is released even if the final log write raises."""
        script_git(fake_runner, ahead=[])
        run = await executor.begin()

        with patch.object(
            executor.store,
            "update_log",
            AsyncMock(side_effect=FailedPreconditionError("disk I/O error")),
        ):
            with pytest.raises(FailedPreconditionError):
                await executor.execute(run)

        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_reclaimed_run_not_overwritten(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test a run whose entry was finalized elsewhere leaves it alone."""
        script_git(fake_runner, ahead=[])
        run = await executor.begin()
        await executor.store.fail_running_log(
            run.run_id, error="stale lock reclaimed", finished_at=executor.locks.now()
        )

        await executor.execute(run)

        stored = await executor.store.get_log(run.run_id)
        assert stored is not None
        assert stored.outcome == OUTCOME_FAILED
        assert stored.error == "stale lock reclaimed"


# =============================================================================
# State machine
# =============================================================================


class TestStateMachine:
    """Tests for transition validation."""

    def _run(self, clock: ManualClock, kind: str = KIND_UPDATE) -> UpdateRun:
        return UpdateRun(
            run_id="run-1",
            kind=kind,
            token=LockToken("run-1", clock(), 1800),
            entry=UpdateLogEntry(id="run-1", started_at=clock()),
            state=UpdateState.LOCKED,
        )

    def test_invalid_transition(self, executor: UpdateExecutor, clock: ManualClock) -> None:
        """Test skipping states is rejected."""
        run = self._run(clock)

        with pytest.raises(InvalidArgumentError) as exc_info:
            executor._transition_to(run, UpdateState.COMPLETED)

        assert exc_info.value.details["current_state"] == "locked"
        assert run.state == UpdateState.LOCKED

    def test_valid_sequence(self, executor: UpdateExecutor, clock: ManualClock) -> None:
        """Test the documented forward path."""
        run = self._run(clock)
        for state in (
            UpdateState.PREREQS_CHECKED,
            UpdateState.BACKED_UP,
            UpdateState.PULLED,
            UpdateState.MIGRATED,
            UpdateState.BUILT,
            UpdateState.RESTARTED,
            UpdateState.COMPLETED,
        ):
            executor._transition_to(run, state)

        assert run.state == UpdateState.COMPLETED

    def test_terminal_states_are_final(self, executor: UpdateExecutor, clock: ManualClock) -> None:
        """Test nothing leaves COMPLETED."""
        run = self._run(clock)
        run.state = UpdateState.COMPLETED

        with pytest.raises(InvalidArgumentError):
            executor._transition_to(run, UpdateState.FAILED)

    def test_rollback_table(self, executor: UpdateExecutor, clock: ManualClock) -> None:
        """Test rollback runs go straight from locked to a terminal state."""
        run = self._run(clock, kind=KIND_ROLLBACK)

        with pytest.raises(InvalidArgumentError):
            executor._transition_to(run, UpdateState.PREREQS_CHECKED)

        executor._transition_to(run, UpdateState.ROLLED_BACK)
        assert run.state == UpdateState.ROLLED_BACK

    def test_restore_without_backup(self, executor: UpdateExecutor, clock: ManualClock) -> None:
        """Test a run with no recorded backup raises instead of restoring."""
        run = self._run(clock, kind=KIND_ROLLBACK)

        with pytest.raises(InternalError) as exc_info:
            executor._require_backup(run)

        assert exc_info.value.details["run_id"] == "run-1"


# =============================================================================
# Manual rollback
# =============================================================================


class TestManualRollback:
    """Tests for rolling back to a recorded backup."""

    @pytest.mark.asyncio
    async def test_rollback_after_update(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test restoring the backup taken before a successful update."""
        script_update(fake_runner)
        update = await executor.run_update()
        assert (site / "app.txt").read_text() == "release two\n"
        assert update.entry.backup_id is not None

        result = await executor.rollback_to_backup(update.entry.backup_id, triggered_by="bob")

        assert result.kind == KIND_ROLLBACK
        assert result.state == UpdateState.ROLLED_BACK
        assert result.outcome == OUTCOME_ROLLED_BACK
        assert result.restore == RESTORE_ROLLED_BACK
        assert (site / "app.txt").read_text() == "release one\n"
        assert result.entry.version_before == "2.0.0"
        assert result.entry.version_after == "1.0.0"
        assert result.entry.triggered_by == "bob"
        statuses = step_status(result.entry)
        assert statuses == {
            "verify": "success",
            "restore": "success",
            "install": "success",
            "build": "success",
            "restart": "success",
        }
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_unknown_backup(self, executor: UpdateExecutor) -> None:
        """Test an unknown backup id is rejected before locking."""
        with pytest.raises(NotFoundError):
            await executor.rollback_to_backup("missing")

        assert not await executor.locks.is_held()
        assert (await executor.store.list_logs()).total == 0

    @pytest.mark.asyncio
    async def test_restart_failure_is_not_fatal(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test the rollback succeeds even if the restart fails."""
        script_update(fake_runner)
        update = await executor.run_update()
        fake_runner.on("pm2", "restart", returncode=1, stderr="daemon not running")

        result = await executor.rollback_to_backup(update.entry.backup_id or "")

        assert result.state == UpdateState.ROLLED_BACK
        assert step_status(result.entry)["restart"] == "failed"
        assert (site / "app.txt").read_text() == "release one\n"

    @pytest.mark.asyncio
    async def test_missing_archive(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a backup whose archive was deleted fails verification."""
        script_update(fake_runner)
        update = await executor.run_update()
        backup = await executor.backups.get_backup(update.entry.backup_id or "")
        Path(backup.path).unlink()

        result = await executor.rollback_to_backup(backup.id)

        assert result.state == UpdateState.FAILED
        assert result.failing_step == "verify"
        assert result.restore == RESTORE_NOT_ATTEMPTED
        assert (site / "app.txt").read_text() == "release two\n"


# =============================================================================
# Background execution
# =============================================================================


class TestBackground:
    """Tests for background runs."""

    @pytest.mark.asyncio
    async def test_start_in_background(
        self, executor: UpdateExecutor, fake_runner: FakeRunner
    ) -> None:
        """Test the run is locked and logged before the caller returns."""
        script_update(fake_runner)

        run = await executor.start_in_background()

        assert run.to_dict() == {"run_id": run.run_id, "kind": "update", "state": "locked"}
        entry = await executor.store.get_log(run.run_id)
        assert entry is not None
        assert entry.outcome in {OUTCOME_RUNNING, OUTCOME_SUCCEEDED}

        await executor.wait_for_background_runs()

        entry = await executor.store.get_log(run.run_id)
        assert entry is not None and entry.outcome == OUTCOME_SUCCEEDED
        assert not await executor.locks.is_held()

    @pytest.mark.asyncio
    async def test_rollback_in_background(
        self, executor: UpdateExecutor, fake_runner: FakeRunner, site: Path
    ) -> None:
        """Test a background rollback."""
        script_update(fake_runner)
        update = await executor.run_update()

        run = await executor.start_rollback_in_background(update.entry.backup_id or "")
        await executor.wait_for_background_runs()

        entry = await executor.store.get_log(run.run_id)
        assert entry is not None and entry.outcome == OUTCOME_ROLLED_BACK
        assert json.loads((site / "package.json").read_text())["version"] == "1.0.0"
