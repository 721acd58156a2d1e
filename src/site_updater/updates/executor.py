"""
Update executor for the site updater.

This module implements the UpdateExecutor class that drives one update run
through a state machine, restoring the pre-update backup when a step after
the pull fails.

State machine states:
- idle: Nothing acquired yet
- locked: Update lock held, RUNNING log entry written
- prereqs_checked: git, working tree and supervisor present
- backed_up: Backup of files (and database) recorded
- pulled: Working tree reset to the remote tip, dependencies installed
- migrated: Database migrations applied
- built: Application built
- restarted: Supervisor restarted the application (and it is healthy)
- completed: Run succeeded (or nothing to pull)
- failed: A step failed
- rolled_back: The pre-update backup was restored, reinstalled and rebuilt
  after a failure

Every run releases the lock as its last action, whatever the outcome.
"""

from __future__ import annotations

import asyncio
import uuid
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

import httpx
from pydantic import BaseModel, Field

from site_updater.errors import (
    BuildFailedError,
    CommandFailedError,
    InternalError,
    InvalidArgumentError,
    MigrationFailedError,
    PartialRestoreError,
    PrerequisiteMissingError,
    PullFailedError,
    RestartFailedError,
    RestoreFailedError,
    StaleLockReclaimedError,
    UnavailableError,
    UpdaterError,
)
from site_updater.logging import get_logger
from site_updater.updates.backup import BackupManager
from site_updater.updates.commands import CommandRunner, check_command, run_command
from site_updater.updates.lock import LockManager, LockToken
from site_updater.updates.prerequisites import PrerequisiteChecker
from site_updater.updates.remote import RemoteDiffChecker, validate_branch, validate_repo_url
from site_updater.updates.storage import (
    OUTCOME_FAILED,
    OUTCOME_ROLLED_BACK,
    OUTCOME_SUCCEEDED,
    Backup,
    StepRecord,
    UpdateLogEntry,
    UpdateStore,
)
from site_updater.updates.supervisor import SupervisorRestarter
from site_updater.updates.version import get_version_info

if TYPE_CHECKING:
    from site_updater.config import AppConfig

logger = get_logger(__name__)

KIND_UPDATE = "update"
KIND_ROLLBACK = "rollback"

# Restore outcome reported on every run result
RESTORE_ROLLED_BACK = "rolled_back"
RESTORE_PARTIAL = "partial"
RESTORE_FAILED = "failed"
RESTORE_NOT_ATTEMPTED = "not_attempted"

UPDATE_STEPS = ("prerequisites", "backup", "pull", "install", "migrate", "build", "restart")
ROLLBACK_STEPS = ("verify", "restore", "install", "build", "restart")

UP_TO_DATE_NOTE = "already up to date"


class UpdateState(str, Enum):
    """
    States for the update state machine.

    State transitions:
    - idle → locked (lock acquired)
    - locked → prereqs_checked → backed_up → pulled → migrated → built
      → restarted → completed
    - backed_up → completed (nothing to pull)
    - any non-terminal state → failed
    - failed → rolled_back (automatic restore succeeded)
    """

    IDLE = "idle"
    LOCKED = "locked"
    PREREQS_CHECKED = "prereqs_checked"
    BACKED_UP = "backed_up"
    PULLED = "pulled"
    MIGRATED = "migrated"
    BUILT = "built"
    RESTARTED = "restarted"
    COMPLETED = "completed"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


TERMINAL_STATES = frozenset(
    {UpdateState.COMPLETED, UpdateState.FAILED, UpdateState.ROLLED_BACK}
)

# Valid state transitions for update runs
_VALID_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.LOCKED},
    UpdateState.LOCKED: {UpdateState.PREREQS_CHECKED, UpdateState.FAILED},
    UpdateState.PREREQS_CHECKED: {UpdateState.BACKED_UP, UpdateState.FAILED},
    UpdateState.BACKED_UP: {
        UpdateState.PULLED,
        UpdateState.COMPLETED,
        UpdateState.FAILED,
    },
    UpdateState.PULLED: {UpdateState.MIGRATED, UpdateState.FAILED},
    UpdateState.MIGRATED: {UpdateState.BUILT, UpdateState.FAILED},
    UpdateState.BUILT: {UpdateState.RESTARTED, UpdateState.FAILED},
    UpdateState.RESTARTED: {UpdateState.COMPLETED, UpdateState.FAILED},
    UpdateState.FAILED: {UpdateState.ROLLED_BACK},
    UpdateState.COMPLETED: set(),
    UpdateState.ROLLED_BACK: set(),
}

# Manual rollback runs only lock, then end restored or failed
_ROLLBACK_TRANSITIONS: dict[UpdateState, set[UpdateState]] = {
    UpdateState.IDLE: {UpdateState.LOCKED},
    UpdateState.LOCKED: {UpdateState.ROLLED_BACK, UpdateState.FAILED},
    UpdateState.FAILED: set(),
    UpdateState.ROLLED_BACK: set(),
}

_OUTCOMES: dict[UpdateState, str] = {
    UpdateState.COMPLETED: OUTCOME_SUCCEEDED,
    UpdateState.ROLLED_BACK: OUTCOME_ROLLED_BACK,
    UpdateState.FAILED: OUTCOME_FAILED,
}


class UpdateRequest(BaseModel):
    """Parameters of an update trigger; omitted fields use configured defaults."""

    repo_url: str | None = Field(default=None, description="Remote repository URL")
    branch: str | None = Field(default=None, description="Remote branch")
    triggered_by: str = Field(default="operator", description="Who triggered the run")


@dataclass
class UpdateRun:
    """In-flight state of one run, owned by the executor."""

    run_id: str
    kind: str
    token: LockToken
    entry: UpdateLogEntry
    repo_url: str = ""
    branch: str = ""
    state: UpdateState = UpdateState.IDLE
    current_step: str | None = None
    backup: Backup | None = None
    include_database: bool = False
    tree_modified: bool = False
    restore: str = RESTORE_NOT_ATTEMPTED

    def step(self, name: str) -> StepRecord:
        """Return the step record called ``name``, adding it if missing."""
        for record in self.entry.steps:
            if record.name == name:
                return record
        record = StepRecord(name=name)
        self.entry.steps.append(record)
        return record

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"run_id": self.run_id, "kind": self.kind, "state": self.state.value}


@dataclass
class UpdateResult:
    """Final report of a run."""

    run_id: str
    kind: str
    state: UpdateState
    outcome: str
    restore: str
    entry: UpdateLogEntry
    steps: list[StepRecord] = field(default_factory=list)

    @property
    def failing_step(self) -> str | None:
        """Step that failed, if any."""
        return self.entry.failing_step

    @property
    def error(self) -> str | None:
        """Recorded error message, if any."""
        return self.entry.error

    @property
    def note(self) -> str | None:
        """Recorded note (e.g. nothing to pull)."""
        return self.entry.note

    @classmethod
    def from_run(cls, run: UpdateRun) -> UpdateResult:
        """Build the result from a finished run."""
        return cls(
            run_id=run.run_id,
            kind=run.kind,
            state=run.state,
            outcome=run.entry.outcome,
            restore=run.restore,
            entry=run.entry,
            steps=list(run.entry.steps),
        )

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            **self.entry.to_dict(),
            "run_id": self.run_id,
            "state": self.state.value,
            "restore": self.restore,
        }


class UpdateExecutor:
    """
    Runs updates and manual rollbacks.

    This class orchestrates:
    - Acquiring the durable lock and recording a RUNNING log entry
    - Checking prerequisites and backing up
    - Pulling, installing, migrating, building and restarting
    - Restoring the backup when a post-pull step fails
    - Finalizing the log entry and releasing the lock

    Attributes:
        store: Record store for lock, backups and the log.
        locks: Lock manager.
        prerequisites: Prerequisite checker.
        remote: Remote diff checker.
        backups: Backup manager and catalog.
        supervisor: Supervisor restarter.
    """

    def __init__(
        self,
        store: UpdateStore,
        locks: LockManager,
        prerequisites: PrerequisiteChecker,
        remote: RemoteDiffChecker,
        backups: BackupManager,
        supervisor: SupervisorRestarter,
        *,
        project_root: Path | str,
        repo_url: str = "",
        branch: str = "main",
        version_file: str = "package.json",
        database_url: str = "",
        install_commands: Sequence[Sequence[str]] = (),
        migrate_commands: Sequence[Sequence[str]] = (),
        build_commands: Sequence[Sequence[str]] = (),
        command_timeout: float = 600.0,
        git_timeout: float = 120.0,
        runner: CommandRunner = run_command,
    ) -> None:
        """
        Initialize the UpdateExecutor.

        Args:
            store: Record store.
            locks: Lock manager sharing ``store``.
            prerequisites: Prerequisite checker.
            remote: Remote diff checker.
            backups: Backup manager.
            supervisor: Supervisor restarter.
            project_root: Root of the deployed working tree.
            repo_url: Default remote repository URL.
            branch: Default remote branch.
            version_file: Version label file, relative to project_root.
            database_url: Database URL; the database half of a backup is
                skipped when empty.
            install_commands: Dependency installation argv list.
            migrate_commands: Migration argv list.
            build_commands: Build argv list.
            command_timeout: Timeout for each install/migrate/build command.
            git_timeout: Timeout for ``git reset``.
            runner: Command runner.
        """
        self.store = store
        self.locks = locks
        self.prerequisites = prerequisites
        self.remote = remote
        self.backups = backups
        self.supervisor = supervisor
        self.project_root = Path(project_root)
        self.repo_url = repo_url
        self.branch = branch
        self.version_file = version_file
        self._database_url = database_url
        self._install = [list(cmd) for cmd in install_commands]
        self._migrate = [list(cmd) for cmd in migrate_commands]
        self._build = [list(cmd) for cmd in build_commands]
        self._command_timeout = command_timeout
        self._git_timeout = git_timeout
        self.runner = runner
        self._tasks: set[asyncio.Task[Any]] = set()

    @classmethod
    def from_config(
        cls,
        config: AppConfig,
        *,
        store: UpdateStore | None = None,
        runner: CommandRunner = run_command,
        clock: Callable[[], datetime] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> UpdateExecutor:
        """
        Wire every component from the application configuration.

        Args:
            config: Application configuration.
            store: Record store; created from ``storage.db_path`` if omitted.
            runner: Command runner shared by all components.
            clock: Source of the current time (UTC).
            transport: httpx transport for the post-restart health probe.
            sleep: Awaitable sleep used between health probes.
        """
        project_root = config.project_root
        db_path = Path(config.storage.db_path)
        store = store or UpdateStore(db_path)

        locks = LockManager(store, ttl_seconds=config.lock.ttl_seconds, clock=clock)
        prerequisites = PrerequisiteChecker(
            project_root,
            supervisor_command=config.supervisor.restart_command,
            dump_command=config.database.dump_command,
            runner=runner,
        )
        remote = RemoteDiffChecker(
            project_root,
            runner=runner,
            timeout=config.repository.git_timeout_seconds,
        )
        backups = BackupManager(
            store,
            project_root,
            config.backups_dir,
            excludes=config.backups.excludes,
            database_url=config.database.url,
            dump_command=config.database.dump_command,
            restore_command=config.database.restore_command,
            protected_paths=[store.db_path],
            runner=runner,
            timeout=max(config.backups.timeout_seconds, config.database.timeout_seconds),
            clock=clock,
        )
        supervisor = SupervisorRestarter(
            config.supervisor.restart_command,
            project_root,
            health_url=config.supervisor.health_url,
            health_retries=config.supervisor.health_retries,
            restart_delay_seconds=config.supervisor.restart_delay_seconds,
            health_timeout_seconds=config.supervisor.health_timeout_seconds,
            timeout=config.supervisor.timeout_seconds,
            runner=runner,
            transport=transport,
            sleep=sleep,
        )
        return cls(
            store,
            locks,
            prerequisites,
            remote,
            backups,
            supervisor,
            project_root=project_root,
            repo_url=config.repository.repo_url,
            branch=config.repository.branch,
            version_file=config.repository.version_file,
            database_url=config.database.url,
            install_commands=config.commands.install,
            migrate_commands=config.commands.migrate,
            build_commands=config.commands.build,
            command_timeout=config.commands.timeout_seconds,
            git_timeout=config.repository.git_timeout_seconds,
            runner=runner,
        )

    # -------------------------------------------------------------------------
    # State machine
    # -------------------------------------------------------------------------

    def _transition_to(self, run: UpdateRun, new_state: UpdateState) -> None:
        """
        Transition ``run`` to a new state.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        table = _ROLLBACK_TRANSITIONS if run.kind == KIND_ROLLBACK else _VALID_TRANSITIONS
        current = run.state

        if new_state not in table.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(s.value for s in table.get(current, set())),
                },
            )

        logger.info(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "run_id": run.run_id,
                "kind": run.kind,
                "old_state": current.value,
                "new_state": new_state.value,
            },
        )
        run.state = new_state

    # -------------------------------------------------------------------------
    # Step bookkeeping
    # -------------------------------------------------------------------------

    async def _save_progress(self, run: UpdateRun) -> None:
        """Persist step progress; failures here never abort the run."""
        try:
            if not await self.store.update_log(run.entry):
                logger.warning(
                    "Log entry is no longer RUNNING; progress not saved",
                    extra={"run_id": run.run_id},
                )
        except UpdaterError as e:
            logger.warning(
                f"Failed to save run progress: {e.message}",
                extra={"run_id": run.run_id},
            )

    async def _run_step(
        self,
        run: UpdateRun,
        name: str,
        func: Callable[[], Awaitable[str]],
    ) -> str:
        """Run one step, recording its status, message and timing."""
        step = run.step(name)
        step.status = "running"
        step.started_at = self.locks.now()
        run.current_step = name
        logger.info(f"Step started: {name}", extra={"run_id": run.run_id, "step": name})

        try:
            message = await func()
        except Exception as e:
            step.status = "failed"
            step.message = e.message if isinstance(e, UpdaterError) else str(e)
            step.completed_at = self.locks.now()
            logger.error(
                f"Step failed: {name}: {step.message}",
                extra={"run_id": run.run_id, "step": name},
            )
            await self._save_progress(run)
            raise

        step.status = "success"
        step.message = message
        step.completed_at = self.locks.now()
        logger.info(
            f"Step succeeded: {name}",
            extra={"run_id": run.run_id, "step": name, "step_message": message},
        )
        await self._save_progress(run)
        return message

    def _skip_step(self, run: UpdateRun, name: str, message: str) -> None:
        step = run.step(name)
        step.status = "skipped"
        step.message = message
        step.completed_at = self.locks.now()

    def _skip_pending(self, run: UpdateRun, message: str) -> None:
        for step in run.entry.steps:
            if step.status == "pending":
                step.status = "skipped"
                step.message = message

    async def _run_commands(
        self,
        name: str,
        commands: list[list[str]],
        error_cls: type[UpdaterError],
    ) -> str:
        for argv in commands:
            try:
                await check_command(
                    *argv,
                    runner=self.runner,
                    cwd=self.project_root,
                    timeout=self._command_timeout,
                )
            except (CommandFailedError, UnavailableError) as e:
                raise error_cls(
                    f"{name} failed: {e.message}",
                    details={"command": argv, **e.details},
                ) from e
        return f"{len(commands)} {name} command(s) succeeded"

    async def _run_command_step(
        self,
        run: UpdateRun,
        name: str,
        commands: list[list[str]],
        error_cls: type[UpdaterError],
    ) -> None:
        if not commands:
            self._skip_step(run, name, f"No {name} commands configured")
            return
        await self._run_step(
            run, name, lambda: self._run_commands(name, commands, error_cls)
        )

    # -------------------------------------------------------------------------
    # Run lifecycle
    # -------------------------------------------------------------------------

    async def _open_run(
        self,
        kind: str,
        step_names: Sequence[str],
        *,
        branch: str | None,
        triggered_by: str,
        repo_url: str = "",
        backup_id: str | None = None,
    ) -> UpdateRun:
        """Acquire the lock and write the RUNNING log entry."""
        run_id = uuid.uuid4().hex
        token = await self.locks.acquire(holder=run_id)

        try:
            version = await get_version_info(
                self.project_root, self.version_file, runner=self.runner
            )
            entry = UpdateLogEntry(
                id=run_id,
                kind=kind,
                started_at=token.acquired_at,
                version_before=version.version,
                commit_before=version.commit_hash,
                branch=branch or version.branch,
                triggered_by=triggered_by,
                backup_id=backup_id,
                steps=[StepRecord(name=name) for name in step_names],
            )
            await self.store.create_log(entry)
        except BaseException:
            await self.locks.release(token)
            raise

        run = UpdateRun(
            run_id=run_id,
            kind=kind,
            token=token,
            entry=entry,
            repo_url=repo_url,
            branch=branch or "",
        )
        self._transition_to(run, UpdateState.LOCKED)
        logger.info(
            f"{kind.capitalize()} run started",
            extra={"run_id": run_id, "triggered_by": triggered_by, "branch": branch},
        )
        return run

    async def _finalize(self, run: UpdateRun) -> None:
        """Write the terminal outcome of ``run`` to the log store."""
        entry = run.entry
        entry.outcome = _OUTCOMES.get(run.state, OUTCOME_FAILED)
        entry.finished_at = self.locks.now()
        entry.duration_seconds = round(
            (entry.finished_at - entry.started_at).total_seconds(), 3
        )

        if not await self.store.update_log(entry):
            error = StaleLockReclaimedError(details={"run_id": run.run_id})
            logger.error(
                f"Run could not be finalized: {error.message}",
                extra={"run_id": run.run_id, "outcome": entry.outcome},
            )
            return

        logger.info(
            f"Run finished: {entry.outcome}",
            extra={
                "run_id": run.run_id,
                "kind": run.kind,
                "outcome": entry.outcome,
                "failing_step": entry.failing_step,
                "restore": run.restore,
                "duration_seconds": entry.duration_seconds,
            },
        )

    async def _release(self, run: UpdateRun) -> None:
        try:
            await self.locks.release(run.token)
        except UpdaterError as e:
            logger.error(
                f"Failed to release update lock: {e.message}",
                extra={"run_id": run.run_id},
            )

    async def _record_after_state(self, run: UpdateRun) -> None:
        version = await get_version_info(
            self.project_root, self.version_file, runner=self.runner
        )
        run.entry.version_after = version.version
        run.entry.commit_after = version.commit_hash

    def _record_failure(self, run: UpdateRun, error: Exception) -> None:
        message = error.message if isinstance(error, UpdaterError) else str(error)
        run.entry.failing_step = run.current_step
        run.entry.error = message
        self._skip_pending(run, "Skipped because an earlier step failed")
        if run.state not in TERMINAL_STATES:
            self._transition_to(run, UpdateState.FAILED)

    def _record_restore_failure(self, run: UpdateRun, error: Exception) -> None:
        if isinstance(error, PartialRestoreError):
            run.restore = RESTORE_PARTIAL
        else:
            run.restore = RESTORE_FAILED
        message = error.message if isinstance(error, UpdaterError) else str(error)
        run.entry.error = (
            f"{run.entry.error}; restore failed: {message}" if run.entry.error else message
        )
        logger.critical(
            f"Restore failed, manual recovery required: {message}",
            extra={
                "run_id": run.run_id,
                "backup_id": run.backup.id if run.backup else None,
                "restore": run.restore,
            },
        )

    @staticmethod
    def _require_backup(run: UpdateRun) -> Backup:
        if run.backup is None:
            raise InternalError(
                "Run has no backup to restore", details={"run_id": run.run_id}
            )
        return run.backup

    async def _restore_after_failure(self, run: UpdateRun) -> None:
        """
        Restore the run's backup after a post-pull failure.

        The restored tree is reinstalled and rebuilt, since excluded
        dependency and build directories still hold the failed release.
        The run only ends ROLLED_BACK when all of that succeeds.
        """
        backup = self._require_backup(run)
        step = run.step("restore")
        step.status = "running"
        step.started_at = self.locks.now()

        try:
            result = await self.backups.restore(backup)
        except Exception as e:
            step.status = "failed"
            step.message = e.message if isinstance(e, UpdaterError) else str(e)
            step.completed_at = self.locks.now()
            self._record_restore_failure(run, e)
            return

        step.status = "success"
        step.message = f"Restored backup {backup.id} (database {result.database})"
        step.completed_at = self.locks.now()

        try:
            await self._run_command_step(run, "reinstall", self._install, PartialRestoreError)
            await self._run_command_step(run, "rebuild", self._build, PartialRestoreError)
        except PartialRestoreError as e:
            self._record_restore_failure(run, e)
            return

        run.restore = RESTORE_ROLLED_BACK
        run.entry.version_after = backup.version
        run.entry.commit_after = backup.commit_hash
        self._transition_to(run, UpdateState.ROLLED_BACK)
        logger.warning(
            "Update rolled back",
            extra={"run_id": run.run_id, "backup_id": backup.id},
        )

    # -------------------------------------------------------------------------
    # Update steps
    # -------------------------------------------------------------------------

    async def _check_prerequisites(self, run: UpdateRun) -> str:
        report = await self.prerequisites.check_all()
        missing = report.missing_required()
        if missing:
            raise PrerequisiteMissingError(
                missing[0], details={"missing": missing, **report.to_dict()}
            )
        run.include_database = report.has_db_dump and bool(self._database_url)
        if not run.include_database:
            return "Prerequisites present; database dump unavailable, database backup skipped"
        return "Prerequisites present"

    async def _create_backup(self, run: UpdateRun) -> str:
        backup = await self.backups.create_backup(
            run.run_id,
            run.entry.version_before or "0.0.0",
            run.entry.commit_before or "unknown",
            include_database=run.include_database,
            note=f"Automatic backup before update {run.run_id[:8]}",
        )
        run.backup = backup
        run.entry.backup_id = backup.id
        return f"Backup created ({backup.size_bytes / 1024 / 1024:.2f} MB)"

    async def _pull(self, run: UpdateRun) -> str:
        diff = await self.remote.check(run.repo_url, run.branch)
        if diff.ahead == 0:
            run.entry.note = UP_TO_DATE_NOTE
            return "Already up to date"

        run.tree_modified = True
        try:
            await check_command(
                "git",
                "reset",
                "--hard",
                diff.latest_remote_hash,
                runner=self.runner,
                cwd=self.project_root,
                timeout=self._git_timeout,
            )
        except (CommandFailedError, UnavailableError) as e:
            raise PullFailedError(
                f"git reset failed: {e.message}",
                details={"target": diff.latest_remote_hash, **e.details},
            ) from e
        return f"Updated to {diff.latest_remote_hash[:8]} ({diff.ahead} new commit(s))"

    async def _execute_update(self, run: UpdateRun) -> None:
        await self._run_step(run, "prerequisites", lambda: self._check_prerequisites(run))
        self._transition_to(run, UpdateState.PREREQS_CHECKED)

        await self._run_step(run, "backup", lambda: self._create_backup(run))
        self._transition_to(run, UpdateState.BACKED_UP)

        await self._run_step(run, "pull", lambda: self._pull(run))
        if run.entry.note == UP_TO_DATE_NOTE:
            self._skip_pending(run, "Nothing to update")
            run.entry.version_after = run.entry.version_before
            run.entry.commit_after = run.entry.commit_before
            self._transition_to(run, UpdateState.COMPLETED)
            return

        await self._run_command_step(run, "install", self._install, PullFailedError)
        self._transition_to(run, UpdateState.PULLED)

        await self._run_command_step(run, "migrate", self._migrate, MigrationFailedError)
        self._transition_to(run, UpdateState.MIGRATED)

        await self._run_command_step(run, "build", self._build, BuildFailedError)
        self._transition_to(run, UpdateState.BUILT)

        await self._run_step(run, "restart", self.supervisor.restart)
        self._transition_to(run, UpdateState.RESTARTED)

        await self._record_after_state(run)
        self._transition_to(run, UpdateState.COMPLETED)

    # -------------------------------------------------------------------------
    # Rollback steps
    # -------------------------------------------------------------------------

    async def _verify_backup(self, run: UpdateRun) -> str:
        backup = self._require_backup(run)
        entry = self.backups.annotate(backup)
        if not entry.files_exist:
            raise RestoreFailedError(
                "files",
                f"Backup archive is missing: {backup.path}",
                details={"backup_id": backup.id},
            )
        if backup.db_path and not entry.db_file_exists:
            raise RestoreFailedError(
                "database",
                f"Backup database dump is missing: {backup.db_path}",
                details={"backup_id": backup.id},
            )
        return "Backup artifacts present"

    async def _restore_backup(self, run: UpdateRun) -> str:
        backup = self._require_backup(run)
        result = await self.backups.restore(backup)
        run.restore = RESTORE_ROLLED_BACK
        return f"Restored backup {backup.id} (database {result.database})"

    async def _execute_rollback(self, run: UpdateRun) -> None:
        await self._run_step(run, "verify", lambda: self._verify_backup(run))
        await self._run_step(run, "restore", lambda: self._restore_backup(run))
        await self._run_command_step(run, "install", self._install, PullFailedError)
        await self._run_command_step(run, "build", self._build, BuildFailedError)

        try:
            await self._run_step(run, "restart", self.supervisor.restart)
        except RestartFailedError as e:
            logger.warning(
                f"Restart after rollback failed: {e.message}",
                extra={"run_id": run.run_id},
            )

        await self._record_after_state(run)
        self._transition_to(run, UpdateState.ROLLED_BACK)

    # -------------------------------------------------------------------------
    # Public entry points
    # -------------------------------------------------------------------------

    async def begin(self, request: UpdateRequest | None = None) -> UpdateRun:
        """
        Acquire the lock and create the RUNNING log entry for an update.

        Args:
            request: Update parameters; defaults come from configuration.

        Returns:
            The locked run, ready for ``execute``.

        Raises:
            InvalidArgumentError: If repo_url or branch is malformed.
            ConcurrentUpdateInProgressError: If another run holds the lock.
        """
        request = request or UpdateRequest()
        repo_url = validate_repo_url(request.repo_url or self.repo_url)
        branch = validate_branch(request.branch or self.branch)

        return await self._open_run(
            KIND_UPDATE,
            UPDATE_STEPS,
            branch=branch,
            triggered_by=request.triggered_by,
            repo_url=repo_url,
        )

    async def begin_rollback(
        self,
        backup_id: str,
        triggered_by: str = "operator",
    ) -> UpdateRun:
        """
        Acquire the lock and create the RUNNING log entry for a manual rollback.

        Raises:
            NotFoundError: If the backup does not exist.
            ConcurrentUpdateInProgressError: If another run holds the lock.
        """
        backup = await self.backups.get_backup(backup_id)
        run = await self._open_run(
            KIND_ROLLBACK,
            ROLLBACK_STEPS,
            branch=None,
            triggered_by=triggered_by,
            backup_id=backup.id,
        )
        run.backup = backup
        return run

    async def execute(self, run: UpdateRun) -> UpdateResult:
        """
        Run the remaining steps of a locked run.

        Failures are recorded on the result, never raised. The lock is
        released as the last action, even if writing the log fails.

        Args:
            run: Run returned by ``begin`` or ``begin_rollback``.

        Returns:
            UpdateResult with the terminal state and restore outcome.
        """
        try:
            try:
                if run.kind == KIND_ROLLBACK:
                    await self._execute_rollback(run)
                else:
                    await self._execute_update(run)
            except Exception as e:
                if not isinstance(e, UpdaterError):
                    logger.exception(
                        "Unexpected error during run", extra={"run_id": run.run_id}
                    )
                    e = InternalError(f"Unexpected error: {e}")
                self._record_failure(run, e)
                if run.kind == KIND_ROLLBACK:
                    if isinstance(e, PartialRestoreError):
                        run.restore = RESTORE_PARTIAL
                        logger.critical(
                            f"Rollback left the system partially restored: {e.message}",
                            extra={"run_id": run.run_id, "backup_id": run.entry.backup_id},
                        )
                    elif run.current_step == "restore":
                        run.restore = RESTORE_FAILED
                elif (
                    run.tree_modified
                    and run.backup is not None
                    and run.current_step != "restart"
                ):
                    await self._restore_after_failure(run)

            await self._finalize(run)
            return UpdateResult.from_run(run)
        finally:
            await self._release(run)

    async def run_update(self, request: UpdateRequest | None = None) -> UpdateResult:
        """Acquire, run and finalize an update in one call."""
        run = await self.begin(request)
        return await self.execute(run)

    async def rollback_to_backup(
        self,
        backup_id: str,
        triggered_by: str = "operator",
    ) -> UpdateResult:
        """
        Restore a backup, reinstall, rebuild and restart.

        Raises:
            NotFoundError: If the backup does not exist.
            ConcurrentUpdateInProgressError: If another run holds the lock.
        """
        run = await self.begin_rollback(backup_id, triggered_by)
        return await self.execute(run)

    def _schedule(self, run: UpdateRun) -> None:
        task = asyncio.create_task(self.execute(run), name=f"{run.kind}-{run.run_id}")
        self._tasks.add(task)

        def _done(finished: asyncio.Task[Any]) -> None:
            self._tasks.discard(finished)
            if not finished.cancelled() and finished.exception() is not None:
                logger.error(
                    f"Background run crashed: {finished.exception()}",
                    extra={"run_id": run.run_id},
                )

        task.add_done_callback(_done)

    async def start_in_background(self, request: UpdateRequest | None = None) -> UpdateRun:
        """
        Lock and log synchronously, then run the update as a background task.

        Raises:
            InvalidArgumentError: If repo_url or branch is malformed.
            ConcurrentUpdateInProgressError: If another run holds the lock.
        """
        run = await self.begin(request)
        self._schedule(run)
        return run

    async def start_rollback_in_background(
        self,
        backup_id: str,
        triggered_by: str = "operator",
    ) -> UpdateRun:
        """Background variant of ``rollback_to_backup``."""
        run = await self.begin_rollback(backup_id, triggered_by)
        self._schedule(run)
        return run

    async def wait_for_background_runs(self) -> None:
        """Wait for every scheduled run to finish."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
