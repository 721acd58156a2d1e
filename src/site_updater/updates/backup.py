"""
Backup creation, restore and the backup catalog.

A backup is a directory ``<backups_dir>/<timestamp>_v<version>_<short hash>/``
holding:
- files.tar.gz: the project tree (configured patterns, the backups directory
  and the record store excluded)
- db.sql: output of the configured database dump command (optional)

Restore is two steps. The file tree is extracted into a staging directory
next to the project and swapped in entry by entry; on any error the original
entries are moved back, so the tree is all-or-nothing. Entries matching an
exclude pattern were never archived: top-level ones are left in place and
nested ones are carried into the staged tree before the swap.
The database restore relies on the restore tool's single transaction. If
the database step fails after the files were swapped in, the restore is
partial and is reported as such.
"""

from __future__ import annotations

import asyncio
import fnmatch
import os
import re
import shutil
import uuid
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any

from site_updater.errors import (
    BackupFailedError,
    NotFoundError,
    PartialRestoreError,
    RestoreFailedError,
    UnavailableError,
    UpdaterError,
)
from site_updater.logging import get_logger
from site_updater.updates.commands import (
    CommandResult,
    CommandRunner,
    render_command,
    run_command,
)
from site_updater.updates.lock import utc_now
from site_updater.updates.storage import Backup, Page, UpdateStore

logger = get_logger(__name__)

ARCHIVE_NAME = "files.tar.gz"
DUMP_NAME = "db.sql"

BACKUP_TIMEOUT_SECONDS = 600.0

_UNSAFE_LABEL_CHARS = re.compile(r"[^0-9A-Za-z.+-]")


def _remove_path(path: Path) -> None:
    """Remove a file, symlink or directory tree if it exists."""
    if path.is_symlink() or path.is_file():
        path.unlink(missing_ok=True)
    elif path.exists():
        shutil.rmtree(path, ignore_errors=True)


def _relative_to(path: Path, root: Path) -> Path | None:
    try:
        return path.resolve().relative_to(root.resolve())
    except ValueError:
        return None


@dataclass
class BackupEntry:
    """A backup record annotated with live artifact presence."""

    backup: Backup
    files_exist: bool
    db_file_exists: bool

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            **self.backup.to_dict(),
            "files_exist": self.files_exist,
            "db_file_exists": self.db_file_exists,
        }


@dataclass
class RestoreResult:
    """Outcome of a successful restore.

    Attributes:
        backup_id: Restored backup.
        files: Always "restored" on success.
        database: "restored", or "skipped" when no dump was recorded.
    """

    backup_id: str
    files: str = "restored"
    database: str = "skipped"

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {"backup_id": self.backup_id, "files": self.files, "database": self.database}


class BackupManager:
    """
    Creates and restores backups, and serves the backup catalog.

    The manager owns backup record writes; records are immutable and never
    deleted automatically.
    """

    def __init__(
        self,
        store: UpdateStore,
        project_root: Path | str,
        backups_dir: Path | str,
        *,
        excludes: Iterable[str] = (),
        database_url: str = "",
        dump_command: Sequence[str] = ("pg_dump", "{database_url}"),
        restore_command: Sequence[str] = (
            "psql",
            "{database_url}",
            "--single-transaction",
            "-v",
            "ON_ERROR_STOP=1",
            "-f",
            "{dump_path}",
        ),
        protected_paths: Iterable[Path | str] = (),
        runner: CommandRunner = run_command,
        timeout: float = BACKUP_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the BackupManager.

        Args:
            store: Record store for backup records.
            project_root: Root of the deployed working tree.
            backups_dir: Directory receiving backup artifacts.
            excludes: tar exclude patterns for the file-tree snapshot.
            database_url: Substituted for ``{database_url}`` in commands.
            dump_command: Dump argv; writes SQL to stdout unless it
                references ``{dump_path}``.
            restore_command: Restore argv reading ``{dump_path}``.
            protected_paths: Paths inside the project that are never
                snapshotted nor replaced by a restore (e.g. the record store).
            runner: Command runner.
            timeout: Timeout for tar and the database tools.
            clock: Source of the current time (UTC).
        """
        self._store = store
        self.project_root = Path(project_root).resolve()
        self.backups_dir = Path(backups_dir)
        self._excludes = list(excludes)
        self._database_url = database_url
        self._dump_command = list(dump_command)
        self._restore_command = list(restore_command)
        self._protected = [Path(p) for p in protected_paths]
        self._runner = runner
        self._timeout = timeout
        self._clock = clock or utc_now

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    def _internal_relative_paths(self) -> list[Path]:
        """Paths inside the project that belong to the updater itself."""
        paths = []
        for path in [self.backups_dir, *self._protected]:
            relative = _relative_to(path, self.project_root)
            if relative is not None and relative.parts:
                paths.append(relative)
        return paths

    def _preserved_names(self) -> set[str]:
        """Top-level project entries a restore must leave in place."""
        return {relative.parts[0] for relative in self._internal_relative_paths()}

    def _is_excluded(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self._excludes)

    def _exclude_args(self) -> list[str]:
        args = [f"--exclude={pattern}" for pattern in self._excludes]
        for relative in self._internal_relative_paths():
            args.append(f"--exclude=./{relative.as_posix()}")
            # sqlite side files
            args.append(f"--exclude=./{relative.as_posix()}-*")
        return args

    def _backup_directory(self, created_at: datetime, version: str, commit_hash: str) -> Path:
        stamp = created_at.strftime("%Y-%m-%dT%H-%M-%S-%fZ")
        label = _UNSAFE_LABEL_CHARS.sub("_", version or "0.0.0")
        short_hash = _UNSAFE_LABEL_CHARS.sub("_", (commit_hash or "unknown")[:8])
        return self.backups_dir / f"{stamp}_v{label}_{short_hash}"

    async def _tool(self, stage: str, *args: str) -> CommandResult:
        logger.debug(f"Running {stage} command", extra={"command": args[0], "stage": stage})
        return await self._runner(*args, cwd=self.project_root, timeout=self._timeout)

    # -------------------------------------------------------------------------
    # Create
    # -------------------------------------------------------------------------

    async def _archive_tree(self, archive: Path) -> None:
        try:
            result = await self._tool(
                "files",
                "tar",
                "czf",
                str(archive),
                *self._exclude_args(),
                "-C",
                str(self.project_root),
                ".",
            )
        except UnavailableError as e:
            raise BackupFailedError("files", f"File snapshot failed: {e.message}") from e
        if not result.ok:
            raise BackupFailedError(
                "files",
                f"File snapshot failed: {result.output}",
                details={"returncode": result.returncode},
            )

    async def _dump_database(self, dump_path: Path) -> None:
        argv = render_command(
            self._dump_command,
            database_url=self._database_url,
            dump_path=dump_path,
        )
        writes_file = any("{dump_path}" in part for part in self._dump_command)
        try:
            result = await self._tool("database", *argv)
        except UnavailableError as e:
            raise BackupFailedError("database", f"Database dump failed: {e.message}") from e
        if not result.ok:
            raise BackupFailedError(
                "database",
                f"Database dump failed: {result.output}",
                details={"returncode": result.returncode},
            )
        if not writes_file:
            dump_path.write_text(result.stdout)
        if not dump_path.exists():
            raise BackupFailedError("database", "Database dump produced no file")

    async def create_backup(
        self,
        run_id: str | None,
        version: str,
        commit_hash: str,
        *,
        include_database: bool = True,
        note: str | None = None,
    ) -> Backup:
        """
        Snapshot the project tree and (optionally) the database.

        Args:
            run_id: Triggering run, or None for a manual backup.
            version: Version label at backup time.
            commit_hash: HEAD commit at backup time.
            include_database: Dump the database; when False the database half
                is skipped and ``db_path`` is recorded as None.
            note: Free-form note stored with the record.

        Returns:
            The persisted Backup record.

        Raises:
            BackupFailedError: If either stage fails. The partially written
                directory is removed and no record is written.
        """
        created_at = self._clock()
        directory = self._backup_directory(created_at, version, commit_hash)
        backup_id = uuid.uuid4().hex
        if directory.exists():
            directory = directory.with_name(f"{directory.name}_{backup_id[:6]}")

        logger.info(
            "Creating backup",
            extra={"run_id": run_id, "path": str(directory), "include_database": include_database},
        )

        try:
            directory.mkdir(parents=True)
        except OSError as e:
            raise BackupFailedError(
                "files",
                f"Cannot create backup directory: {e}",
                details={"path": str(directory)},
            ) from e

        try:
            archive = directory / ARCHIVE_NAME
            await self._archive_tree(archive)

            dump_path: Path | None = None
            if include_database:
                dump_path = directory / DUMP_NAME
                await self._dump_database(dump_path)

            size_bytes = archive.stat().st_size
            if dump_path is not None:
                size_bytes += dump_path.stat().st_size

            backup = Backup(
                id=backup_id,
                created_at=created_at,
                path=str(archive),
                db_path=str(dump_path) if dump_path is not None else None,
                size_bytes=size_bytes,
                version=version,
                commit_hash=commit_hash,
                run_id=run_id,
                note=note,
            )
            await self._store.insert_backup(backup)
        except BackupFailedError as e:
            _remove_path(directory)
            logger.error(
                f"Backup failed at stage {e.stage}: {e.message}",
                extra={"run_id": run_id, "stage": e.stage},
            )
            raise
        except (OSError, UpdaterError) as e:
            _remove_path(directory)
            logger.error(f"Backup failed: {e}", extra={"run_id": run_id})
            raise BackupFailedError("record", f"Backup could not be recorded: {e}") from e

        logger.info(
            "Backup created",
            extra={"run_id": run_id, "backup_id": backup.id, "size_bytes": backup.size_bytes},
        )
        return backup

    # -------------------------------------------------------------------------
    # Restore
    # -------------------------------------------------------------------------

    def _nested_excluded(self, preserved: set[str]) -> list[Path]:
        """
        Excluded paths below the top level of the project.

        tar matches exclude patterns at any depth, so these were never
        archived and must be carried into the staged tree before the swap.
        """
        found: list[Path] = []
        for entry in sorted(self.project_root.iterdir()):
            if entry.name in preserved or self._is_excluded(entry.name):
                continue
            if not entry.is_dir() or entry.is_symlink():
                continue
            for dirpath, dirnames, filenames in os.walk(entry):
                current = Path(dirpath)
                for name in sorted(dirnames):
                    if self._is_excluded(name):
                        found.append((current / name).relative_to(self.project_root))
                dirnames[:] = [name for name in dirnames if not self._is_excluded(name)]
                for name in sorted(filenames):
                    if self._is_excluded(name):
                        found.append((current / name).relative_to(self.project_root))
        return found

    def _swap_tree(self, staging: Path, aside: Path) -> None:
        """Replace project entries with staged ones, undoing on any error."""
        preserved = self._preserved_names()
        aside.mkdir(parents=True)
        carried: list[Path] = []
        moved_aside: list[str] = []
        moved_in: list[str] = []
        try:
            for relative in self._nested_excluded(preserved):
                target = staging / relative
                target.parent.mkdir(parents=True, exist_ok=True)
                shutil.move(str(self.project_root / relative), str(target))
                carried.append(relative)
            for entry in sorted(self.project_root.iterdir()):
                # excluded entries were never archived, so they stay
                if entry.name in preserved or self._is_excluded(entry.name):
                    continue
                shutil.move(str(entry), str(aside / entry.name))
                moved_aside.append(entry.name)
            for entry in sorted(staging.iterdir()):
                if entry.name in preserved:
                    continue
                shutil.move(str(entry), str(self.project_root / entry.name))
                moved_in.append(entry.name)
        except OSError:
            for name in moved_in:
                shutil.move(str(self.project_root / name), str(staging / name))
            for name in moved_aside:
                shutil.move(str(aside / name), str(self.project_root / name))
            for relative in reversed(carried):
                shutil.move(str(staging / relative), str(self.project_root / relative))
            raise

    async def _restore_files(self, backup: Backup) -> None:
        archive = Path(backup.path)
        parent = self.project_root.parent
        suffix = backup.id[:8]
        staging = parent / f".{self.project_root.name}.restore-{suffix}"
        aside = parent / f".{self.project_root.name}.previous-{suffix}"
        _remove_path(staging)
        _remove_path(aside)
        swapped = False

        try:
            staging.mkdir(parents=True)
            try:
                result = await self._tool(
                    "files", "tar", "xzf", str(archive), "-C", str(staging)
                )
            except UnavailableError as e:
                raise RestoreFailedError("files", f"Archive extraction failed: {e.message}") from e
            if not result.ok:
                raise RestoreFailedError(
                    "files",
                    f"Archive extraction failed: {result.output}",
                    details={"returncode": result.returncode},
                )

            await asyncio.get_running_loop().run_in_executor(
                None, self._swap_tree, staging, aside
            )
            swapped = True
        except OSError as e:
            raise RestoreFailedError(
                "files",
                f"File tree swap failed: {e}",
                details={"backup_id": backup.id},
            ) from e
        finally:
            _remove_path(staging)
            if aside.exists() and (swapped or not any(aside.iterdir())):
                _remove_path(aside)

    async def _restore_database(self, dump_path: Path) -> None:
        argv = render_command(
            self._restore_command,
            database_url=self._database_url,
            dump_path=dump_path,
        )
        try:
            result = await self._tool("database", *argv)
        except UnavailableError as e:
            raise PartialRestoreError(
                f"Files restored but database restore failed: {e.message}",
                details={"dump_path": str(dump_path)},
            ) from e
        if not result.ok:
            raise PartialRestoreError(
                f"Files restored but database restore failed: {result.output}",
                details={"dump_path": str(dump_path), "returncode": result.returncode},
            )

    async def restore(self, backup: Backup) -> RestoreResult:
        """
        Restore the file tree and database from ``backup``.

        Args:
            backup: Backup record to restore.

        Returns:
            RestoreResult describing what was restored.

        Raises:
            RestoreFailedError: If nothing was changed (missing artifact,
                extraction or swap failure).
            PartialRestoreError: If the files were restored but the database
                restore failed.
        """
        archive = Path(backup.path)
        if not archive.is_file():
            raise RestoreFailedError(
                "files",
                f"Backup archive is missing: {archive}",
                details={"backup_id": backup.id, "path": str(archive)},
            )
        dump_path = Path(backup.db_path) if backup.db_path else None
        if dump_path is not None and not dump_path.is_file():
            raise RestoreFailedError(
                "database",
                f"Backup database dump is missing: {dump_path}",
                details={"backup_id": backup.id, "db_path": str(dump_path)},
            )

        logger.info("Restoring backup", extra={"backup_id": backup.id})

        await self._restore_files(backup)
        result = RestoreResult(backup_id=backup.id)

        if dump_path is None:
            logger.info(
                "Backup has no database dump; database restore skipped",
                extra={"backup_id": backup.id},
            )
            return result

        await self._restore_database(dump_path)
        result.database = "restored"
        logger.info("Backup restored", extra={"backup_id": backup.id})
        return result

    # -------------------------------------------------------------------------
    # Catalog
    # -------------------------------------------------------------------------

    @staticmethod
    def annotate(backup: Backup) -> BackupEntry:
        """Attach live artifact presence to a record."""
        return BackupEntry(
            backup=backup,
            files_exist=Path(backup.path).is_file(),
            db_file_exists=bool(backup.db_path) and Path(backup.db_path).is_file(),
        )

    async def list_backups(self, page: int = 1, limit: int = 20) -> Page:
        """
        List backups newest first with live ``files_exist``/``db_file_exists``.

        Raises:
            InvalidArgumentError: If pagination parameters are invalid.
            FailedPreconditionError: If the store cannot be read.
        """
        records = await self._store.list_backups(page=page, limit=limit)
        records.items = [self.annotate(backup) for backup in records.items]
        return records

    async def get_backup(self, backup_id: str) -> Backup:
        """
        Look up a backup record.

        Raises:
            NotFoundError: If no backup has this id.
        """
        backup = await self._store.get_backup(backup_id)
        if backup is None:
            raise NotFoundError(
                f"Backup not found: {backup_id}",
                details={"backup_id": backup_id},
            )
        return backup
