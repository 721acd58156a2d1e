"""
SQLite storage layer for update orchestration records.

This module implements the UpdateStore class that persists:
- The update lock (a single row; the primary key makes acquisition atomic)
- Backup records (immutable, never auto-deleted)
- Update log entries (created RUNNING, finalized once to a terminal outcome)

SQLite Schema:
    CREATE TABLE update_lock (
        name TEXT PRIMARY KEY,     -- always 'update'
        holder TEXT,               -- run id
        acquired_at TEXT,          -- ISO 8601 UTC
        ttl_seconds INTEGER
    );
    CREATE TABLE backups (id TEXT PRIMARY KEY, created_at TEXT, path TEXT, ...);
    CREATE TABLE update_logs (id TEXT PRIMARY KEY, kind TEXT, outcome TEXT, ...);

Each operation opens its own connection in a worker thread (WAL mode), so
readers never block a running update.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import sqlite3
from collections.abc import Callable, Generator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from site_updater.errors import FailedPreconditionError, InvalidArgumentError
from site_updater.logging import get_logger

logger = get_logger(__name__)

LOCK_NAME = "update"

# Update log outcomes
OUTCOME_RUNNING = "RUNNING"
OUTCOME_SUCCEEDED = "SUCCEEDED"
OUTCOME_FAILED = "FAILED"
OUTCOME_ROLLED_BACK = "ROLLED_BACK"

TERMINAL_OUTCOMES = frozenset({OUTCOME_SUCCEEDED, OUTCOME_FAILED, OUTCOME_ROLLED_BACK})

DEFAULT_PAGE_LIMIT = 20
MAX_PAGE_LIMIT = 100


def _to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _from_iso(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


# =============================================================================
# Data Models
# =============================================================================


@dataclass
class UpdateLock:
    """The durable update lock.

    Attributes:
        holder: Run id that owns the lock.
        acquired_at: When the lock was acquired (UTC).
        ttl_seconds: Age after which the lock is considered stale.
    """

    holder: str
    acquired_at: datetime
    ttl_seconds: int
    name: str = LOCK_NAME

    def expires_at(self, ttl_seconds: int | None = None) -> datetime:
        """Moment after which the lock is stale."""
        ttl = self.ttl_seconds if ttl_seconds is None else ttl_seconds
        return self.acquired_at + timedelta(seconds=ttl)

    def is_stale(self, now: datetime, ttl_seconds: int | None = None) -> bool:
        """Whether ``now - acquired_at`` exceeds the TTL."""
        return now > self.expires_at(ttl_seconds)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "holder": self.holder,
            "acquired_at": _to_iso(self.acquired_at),
            "ttl_seconds": self.ttl_seconds,
            "expires_at": _to_iso(self.expires_at()),
        }


@dataclass
class Backup:
    """A persisted backup record.

    ``path`` and ``db_path`` are the recorded claim; whether the artifacts
    still exist on disk is checked at read time by the backup catalog.
    """

    id: str
    created_at: datetime
    path: str
    db_path: str | None
    size_bytes: int
    version: str
    commit_hash: str
    run_id: str | None = None
    note: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "created_at": _to_iso(self.created_at),
            "path": self.path,
            "db_path": self.db_path,
            "size_bytes": self.size_bytes,
            "version": self.version,
            "commit_hash": self.commit_hash,
            "run_id": self.run_id,
            "note": self.note,
        }


@dataclass
class StepRecord:
    """Progress record for one step of a run."""

    name: str
    status: str = "pending"
    message: str | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "name": self.name,
            "status": self.status,
            "message": self.message,
            "started_at": _to_iso(self.started_at),
            "completed_at": _to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> StepRecord:
        """Build a StepRecord from its serialized form."""
        return cls(
            name=data["name"],
            status=data.get("status", "pending"),
            message=data.get("message"),
            started_at=_from_iso(data.get("started_at")),
            completed_at=_from_iso(data.get("completed_at")),
        )


@dataclass
class UpdateLogEntry:
    """One update or rollback run as recorded in the log store."""

    id: str
    started_at: datetime
    kind: str = "update"
    outcome: str = OUTCOME_RUNNING
    finished_at: datetime | None = None
    version_before: str | None = None
    version_after: str | None = None
    commit_before: str | None = None
    commit_after: str | None = None
    branch: str | None = None
    triggered_by: str | None = None
    backup_id: str | None = None
    failing_step: str | None = None
    error: str | None = None
    note: str | None = None
    steps: list[StepRecord] = field(default_factory=list)
    duration_seconds: float | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the entry has reached a terminal outcome."""
        return self.outcome in TERMINAL_OUTCOMES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "id": self.id,
            "kind": self.kind,
            "outcome": self.outcome,
            "started_at": _to_iso(self.started_at),
            "finished_at": _to_iso(self.finished_at),
            "version_before": self.version_before,
            "version_after": self.version_after,
            "commit_before": self.commit_before,
            "commit_after": self.commit_after,
            "branch": self.branch,
            "triggered_by": self.triggered_by,
            "backup_id": self.backup_id,
            "failing_step": self.failing_step,
            "error": self.error,
            "note": self.note,
            "steps": [step.to_dict() for step in self.steps],
            "duration_seconds": self.duration_seconds,
        }


@dataclass
class Page:
    """One page of a newest-first listing."""

    items: list[Any]
    total: int
    page: int
    limit: int

    def to_dict(self) -> dict[str, Any]:
        """Convert to the ``{data, total, page, limit}`` response shape."""
        return {
            "data": [
                item.to_dict() if hasattr(item, "to_dict") else item
                for item in self.items
            ],
            "total": self.total,
            "page": self.page,
            "limit": self.limit,
        }


def validate_pagination(page: int, limit: int) -> None:
    """
    Validate page/limit query parameters.

    Raises:
        InvalidArgumentError: If page < 1 or limit is outside 1..100.
    """
    if page < 1:
        raise InvalidArgumentError(
            "page must be at least 1",
            details={"page": page},
        )
    if limit < 1 or limit > MAX_PAGE_LIMIT:
        raise InvalidArgumentError(
            f"limit must be between 1 and {MAX_PAGE_LIMIT}",
            details={"limit": limit},
        )


def clamp_pagination(page: int, limit: int) -> tuple[int, int]:
    """Clamp page/limit query parameters into their valid ranges."""
    return max(1, page), min(MAX_PAGE_LIMIT, max(1, limit))


# =============================================================================
# SQLite Schema
# =============================================================================

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS update_lock (
    name TEXT PRIMARY KEY,
    holder TEXT NOT NULL,
    acquired_at TEXT NOT NULL,
    ttl_seconds INTEGER NOT NULL
);

CREATE TABLE IF NOT EXISTS backups (
    id TEXT PRIMARY KEY,
    created_at TEXT NOT NULL,
    path TEXT NOT NULL,
    db_path TEXT,
    size_bytes INTEGER NOT NULL,
    version TEXT NOT NULL,
    commit_hash TEXT NOT NULL,
    run_id TEXT,
    note TEXT
);

CREATE INDEX IF NOT EXISTS idx_backups_created_at ON backups(created_at);

CREATE TABLE IF NOT EXISTS update_logs (
    id TEXT PRIMARY KEY,
    kind TEXT NOT NULL,
    outcome TEXT NOT NULL,
    started_at TEXT NOT NULL,
    finished_at TEXT,
    version_before TEXT,
    version_after TEXT,
    commit_before TEXT,
    commit_after TEXT,
    branch TEXT,
    triggered_by TEXT,
    backup_id TEXT,
    failing_step TEXT,
    error TEXT,
    note TEXT,
    steps TEXT,
    duration_seconds REAL
);

CREATE INDEX IF NOT EXISTS idx_update_logs_started_at ON update_logs(started_at);
CREATE INDEX IF NOT EXISTS idx_update_logs_outcome ON update_logs(outcome);
"""

_LOG_COLUMNS = (
    "id, kind, outcome, started_at, finished_at, version_before, version_after, "
    "commit_before, commit_after, branch, triggered_by, backup_id, failing_step, "
    "error, note, steps, duration_seconds"
)

_BACKUP_COLUMNS = (
    "id, created_at, path, db_path, size_bytes, version, commit_hash, run_id, note"
)


def _row_to_lock(row: sqlite3.Row) -> UpdateLock:
    return UpdateLock(
        name=row["name"],
        holder=row["holder"],
        acquired_at=datetime.fromisoformat(row["acquired_at"]),
        ttl_seconds=row["ttl_seconds"],
    )


def _row_to_backup(row: sqlite3.Row) -> Backup:
    return Backup(
        id=row["id"],
        created_at=datetime.fromisoformat(row["created_at"]),
        path=row["path"],
        db_path=row["db_path"],
        size_bytes=row["size_bytes"],
        version=row["version"],
        commit_hash=row["commit_hash"],
        run_id=row["run_id"],
        note=row["note"],
    )


def _row_to_log(row: sqlite3.Row) -> UpdateLogEntry:
    steps: list[StepRecord] = []
    if row["steps"]:
        with contextlib.suppress(json.JSONDecodeError, KeyError, TypeError):
            steps = [StepRecord.from_dict(s) for s in json.loads(row["steps"])]
    return UpdateLogEntry(
        id=row["id"],
        kind=row["kind"],
        outcome=row["outcome"],
        started_at=datetime.fromisoformat(row["started_at"]),
        finished_at=_from_iso(row["finished_at"]),
        version_before=row["version_before"],
        version_after=row["version_after"],
        commit_before=row["commit_before"],
        commit_after=row["commit_after"],
        branch=row["branch"],
        triggered_by=row["triggered_by"],
        backup_id=row["backup_id"],
        failing_step=row["failing_step"],
        error=row["error"],
        note=row["note"],
        steps=steps,
        duration_seconds=row["duration_seconds"],
    )


def _log_params(entry: UpdateLogEntry) -> tuple[Any, ...]:
    return (
        entry.id,
        entry.kind,
        entry.outcome,
        _to_iso(entry.started_at),
        _to_iso(entry.finished_at),
        entry.version_before,
        entry.version_after,
        entry.commit_before,
        entry.commit_after,
        entry.branch,
        entry.triggered_by,
        entry.backup_id,
        entry.failing_step,
        entry.error,
        entry.note,
        json.dumps([s.to_dict() for s in entry.steps]),
        entry.duration_seconds,
    )


# =============================================================================
# UpdateStore Class
# =============================================================================


class UpdateStore:
    """
    SQLite-based store for the lock, backup records and the update log.

    Thread Safety:
    - Uses WAL mode for concurrent read/write access
    - Each operation acquires and releases its own connection
    - Lock acquisition relies on the single-row primary key, so it is atomic
      across threads and processes sharing the database file

    Example:
        >>> store = UpdateStore("/var/lib/site-updater/updater.db")
        >>> await store.initialize()
        >>> page = await store.list_logs(page=1, limit=20)
    """

    def __init__(self, db_path: str | Path) -> None:
        """
        Initialize the UpdateStore.

        Args:
            db_path: Path to the SQLite database file.
        """
        self.db_path = Path(db_path)
        self._initialized = False
        self._lock = asyncio.Lock()

    @contextmanager
    def _get_connection(self) -> Generator[sqlite3.Connection, None, None]:
        """
        Get a database connection with proper settings.

        Yields:
            SQLite connection in WAL mode with row access by name.
        """
        conn = sqlite3.connect(str(self.db_path), timeout=30.0)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("PRAGMA journal_mode=WAL")
            yield conn
        finally:
            conn.close()

    async def _run(
        self, operation: str, func: Callable[[], Any], **details: Any
    ) -> Any:
        """Run ``func`` in a worker thread, mapping sqlite errors."""
        await self._ensure_initialized()
        try:
            return await asyncio.get_running_loop().run_in_executor(None, func)
        except sqlite3.Error as e:
            logger.error(
                f"Failed to {operation}",
                extra={"db_path": str(self.db_path), "error": str(e), **details},
            )
            raise FailedPreconditionError(
                f"Failed to {operation}: {e}",
                details={"db_path": str(self.db_path), **details},
            ) from e

    async def initialize(self) -> None:
        """
        Initialize the database schema.

        This method is idempotent and safe to call multiple times.

        Raises:
            FailedPreconditionError: If the database cannot be initialized.
        """
        if self._initialized:
            return

        async with self._lock:
            if self._initialized:
                return

            try:
                self.db_path.parent.mkdir(parents=True, exist_ok=True)

                def _init_db() -> None:
                    with self._get_connection() as conn:
                        conn.executescript(SCHEMA_SQL)
                        conn.commit()

                await asyncio.get_running_loop().run_in_executor(None, _init_db)
                self._initialized = True
                logger.info(
                    "Update store initialized",
                    extra={"db_path": str(self.db_path)},
                )
            except (OSError, sqlite3.Error) as e:
                logger.error(
                    "Failed to initialize update store",
                    extra={"db_path": str(self.db_path), "error": str(e)},
                )
                raise FailedPreconditionError(
                    f"Failed to initialize update store: {e}",
                    details={"db_path": str(self.db_path)},
                ) from e

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    # -------------------------------------------------------------------------
    # Lock
    # -------------------------------------------------------------------------

    async def insert_lock(self, lock: UpdateLock) -> bool:
        """
        Insert the lock row if no lock row exists.

        Returns:
            True if the lock was inserted, False if a lock row already exists.
        """

        def _insert() -> bool:
            with self._get_connection() as conn:
                try:
                    conn.execute(
                        "INSERT INTO update_lock (name, holder, acquired_at, ttl_seconds) "
                        "VALUES (?, ?, ?, ?)",
                        (lock.name, lock.holder, _to_iso(lock.acquired_at), lock.ttl_seconds),
                    )
                    conn.commit()
                    return True
                except sqlite3.IntegrityError:
                    return False

        return await self._run("insert lock", _insert, holder=lock.holder)

    async def get_lock(self) -> UpdateLock | None:
        """Return the lock row, stale or not, if any."""

        def _get() -> UpdateLock | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT name, holder, acquired_at, ttl_seconds FROM update_lock "
                    "WHERE name = ?",
                    (LOCK_NAME,),
                ).fetchone()
                return _row_to_lock(row) if row else None

        return await self._run("read lock", _get)

    async def delete_lock(
        self,
        holder: str,
        acquired_at: datetime | None = None,
    ) -> bool:
        """
        Delete the lock row if it is still owned by ``holder``.

        Args:
            holder: Run id expected to own the lock.
            acquired_at: If given, the delete also requires this acquisition
                time, so a reclaim never removes a newer lock.

        Returns:
            True if a row was deleted.
        """

        def _delete() -> bool:
            with self._get_connection() as conn:
                if acquired_at is None:
                    cursor = conn.execute(
                        "DELETE FROM update_lock WHERE name = ? AND holder = ?",
                        (LOCK_NAME, holder),
                    )
                else:
                    cursor = conn.execute(
                        "DELETE FROM update_lock "
                        "WHERE name = ? AND holder = ? AND acquired_at = ?",
                        (LOCK_NAME, holder, _to_iso(acquired_at)),
                    )
                conn.commit()
                return cursor.rowcount > 0

        return await self._run("delete lock", _delete, holder=holder)

    # -------------------------------------------------------------------------
    # Backups
    # -------------------------------------------------------------------------

    async def insert_backup(self, backup: Backup) -> None:
        """Persist a new backup record."""

        def _insert() -> None:
            with self._get_connection() as conn:
                conn.execute(
                    f"INSERT INTO backups ({_BACKUP_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        backup.id,
                        _to_iso(backup.created_at),
                        backup.path,
                        backup.db_path,
                        backup.size_bytes,
                        backup.version,
                        backup.commit_hash,
                        backup.run_id,
                        backup.note,
                    ),
                )
                conn.commit()

        await self._run("insert backup", _insert, backup_id=backup.id)

    async def get_backup(self, backup_id: str) -> Backup | None:
        """Return a backup record by id, or None."""

        def _get() -> Backup | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_BACKUP_COLUMNS} FROM backups WHERE id = ?",
                    (backup_id,),
                ).fetchone()
                return _row_to_backup(row) if row else None

        return await self._run("read backup", _get, backup_id=backup_id)

    async def list_backups(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> Page:
        """
        List backup records, newest first.

        Raises:
            InvalidArgumentError: If pagination parameters are invalid.
            FailedPreconditionError: If the query fails.
        """
        validate_pagination(page, limit)

        def _list() -> Page:
            with self._get_connection() as conn:
                total = conn.execute("SELECT COUNT(*) AS count FROM backups").fetchone()[
                    "count"
                ]
                rows = conn.execute(
                    f"SELECT {_BACKUP_COLUMNS} FROM backups "
                    "ORDER BY created_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    (limit, (page - 1) * limit),
                ).fetchall()
                return Page(
                    items=[_row_to_backup(row) for row in rows],
                    total=total,
                    page=page,
                    limit=limit,
                )

        return await self._run("list backups", _list)

    # -------------------------------------------------------------------------
    # Update log
    # -------------------------------------------------------------------------

    async def create_log(self, entry: UpdateLogEntry) -> None:
        """Persist a new (RUNNING) log entry."""

        def _insert() -> None:
            with self._get_connection() as conn:
                conn.execute(
                    f"INSERT INTO update_logs ({_LOG_COLUMNS}) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    _log_params(entry),
                )
                conn.commit()

        await self._run("create log entry", _insert, run_id=entry.id)

    async def update_log(self, entry: UpdateLogEntry) -> bool:
        """
        Overwrite a log entry that is still RUNNING.

        Returns:
            True if the entry was written; False if it no longer exists or was
            already finalized (e.g. reclaimed as stale).
        """
        params = _log_params(entry)

        def _update() -> bool:
            with self._get_connection() as conn:
                cursor = conn.execute(
                    """
                    UPDATE update_logs SET
                        kind = ?, outcome = ?, started_at = ?, finished_at = ?,
                        version_before = ?, version_after = ?, commit_before = ?,
                        commit_after = ?, branch = ?, triggered_by = ?, backup_id = ?,
                        failing_step = ?, error = ?, note = ?, steps = ?,
                        duration_seconds = ?
                    WHERE id = ? AND outcome = ?
                    """,
                    (*params[1:], entry.id, OUTCOME_RUNNING),
                )
                conn.commit()
                return cursor.rowcount > 0

        return await self._run("update log entry", _update, run_id=entry.id)

    async def fail_running_log(
        self,
        run_id: str,
        *,
        error: str,
        finished_at: datetime,
    ) -> bool:
        """
        Finalize a RUNNING entry to FAILED with the given error.

        Returns:
            True if the entry was RUNNING and has been finalized.
        """

        def _fail() -> bool:
            with self._get_connection() as conn:
                row = conn.execute(
                    "SELECT started_at FROM update_logs WHERE id = ? AND outcome = ?",
                    (run_id, OUTCOME_RUNNING),
                ).fetchone()
                if row is None:
                    return False
                started_at = datetime.fromisoformat(row["started_at"])
                cursor = conn.execute(
                    "UPDATE update_logs SET outcome = ?, error = ?, finished_at = ?, "
                    "duration_seconds = ? WHERE id = ? AND outcome = ?",
                    (
                        OUTCOME_FAILED,
                        error,
                        _to_iso(finished_at),
                        round((finished_at - started_at).total_seconds(), 3),
                        run_id,
                        OUTCOME_RUNNING,
                    ),
                )
                conn.commit()
                return cursor.rowcount > 0

        return await self._run("finalize log entry", _fail, run_id=run_id)

    async def get_log(self, run_id: str) -> UpdateLogEntry | None:
        """Return a log entry by run id, or None."""

        def _get() -> UpdateLogEntry | None:
            with self._get_connection() as conn:
                row = conn.execute(
                    f"SELECT {_LOG_COLUMNS} FROM update_logs WHERE id = ?",
                    (run_id,),
                ).fetchone()
                return _row_to_log(row) if row else None

        return await self._run("read log entry", _get, run_id=run_id)

    async def list_logs(
        self,
        page: int = 1,
        limit: int = DEFAULT_PAGE_LIMIT,
    ) -> Page:
        """
        List log entries, newest first.

        Raises:
            InvalidArgumentError: If pagination parameters are invalid.
            FailedPreconditionError: If the query fails.
        """
        validate_pagination(page, limit)

        def _list() -> Page:
            with self._get_connection() as conn:
                total = conn.execute(
                    "SELECT COUNT(*) AS count FROM update_logs"
                ).fetchone()["count"]
                rows = conn.execute(
                    f"SELECT {_LOG_COLUMNS} FROM update_logs "
                    "ORDER BY started_at DESC, rowid DESC LIMIT ? OFFSET ?",
                    (limit, (page - 1) * limit),
                ).fetchall()
                return Page(
                    items=[_row_to_log(row) for row in rows],
                    total=total,
                    page=page,
                    limit=limit,
                )

        return await self._run("list log entries", _list)

    async def latest_log(self) -> UpdateLogEntry | None:
        """Return the most recently started log entry, or None."""
        page = await self.list_logs(page=1, limit=1)
        return page.items[0] if page.items else None

    async def list_running_logs(self) -> list[UpdateLogEntry]:
        """Return every entry whose outcome is still RUNNING."""

        def _list() -> list[UpdateLogEntry]:
            with self._get_connection() as conn:
                rows = conn.execute(
                    f"SELECT {_LOG_COLUMNS} FROM update_logs WHERE outcome = ? "
                    "ORDER BY started_at",
                    (OUTCOME_RUNNING,),
                ).fetchall()
                return [_row_to_log(row) for row in rows]

        return await self._run("list running log entries", _list)

    async def close(self) -> None:
        """
        Close the store (no-op for the connection-per-operation model).
        """
        self._initialized = False
        logger.debug("Update store closed")
