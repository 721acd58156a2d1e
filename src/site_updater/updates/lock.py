"""
Durable update lock.

At most one update or rollback may run system-wide. The lock lives in the
record store as a single row; a lock older than its TTL is stale and is
reclaimed by whichever caller observes it first. Reclaiming a lock also
finalizes the owning RUNNING log entry so no entry stays RUNNING forever.
"""

from __future__ import annotations

import uuid
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta

from site_updater.errors import ConcurrentUpdateInProgressError
from site_updater.logging import get_logger
from site_updater.updates.storage import UpdateLock, UpdateStore

logger = get_logger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30 * 60

STALE_LOCK_ERROR = "stale lock reclaimed"
ORPHANED_RUN_ERROR = "run exceeded lock TTL without holding the lock"


def utc_now() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(UTC)


@dataclass(frozen=True)
class LockToken:
    """Proof of lock ownership handed to the run that acquired it."""

    holder: str
    acquired_at: datetime
    ttl_seconds: int


class LockManager:
    """
    Acquires, releases and reclaims the update lock.

    Example:
        >>> locks = LockManager(store, ttl_seconds=1800)
        >>> token = await locks.acquire()
        >>> try:
        ...     ...
        ... finally:
        ...     await locks.release(token)
    """

    def __init__(
        self,
        store: UpdateStore,
        ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        """
        Initialize the LockManager.

        Args:
            store: Record store holding the lock row and the update log.
            ttl_seconds: Default lock TTL.
            clock: Source of the current time (UTC); injectable for tests.
        """
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._clock = clock or utc_now

    def now(self) -> datetime:
        """Current time according to the manager's clock."""
        return self._clock()

    async def acquire(
        self,
        holder: str | None = None,
        ttl: int | None = None,
    ) -> LockToken:
        """
        Acquire the update lock.

        A stale lock is reclaimed first; the insert itself is atomic, so of
        several concurrent callers at most one succeeds.

        Args:
            holder: Run id to record as the owner. Generated if omitted.
            ttl: Lock TTL in seconds. Defaults to the manager's TTL.

        Returns:
            LockToken identifying this ownership.

        Raises:
            ConcurrentUpdateInProgressError: If a non-stale lock is held.
        """
        ttl_seconds = ttl if ttl is not None else self.ttl_seconds
        holder = holder or uuid.uuid4().hex

        await self.clean_stale()

        lock = UpdateLock(
            holder=holder,
            acquired_at=self.now(),
            ttl_seconds=ttl_seconds,
        )
        if await self._store.insert_lock(lock):
            logger.info(
                "Update lock acquired",
                extra={"holder": holder, "ttl_seconds": ttl_seconds},
            )
            return LockToken(
                holder=holder,
                acquired_at=lock.acquired_at,
                ttl_seconds=ttl_seconds,
            )

        current = await self._store.get_lock()
        details = current.to_dict() if current else {}
        logger.warning(
            "Update lock is held by another run",
            extra={"holder": details.get("holder"), "requested_by": holder},
        )
        raise ConcurrentUpdateInProgressError(details=details)

    async def release(self, token: LockToken) -> bool:
        """
        Release the lock held by ``token``.

        Idempotent: releasing twice, or releasing a lock that was reclaimed
        and re-acquired by another run, deletes nothing.

        Returns:
            True if this call removed the lock.
        """
        released = await self._store.delete_lock(token.holder)
        if released:
            logger.info("Update lock released", extra={"holder": token.holder})
        else:
            logger.debug(
                "Update lock already released or reclaimed",
                extra={"holder": token.holder},
            )
        return released

    async def current(self) -> UpdateLock | None:
        """Return the lock row, stale or not."""
        return await self._store.get_lock()

    async def is_held(self) -> bool:
        """Whether a non-expired lock exists."""
        lock = await self._store.get_lock()
        return lock is not None and not lock.is_stale(self.now())

    async def still_owns(self, token: LockToken) -> bool:
        """Whether ``token`` still matches the lock row."""
        lock = await self._store.get_lock()
        return lock is not None and lock.holder == token.holder

    async def clean_stale(self, ttl: int | None = None) -> int:
        """
        Reclaim a stale lock and finalize abandoned RUNNING log entries.

        Safe to call repeatedly and concurrently: the lock delete is
        conditional on the observed holder and acquisition time, and log
        entries are only finalized while still RUNNING.

        Args:
            ttl: Override for the staleness threshold. Defaults to the TTL
                recorded with the lock (and the manager's TTL for orphaned
                log entries).

        Returns:
            Number of records cleaned (locks deleted plus entries finalized).
        """
        now = self.now()
        cleaned = 0

        lock = await self._store.get_lock()
        if lock is not None and lock.is_stale(now, ttl):
            if await self._store.delete_lock(lock.holder, lock.acquired_at):
                cleaned += 1
                logger.warning(
                    "Reclaimed stale update lock",
                    extra={
                        "holder": lock.holder,
                        "acquired_at": lock.acquired_at.isoformat(),
                        "ttl_seconds": lock.ttl_seconds if ttl is None else ttl,
                    },
                )
            if await self._store.fail_running_log(
                lock.holder, error=STALE_LOCK_ERROR, finished_at=now
            ):
                cleaned += 1
            lock = None

        window = timedelta(seconds=ttl if ttl is not None else self.ttl_seconds)
        for entry in await self._store.list_running_logs():
            if lock is not None and entry.id == lock.holder:
                continue
            if now - entry.started_at <= window:
                continue
            if await self._store.fail_running_log(
                entry.id, error=ORPHANED_RUN_ERROR, finished_at=now
            ):
                cleaned += 1
                logger.warning(
                    "Finalized orphaned update log entry",
                    extra={"run_id": entry.id, "started_at": entry.started_at.isoformat()},
                )

        return cleaned
