"""
Error types for the site updater.

This module defines the UpdaterError base class and the subclasses used by the
orchestrator. Domain errors are raised as UpdaterError (or subclasses) and are
mapped to structured HTTP error bodies at the API layer; they are never turned
into ad-hoc status codes inside the core.

The update-specific taxonomy (concurrent update, missing prerequisite, remote
unreachable, invalid ref, backup/pull/migration/build/restart failures,
restore failures) lives at the bottom of this module.
"""

from __future__ import annotations

from typing import Any


class UpdaterError(Exception):
    """
    Base exception class for site updater errors.

    Attributes:
        error_code: Internal error code string (e.g., "invalid_argument",
            "concurrent_update_in_progress", "backup_failed").
        message: Human-readable error message.
        details: Optional structured details (e.g., stage, tool, stderr).

    Example:
        >>> raise UpdaterError(
        ...     error_code="invalid_argument",
        ...     message="branch must not be empty",
        ...     details={"branch": ""},
        ... )
    """

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        """
        Initialize an UpdaterError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class InvalidArgumentError(UpdaterError):
    """Error raised when an operation receives invalid input arguments."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class NotFoundError(UpdaterError):
    """Error raised when a referenced record (backup, log entry) does not exist."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a NotFoundError."""
        super().__init__(error_code="not_found", message=message, details=details)


class UnavailableError(UpdaterError):
    """
    Error raised when a required external tool or service is unavailable.

    Used when an executable is missing from PATH or a command times out.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an UnavailableError."""
        super().__init__(error_code="unavailable", message=message, details=details)


class FailedPreconditionError(UpdaterError):
    """
    Error raised when a precondition for the operation is not met.

    Used when the store cannot be opened, a state transition is attempted
    from the wrong state, etc.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a FailedPreconditionError."""
        super().__init__(
            error_code="failed_precondition", message=message, details=details
        )


class InternalError(UpdaterError):
    """Error raised for unexpected internal errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InternalError."""
        super().__init__(error_code="internal", message=message, details=details)


class CommandFailedError(UpdaterError):
    """
    Error raised when an external command exits with a non-zero status.

    Attributes:
        returncode: Exit status of the command.
        stdout: Captured standard output.
        stderr: Captured standard error.
    """

    def __init__(
        self,
        message: str,
        *,
        returncode: int,
        stdout: str = "",
        stderr: str = "",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a CommandFailedError."""
        merged = {"returncode": returncode, "stderr": stderr.strip()[-2000:]}
        merged.update(details or {})
        super().__init__(error_code="command_failed", message=message, details=merged)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr


# =============================================================================
# Update orchestration taxonomy
# =============================================================================


class ConcurrentUpdateInProgressError(UpdaterError):
    """Raised when another run holds a non-stale update lock."""

    def __init__(
        self,
        message: str = "Another update or rollback is already in progress",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a ConcurrentUpdateInProgressError."""
        super().__init__(
            error_code="concurrent_update_in_progress",
            message=message,
            details=details,
        )


class PrerequisiteMissingError(UpdaterError):
    """Raised when a hard prerequisite (git, working tree, supervisor) is absent."""

    def __init__(self, tool: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PrerequisiteMissingError for the given tool."""
        merged = {"tool": tool}
        merged.update(details or {})
        super().__init__(
            error_code="prerequisite_missing",
            message=f"Required prerequisite is missing: {tool}",
            details=merged,
        )
        self.tool = tool


class RemoteUnreachableError(UpdaterError):
    """Raised when the remote repository cannot be contacted."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RemoteUnreachableError."""
        super().__init__(
            error_code="remote_unreachable", message=message, details=details
        )


class InvalidRefError(UpdaterError):
    """Raised when the requested branch does not exist on the remote."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidRefError."""
        super().__init__(error_code="invalid_ref", message=message, details=details)


class BackupFailedError(UpdaterError):
    """Raised when either stage ("files" or "database") of a backup fails."""

    def __init__(
        self, stage: str, message: str, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize a BackupFailedError for the given stage."""
        merged = {"stage": stage}
        merged.update(details or {})
        super().__init__(error_code="backup_failed", message=message, details=merged)
        self.stage = stage


class PullFailedError(UpdaterError):
    """Raised when updating the working tree (or installing dependencies) fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PullFailedError."""
        super().__init__(error_code="pull_failed", message=message, details=details)


class MigrationFailedError(UpdaterError):
    """Raised when database schema migrations fail."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a MigrationFailedError."""
        super().__init__(
            error_code="migration_failed", message=message, details=details
        )


class BuildFailedError(UpdaterError):
    """Raised when the application build fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BuildFailedError."""
        super().__init__(error_code="build_failed", message=message, details=details)


class RestartFailedError(UpdaterError):
    """Raised when the supervisor restart or the post-restart health probe fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a RestartFailedError."""
        super().__init__(error_code="restart_failed", message=message, details=details)


class RestoreFailedError(UpdaterError):
    """
    Raised when a restore stage fails before anything was reapplied.

    The system is left as it was before the restore attempt.
    """

    def __init__(
        self, stage: str, message: str, details: dict[str, Any] | None = None
    ) -> None:
        """Initialize a RestoreFailedError for the given stage."""
        merged = {"stage": stage}
        merged.update(details or {})
        super().__init__(error_code="restore_failed", message=message, details=merged)
        self.stage = stage


class PartialRestoreError(UpdaterError):
    """
    Raised when a restore was only partly reapplied.

    Either the file tree was restored but the database was not, or the files
    and database were restored but dependencies could not be reinstalled or
    rebuilt against them. Manual recovery is required.
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PartialRestoreError."""
        super().__init__(error_code="partial_restore", message=message, details=details)


class StaleLockReclaimedError(UpdaterError):
    """Raised when a run finds its lock was reclaimed as stale by another caller."""

    def __init__(
        self,
        message: str = "stale lock reclaimed",
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize a StaleLockReclaimedError."""
        super().__init__(
            error_code="stale_lock_reclaimed", message=message, details=details
        )
