"""
Self-update orchestration for the deployed application.

This package implements the update pipeline:
- Durable update lock with stale reclaim
- Prerequisite probes (git, working tree, supervisor, database dump tool)
- Remote diff checking against the upstream branch
- File-tree and database backups, the backup catalog and restore
- The update executor state machine with automatic restore on failure
- The update log store
- Status reporting
"""

from site_updater.updates.backup import BackupEntry, BackupManager, RestoreResult
from site_updater.updates.commands import (
    CommandResult,
    CommandRunner,
    check_command,
    run_command,
)
from site_updater.updates.executor import (
    UpdateExecutor,
    UpdateRequest,
    UpdateResult,
    UpdateRun,
    UpdateState,
)
from site_updater.updates.lock import LockManager, LockToken
from site_updater.updates.prerequisites import PrerequisiteChecker, PrerequisiteReport
from site_updater.updates.remote import RemoteDiff, RemoteDiffChecker
from site_updater.updates.status import StatusReporter
from site_updater.updates.storage import (
    Backup,
    Page,
    StepRecord,
    UpdateLock,
    UpdateLogEntry,
    UpdateStore,
)
from site_updater.updates.supervisor import HealthCheck, SupervisorRestarter
from site_updater.updates.version import (
    CommitSummary,
    VersionInfo,
    get_version_info,
    parse_semantic_version,
)

__all__ = [
    # Commands
    "CommandResult",
    "CommandRunner",
    "check_command",
    "run_command",
    # Storage
    "UpdateStore",
    "UpdateLock",
    "Backup",
    "UpdateLogEntry",
    "StepRecord",
    "Page",
    # Lock
    "LockManager",
    "LockToken",
    # Prerequisites
    "PrerequisiteChecker",
    "PrerequisiteReport",
    # Version
    "VersionInfo",
    "CommitSummary",
    "get_version_info",
    "parse_semantic_version",
    # Remote
    "RemoteDiff",
    "RemoteDiffChecker",
    # Backups
    "BackupManager",
    "BackupEntry",
    "RestoreResult",
    # Supervisor
    "SupervisorRestarter",
    "HealthCheck",
    # Executor
    "UpdateExecutor",
    "UpdateRequest",
    "UpdateResult",
    "UpdateRun",
    "UpdateState",
    # Status
    "StatusReporter",
]
