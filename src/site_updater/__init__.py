"""
Site updater.

Self-update orchestrator for a git-deployed web application: checks the
upstream repository for new commits and performs a guarded in-place upgrade
(backup, pull, install, migrate, build, restart) with automatic restore on
failure.
"""

__version__ = "0.1.0"
