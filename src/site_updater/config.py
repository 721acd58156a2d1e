"""
Configuration management for the site updater.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/site-updater/config.yml or --config path)
3. Environment variables (SITE_UPDATER_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

External tool invocations (dump, restore, install, migrate, build, restart)
are argv lists so nothing is ever passed through a shell. Dump and restore
templates may reference ``{database_url}`` and ``{dump_path}``.
"""

from __future__ import annotations

import argparse
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/site-updater/config.yml")
DEFAULT_ENV_PREFIX = "SITE_UPDATER_"

_VALID_LOG_LEVELS = {"debug", "info", "warn", "warning", "error", "critical"}


def _normalize_log_level(v: str) -> str:
    v_lower = v.lower()
    if v_lower not in _VALID_LOG_LEVELS:
        raise ValueError(
            f"Invalid log level: {v}. Must be one of: {', '.join(sorted(_VALID_LOG_LEVELS))}"
        )
    if v_lower == "warn":
        return "warning"
    return v_lower


def _validate_argv(v: list[str]) -> list[str]:
    if not v or not all(isinstance(part, str) and part for part in v):
        raise ValueError("command must be a non-empty list of non-empty strings")
    return v


# =============================================================================
# Server / Logging
# =============================================================================


class ServerConfig(BaseModel):
    """HTTP server settings.

    Attributes:
        listen: Listen address and port (e.g., "127.0.0.1:8080").
        log_level: Initial application log level.
    """

    listen: str = Field(
        default="127.0.0.1:8080",
        description="Listen address and port (e.g., '127.0.0.1:8080')",
    )
    log_level: str = Field(
        default="info",
        description="Log level: debug, info, warn, error",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)

    @property
    def host(self) -> str:
        """Host part of ``listen``."""
        return self.listen.rsplit(":", 1)[0] or "127.0.0.1"

    @property
    def port(self) -> int:
        """Port part of ``listen``."""
        return int(self.listen.rsplit(":", 1)[1])


class LoggingConfig(BaseModel):
    """Logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Render records as JSON objects.
    """

    level: str = Field(default="info", description="Log level")
    log_to_stdout: bool = Field(default=True, description="Whether to log to stdout")
    json_format: bool = Field(default=True, description="Render log records as JSON")

    @field_validator("level")
    @classmethod
    def validate_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        return _normalize_log_level(v)


# =============================================================================
# Update orchestration
# =============================================================================


class StorageConfig(BaseModel):
    """Durable record store for locks, backups and update log entries.

    Attributes:
        db_path: Path to the SQLite database file.
    """

    db_path: str = Field(
        default="/var/lib/site-updater/updater.db",
        description="SQLite database holding lock, backup and log records",
    )


class RepositoryConfig(BaseModel):
    """Deployed working tree and its upstream.

    Attributes:
        project_root: Root of the deployed git working tree.
        repo_url: Default remote repository URL used for checks and updates.
        branch: Default remote branch.
        version_file: File (relative to project_root) holding the version label.
    """

    project_root: str = Field(
        default=".",
        description="Root directory of the deployed git working tree",
    )
    repo_url: str = Field(
        default="",
        description="Default remote repository URL",
    )
    branch: str = Field(default="main", description="Default remote branch")
    version_file: str = Field(
        default="package.json",
        description="Version label source: package.json, pyproject.toml or plain text",
    )
    git_timeout_seconds: float = Field(
        default=120.0,
        gt=0,
        description="Timeout for git network operations",
    )


class LockConfig(BaseModel):
    """Update lock settings.

    Attributes:
        ttl_seconds: Age after which a held lock is considered stale.
    """

    ttl_seconds: int = Field(
        default=1800,
        ge=60,
        description="Lock time-to-live; keep well above the slowest real run",
    )


class BackupsConfig(BaseModel):
    """Backup artifact settings.

    Attributes:
        dir: Directory where backup artifacts are written.
        excludes: tar exclude patterns for the file-tree snapshot.
    """

    dir: str = Field(
        default=".backups",
        description="Backup directory (relative paths resolve against project_root)",
    )
    excludes: list[str] = Field(
        default_factory=lambda: ["node_modules", ".next", "__pycache__", ".venv"],
        description="Patterns excluded from the file-tree snapshot",
    )
    timeout_seconds: float = Field(default=600.0, gt=0)


class DatabaseConfig(BaseModel):
    """Database dump/restore tooling.

    Attributes:
        url: Database connection URL passed to the dump/restore tools.
        dump_command: argv writing an SQL dump to stdout.
        restore_command: argv reloading the dump at ``{dump_path}``.
    """

    url: str = Field(
        default_factory=lambda: os.environ.get("DATABASE_URL", ""),
        description="Database URL (defaults to $DATABASE_URL)",
    )
    dump_command: list[str] = Field(
        default_factory=lambda: ["pg_dump", "{database_url}"],
        description="Dump command; stdout is written to the dump file",
    )
    restore_command: list[str] = Field(
        default_factory=lambda: [
            "psql",
            "{database_url}",
            "--single-transaction",
            "-v",
            "ON_ERROR_STOP=1",
            "-f",
            "{dump_path}",
        ],
        description="Restore command; runs as a single transaction",
    )
    timeout_seconds: float = Field(default=600.0, gt=0)

    @field_validator("dump_command", "restore_command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Reject empty commands."""
        return _validate_argv(v)


class CommandsConfig(BaseModel):
    """Post-pull commands run inside project_root, in order.

    Attributes:
        install: Dependency installation commands.
        migrate: Schema migration commands.
        build: Application build commands.
    """

    install: list[list[str]] = Field(default_factory=list)
    migrate: list[list[str]] = Field(default_factory=list)
    build: list[list[str]] = Field(default_factory=list)
    timeout_seconds: float = Field(default=600.0, gt=0)

    @field_validator("install", "migrate", "build")
    @classmethod
    def validate_commands(cls, v: list[list[str]]) -> list[list[str]]:
        """Reject empty commands."""
        return [_validate_argv(cmd) for cmd in v]


class SupervisorConfig(BaseModel):
    """Process supervisor restart settings.

    Attributes:
        restart_command: argv asking the supervisor to restart the application.
        health_url: Optional URL polled after restart; 200 means healthy.
    """

    restart_command: list[str] = Field(
        default_factory=lambda: ["pm2", "restart", "all"],
        description="Supervisor restart command",
    )
    health_url: str | None = Field(
        default=None,
        description="Health endpoint polled after restart",
    )
    health_retries: int = Field(default=3, ge=1)
    restart_delay_seconds: float = Field(default=5.0, ge=0)
    health_timeout_seconds: float = Field(default=5.0, gt=0)
    timeout_seconds: float = Field(default=60.0, gt=0)

    @field_validator("restart_command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Reject empty commands."""
        return _validate_argv(v)


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: HTTP server settings.
        logging: Logging configuration.
        storage: Record store configuration.
        repository: Working tree and upstream configuration.
        lock: Update lock configuration.
        backups: Backup artifact configuration.
        database: Database dump/restore configuration.
        commands: Install/migrate/build commands.
        supervisor: Restart and health probe configuration.
    """

    server: ServerConfig = Field(default_factory=ServerConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    repository: RepositoryConfig = Field(default_factory=RepositoryConfig)
    lock: LockConfig = Field(default_factory=LockConfig)
    backups: BackupsConfig = Field(default_factory=BackupsConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    commands: CommandsConfig = Field(default_factory=CommandsConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)

    @property
    def project_root(self) -> Path:
        """Absolute path of the deployed working tree."""
        return Path(self.repository.project_root).resolve()

    @property
    def backups_dir(self) -> Path:
        """Absolute backup directory."""
        path = Path(self.backups.dir)
        if not path.is_absolute():
            path = self.project_root / path
        return path


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to an appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Nested keys use a double underscore, e.g.
    ``SITE_UPDATER_LOCK__TTL_SECONDS=3600``.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            current = current.setdefault(part, {})

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Site self-update orchestrator",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("--config", "-c", type=str, help="Path to configuration file")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument("--listen", type=str, help="Override listen address")
    parser.add_argument("--project-root", type=str, help="Override project root")
    parser.add_argument("--debug", action="store_true", help="Enable debug logging")

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.log_level:
        result["server"] = {"log_level": parsed.log_level}
        result["logging"] = {"level": parsed.log_level}

    if parsed.listen:
        result.setdefault("server", {})["listen"] = parsed.listen

    if parsed.project_root:
        result["repository"] = {"project_root": parsed.project_root}

    if parsed.debug:
        result.setdefault("server", {})["log_level"] = "debug"
        result.setdefault("logging", {})["level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.lock.ttl_seconds
        1800
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    elif isinstance(config_path, str):
        config_path = Path(config_path)
    cli_config.pop("_config_path", None)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
