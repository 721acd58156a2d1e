"""
External command execution for the update orchestrator.

Every external collaborator (git, tar, the database dump/restore tools, the
package manager, the process supervisor) is invoked through ``run_command``.
Components accept a ``CommandRunner`` so tests can substitute a scripted
fake for the real subprocess call.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Awaitable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Protocol

from site_updater.errors import CommandFailedError, UnavailableError
from site_updater.logging import get_logger

logger = get_logger(__name__)

DEFAULT_TIMEOUT_SECONDS = 60.0


@dataclass
class CommandResult:
    """Outcome of a finished external command.

    Attributes:
        returncode: Exit status of the process.
        stdout: Decoded standard output.
        stderr: Decoded standard error.
    """

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        """Whether the command exited with status 0."""
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Stderr if present, else stdout; used in error messages."""
        return (self.stderr or self.stdout).strip()


class CommandRunner(Protocol):
    """Callable signature shared by ``run_command`` and test doubles."""

    def __call__(
        self,
        *args: str,
        cwd: Path | str | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
    ) -> Awaitable[CommandResult]: ...


async def run_command(
    *args: str,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CommandResult:
    """
    Run an external command without a shell.

    Args:
        *args: Executable followed by its arguments.
        cwd: Working directory for the process.
        env: Extra environment variables layered over the current environment.
        timeout: Command timeout in seconds.

    Returns:
        CommandResult with the exit status and decoded output.

    Raises:
        UnavailableError: If the executable is missing or the command times out.
    """
    if not args:
        raise UnavailableError("No command given", details={})

    full_env = {**os.environ, **env} if env else None

    logger.debug(
        f"Running command: {' '.join(args)}",
        extra={"command": list(args), "cwd": str(cwd) if cwd else None},
    )

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=str(cwd) if cwd else None,
            env=full_env,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except FileNotFoundError as exc:
        raise UnavailableError(
            f"{args[0]} not available",
            details={"command": list(args), "hint": f"Install {args[0]} or fix PATH"},
        ) from exc
    except PermissionError as exc:
        raise UnavailableError(
            f"{args[0]} is not executable",
            details={"command": list(args)},
        ) from exc

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError as exc:
        proc.kill()
        await proc.wait()
        raise UnavailableError(
            f"{args[0]} timed out after {timeout}s",
            details={"command": list(args), "timeout": timeout},
        ) from exc

    result = CommandResult(
        returncode=proc.returncode or 0,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
    )

    if not result.ok:
        logger.debug(
            f"Command exited with {result.returncode}: {args[0]}",
            extra={"command": list(args), "returncode": result.returncode},
        )

    return result


async def check_command(
    *args: str,
    runner: CommandRunner = run_command,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> CommandResult:
    """
    Run a command and require a zero exit status.

    Raises:
        CommandFailedError: If the command exits non-zero.
        UnavailableError: If the executable is missing or times out.
    """
    result = await runner(*args, cwd=cwd, env=env, timeout=timeout)
    if not result.ok:
        raise CommandFailedError(
            f"{' '.join(args)} failed: {result.output or f'exit status {result.returncode}'}",
            returncode=result.returncode,
            stdout=result.stdout,
            stderr=result.stderr,
            details={"command": list(args)},
        )
    return result


def render_command(template: Sequence[str], **values: Any) -> list[str]:
    """
    Expand ``{name}`` placeholders in an argv template.

    Only the given names are substituted; other braces are left alone.

    Example:
        >>> render_command(["pg_dump", "{database_url}"], database_url="postgres://db")
        ['pg_dump', 'postgres://db']
    """
    rendered: list[str] = []
    for part in template:
        for key, value in values.items():
            part = part.replace("{" + key + "}", str(value))
        rendered.append(part)
    return rendered
