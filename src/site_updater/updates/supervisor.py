"""
Process supervisor integration.

After a successful build the application is restarted through the configured
supervisor command (``pm2 restart all`` by default). When a health URL is
configured, the restarted application is polled until it answers 200 or the
retries are exhausted.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

import httpx

from site_updater.errors import RestartFailedError, UnavailableError
from site_updater.logging import get_logger
from site_updater.updates.commands import CommandRunner, run_command

logger = get_logger(__name__)


@dataclass
class HealthCheck:
    """Outcome of one GET against the application's health URL.

    Attributes:
        url: URL that was requested.
        healthy: True only when the application answered 200.
        status_code: HTTP status, or None when no response arrived.
        message: Human-readable summary for logs and error details.
    """

    url: str
    healthy: bool
    status_code: int | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for serialization."""
        return asdict(self)


async def check_http_health(
    url: str,
    timeout: float = 5.0,
    transport: httpx.AsyncBaseTransport | None = None,
) -> HealthCheck:
    """
    Check an HTTP health endpoint.

    Args:
        url: Health endpoint URL.
        timeout: Request timeout in seconds.
        transport: Optional httpx transport (tests use ``httpx.MockTransport``).

    Returns:
        HealthCheck; healthy only for a 200 response.
    """
    try:
        async with httpx.AsyncClient(transport=transport) as client:
            response = await client.get(url, timeout=timeout)
    except httpx.HTTPError as e:
        return HealthCheck(url=url, healthy=False, message=f"HTTP health check failed: {e}")

    if response.status_code == 200:
        return HealthCheck(
            url=url,
            healthy=True,
            status_code=200,
            message=f"HTTP health check passed at {url}",
        )
    return HealthCheck(
        url=url,
        healthy=False,
        status_code=response.status_code,
        message=f"HTTP health check returned {response.status_code}",
    )


class SupervisorRestarter:
    """
    Restarts the application through the process supervisor.

    Attributes:
        restart_command: Supervisor argv.
        health_url: Optional URL polled after the restart.
    """

    def __init__(
        self,
        restart_command: Sequence[str],
        project_root: Path | str | None = None,
        *,
        health_url: str | None = None,
        health_retries: int = 3,
        restart_delay_seconds: float = 5.0,
        health_timeout_seconds: float = 5.0,
        timeout: float = 60.0,
        runner: CommandRunner = run_command,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the SupervisorRestarter.

        Args:
            restart_command: Supervisor restart argv.
            project_root: Working directory for the restart command.
            health_url: URL that must answer 200 after the restart.
            health_retries: Number of health probe attempts.
            restart_delay_seconds: Delay before the first probe and between
                probes.
            health_timeout_seconds: Per-probe HTTP timeout.
            timeout: Timeout for the restart command.
            runner: Command runner.
            transport: Optional httpx transport for the probe.
            sleep: Awaitable sleep; injectable for tests.
        """
        self.restart_command = list(restart_command)
        self.project_root = Path(project_root) if project_root else None
        self.health_url = health_url
        self.health_retries = max(1, health_retries)
        self.restart_delay_seconds = restart_delay_seconds
        self.health_timeout_seconds = health_timeout_seconds
        self._timeout = timeout
        self._runner = runner
        self._transport = transport
        self._sleep = sleep

    async def restart(self) -> str:
        """
        Restart the application and wait until it is healthy.

        Returns:
            Human-readable summary for the run's step record.

        Raises:
            RestartFailedError: If the restart command fails or the health
                probe never passes.
        """
        logger.info(
            f"Restarting application: {' '.join(self.restart_command)}",
            extra={"command": self.restart_command},
        )

        try:
            result = await self._runner(
                *self.restart_command, cwd=self.project_root, timeout=self._timeout
            )
        except UnavailableError as e:
            raise RestartFailedError(
                f"Supervisor restart failed: {e.message}", details=e.details
            ) from e

        if not result.ok:
            logger.error(
                f"Supervisor restart failed: {result.output}",
                extra={"returncode": result.returncode},
            )
            raise RestartFailedError(
                f"Supervisor restart failed: {result.output}",
                details={"returncode": result.returncode, "command": self.restart_command},
            )

        if not self.health_url:
            return "Application restarted"

        await self.wait_until_healthy()
        return f"Application restarted and healthy at {self.health_url}"

    async def wait_until_healthy(self) -> HealthCheck:
        """
        Poll the health URL until it passes.

        Raises:
            RestartFailedError: If every attempt fails.
        """
        if not self.health_url:
            return HealthCheck(url="", healthy=True, message="No health URL")

        if self.restart_delay_seconds > 0:
            logger.debug(f"Waiting {self.restart_delay_seconds}s for application to start")
            await self._sleep(self.restart_delay_seconds)

        result = HealthCheck(url=self.health_url, healthy=False)
        for attempt in range(1, self.health_retries + 1):
            result = await check_http_health(
                self.health_url,
                timeout=self.health_timeout_seconds,
                transport=self._transport,
            )
            if result.healthy:
                logger.info("Post-restart health check passed", extra={"attempt": attempt})
                return result

            logger.warning(
                f"Health check attempt {attempt}/{self.health_retries} failed: {result.message}"
            )
            if attempt < self.health_retries:
                await self._sleep(self.restart_delay_seconds)

        raise RestartFailedError(
            f"Health checks failed after {self.health_retries} attempts: {result.message}",
            details={"health_url": self.health_url, "last_result": result.to_dict()},
        )
