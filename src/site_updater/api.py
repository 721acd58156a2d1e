"""
HTTP API for the site updater.

All routes live under ``/api/admin/update`` and answer JSON. Domain errors
raised by the core are UpdaterError instances; a single exception handler
turns them into ``{"error": {error_code, message, details}}`` with a status
code derived from the error code.

Updates and rollbacks are fire-and-forget: the lock and the RUNNING log entry
are created before the response, so a concurrent trigger gets 409
immediately, and the remaining steps run as a background task.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import APIRouter, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from site_updater import __version__
from site_updater.config import AppConfig
from site_updater.errors import InvalidArgumentError, UpdaterError
from site_updater.logging import get_logger
from site_updater.updates.executor import UpdateExecutor, UpdateRequest
from site_updater.updates.status import StatusReporter
from site_updater.updates.storage import (
    DEFAULT_PAGE_LIMIT,
    Page,
    clamp_pagination,
)

logger = get_logger(__name__)

API_PREFIX = "/api/admin/update"

# HTTP status per error code; anything unlisted is a 500
ERROR_STATUS_CODES: dict[str, int] = {
    "invalid_argument": 400,
    "not_found": 404,
    "concurrent_update_in_progress": 409,
    "failed_precondition": 412,
    "prerequisite_missing": 412,
    "invalid_ref": 422,
    "remote_unreachable": 503,
    "unavailable": 503,
}


def status_code_for(error: UpdaterError) -> int:
    """Map an UpdaterError to its HTTP status code."""
    return ERROR_STATUS_CODES.get(error.error_code, 500)


def error_response(error: UpdaterError) -> JSONResponse:
    """Render an UpdaterError as the structured error body."""
    return JSONResponse(status_code=status_code_for(error), content={"error": error.to_dict()})


# =============================================================================
# Request bodies
# =============================================================================


class CheckBody(BaseModel):
    """Body of ``POST /check``; omitted fields use configured defaults."""

    repo_url: str | None = Field(default=None)
    branch: str | None = Field(default=None)


class RollbackBody(BaseModel):
    """Body of ``POST /rollback``."""

    backup_id: str = Field(min_length=1)
    triggered_by: str = Field(default="operator")


# =============================================================================
# Routes
# =============================================================================

router = APIRouter(prefix=API_PREFIX, tags=["update"])


def _executor(request: Request) -> UpdateExecutor:
    return request.app.state.executor


def _reporter(request: Request) -> StatusReporter:
    return request.app.state.reporter


@router.get("/health")
async def health() -> dict[str, str]:
    """Liveness probe; also the default post-restart health target."""
    return {"status": "ok"}


@router.get("/status")
async def get_status(request: Request) -> dict[str, Any]:
    """Current version, prerequisites, lock and latest run. Never errors."""
    return {"data": await _reporter(request).get_status()}


@router.post("/check")
async def check_remote(request: Request, body: CheckBody) -> dict[str, Any]:
    """Fetch the remote branch and list the commits not yet deployed."""
    executor = _executor(request)
    diff = await executor.remote.check(
        body.repo_url or executor.repo_url,
        body.branch or executor.branch,
    )
    return {"data": diff.to_dict()}


async def _page_or_empty(
    label: str,
    page: int,
    limit: int,
    fetch: Any,
) -> dict[str, Any]:
    page, limit = clamp_pagination(page, limit)
    try:
        result: Page = await fetch(page=page, limit=limit)
    except UpdaterError as e:
        logger.error(
            f"Failed to list {label}: {e.message}",
            extra={"page": page, "limit": limit},
        )
        result = Page(items=[], total=0, page=page, limit=limit)
    return result.to_dict()


@router.get("/log")
async def list_log(
    request: Request,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> dict[str, Any]:
    """Update log entries, newest first."""
    return await _page_or_empty("update log", page, limit, _executor(request).store.list_logs)


@router.get("/backups")
async def list_backups(
    request: Request,
    page: int = 1,
    limit: int = DEFAULT_PAGE_LIMIT,
) -> dict[str, Any]:
    """Backup catalog, newest first, with live artifact presence flags."""
    return await _page_or_empty(
        "backups", page, limit, _executor(request).backups.list_backups
    )


@router.post("/execute", status_code=202)
async def execute_update(
    request: Request,
    body: UpdateRequest | None = None,
) -> dict[str, Any]:
    """Start an update; 409 if one is already running."""
    run = await _executor(request).start_in_background(body or UpdateRequest())
    return {"data": run.to_dict()}


@router.post("/rollback", status_code=202)
async def rollback(request: Request, body: RollbackBody) -> dict[str, Any]:
    """Restore a backup; 404 for an unknown backup, 409 if a run is active."""
    run = await _executor(request).start_rollback_in_background(
        body.backup_id, triggered_by=body.triggered_by
    )
    return {"data": run.to_dict()}


# =============================================================================
# Application factory
# =============================================================================


async def _updater_error_handler(request: Request, exc: UpdaterError) -> JSONResponse:
    logger.info(
        f"Request failed: {exc.error_code}: {exc.message}",
        extra={"path": request.url.path, "error_code": exc.error_code},
    )
    return error_response(exc)


async def _validation_error_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    error = InvalidArgumentError(
        "Request validation failed",
        details={"errors": [
            {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")}
            for err in exc.errors()
        ]},
    )
    return error_response(error)


def create_app(config: AppConfig, executor: UpdateExecutor | None = None) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        config: Application configuration.
        executor: Pre-built executor; wired from ``config`` if omitted.

    Returns:
        The configured FastAPI app.
    """
    executor = executor or UpdateExecutor.from_config(config)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        try:
            await executor.store.initialize()
            await executor.locks.clean_stale()
        except UpdaterError as e:
            logger.error(f"Update store unavailable at startup: {e.message}")
        yield
        await executor.wait_for_background_runs()
        await executor.store.close()

    app = FastAPI(title="Site Updater", version=__version__, lifespan=lifespan)
    app.state.config = config
    app.state.executor = executor
    app.state.reporter = StatusReporter(executor)

    app.add_exception_handler(UpdaterError, _updater_error_handler)
    app.add_exception_handler(RequestValidationError, _validation_error_handler)
    app.include_router(router)
    return app
