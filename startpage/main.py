# SPDX-License-Identifier: GPL-3.0-only
# SPDX-FileCopyrightText: Copyright (c) 2026 The Startpage Authors

"""
Startpage Main Application

FastAPI application exposing the administrative update endpoints:

    GET  /api/admin/update/check    compare local and latest release
    POST /api/admin/update/pull     git pull
    POST /api/admin/update/deps     install dependencies
    POST /api/admin/update/restart  respawn the service
    POST /api/admin/update/full     pull + optional deps + optional restart
    GET  /api/admin/update/status   current executor stage

All of them require the root token.
"""

import logging
import os
import time
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException, Header, Depends, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from . import __version__
from .auth import AccessLevel, extract_token, resolve_access_level, warn_if_insecure_token
from .config import config, setup_logging
from .executor import (
    OperationResult,
    UpdateExecutor,
    get_update_executor,
    init_update_executor,
    shutdown_update_executor,
)
from .respawn import RESPAWN_ENV_VAR, set_shutdown_handler, wait_for_port_release
from .schemas import (
    FullUpdateRequest,
    HealthResponse,
    OperationResponse,
    StatusResponse,
    UpdateCheckData,
    UpdateCheckResponse,
)

# Setup logging
setup_logging(config.logging)
logger = logging.getLogger(__name__)

_started_at = time.time()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup and shutdown."""
    logger.info("Startpage %s starting up...", __version__)

    warn_if_insecure_token(config.server.root_token)
    if not config.server.root_token:
        logger.warning("server.root_token is not set, update endpoints are disabled")

    executor = await init_update_executor(config.update)
    logger.info("Managing deployment at %s", executor.deployment_dir)

    yield

    logger.info("Startpage shutting down...")
    await shutdown_update_executor()


app = FastAPI(
    title="Startpage Update Service",
    description="Self-update administration for the start page",
    version=__version__,
    lifespan=lifespan,
)


# =============================================================================
# AUTHENTICATION
# =============================================================================

async def get_access_level(
    authorization: Optional[str] = Header(None),
    x_api_key: Optional[str] = Header(None),
) -> AccessLevel:
    """
    Determine the access level for the current request.

    Checks both Authorization header and X-Api-Key header.
    """
    token = extract_token(authorization, x_api_key)
    return resolve_access_level(token, config.server.root_token, config.server.api_key)


async def require_root(level: AccessLevel = Depends(get_access_level)) -> AccessLevel:
    """Dependency that only admits the root operator."""
    if not config.server.root_token:
        raise HTTPException(
            status_code=503,
            detail="Update administration is disabled: server.root_token is not configured",
        )

    if level == AccessLevel.ANONYMOUS:
        raise HTTPException(
            status_code=401,
            detail="Authentication required. Use 'Authorization: Bearer <token>' header.",
        )

    if level != AccessLevel.ROOT:
        raise HTTPException(
            status_code=403,
            detail="Insufficient permissions. Requires root access.",
        )

    return level


def get_executor() -> UpdateExecutor:
    """Dependency returning the running UpdateExecutor."""
    executor = get_update_executor()
    if executor is None:
        raise HTTPException(status_code=503, detail="Service not ready")
    return executor


# =============================================================================
# ERROR HANDLERS
# =============================================================================

@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    """Handle HTTP exceptions, including routing 404/405, with the API error envelope."""
    return JSONResponse(
        status_code=exc.status_code,
        content={
            "ok": False,
            "message": exc.detail,
            "error": {
                "type": "api_error",
                "code": str(exc.status_code),
            },
        },
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """Handle invalid request bodies and parameters with the API error envelope."""
    problems = []
    for error in exc.errors():
        location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
        problems.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
    return JSONResponse(
        status_code=422,
        content={
            "ok": False,
            "message": "Invalid request: " + "; ".join(problems),
            "error": {
                "type": "validation_error",
                "code": "422",
            },
        },
    )


@app.exception_handler(Exception)
async def general_exception_handler(request: Request, exc: Exception):
    """Handle unexpected exceptions."""
    logger.exception("Unexpected error: %s", exc)
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "message": "Internal server error",
            "error": {
                "type": "internal_error",
                "code": "500",
            },
        },
    )


def _operation_response(result: OperationResult) -> JSONResponse:
    body = OperationResponse.from_result(result)
    return JSONResponse(
        status_code=result.status_code if not result.ok else 200,
        content=body.model_dump(exclude_none=True),
    )


# =============================================================================
# ENDPOINTS
# =============================================================================

@app.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Health check endpoint.

    Polled by the dashboard after a restart to find out when the
    replacement process is serving.
    """
    executor = get_update_executor()
    return HealthResponse(
        status="ok",
        version=__version__,
        uptime=round(time.time() - _started_at, 3),
        restart_pending=executor.status.restart_pending if executor else False,
    )


@app.get("/api/admin/update/check")
async def check_update(
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """
    Check for a newer release.

    Returns local and latest versions and, when an update exists, what it
    requires (dependency install, restart, migration).
    """
    try:
        plan = await executor.check()
    except Exception as e:
        logger.exception("Update check failed: %s", e)
        return _operation_response(OperationResult.failure("Update check failed"))

    body = UpdateCheckResponse(data=UpdateCheckData.from_plan(plan))
    return JSONResponse(content=body.model_dump(by_alias=True))


@app.post("/api/admin/update/pull")
async def pull_update(
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """Pull the latest code. Fails with 400 when git is unavailable."""
    return _operation_response(await executor.pull())


@app.post("/api/admin/update/deps")
async def install_dependencies(
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """Install backend and frontend dependencies."""
    return _operation_response(await executor.install_dependencies())


@app.post("/api/admin/update/restart")
async def restart_service(
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """
    Restart the service.

    Responds immediately; the replacement process is launched after a short
    delay and this process then exits.
    """
    return _operation_response(await executor.restart())


@app.post("/api/admin/update/full")
async def full_update(
    body: Optional[FullUpdateRequest] = None,
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """
    Pull, then install dependencies and restart as requested.

    Example body:
        {"needsDeps": true, "needsRestart": true}
    """
    body = body or FullUpdateRequest()
    result = await executor.full_update(
        needs_deps=body.needs_deps,
        needs_restart=body.needs_restart,
    )
    return _operation_response(result)


@app.get("/api/admin/update/status", response_model=StatusResponse)
async def update_status(
    access: AccessLevel = Depends(require_root),
    executor: UpdateExecutor = Depends(get_executor),
):
    """Report the executor's current stage and last check."""
    return StatusResponse(data=executor.status.to_dict())


# =============================================================================
# MAIN ENTRY POINT
# =============================================================================

def run() -> None:
    """Run the service with uvicorn."""
    import uvicorn

    if os.environ.get(RESPAWN_ENV_VAR):
        # The process that launched us may still hold the port
        logger.info("Respawned, waiting for %s:%d", config.server.host, config.server.port)
        wait_for_port_release(config.server.host, config.server.port, timeout=config.update.handoff_timeout)

    server = uvicorn.Server(uvicorn.Config(
        app,
        host=config.server.host,
        port=config.server.port,
        log_level=config.logging.level.lower(),
    ))

    def stop_server() -> None:
        server.should_exit = True

    set_shutdown_handler(stop_server)
    try:
        server.run()
    finally:
        set_shutdown_handler(None)


if __name__ == "__main__":
    run()
