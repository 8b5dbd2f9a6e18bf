"""FastAPI application for a hot reload capable server."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Callable
from contextlib import asynccontextmanager
from typing import Annotated

from fastapi import BackgroundTasks, Depends, FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from hotreload import __version__
from hotreload.config import AppConfig
from hotreload.context import CallerInfo
from hotreload.digest import DIGEST_HEADER
from hotreload.errors import HotReloadError
from hotreload.logging import get_logger
from hotreload.process_utils import remove_pid_file, write_pid_file
from hotreload.relaunch.session import (
    latest_session_log,
    load_session,
    read_session_log,
    state_path_for,
)
from hotreload.security.auth import AuthProvider
from hotreload.security.rbac import require_role
from hotreload.server.admission import HotReloadAdmission

logger = get_logger(__name__)

SOURCE_PREFIX = "[SERVER]\n"


def _report_previous_session(config: AppConfig) -> None:
    log_path = latest_session_log(config.hot_reload.resolve(config.hot_reload.log_dir))
    if log_path is None:
        return
    previous = load_session(state_path_for(log_path))
    if previous is None:
        return
    logger.info(
        f"Latest relaunch session is in state {previous.state.value}",
        extra={
            "log_path": str(log_path),
            "error_code": previous.error_code,
            "files_written": previous.written_count,
        },
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Record this process as the running server generation."""
    config: AppConfig = app.state.config
    pid_path = config.hot_reload.resolve(config.server.pid_file)
    pid = write_pid_file(pid_path)
    logger.info(
        f"Server starting (PID {pid})",
        extra={"version": __version__, "port": config.server.port},
    )

    _report_previous_session(config)

    yield

    remove_pid_file(pid_path, pid)
    logger.info("Server stopped")


async def get_caller(request: Request) -> CallerInfo:
    """Authenticate the request."""
    auth: AuthProvider = request.app.state.auth
    client = request.client
    return auth.authenticate(request.headers, ip_address=client.host if client else None)


Caller = Annotated[CallerInfo, Depends(get_caller)]


def _request_shutdown(app: FastAPI) -> None:
    hook: Callable[[], None] | None = app.state.shutdown_hook
    if hook is None:
        logger.warning("No shutdown hook installed; server keeps running")
        return
    logger.info("Shutting down for relaunch")
    hook()


async def _hot_reload_error_handler(request: Request, exc: HotReloadError) -> JSONResponse:
    return JSONResponse(
        status_code=exc.status_code,
        content={"ok": False, "error": exc.message, "code": exc.error_code},
    )


async def _unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(
        "Unexpected error processing request",
        extra={"path": request.url.path, "error": str(exc)},
    )
    return JSONResponse(
        status_code=500,
        content={
            "ok": False,
            "error": f"Internal server error: {type(exc).__name__}",
            "code": "internal",
        },
    )


def create_app(
    config: AppConfig | None = None,
    *,
    admission: HotReloadAdmission | None = None,
    auth: AuthProvider | None = None,
    shutdown_hook: Callable[[], None] | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    Args:
        config: Application configuration (defaults when omitted).
        admission: Admission controller (built from config when omitted).
        auth: Authentication provider (built from config when omitted).
        shutdown_hook: Called after an admission response has been sent to
            make the hosting server exit gracefully.
    """
    config = config or AppConfig()

    app = FastAPI(
        title="hotreload",
        description="Hot reload capable application server",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.config = config
    app.state.auth = auth or AuthProvider.from_config(config.security)
    app.state.admission = admission or HotReloadAdmission(config)
    app.state.shutdown_hook = shutdown_hook

    app.add_exception_handler(HotReloadError, _hot_reload_error_handler)
    app.add_exception_handler(Exception, _unexpected_error_handler)

    @app.get("/ping", response_class=PlainTextResponse)
    async def ping() -> str:
        """Health probe."""
        return "pong"

    @app.get("/version")
    async def version() -> dict[str, str]:
        """Code version marker of this server generation."""
        return {"version": __version__}

    @app.post("/admin/hot-reload")
    async def hot_reload(
        request: Request,
        caller: Caller,
        background_tasks: BackgroundTasks,
        test: bool = False,
    ) -> JSONResponse:
        """Admit a package and hand off to a relaunch supervisor."""
        admission: HotReloadAdmission = request.app.state.admission
        body = await request.body()
        result = await admission.admit(
            caller,
            body,
            request.headers.get(DIGEST_HEADER),
            test_mode=test,
        )
        background_tasks.add_task(_request_shutdown, request.app)
        return JSONResponse(result.to_response())

    async def hot_reload_status(request: Request, caller: Caller) -> PlainTextResponse:
        """Most recent session log, as reported by the running server."""
        require_role(caller, "viewer", "view hot reload status")
        hot_reload_config = request.app.state.config.hot_reload
        log_path = latest_session_log(hot_reload_config.resolve(hot_reload_config.log_dir))
        return PlainTextResponse(SOURCE_PREFIX + read_session_log(log_path))

    app.add_api_route("/admin/hot-reload-status", hot_reload_status, methods=["GET"])
    app.add_api_route("/api/admin/hot-reload-status", hot_reload_status, methods=["GET"])

    return app
