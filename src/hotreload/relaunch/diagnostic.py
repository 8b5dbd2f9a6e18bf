"""
Diagnostic listener for the restart gap.

While no application server holds the port, the relaunch supervisor serves
its session log here so operators can follow progress. Exactly one route is
informational; every other path answers 503 with a fixed advisory.
"""

from __future__ import annotations

import asyncio
import errno
import socket
from pathlib import Path

import uvicorn
from fastapi import FastAPI
from fastapi.responses import PlainTextResponse

from hotreload.logging import get_logger
from hotreload.relaunch.session import read_session_log

logger = get_logger(__name__)

STATUS_PATH = "/api/admin/hot-reload-status"
SOURCE_PREFIX = "[RELAUNCH]\n"
RESTARTING_MESSAGE = (
    f"{SOURCE_PREFIX}Server is restarting. Check {STATUS_PATH} for progress.\n"
)

_ALL_METHODS = ["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"]

# How often start() checks whether uvicorn finished starting
_STARTUP_POLL_SECONDS = 0.01


def create_diagnostic_app(log_path: Path) -> FastAPI:
    """Build the diagnostic ASGI application for one session log."""
    app = FastAPI(
        title="hotreload diagnostics",
        docs_url=None,
        redoc_url=None,
        openapi_url=None,
    )

    @app.get(STATUS_PATH)
    async def hot_reload_status() -> PlainTextResponse:
        return PlainTextResponse(SOURCE_PREFIX + read_session_log(log_path))

    @app.api_route("/{path:path}", methods=_ALL_METHODS)
    async def restarting(path: str) -> PlainTextResponse:
        return PlainTextResponse(RESTARTING_MESSAGE, status_code=503)

    return app


class DiagnosticListener:
    """
    Owns the diagnostic HTTP server of a relaunch supervisor.

    Binding failures (privileged port, port in use) are logged as warnings
    and leave the listener stopped; they never raise.

    Example:
        >>> listener = DiagnosticListener(log_path, port=8080)
        >>> await listener.start()
        >>> ...
        >>> await listener.stop()
    """

    def __init__(
        self,
        log_path: Path,
        host: str = "0.0.0.0",
        port: int = 80,
        close_grace_seconds: float = 2.0,
    ) -> None:
        """
        Initialize the listener.

        Args:
            log_path: Session log served on the status route.
            host: Bind address.
            port: Bind port (0 picks an ephemeral port).
            close_grace_seconds: Time lingering connections get on stop.
        """
        self._log_path = log_path
        self._host = host
        self._port = port
        self._close_grace_seconds = close_grace_seconds
        self._server: uvicorn.Server | None = None
        self._task: asyncio.Task[None] | None = None
        self._socket: socket.socket | None = None

    @property
    def is_running(self) -> bool:
        """True while the server task is alive."""
        return self._task is not None and not self._task.done()

    @property
    def bound_port(self) -> int | None:
        """The port actually bound, or None when stopped."""
        if self._socket is None or not self.is_running:
            return None
        return self._socket.getsockname()[1]

    async def start(self) -> bool:
        """
        Bind and start serving.

        Returns:
            True if the listener is running, False if it could not bind.
        """
        if self.is_running:
            return True

        try:
            sock = socket.create_server((self._host, self._port))
        except OSError as e:
            reason = errno.errorcode.get(e.errno, type(e).__name__) if e.errno else type(e).__name__
            logger.warning(
                f"Could not start diagnostic listener on port {self._port}: {reason}",
                extra={"host": self._host, "port": self._port},
            )
            return False

        config = uvicorn.Config(
            create_diagnostic_app(self._log_path),
            log_config=None,
            access_log=False,
            lifespan="off",
            timeout_graceful_shutdown=max(1, round(self._close_grace_seconds)),
        )
        server = uvicorn.Server(config)
        task = asyncio.create_task(server.serve(sockets=[sock]))

        while not server.started and not task.done():
            await asyncio.sleep(_STARTUP_POLL_SECONDS)

        if task.done():
            sock.close()
            error = task.exception()
            logger.warning(f"Diagnostic listener failed to start: {error}")
            return False

        self._server = server
        self._task = task
        self._socket = sock
        logger.info(f"Diagnostic listener serving on port {sock.getsockname()[1]}")
        return True

    async def stop(self) -> None:
        """
        Stop serving and free the port.

        Lingering connections get the grace period, then are closed.
        """
        if self._server is None or self._task is None:
            return

        logger.info("Stopping diagnostic listener")
        self._server.should_exit = True
        try:
            await asyncio.wait_for(
                asyncio.shield(self._task),
                timeout=self._close_grace_seconds + 1.0,
            )
        except TimeoutError:
            self._server.force_exit = True
            await self._task
        finally:
            if self._socket is not None:
                self._socket.close()
            self._server = None
            self._task = None
            self._socket = None

        logger.info("Diagnostic listener stopped")
