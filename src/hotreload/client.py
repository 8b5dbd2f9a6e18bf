"""
Push client for the hot reload protocol.

HotReloadClient talks to a running server (and, during the restart gap, to
the relaunch supervisor's diagnostic listener). The ``hotreload-deploy``
command builds a package from a source tree, pushes it, waits for the new
server to answer its health probe, then reports the session log's signal
lines.
"""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from hotreload.config import load_config
from hotreload.digest import DIGEST_HEADER, compute_digest
from hotreload.errors import HotReloadError
from hotreload.logging import get_logger, setup_logging, summarize_log
from hotreload.package import DeploymentPackage, InclusionPolicy, PackageBuilder

logger = get_logger(__name__)

PING_PATH = "/ping"
PING_RESPONSE = "pong"
HOT_RELOAD_PATH = "/admin/hot-reload"
STATUS_PATH = "/api/admin/hot-reload-status"

TOKEN_ENV_VAR = "HOTRELOAD_DEPLOY_TOKEN"


@dataclass
class PushResult:
    """Server response to an admitted package."""

    log_file: str | None
    file_count: int
    relaunch_pid: int | None
    test_mode: bool


@dataclass
class WaitResult:
    """Outcome of waiting for a relaunched server."""

    back: bool
    elapsed_seconds: float
    last_status: str | None = None


def error_from_response(response: httpx.Response) -> HotReloadError:
    """Rebuild a server-side error from an ``{ok: false}`` response."""
    try:
        body: dict[str, Any] = response.json()
    except ValueError:
        body = {"error": response.text.strip() or response.reason_phrase}
    return HotReloadError(
        error_code=body.get("code", "unknown"),
        message=body.get("error", f"HTTP {response.status_code}"),
        details={"status_code": response.status_code},
        status_code=response.status_code,
    )


class HotReloadClient:
    """
    Async client for a hot reload server.

    Example:
        >>> async with HotReloadClient("http://host:8080", token="s3cret") as client:
        ...     result = await client.push(package)
        ...     await client.wait_until_back(timeout=120)
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """
        Initialize the client.

        Args:
            base_url: Server base URL.
            token: Bearer token for authenticated routes.
            timeout: Per-request timeout in seconds.
            transport: Optional transport (tests use httpx.ASGITransport).
        """
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url,
            headers=headers,
            timeout=timeout,
            transport=transport,
        )

    async def __aenter__(self) -> HotReloadClient:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        """Close the underlying HTTP client."""
        await self._http.aclose()

    async def push(
        self,
        package: DeploymentPackage | bytes,
        *,
        test: bool = False,
    ) -> PushResult:
        """
        Send a package for admission.

        Args:
            package: Built package or raw package bytes.
            test: Request a test-mode session.

        Returns:
            PushResult from the server.

        Raises:
            HotReloadError: If the server rejected the package.
            httpx.HTTPError: On transport failure.
        """
        data = package.data if isinstance(package, DeploymentPackage) else package
        response = await self._http.post(
            HOT_RELOAD_PATH,
            params={"test": "true"} if test else None,
            content=data,
            headers={
                "Content-Type": "application/octet-stream",
                DIGEST_HEADER: compute_digest(data),
            },
        )

        if response.status_code >= 400:
            raise error_from_response(response)

        body = response.json()
        if not body.get("ok"):
            raise error_from_response(response)

        return PushResult(
            log_file=body.get("logFile"),
            file_count=int(body.get("fileCount", 0)),
            relaunch_pid=body.get("relaunchPid"),
            test_mode=bool(body.get("testMode", test)),
        )

    async def status(self) -> str:
        """
        Fetch the current session log.

        The first line names the responder: ``[SERVER]`` or ``[RELAUNCH]``.
        The diagnostic listener answers with 200 as well.
        """
        response = await self._http.get(STATUS_PATH)
        if response.status_code >= 400:
            raise error_from_response(response)
        return response.text

    async def ping(self) -> bool:
        """True if the application server answers its health probe."""
        try:
            response = await self._http.get(PING_PATH)
        except httpx.HTTPError:
            return False
        return response.status_code == 200 and response.text.strip() == PING_RESPONSE

    async def wait_until_back(
        self,
        timeout: float = 120.0,
        poll_interval: float = 5.0,
        initial_delay: float = 0.0,
    ) -> WaitResult:
        """
        Poll until the server answers ``pong`` again.

        While waiting, the status route is polled too so the latest
        progress log is kept, whichever process serves it.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        last_status: str | None = None

        if initial_delay > 0:
            await asyncio.sleep(initial_delay)

        while True:
            elapsed = loop.time() - started
            if await self.ping():
                logger.info(f"Server is back after {elapsed:.1f}s")
                return WaitResult(back=True, elapsed_seconds=elapsed, last_status=last_status)

            try:
                last_status = await self.status()
            except (httpx.HTTPError, HotReloadError) as e:
                logger.debug(f"Status not available yet: {e}")

            if elapsed >= timeout:
                return WaitResult(back=False, elapsed_seconds=elapsed, last_status=last_status)

            logger.info(f"{elapsed:.0f}s waiting for server...")
            await asyncio.sleep(poll_interval)

    async def wait_for_outcome(
        self,
        timeout: float = 30.0,
        poll_interval: float = 1.0,
    ) -> str | None:
        """
        Poll the status route until the session log records its outcome.

        The new server answers ``pong`` before the supervisor writes its last
        lines, so the log fetched right after the restart can be incomplete.

        Returns:
            The last log text fetched, finished or not; None if the status
            route never answered.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        text: str | None = None

        while True:
            try:
                text = await self.status()
            except (httpx.HTTPError, HotReloadError) as e:
                logger.debug(f"Status not available: {e}")
            else:
                if summarize_log(text).finished:
                    return text

            if loop.time() >= deadline:
                return text
            await asyncio.sleep(poll_interval)


# =============================================================================
# hotreload-deploy
# =============================================================================


def _parse_args(argv: list[str] | None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="hotreload-deploy",
        description="Build a deployment package and hot reload it onto a server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("url", help="Server base URL, e.g. http://host:8080")
    parser.add_argument("--source", default=".", help="Source tree to package")
    parser.add_argument("--config", "-c", help="Configuration file with the package policy")
    parser.add_argument(
        "--token",
        default=os.environ.get(TOKEN_ENV_VAR),
        help=f"Bearer token (defaults to ${TOKEN_ENV_VAR})",
    )
    parser.add_argument("--test", action="store_true", help="Run a test-mode session")
    parser.add_argument("--timeout", type=float, default=120.0, help="Restart wait bound")
    parser.add_argument("--poll-interval", type=float, default=10.0, help="Restart poll interval")
    parser.add_argument(
        "--shutdown-delay", type=float, default=5.0, help="Delay before the first poll"
    )
    parser.add_argument(
        "--settle-timeout",
        type=float,
        default=30.0,
        help="How long to wait for the relaunch log to record its outcome",
    )
    parser.add_argument("--verbose", "-v", action="store_true", help="Debug logging")
    return parser.parse_args(argv)


async def deploy(args: argparse.Namespace) -> int:
    """Build, push and follow one hot reload. Returns a process exit status."""
    config = load_config(args.config, cli_args=[])
    source_root = Path(args.source)
    builder = PackageBuilder(InclusionPolicy.from_config(config.package))

    package = builder.build(source_root)
    builder.write(package, source_root / config.package.output_path)
    logger.info(
        f"Built package: {package.file_count} files, {len(package.data) / 1024:.1f} KB, "
        f"MD5 {package.digest}"
    )

    async with HotReloadClient(args.url, token=args.token) as client:
        result = await client.push(package, test=args.test)
        logger.info(
            f"Hot reload {'TEST ' if args.test else ''}admitted "
            f"(relaunch PID: {result.relaunch_pid}, {result.file_count} files)"
        )
        if result.log_file:
            logger.info(f"Relaunch log: {result.log_file}")

        if args.test:
            logger.info("Test mode: check the relaunch log for the file list")
            return 0

        waited = await client.wait_until_back(
            timeout=args.timeout,
            poll_interval=args.poll_interval,
            initial_delay=args.shutdown_delay,
        )
        log_text = waited.last_status
        if waited.back:
            log_text = (
                await client.wait_for_outcome(
                    timeout=args.settle_timeout, poll_interval=args.poll_interval
                )
                or log_text
            )
            if log_text is None:
                logger.warning("Could not fetch the relaunch log")

    signals = summarize_log(log_text or "")
    if waited.back and log_text is not None and not signals.finished:
        logger.warning("Relaunch log has no final outcome yet; reporting what it holds")
    for line in signals.warnings:
        logger.warning(line)
    for line in signals.errors:
        logger.error(line)

    if not waited.back:
        logger.error(f"Timeout waiting for server to restart after {waited.elapsed_seconds:.0f}s")
        return 1
    if not signals.ok:
        logger.error("Server restarted but the relaunch log reports errors")
        return 1

    logger.info("Hot reload complete")
    return 0


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``hotreload-deploy``."""
    args = _parse_args(argv)
    setup_logging(level="DEBUG" if args.verbose else "INFO", json_format=False)
    try:
        return asyncio.run(deploy(args))
    except HotReloadError as e:
        logger.error(f"{e.error_code}: {e.message}")
        return 1
    except httpx.HTTPError as e:
        logger.error(f"Request failed: {e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
