"""
Hot reload admission.

Admission is a sequence of hard gates. The first four gates reject without
touching anything but the staging slot, so a rejected request leaves the
running server and the managed tree untouched:

1. Capability check (AuthorizationError)
2. Configuration policy (PolicyError)
3. Digest of the received bytes (IntegrityError)
4. Staging the bytes under the slot lease (PolicyError 409 if busy)
5. Full in-memory decode of the staged package (PackageCorruptError)
6. Spawning the relaunch supervisor (SpawnError)

Only after all gates pass does the server write the session log, hand the
slot to the supervisor and ask itself to shut down.
"""

from __future__ import annotations

import asyncio
import os
import sys
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Any, Protocol

from hotreload.digest import verify_digest
from hotreload.errors import HotReloadError, PolicyError
from hotreload.logging import get_logger, session_log
from hotreload.package import decode_package
from hotreload.process_utils import spawn_detached
from hotreload.relaunch.session import new_session_log_path
from hotreload.security.rbac import require_admin
from hotreload.staging import StagingSlot

if TYPE_CHECKING:
    from hotreload.config import AppConfig
    from hotreload.context import CallerInfo

logger = get_logger(__name__)

RELAUNCH_MODULE = "hotreload.relaunch"


class SpawnedProcess(Protocol):
    """What admission needs from a spawned supervisor."""

    pid: int


Spawner = Callable[..., SpawnedProcess]


@dataclass
class AdmissionResult:
    """Outcome of an admitted hot reload request."""

    log_file: Path
    file_count: int
    relaunch_pid: int
    digest: str
    test_mode: bool

    def to_response(self) -> dict[str, Any]:
        """Response body sent to the caller."""
        return {
            "ok": True,
            "logFile": str(self.log_file),
            "fileCount": self.file_count,
            "relaunchPid": self.relaunch_pid,
            "testMode": self.test_mode,
        }


class HotReloadAdmission:
    """
    Validates and admits hot reload requests for one server process.

    An in-process lock serializes admissions; the staging slot lease
    excludes other processes and sessions still in flight.

    Example:
        >>> admission = HotReloadAdmission(config)
        >>> result = await admission.admit(caller, body, digest, test_mode=False)
    """

    def __init__(
        self,
        config: AppConfig,
        *,
        spawner: Spawner | None = None,
        environ: Mapping[str, str] | None = None,
    ) -> None:
        """
        Initialize admission.

        Args:
            config: Application configuration.
            spawner: Detached process launcher (spawn_detached by default).
            environ: Environment for the supervisor (os.environ by default).
        """
        self._config = config
        self._spawner: Spawner = spawner or spawn_detached
        self._environ = environ
        hot_reload = config.hot_reload
        self._root = Path(hot_reload.app_root).resolve()
        self._slot = StagingSlot(hot_reload.resolve(hot_reload.staging_path))
        self._lock = asyncio.Lock()

    @property
    def slot(self) -> StagingSlot:
        """Get the staging slot."""
        return self._slot

    async def admit(
        self,
        caller: CallerInfo,
        body: bytes,
        declared_digest: str | None,
        *,
        test_mode: bool = False,
    ) -> AdmissionResult:
        """
        Run the admission gates and hand off to a relaunch supervisor.

        Args:
            caller: Authenticated caller.
            body: Raw package bytes.
            declared_digest: Digest from the request header.
            test_mode: Simulate write/install/build in the session.

        Returns:
            AdmissionResult for the response.

        Raises:
            HotReloadError: For any failed gate. Nothing was spawned.
        """
        require_admin(caller)

        if not self._config.hot_reload.enabled and not test_mode:
            raise PolicyError(
                "Hot reload is disabled by configuration",
                details={"hint": "Set hot_reload.enabled or use test mode"},
            )

        digest = verify_digest(body, declared_digest)

        async with self._lock:
            token = self._slot.acquire()
            try:
                staged = self._slot.write(token, body)
                entries = decode_package(staged.read_bytes())
                log_path = new_session_log_path(self._config.hot_reload)
                proc = self._spawn_supervisor(
                    caller, staged, digest, token, log_path, len(entries), len(body), test_mode
                )
                self._slot.transfer(token, proc.pid)
            except HotReloadError as e:
                logger.warning(
                    f"Hot reload rejected: {e.message}",
                    extra={"error_code": e.error_code, **caller.log_extra()},
                )
                self._abandon(token)
                raise
            except OSError as e:
                self._abandon(token)
                raise HotReloadError(
                    error_code="internal",
                    message=f"Could not stage package: {e}",
                    details={"staging_path": str(self._slot.staging_path)},
                ) from e

        logger.info(
            "Hot reload admitted",
            extra={
                "file_count": len(entries),
                "digest": digest,
                "relaunch_pid": proc.pid,
                "test_mode": test_mode,
                **caller.log_extra(),
            },
        )
        return AdmissionResult(
            log_file=log_path,
            file_count=len(entries),
            relaunch_pid=proc.pid,
            digest=digest,
            test_mode=test_mode,
        )

    def _spawn_supervisor(
        self,
        caller: CallerInfo,
        staged: Path,
        digest: str,
        token: str,
        log_path: Path,
        file_count: int,
        size: int,
        test_mode: bool,
    ) -> SpawnedProcess:
        argv = self.supervisor_argv(staged, digest, token, log_path, test_mode)

        with session_log(log_path):
            logger.info(
                f"Hot reload {'TEST ' if test_mode else ''}request accepted from "
                f"{caller.describe()}"
            )
            logger.info(f"Package: {file_count} files, {size} bytes, MD5 {digest}")
            logger.info(f"Spawning relaunch supervisor for server PID {os.getpid()}")
            try:
                proc = self._spawner(
                    argv,
                    cwd=self._root,
                    env=self._environ if self._environ is not None else os.environ,
                    output_path=log_path.with_suffix(".out"),
                )
            except HotReloadError as e:
                logger.error(f"Could not spawn relaunch supervisor: {e.message}")
                raise
            logger.info(f"Relaunch supervisor started (PID {proc.pid})")

        return proc

    def supervisor_argv(
        self,
        staged: Path,
        digest: str,
        token: str,
        log_path: Path,
        test_mode: bool,
    ) -> Sequence[str]:
        """Command line of the relaunch supervisor for one session."""
        argv = [
            sys.executable,
            "-m",
            RELAUNCH_MODULE,
            str(staged),
            f"--md5={digest}",
            f"--log={log_path}",
            f"--pid={os.getpid()}",
            f"--token={token}",
        ]
        if test_mode:
            argv.append("--test")
        if self._config.config_path:
            argv.append(f"--config={self._config.config_path}")
        return argv

    def _abandon(self, token: str) -> None:
        self._slot.discard()
        self._slot.release(token)
