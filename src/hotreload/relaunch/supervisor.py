"""
Relaunch supervisor.

The supervisor is a detached process spawned by the admitting server. It
waits for that server to exit, then validates, materializes, installs,
builds and relaunches. Every failure is routed by one bit,
``app_directory_modified``:

- Before the first file write (safe): restart the unchanged server and
  exit 1.
- After it (unsafe): start no server; keep the diagnostic listener up and
  wait for an operator, forever.

A relaunch whose spawn fails also waits for an operator, whatever the bit
says, since no server is running at all.

CRITICAL: run() never lets an exception escape. Its only outcomes are an
exit status or an indefinite wait.
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Callable, Mapping, Sequence
from datetime import UTC, datetime
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from hotreload.client import HotReloadClient
from hotreload.config import expand_command
from hotreload.digest import verify_digest
from hotreload.errors import (
    BuildError,
    DependencyInstallError,
    HotReloadError,
    PackageCorruptError,
    ShutdownTimeoutError,
    SpawnError,
    WriteError,
)
from hotreload.logging import COMPLETE_MARKER, SAFE_FAILURE_MARKER, get_logger
from hotreload.operations import resolve_destination, write_file_verified
from hotreload.package import PackageEntry, decode_package
from hotreload.process_utils import (
    CommandResult,
    read_pid_file,
    run_command,
    spawn_detached,
    wait_for_exit,
)
from hotreload.relaunch.diagnostic import STATUS_PATH, DiagnosticListener
from hotreload.relaunch.session import RelaunchSession, SessionState, SessionTracker
from hotreload.staging import StagingSlot

if TYPE_CHECKING:
    from hotreload.config import AppConfig

logger = get_logger(__name__)

EXIT_SUCCESS = 0
EXIT_FAILURE = 1

BANNER = "=" * 60
TEST_PREFIX = "[TEST]"

# Interval between readiness probes of a relaunched server
READY_POLL_SECONDS = 0.5


class Listener(Protocol):
    """What the supervisor needs from a diagnostic listener."""

    @property
    def is_running(self) -> bool: ...

    async def start(self) -> bool: ...

    async def stop(self) -> None: ...


class ServerProcess(Protocol):
    """What the supervisor needs from a spawned server."""

    pid: int

    def poll(self) -> int | None: ...


Launcher = Callable[..., ServerProcess]


def _probe_host(host: str) -> str:
    if host in ("", "0.0.0.0", "::"):
        return "127.0.0.1"
    return host


class RelaunchSupervisor:
    """
    Drives one relaunch session to an exit status or an operator wait.

    Attributes:
        config: Application configuration shared with the server.
        tracker: Session tracker holding state and the modification bit.
    """

    def __init__(
        self,
        config: AppConfig,
        session: RelaunchSession,
        *,
        slot_token: str | None = None,
        listener: Listener | None = None,
        launcher: Launcher | None = None,
        runner: Callable[..., object] | None = None,
        probe_client: HotReloadClient | None = None,
        environ: Mapping[str, str] | None = None,
        persist_state: bool = True,
    ) -> None:
        """
        Initialize the supervisor.

        Args:
            config: Application configuration.
            session: Session created from the command line.
            slot_token: Staging slot lease handed over by the server.
            listener: Diagnostic listener (built from config when omitted).
            launcher: Detached process launcher (spawn_detached by default).
            runner: Install/build command runner (run_command by default).
            probe_client: Client used for the readiness probe.
            environ: Environment for the relaunched server (os.environ by default).
            persist_state: Write the session state file on transitions.
        """
        self.config = config
        self.tracker = SessionTracker(session, persist=persist_state)
        hot_reload = config.hot_reload
        self._root = Path(hot_reload.app_root).resolve()
        self._slot = StagingSlot(hot_reload.resolve(hot_reload.staging_path))
        self._slot_token = slot_token
        self._diagnostic_port = (
            hot_reload.diagnostic_port
            if hot_reload.diagnostic_port is not None
            else config.server.port
        )
        self._listener: Listener = listener or DiagnosticListener(
            Path(session.log_path),
            host=hot_reload.diagnostic_host,
            port=self._diagnostic_port,
            close_grace_seconds=hot_reload.diagnostic_close_grace_seconds,
        )
        self._launcher: Launcher = launcher or spawn_detached
        self._runner = runner or run_command
        self._probe_client = probe_client
        self._environ = environ
        self._operator = asyncio.Event()

    @property
    def session(self) -> RelaunchSession:
        """Get the session."""
        return self.tracker.session

    @property
    def test_mode(self) -> bool:
        """True when write, install and build are simulated."""
        return self.session.is_test_mode

    @property
    def diagnostic_port(self) -> int:
        """Port the diagnostic listener binds while the server is down."""
        return self._diagnostic_port

    # =========================================================================
    # Entry point
    # =========================================================================

    async def run(self) -> int:
        """
        Run the session.

        Returns:
            0 on success, 1 on any failure that exits. Unsafe failures and
            failed spawns never return.
        """
        self._log_banner(
            f"{TEST_PREFIX} RELAUNCH SESSION STARTED (TEST MODE)"
            if self.test_mode
            else "RELAUNCH SESSION STARTED"
        )
        logger.info(f"Package: {self.session.package_path}")
        logger.info(f"App root: {self._root}")

        try:
            self.tracker.transition_to(SessionState.AWAIT_SHUTDOWN)
            await self._await_shutdown()
        except ShutdownTimeoutError as e:
            logger.error(f"{e.message}; nothing was changed")
            self.tracker.transition_to(SessionState.FATAL_NO_SHUTDOWN, error=e)
            self._release_slot()
            return EXIT_FAILURE

        await self._start_listener()

        try:
            self.tracker.transition_to(SessionState.VALIDATE)
            entries = self._validate()

            self.tracker.transition_to(SessionState.DIFF_CHECK)
            needs_install = self._diff_check(entries)

            self.tracker.transition_to(SessionState.WRITE)
            self._write(entries)

            if needs_install:
                self.tracker.transition_to(SessionState.INSTALL)
                await self._run_step(
                    "install",
                    self.config.hot_reload.install_command,
                    DependencyInstallError,
                )

            self.tracker.transition_to(SessionState.BUILD)
            await self._run_step("build", self.config.hot_reload.build_command, BuildError)
        except Exception as e:
            return await self._fail(e)

        self.tracker.transition_to(SessionState.RELAUNCH)
        await self._launch()
        return self._complete()

    # =========================================================================
    # States
    # =========================================================================

    async def _await_shutdown(self) -> None:
        hot_reload = self.config.hot_reload
        pid = self.session.server_pid
        if pid is None:
            pid = read_pid_file(hot_reload.resolve(self.config.server.pid_file))
            self.session.server_pid = pid

        if pid is None:
            logger.info("No server PID recorded; the server is not running")
            return

        logger.info(f"Waiting for server (PID {pid}) to shut down...")
        exited = await wait_for_exit(
            pid,
            timeout=hot_reload.shutdown_timeout_seconds,
            poll_interval=hot_reload.shutdown_poll_interval_seconds,
        )
        if not exited:
            raise ShutdownTimeoutError(
                f"Server (PID {pid}) did not shut down within "
                f"{hot_reload.shutdown_timeout_seconds:g}s",
                details={"pid": pid},
            )
        logger.info("Server has shut down")

    def _validate(self) -> list[PackageEntry]:
        logger.info("Validating staged package...")
        try:
            data = Path(self.session.package_path).read_bytes()
        except OSError as e:
            raise PackageCorruptError(
                f"Staged package unreadable: {e}",
                details={"path": self.session.package_path},
            ) from e

        digest = verify_digest(data, self.session.expected_digest)
        logger.info(f"MD5 verified: {digest}")

        entries = decode_package(data)
        for entry in entries:
            resolve_destination(self._root, entry.relative_path)
        self.session.file_count = len(entries)
        logger.info(f"Found {len(entries)} files in package")
        return entries

    def _diff_check(self, entries: Sequence[PackageEntry]) -> bool:
        manifest_name = self.config.hot_reload.manifest_file
        incoming = next((e for e in entries if e.relative_path == manifest_name), None)

        if incoming is None:
            needs_install = False
        else:
            current = self._root / manifest_name
            try:
                needs_install = current.read_bytes() != incoming.data
            except FileNotFoundError:
                needs_install = True

        self.session.needs_install = needs_install
        logger.info(f"{manifest_name} changed: {str(needs_install).lower()}")
        return needs_install

    def _write(self, entries: Sequence[PackageEntry]) -> None:
        if self.test_mode:
            logger.info(f"{TEST_PREFIX} Would deploy the following files:")
            for entry in entries:
                destination = resolve_destination(self._root, entry.relative_path)
                logger.info(
                    f'{TEST_PREFIX}   "{entry.relative_path}" ({entry.size} bytes) '
                    f'-> "{destination}" - NOT WRITTEN'
                )
            self.session.written_count = len(entries)
            logger.info(f"{TEST_PREFIX} Would write {len(entries)} files, 0 failed")
            return

        targets = [
            (entry, resolve_destination(self._root, entry.relative_path)) for entry in entries
        ]

        logger.info("Writing files to app directory (point of no return)...")
        self.tracker.mark_modified()

        succeeded = 0
        failed = 0
        for entry, destination in targets:
            result = write_file_verified(destination, entry.data)
            if result.ok:
                logger.info(f"  OK: {entry.relative_path}")
                succeeded += 1
            else:
                logger.error(f"  {entry.relative_path} - {result.error}")
                failed += 1

        self.session.written_count = succeeded
        self.session.failed_count = failed
        self.tracker.save()
        logger.info(f"Wrote {succeeded} files, {failed} failed")

        if failed:
            raise WriteError(
                f"{failed} files failed to write - deployment incomplete",
                details={"succeeded": succeeded, "failed": failed},
            )

    async def _run_step(
        self,
        name: str,
        command: list[str],
        error_cls: type[HotReloadError],
    ) -> None:
        argv = expand_command(command)
        if self.test_mode:
            logger.info(f"{TEST_PREFIX} Would run {name}: {' '.join(command)}")
            return

        logger.info(f"Running {name}: {' '.join(command)}")
        result: CommandResult = await self._runner(
            argv,
            cwd=self._root,
            timeout=self.config.hot_reload.step_timeout_seconds,
        )
        if result.stdout.strip():
            logger.debug(f"{name} output:\n{result.stdout.rstrip()}")

        if not result.ok:
            raise error_cls(
                f"{name.capitalize()} step failed: {result.describe_failure()}",
                details={"argv": result.argv, "returncode": result.returncode},
            )
        logger.info(f"{name.capitalize()} completed in {result.duration_seconds:.1f}s")

    async def _launch(self) -> None:
        """
        Hand the port to a new server generation.

        Returns once the server is spawned. A failed spawn waits for an
        operator and never returns.
        """
        if self.test_mode and not self._listener.is_running:
            logger.info(f"{TEST_PREFIX} Diagnostic listener would stop now")
        await self._listener.stop()

        try:
            logger.info("Starting server...")
            proc = self._launcher(
                self._start_argv(),
                cwd=self._root,
                env=self._environ if self._environ is not None else os.environ,
                output_path=self._server_output_path(),
            )
            self.session.new_server_pid = proc.pid
            logger.info(f"Server started (PID {proc.pid})")
            await self._await_ready(proc)
        except SpawnError as e:
            logger.critical(f"Failed to start server: {e.message}")
            await self._await_operator(e)

    def _complete(self) -> int:
        if self.test_mode:
            logger.info(f"{TEST_PREFIX} Removing staged package")
        if not self._slot.discard():
            logger.warning("Could not delete staged package (already gone)")

        self.tracker.transition_to(SessionState.COMPLETE)
        self._log_banner(
            f"{TEST_PREFIX} {COMPLETE_MARKER} - files NOT deployed, server restarted"
            if self.test_mode
            else COMPLETE_MARKER
        )
        self._release_slot()
        return EXIT_SUCCESS

    # =========================================================================
    # Failure routing
    # =========================================================================

    async def _fail(self, error: Exception) -> int:
        if isinstance(error, HotReloadError):
            logger.critical(f"{error.error_code}: {error.message}")
        else:
            logger.critical(f"Unexpected error: {error!r}", exc_info=error)

        if self.session.app_directory_modified:
            self._log_banner(
                "App directory was modified before the failure.",
                "Code on disk may be corrupt or incomplete.",
                "No server will be started - manual intervention required.",
            )
            await self._await_operator(error)

        logger.info("App directory was not modified - restarting the previous server.")
        self.tracker.transition_to(SessionState.RELAUNCH, error=error)
        await self._launch()

        logger.info(SAFE_FAILURE_MARKER)
        self.tracker.transition_to(SessionState.FAILED_SAFE)
        self._release_slot()
        return EXIT_FAILURE

    async def _await_operator(self, error: Exception) -> None:
        """Terminal wait. Never returns."""
        self.tracker.transition_to(SessionState.AWAITING_OPERATOR, error=error)

        if self.test_mode:
            logger.info(f"{TEST_PREFIX} Diagnostic listener would restart now")
        elif await self._listener.start():
            logger.info(f"Query {STATUS_PATH} to see this log.")
        else:
            logger.warning("Diagnostic listener unavailable; waiting without it")

        logger.critical("Awaiting operator intervention (kill this process to exit)")
        # Never set: only killing the process ends the wait
        await self._operator.wait()

    # =========================================================================
    # Helpers
    # =========================================================================

    async def _start_listener(self) -> None:
        if self.test_mode:
            logger.info(
                f"{TEST_PREFIX} Diagnostic listener would start on port "
                f"{self._diagnostic_port} now"
            )
            return
        await self._listener.start()

    async def _await_ready(self, proc: ServerProcess) -> None:
        """
        Poll the new server's health probe.

        Raises:
            SpawnError: If the process exits before answering.
        """
        hot_reload = self.config.hot_reload
        client = self._probe_client or HotReloadClient(
            f"http://{_probe_host(self.config.server.host)}:{self.config.server.port}",
            timeout=2.0,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + hot_reload.restart_timeout_seconds

        try:
            while True:
                returncode = proc.poll()
                if returncode is not None:
                    raise SpawnError(
                        f"Server exited with status {returncode} during startup",
                        details={"pid": proc.pid, "returncode": returncode},
                    )
                if await client.ping():
                    logger.info("Server answered pong")
                    return
                if loop.time() >= deadline:
                    logger.warning(
                        f"Server did not answer within {hot_reload.restart_timeout_seconds:g}s; "
                        "it is still running"
                    )
                    return
                await asyncio.sleep(READY_POLL_SECONDS)
        finally:
            if self._probe_client is None:
                await client.aclose()

    def _start_argv(self) -> list[str]:
        argv = expand_command(self.config.hot_reload.start_command)
        if self.config.config_path and "--config" not in argv:
            argv += ["--config", self.config.config_path]
        return argv

    def _server_output_path(self) -> Path:
        stamp = datetime.now(UTC).strftime("%Y%m%dT%H%M%SZ")
        log_dir = self.config.hot_reload.resolve(self.config.hot_reload.log_dir)
        return log_dir / f"server-{stamp}.out"

    def _release_slot(self) -> None:
        if self._slot_token and self._slot.release(self._slot_token):
            logger.debug("Released staging slot")

    def _log_banner(self, *lines: str) -> None:
        logger.info(BANNER)
        for line in lines:
            logger.info(line)
        logger.info(BANNER)
