"""
Tests for the relaunch supervisor.

This test module validates the failure routing of a relaunch session:
- Full success (with and without a dependency install)
- Safe failures restart the unchanged server and exit 1
- Unsafe failures never start a server and wait for an operator
- Shutdown timeouts exit 1 without touching anything
- Test mode simulates write/install/build but still relaunches
- The diagnostic listener serves the session log while a session waits
- One session log reads the same from the server, the listener and the
  relaunched server

Most collaborators (listener, launcher, command runner, readiness probe)
are in-memory fakes. No process is spawned; the listener tests bind an
ephemeral port on 127.0.0.1.
"""

from __future__ import annotations

import asyncio
import contextlib
import os
from pathlib import Path
from typing import Any
from unittest.mock import MagicMock

import httpx
import pytest

from hotreload.config import AppConfig
from hotreload.digest import DIGEST_HEADER, compute_digest
from hotreload.errors import SpawnError
from hotreload.logging import attach_session_log
from hotreload.package import PackageEntry, encode_entries
from hotreload.process_utils import CommandResult, write_pid_file
from hotreload.relaunch import __main__ as relaunch_main
from hotreload.relaunch.diagnostic import RESTARTING_MESSAGE, STATUS_PATH, DiagnosticListener
from hotreload.relaunch.session import RelaunchSession, SessionState, load_session
from hotreload.relaunch.supervisor import EXIT_FAILURE, EXIT_SUCCESS, RelaunchSupervisor
from hotreload.server.admission import HotReloadAdmission
from hotreload.server.app import create_app
from hotreload.staging import StagingSlot

ORIGINAL_MANIFEST = b'[project]\nname = "app"\n'

# How long a test waits before concluding the supervisor is hanging
HANG_WINDOW_SECONDS = 0.5

# =============================================================================
# Fakes
# =============================================================================


class FakeListener:
    """Records start/stop calls instead of binding a port."""

    def __init__(self, start_result: bool = True) -> None:
        self.start_result = start_result
        self.events: list[str] = []
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    async def start(self) -> bool:
        self.events.append("start")
        self._running = self.start_result
        return self.start_result

    async def stop(self) -> None:
        self.events.append("stop")
        self._running = False


class FakeProcess:
    """A spawned server that is running (or exited with ``returncode``)."""

    def __init__(self, pid: int = 4321, returncode: int | None = None) -> None:
        self.pid = pid
        self.returncode = returncode

    def poll(self) -> int | None:
        return self.returncode


class FakeLauncher:
    """Records launches and returns a FakeProcess (or raises)."""

    def __init__(self, process: FakeProcess | None = None, error: Exception | None = None) -> None:
        self.process = process or FakeProcess()
        self.error = error
        self.calls: list[dict[str, Any]] = []

    def __call__(self, argv: list[str], **kwargs: Any) -> FakeProcess:
        self.calls.append({"argv": list(argv), **kwargs})
        if self.error is not None:
            raise self.error
        return self.process


class FakeRunner:
    """Async command runner returning scripted exit statuses."""

    def __init__(self, *returncodes: int) -> None:
        self.returncodes = list(returncodes)
        self.calls: list[list[str]] = []

    async def __call__(self, argv: list[str], *, cwd: Path, timeout: float) -> CommandResult:
        self.calls.append(list(argv))
        returncode = self.returncodes.pop(0) if self.returncodes else 0
        return CommandResult(
            argv=list(argv),
            returncode=returncode,
            stdout="",
            stderr="step exploded" if returncode else "",
            duration_seconds=0.01,
        )


class FakeProbe:
    """Readiness probe that answers pong."""

    def __init__(self, answers: bool = True) -> None:
        self.answers = answers

    async def ping(self) -> bool:
        return self.answers


# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def slot(config: AppConfig) -> StagingSlot:
    """The configured staging slot."""
    hot_reload = config.hot_reload
    return StagingSlot(hot_reload.resolve(hot_reload.staging_path))


@pytest.fixture
def log_path(tmp_path: Path) -> Path:
    """Session log, attached to the package logger."""
    path = tmp_path / "diagnostics" / "relaunch-test.log"
    attach_session_log(path)
    return path


def _stage(
    slot: StagingSlot, files: dict[str, bytes], *, pid: int | None = None
) -> tuple[str, str]:
    data = encode_entries(PackageEntry(name, content) for name, content in files.items())
    token = slot.acquire(pid=pid)
    slot.write(token, data)
    return token, compute_digest(data)


class Harness:
    """Builds a supervisor around fakes for one test."""

    def __init__(self, config: AppConfig, slot: StagingSlot, log_path: Path) -> None:
        self.config = config
        self.slot = slot
        self.log_path = log_path
        self.listener = FakeListener()
        self.launcher = FakeLauncher()
        self.runner = FakeRunner()
        self.probe = FakeProbe()

    def supervisor(
        self,
        files: dict[str, bytes],
        *,
        digest: str | None = None,
        test_mode: bool = False,
        server_pid: int | None = None,
        persist_state: bool = False,
    ) -> RelaunchSupervisor:
        self.token, actual = _stage(self.slot, files)
        session = RelaunchSession(
            package_path=str(self.slot.staging_path),
            expected_digest=digest or actual,
            is_test_mode=test_mode,
            log_path=str(self.log_path),
            server_pid=server_pid,
        )
        return RelaunchSupervisor(
            self.config,
            session,
            slot_token=self.token,
            listener=self.listener,
            launcher=self.launcher,
            runner=self.runner,
            probe_client=self.probe,  # type: ignore[arg-type]
            environ={"PATH": os.environ.get("PATH", "")},
            persist_state=persist_state,
        )

    def log(self) -> str:
        return self.log_path.read_text()


@pytest.fixture
def harness(config: AppConfig, slot: StagingSlot, log_path: Path) -> Harness:
    """Supervisor harness with default fakes."""
    return Harness(config, slot, log_path)


async def _assert_hangs(supervisor: RelaunchSupervisor) -> None:
    with pytest.raises(TimeoutError):
        await asyncio.wait_for(supervisor.run(), timeout=HANG_WINDOW_SECONDS)


# =============================================================================
# Tests for successful sessions
# =============================================================================


class TestSuccess:
    """Tests for sessions that complete."""

    @pytest.mark.asyncio
    async def test_full_success(self, harness: Harness, app_root: Path) -> None:
        """Test files are written, the server relaunched and the session completes."""
        supervisor = harness.supervisor(
            {"pyproject.toml": ORIGINAL_MANIFEST, "src/app/main.py": b"VERSION = 2\n"}
        )

        assert await supervisor.run() == EXIT_SUCCESS

        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 2\n"
        assert supervisor.session.state is SessionState.COMPLETE
        assert supervisor.session.app_directory_modified is True
        assert supervisor.session.written_count == 2
        assert supervisor.session.new_server_pid == 4321
        assert harness.listener.events == ["start", "stop"]

    @pytest.mark.asyncio
    async def test_unchanged_manifest_skips_install(self, harness: Harness) -> None:
        """Test only the build step runs when the manifest is unchanged."""
        supervisor = harness.supervisor(
            {"pyproject.toml": ORIGINAL_MANIFEST, "src/app/main.py": b"VERSION = 2\n"}
        )

        await supervisor.run()

        assert len(harness.runner.calls) == 1
        assert harness.runner.calls[0][1:3] == ["-m", "compileall"]
        assert supervisor.session.needs_install is False
        assert "pyproject.toml changed: false" in harness.log()

    @pytest.mark.asyncio
    async def test_changed_manifest_runs_install_first(self, harness: Harness) -> None:
        """Test a changed manifest triggers the install step before build."""
        supervisor = harness.supervisor(
            {"pyproject.toml": b'[project]\nname = "app"\nversion = "2"\n'}
        )

        assert await supervisor.run() == EXIT_SUCCESS

        assert [call[1:3] for call in harness.runner.calls] == [
            ["-m", "pip"],
            ["-m", "compileall"],
        ]
        assert supervisor.session.needs_install is True

    @pytest.mark.asyncio
    async def test_cleanup_after_success(self, harness: Harness, slot: StagingSlot) -> None:
        """Test the staged package is deleted and the slot released."""
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await supervisor.run()

        assert not slot.staging_path.exists()
        assert not slot.lock_path.exists()

    @pytest.mark.asyncio
    async def test_launch_arguments(self, harness: Harness, app_root: Path) -> None:
        """Test the new server is started from the app root with its output captured."""
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await supervisor.run()

        (call,) = harness.launcher.calls
        assert call["argv"][1:] == ["-m", "hotreload"]
        assert call["cwd"] == app_root.resolve()
        assert call["env"] == {"PATH": os.environ.get("PATH", "")}
        assert call["output_path"].name.startswith("server-")

    @pytest.mark.asyncio
    async def test_config_path_is_forwarded(self, harness: Harness) -> None:
        """Test the relaunched server receives the same configuration file."""
        harness.config.config_path = "/etc/hotreload/config.yml"
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await supervisor.run()

        assert harness.launcher.calls[0]["argv"][-2:] == ["--config", "/etc/hotreload/config.yml"]

    @pytest.mark.asyncio
    async def test_log_content(self, harness: Harness) -> None:
        """Test the session log records progress without error signals."""
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await supervisor.run()

        log = harness.log()
        assert "MD5 verified" in log
        assert "OK: src/app/main.py" in log
        assert "Wrote 1 files, 0 failed" in log
        assert "RELAUNCH COMPLETE" in log
        assert "ERROR" not in log
        assert "FATAL" not in log

    @pytest.mark.asyncio
    async def test_slow_server_still_completes(self, harness: Harness) -> None:
        """Test a server that never answers within the window only warns."""
        harness.config.hot_reload.restart_timeout_seconds = 0.1
        harness.probe.answers = False
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        assert await supervisor.run() == EXIT_SUCCESS
        assert "WARN Server did not answer" in harness.log()

    @pytest.mark.asyncio
    async def test_state_file_written(self, harness: Harness) -> None:
        """Test the final state is persisted next to the log."""
        supervisor = harness.supervisor({"src/app/main.py": b"x"}, persist_state=True)

        await supervisor.run()

        loaded = load_session(supervisor.session.state_path)
        assert loaded is not None
        assert loaded.state is SessionState.COMPLETE
        assert loaded.finished_at is not None


# =============================================================================
# Tests for safe failures
# =============================================================================


class TestSafeFailure:
    """Tests for failures before the managed tree is touched."""

    @pytest.mark.asyncio
    async def test_digest_mismatch_restarts_unchanged(
        self, harness: Harness, app_root: Path, slot: StagingSlot
    ) -> None:
        """Test a digest mismatch restarts the old code and exits 1."""
        supervisor = harness.supervisor(
            {"src/app/main.py": b"VERSION = 2\n"}, digest="deadbeef" * 4
        )

        assert await supervisor.run() == EXIT_FAILURE

        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 1\n"
        assert supervisor.session.state is SessionState.FAILED_SAFE
        assert supervisor.session.app_directory_modified is False
        assert supervisor.session.error_code == "integrity_mismatch"
        assert len(harness.launcher.calls) == 1
        assert harness.runner.calls == []
        assert not slot.lock_path.exists()
        assert "FATAL integrity_mismatch" in harness.log()

    @pytest.mark.asyncio
    async def test_corrupt_package_restarts_unchanged(
        self, harness: Harness, app_root: Path, slot: StagingSlot
    ) -> None:
        """Test a corrupt staged package is a safe failure."""
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})
        corrupt = b"PK\x03\x04 definitely not a zip"
        slot.write(harness.token, corrupt)
        supervisor.session.expected_digest = compute_digest(corrupt)

        assert await supervisor.run() == EXIT_FAILURE

        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 1\n"
        assert supervisor.session.error_code == "package_corrupt"

    @pytest.mark.asyncio
    async def test_missing_staged_package(self, harness: Harness, slot: StagingSlot) -> None:
        """Test a vanished staged package is a safe failure."""
        supervisor = harness.supervisor({"src/app/main.py": b"x"})
        slot.discard()

        assert await supervisor.run() == EXIT_FAILURE
        assert supervisor.session.state is SessionState.FAILED_SAFE

    @pytest.mark.asyncio
    async def test_unsafe_entry_path(self, harness: Harness, tmp_path: Path) -> None:
        """Test an entry escaping the app root fails validation."""
        outside = tmp_path / "app" / "link"
        outside.symlink_to(tmp_path, target_is_directory=True)
        supervisor = harness.supervisor({"link/escaped.py": b"x"})

        assert await supervisor.run() == EXIT_FAILURE
        assert not (tmp_path / "escaped.py").exists()

    @pytest.mark.asyncio
    async def test_spawn_failure_after_safe_failure_hangs(self, harness: Harness) -> None:
        """Test no server at all means waiting for an operator."""
        harness.launcher.error = SpawnError("no such interpreter")
        supervisor = harness.supervisor({"src/app/main.py": b"x"}, digest="0" * 32)

        await _assert_hangs(supervisor)

        assert supervisor.session.state is SessionState.AWAITING_OPERATOR
        assert harness.listener.events == ["start", "stop", "start"]


# =============================================================================
# Tests for unsafe failures
# =============================================================================


class TestUnsafeFailure:
    """Tests for failures after the first write."""

    @pytest.mark.asyncio
    async def test_build_failure_hangs(self, harness: Harness, slot: StagingSlot) -> None:
        """Test a failed build never starts a server and keeps diagnostics up."""
        harness.runner = FakeRunner(1)
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await _assert_hangs(supervisor)

        assert supervisor.session.state is SessionState.AWAITING_OPERATOR
        assert supervisor.session.error_code == "build_failed"
        assert harness.launcher.calls == []
        assert harness.listener.events == ["start", "start"]
        assert slot.lock_path.exists()
        log = harness.log()
        assert "FATAL build_failed" in log
        assert "step exploded" in log
        assert "Awaiting operator intervention" in log

    @pytest.mark.asyncio
    async def test_install_failure_hangs(self, harness: Harness) -> None:
        """Test a failed dependency install is unsafe."""
        harness.runner = FakeRunner(1)
        supervisor = harness.supervisor({"pyproject.toml": b"[project]\nname = 'changed'\n"})

        await _assert_hangs(supervisor)

        assert supervisor.session.error_code == "install_failed"
        assert len(harness.runner.calls) == 1

    @pytest.mark.asyncio
    async def test_write_failure_hangs(self, harness: Harness, app_root: Path) -> None:
        """Test a single failed write aborts without rollback."""
        (app_root / "src" / "app" / "blocked.py").mkdir()
        supervisor = harness.supervisor(
            {"src/app/blocked.py": b"cannot land", "src/app/main.py": b"VERSION = 2\n"}
        )

        await _assert_hangs(supervisor)

        assert supervisor.session.error_code == "write_failed"
        assert supervisor.session.written_count == 1
        assert supervisor.session.failed_count == 1
        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 2\n"
        assert harness.runner.calls == []
        assert "ERROR   src/app/blocked.py" in harness.log()

    @pytest.mark.asyncio
    async def test_spawn_failure_after_build_hangs(self, harness: Harness) -> None:
        """Test a failed relaunch after a good build waits for an operator."""
        harness.launcher.error = SpawnError("exec format error")
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await _assert_hangs(supervisor)

        assert supervisor.session.state is SessionState.AWAITING_OPERATOR
        assert harness.listener.events == ["start", "stop", "start"]

    @pytest.mark.asyncio
    async def test_server_exiting_during_startup_hangs(self, harness: Harness) -> None:
        """Test a server that dies before answering counts as a failed spawn."""
        harness.launcher.process = FakeProcess(returncode=2)
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await _assert_hangs(supervisor)

        assert supervisor.session.error_code == "spawn_failed"
        assert "exited with status 2" in harness.log()

    @pytest.mark.asyncio
    async def test_listener_unavailable_still_hangs(self, harness: Harness) -> None:
        """Test a listener that cannot bind does not end the wait."""
        harness.listener.start_result = False
        harness.runner = FakeRunner(1)
        supervisor = harness.supervisor({"src/app/main.py": b"VERSION = 2\n"})

        await _assert_hangs(supervisor)

        assert "Diagnostic listener unavailable" in harness.log()


# =============================================================================
# Tests for shutdown handling
# =============================================================================


class TestAwaitShutdown:
    """Tests for waiting on the prior server."""

    @pytest.mark.asyncio
    async def test_shutdown_timeout(
        self, harness: Harness, app_root: Path, slot: StagingSlot
    ) -> None:
        """Test a server that never exits ends the session with nothing changed."""
        harness.config.hot_reload.shutdown_timeout_seconds = 0.2
        supervisor = harness.supervisor(
            {"src/app/main.py": b"VERSION = 2\n"}, server_pid=os.getpid()
        )

        assert await supervisor.run() == EXIT_FAILURE

        assert supervisor.session.state is SessionState.FATAL_NO_SHUTDOWN
        assert harness.listener.events == []
        assert harness.launcher.calls == []
        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 1\n"
        assert not slot.lock_path.exists()

    @pytest.mark.asyncio
    async def test_pid_file_is_used(self, harness: Harness, app_root: Path) -> None:
        """Test the PID file identifies the server when no PID was passed."""
        harness.config.hot_reload.shutdown_timeout_seconds = 0.2
        write_pid_file(app_root / "server.pid", os.getpid())
        supervisor = harness.supervisor({"src/app/main.py": b"x"})

        assert await supervisor.run() == EXIT_FAILURE
        assert supervisor.session.server_pid == os.getpid()

    @pytest.mark.asyncio
    async def test_no_pid_means_server_is_down(self, harness: Harness) -> None:
        """Test a missing PID file is treated as an already stopped server."""
        supervisor = harness.supervisor({"src/app/main.py": b"x"})

        assert await supervisor.run() == EXIT_SUCCESS
        assert "No server PID recorded" in harness.log()


# =============================================================================
# Tests for the diagnostic port
# =============================================================================


class TestDiagnosticPort:
    """Tests for the port the diagnostic listener binds."""

    def test_defaults_to_server_port(self, config: AppConfig, tmp_path: Path) -> None:
        """Test clients keep polling the port they pushed to."""
        config.hot_reload.diagnostic_port = None
        config.server.port = 8123
        session = RelaunchSession(
            package_path="p.zip", expected_digest="0" * 32, log_path=str(tmp_path / "r.log")
        )

        supervisor = RelaunchSupervisor(config, session, persist_state=False)

        assert supervisor.diagnostic_port == 8123
        assert supervisor._listener._port == 8123  # type: ignore[attr-defined]

    def test_explicit_override(self, config: AppConfig, tmp_path: Path) -> None:
        """Test a configured diagnostic port wins."""
        config.hot_reload.diagnostic_port = 8081
        session = RelaunchSession(
            package_path="p.zip", expected_digest="0" * 32, log_path=str(tmp_path / "r.log")
        )

        supervisor = RelaunchSupervisor(config, session, persist_state=False)

        assert supervisor.diagnostic_port == 8081


# =============================================================================
# Tests for test mode
# =============================================================================


class TestTestMode:
    """Tests for simulated sessions."""

    @pytest.mark.asyncio
    async def test_nothing_written(self, harness: Harness, app_root: Path) -> None:
        """Test test mode logs instead of writing, installing or building."""
        supervisor = harness.supervisor(
            {"pyproject.toml": b"[project]\nname = 'changed'\n", "src/app/main.py": b"V2"},
            test_mode=True,
        )

        assert await supervisor.run() == EXIT_SUCCESS

        assert (app_root / "src" / "app" / "main.py").read_bytes() == b"VERSION = 1\n"
        assert (app_root / "pyproject.toml").read_bytes() == ORIGINAL_MANIFEST
        assert harness.runner.calls == []
        assert supervisor.session.app_directory_modified is False

    @pytest.mark.asyncio
    async def test_still_relaunches(self, harness: Harness) -> None:
        """Test test mode really restarts the server."""
        supervisor = harness.supervisor({"src/app/main.py": b"V2"}, test_mode=True)

        await supervisor.run()

        assert len(harness.launcher.calls) == 1
        assert supervisor.session.state is SessionState.COMPLETE

    @pytest.mark.asyncio
    async def test_listener_skipped(self, harness: Harness) -> None:
        """Test the diagnostic listener is only logged in test mode."""
        supervisor = harness.supervisor({"src/app/main.py": b"V2"}, test_mode=True)

        await supervisor.run()

        assert harness.listener.events == ["stop"]
        assert "[TEST] Diagnostic listener would start on port 0 now" in harness.log()

    @pytest.mark.asyncio
    async def test_log_lines(self, harness: Harness, app_root: Path) -> None:
        """Test the simulated writes are itemized."""
        supervisor = harness.supervisor(
            {"src/app/main.py": b"V2", "src/app/util.py": b"U"}, test_mode=True
        )

        await supervisor.run()

        log = harness.log()
        destination = app_root.resolve() / "src" / "app" / "main.py"
        assert f'[TEST]   "src/app/main.py" (2 bytes) -> "{destination}" - NOT WRITTEN' in log
        assert "[TEST] Would write 2 files, 0 failed" in log
        assert "RELAUNCH SESSION STARTED (TEST MODE)" in log


# =============================================================================
# Tests against a real diagnostic listener
# =============================================================================


async def _wait_for_log(path: Path, text: str, timeout: float = 5.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while text not in path.read_text():
        if loop.time() >= deadline:
            raise AssertionError(f"{text!r} never appeared in {path}")
        await asyncio.sleep(0.01)


def _listener(log_path: Path) -> DiagnosticListener:
    return DiagnosticListener(log_path, host="127.0.0.1", port=0, close_grace_seconds=0.5)


class TestListenerWhileAwaitingOperator:
    """Tests for the session log served while a failed session waits."""

    @pytest.mark.asyncio
    async def test_status_served_after_write_failure(
        self, harness: Harness, app_root: Path, log_path: Path
    ) -> None:
        """Test the listener answers with the failure log after an unsafe failure."""
        (app_root / "src" / "app" / "blocked.py").mkdir()
        listener = _listener(log_path)
        harness.listener = listener  # type: ignore[assignment]
        supervisor = harness.supervisor(
            {"src/app/blocked.py": b"cannot land", "src/app/main.py": b"VERSION = 2\n"}
        )
        task = asyncio.create_task(supervisor.run())
        try:
            await _wait_for_log(log_path, "Awaiting operator intervention")
            assert supervisor.session.state is SessionState.AWAITING_OPERATOR
            assert listener.is_running

            base_url = f"http://127.0.0.1:{listener.bound_port}"
            async with httpx.AsyncClient(base_url=base_url, trust_env=False) as client:
                status = await client.get(STATUS_PATH)
                other = await client.get("/ping")
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await listener.stop()

        assert status.status_code == 200
        assert status.text.startswith("[RELAUNCH]\n")
        assert "ERROR   src/app/blocked.py" in status.text
        assert "FATAL write_failed" in status.text
        assert other.status_code == 503
        assert other.text == RESTARTING_MESSAGE

    @pytest.mark.asyncio
    async def test_listener_reopened_after_failed_restart(
        self, harness: Harness, log_path: Path
    ) -> None:
        """Test a failed spawn after a safe failure brings the listener back."""
        listener = _listener(log_path)
        harness.listener = listener  # type: ignore[assignment]
        harness.launcher.error = SpawnError("no such interpreter")
        supervisor = harness.supervisor({"src/app/main.py": b"x"}, digest="0" * 32)
        task = asyncio.create_task(supervisor.run())
        try:
            await _wait_for_log(log_path, "Awaiting operator intervention")
            assert supervisor.session.state is SessionState.AWAITING_OPERATOR
            assert listener.is_running

            base_url = f"http://127.0.0.1:{listener.bound_port}"
            async with httpx.AsyncClient(base_url=base_url, trust_env=False) as client:
                status = await client.get(STATUS_PATH)
        finally:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
            await listener.stop()

        assert status.status_code == 200
        assert "FATAL integrity_mismatch" in status.text
        assert "Failed to start server: no such interpreter" in status.text


# =============================================================================
# Tests for status continuity across a relaunch
# =============================================================================


class StatusReadingRunner:
    """Command runner that reads the listener's status route while building."""

    def __init__(self, listener: DiagnosticListener) -> None:
        self.listener = listener
        self.seen: list[httpx.Response] = []

    async def __call__(self, argv: list[str], *, cwd: Path, timeout: float) -> CommandResult:
        base_url = f"http://127.0.0.1:{self.listener.bound_port}"
        async with httpx.AsyncClient(base_url=base_url, trust_env=False) as client:
            self.seen.append(await client.get(STATUS_PATH))
        return CommandResult(
            argv=list(argv), returncode=0, stdout="", stderr="", duration_seconds=0.01
        )


def _log_lines(text: str, prefix: str) -> list[str]:
    assert text.startswith(prefix)
    return text[len(prefix) :].splitlines()


class TestStatusContinuity:
    """Tests for one session log followed through server, listener and server."""

    @pytest.mark.asyncio
    async def test_each_responder_extends_the_log(
        self, config: AppConfig, admin_headers: dict[str, str]
    ) -> None:
        """Test the log only grows as the responder changes hands."""
        spawner = FakeLauncher(process=FakeProcess(pid=os.getpid()))
        admission = HotReloadAdmission(config, spawner=spawner)
        app = create_app(config, admission=admission, shutdown_hook=MagicMock())
        body = encode_entries([PackageEntry("src/app/main.py", b"VERSION = 2\n")])

        async with httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://server",
            headers=admin_headers,
        ) as server:
            pushed = await server.post(
                "/admin/hot-reload", content=body, headers={DIGEST_HEADER: compute_digest(body)}
            )
            assert pushed.status_code == 200
            before = (await server.get(STATUS_PATH)).text

            args = relaunch_main.parse_args(spawner.calls[0]["argv"][3:])
            log_path = Path(args.log)
            attach_session_log(log_path)
            session = RelaunchSession(
                package_path=args.package_path,
                expected_digest=args.md5,
                log_path=str(log_path),
            )
            listener = _listener(log_path)
            runner = StatusReadingRunner(listener)
            supervisor = RelaunchSupervisor(
                config,
                session,
                slot_token=args.token,
                listener=listener,
                launcher=FakeLauncher(),
                runner=runner,
                probe_client=FakeProbe(),  # type: ignore[arg-type]
                environ={"PATH": os.environ.get("PATH", "")},
                persist_state=False,
            )
            try:
                assert await supervisor.run() == EXIT_SUCCESS
            finally:
                await listener.stop()

            after = (await server.get(STATUS_PATH)).text

        (during,) = runner.seen
        first = _log_lines(before, "[SERVER]\n")
        second = _log_lines(during.text, "[RELAUNCH]\n")
        third = _log_lines(after, "[SERVER]\n")

        assert "request accepted" in first[0]
        assert second[: len(first)] == first
        assert len(second) > len(first)
        assert third[: len(second)] == second
        assert any("RELAUNCH COMPLETE" in line for line in third[len(second) :])
