"""
Process utilities shared by the server and the relaunch supervisor.

Processes never share memory; they discover each other through a PID file
and probe each other with liveness checks. This module provides:
- PID file read/write/remove
- Liveness checks (psutil; zombies count as exited)
- Bounded waiting for a process to exit
- Detached spawning (new session, not awaited)
- A command runner with a timeout for install/build steps
"""

from __future__ import annotations

import asyncio
import os
import subprocess
import time
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path

import psutil

from hotreload.errors import SpawnError
from hotreload.logging import get_logger
from hotreload.operations import atomic_write_bytes

logger = get_logger(__name__)

# Captured output kept per stream when a command fails
OUTPUT_TAIL_CHARS = 4000


# =============================================================================
# PID file
# =============================================================================


def write_pid_file(path: Path, pid: int | None = None) -> int:
    """
    Record a process identity.

    Args:
        path: PID file path.
        pid: Process ID to record (defaults to the current process).

    Returns:
        The recorded PID.
    """
    pid = pid if pid is not None else os.getpid()
    atomic_write_bytes(path, f"{pid}\n".encode())
    logger.debug("Wrote PID file", extra={"path": str(path), "pid": pid})
    return pid


def read_pid_file(path: Path) -> int | None:
    """Read a PID file, returning None if it is missing or malformed."""
    try:
        text = path.read_text().strip()
    except FileNotFoundError:
        return None
    except OSError as e:
        logger.warning(f"Failed to read PID file {path}: {e}")
        return None

    try:
        pid = int(text)
    except ValueError:
        logger.warning(f"Malformed PID file {path}: {text!r}")
        return None
    return pid if pid > 0 else None


def remove_pid_file(path: Path, pid: int | None = None) -> bool:
    """
    Remove a PID file if it still records ``pid``.

    A newer server generation may already have overwritten the file, in
    which case it is left alone.

    Returns:
        True if the file was removed.
    """
    pid = pid if pid is not None else os.getpid()
    if read_pid_file(path) != pid:
        return False
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Removed PID file", extra={"path": str(path), "pid": pid})
    return True


# =============================================================================
# Liveness
# =============================================================================


def is_process_alive(pid: int) -> bool:
    """
    Check whether a process is running.

    A zombie has exited and only awaits reaping by its parent, so it is
    reported as not alive.
    """
    if pid <= 0:
        return False
    try:
        return psutil.Process(pid).status() != psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to another user
        return True


async def wait_for_exit(
    pid: int,
    timeout: float,
    poll_interval: float = 0.5,
) -> bool:
    """
    Poll until a process exits.

    Args:
        pid: Process to wait for.
        timeout: Upper bound in seconds.
        poll_interval: Delay between liveness checks.

    Returns:
        True if the process exited within the timeout.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        if not is_process_alive(pid):
            return True
        remaining = deadline - loop.time()
        if remaining <= 0:
            return False
        await asyncio.sleep(min(poll_interval, remaining))


# =============================================================================
# Spawning
# =============================================================================


def spawn_detached(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    env: Mapping[str, str] | None = None,
    output_path: Path | None = None,
) -> subprocess.Popen[bytes]:
    """
    Start a process whose lifetime is independent of the caller.

    The child gets its own session, so it survives the caller's exit and
    terminal signals. Its stdin is /dev/null; stdout and stderr go to
    ``output_path`` when given, else to /dev/null. The caller is not
    expected to wait on the returned handle.

    Raises:
        SpawnError: If the process cannot be started.
    """
    output = None
    try:
        if output_path is not None:
            output_path.parent.mkdir(parents=True, exist_ok=True)
            output = open(output_path, "ab")
        proc = subprocess.Popen(
            list(argv),
            cwd=cwd,
            env=dict(env) if env is not None else None,
            stdin=subprocess.DEVNULL,
            stdout=output if output is not None else subprocess.DEVNULL,
            stderr=subprocess.STDOUT if output is not None else subprocess.DEVNULL,
            start_new_session=True,
            close_fds=True,
        )
    except OSError as e:
        raise SpawnError(
            f"Failed to spawn {argv[0]}: {e}",
            details={"argv": list(argv), "cwd": str(cwd) if cwd else None},
        ) from e
    finally:
        if output is not None:
            output.close()

    logger.info(
        f"Spawned detached process {proc.pid}",
        extra={"pid": proc.pid, "argv": list(argv)},
    )
    return proc


# =============================================================================
# Command runner
# =============================================================================


@dataclass
class CommandResult:
    """Outcome of a finished (or timed out) command."""

    argv: list[str]
    returncode: int | None
    stdout: str
    stderr: str
    duration_seconds: float
    timed_out: bool = False

    @property
    def ok(self) -> bool:
        """True when the command finished with exit status 0."""
        return not self.timed_out and self.returncode == 0

    def describe_failure(self) -> str:
        """One-line description of why the command failed."""
        if self.timed_out:
            return f"timed out after {self.duration_seconds:.1f}s"
        output = (self.stderr or self.stdout).strip()
        if output:
            return f"exit status {self.returncode}: {output[-OUTPUT_TAIL_CHARS:]}"
        return f"exit status {self.returncode}"


async def run_command(
    argv: Sequence[str],
    *,
    cwd: Path | None = None,
    timeout: float = 600.0,
) -> CommandResult:
    """
    Run a command to completion, killing it on timeout.

    Args:
        argv: Program and arguments.
        cwd: Working directory.
        timeout: Upper bound in seconds.

    Returns:
        CommandResult. A missing program is reported as exit status 127.
    """
    args = list(argv)
    started = time.monotonic()

    try:
        proc = await asyncio.create_subprocess_exec(
            *args,
            cwd=cwd,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except (FileNotFoundError, PermissionError) as e:
        return CommandResult(
            argv=args,
            returncode=127,
            stdout="",
            stderr=str(e),
            duration_seconds=time.monotonic() - started,
        )

    try:
        stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except TimeoutError:
        proc.kill()
        await proc.wait()
        return CommandResult(
            argv=args,
            returncode=proc.returncode,
            stdout="",
            stderr="",
            duration_seconds=time.monotonic() - started,
            timed_out=True,
        )

    return CommandResult(
        argv=args,
        returncode=proc.returncode,
        stdout=stdout.decode(errors="replace") if stdout else "",
        stderr=stderr.decode(errors="replace") if stderr else "",
        duration_seconds=time.monotonic() - started,
    )
