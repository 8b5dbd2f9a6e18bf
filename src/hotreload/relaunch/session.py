"""
Relaunch session state.

A RelaunchSession is one end-to-end attempt to materialize a package and
restart the server. Its state is persisted next to the session log on every
transition, so an operator (or a later process) can see where a session
stopped even if the supervisor was killed.

State transitions:
- pending -> await_shutdown
- await_shutdown -> validate | fatal_no_shutdown
- validate -> diff_check | relaunch (safe failure: restart unchanged code)
- diff_check -> write | relaunch (safe failure)
- write -> install | build | awaiting_operator | relaunch (safe failure)
- install -> build | awaiting_operator
- build -> relaunch | awaiting_operator
- relaunch -> complete | failed_safe | awaiting_operator

``complete``, ``failed_safe``, ``fatal_no_shutdown`` and
``awaiting_operator`` are terminal. ``awaiting_operator`` means the process
stays alive serving diagnostics until someone intervenes.
"""

from __future__ import annotations

import json
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from pydantic import BaseModel, Field

from hotreload.errors import InvalidArgumentError
from hotreload.logging import get_logger
from hotreload.operations import atomic_write_bytes

if TYPE_CHECKING:
    from hotreload.config import HotReloadConfig

logger = get_logger(__name__)

SESSION_LOG_PREFIX = "relaunch-"
SESSION_LOG_SUFFIX = ".log"
STATE_FILE_SUFFIX = ".state.json"


class SessionState(str, Enum):
    """States of a relaunch session."""

    PENDING = "pending"
    AWAIT_SHUTDOWN = "await_shutdown"
    VALIDATE = "validate"
    DIFF_CHECK = "diff_check"
    WRITE = "write"
    INSTALL = "install"
    BUILD = "build"
    RELAUNCH = "relaunch"
    COMPLETE = "complete"
    FAILED_SAFE = "failed_safe"
    FATAL_NO_SHUTDOWN = "fatal_no_shutdown"
    AWAITING_OPERATOR = "awaiting_operator"


TERMINAL_STATES = frozenset(
    {
        SessionState.COMPLETE,
        SessionState.FAILED_SAFE,
        SessionState.FATAL_NO_SHUTDOWN,
        SessionState.AWAITING_OPERATOR,
    }
)

# Valid state transitions
_VALID_TRANSITIONS: dict[SessionState, set[SessionState]] = {
    SessionState.PENDING: {SessionState.AWAIT_SHUTDOWN},
    SessionState.AWAIT_SHUTDOWN: {SessionState.VALIDATE, SessionState.FATAL_NO_SHUTDOWN},
    SessionState.VALIDATE: {SessionState.DIFF_CHECK, SessionState.RELAUNCH},
    SessionState.DIFF_CHECK: {SessionState.WRITE, SessionState.RELAUNCH},
    SessionState.WRITE: {
        SessionState.INSTALL,
        SessionState.BUILD,
        SessionState.AWAITING_OPERATOR,
        SessionState.RELAUNCH,
    },
    SessionState.INSTALL: {SessionState.BUILD, SessionState.AWAITING_OPERATOR},
    SessionState.BUILD: {SessionState.RELAUNCH, SessionState.AWAITING_OPERATOR},
    SessionState.RELAUNCH: {
        SessionState.COMPLETE,
        SessionState.FAILED_SAFE,
        SessionState.AWAITING_OPERATOR,
    },
    SessionState.COMPLETE: set(),
    SessionState.FAILED_SAFE: set(),
    SessionState.FATAL_NO_SHUTDOWN: set(),
    SessionState.AWAITING_OPERATOR: set(),
}


class RelaunchSession(BaseModel):
    """
    Persistent data for a relaunch session.

    ``app_directory_modified`` is the single bit separating recoverable
    from unrecoverable failure. It only ever goes from False to True.
    """

    package_path: str = Field(description="Staged package to materialize")
    expected_digest: str = Field(description="Digest declared at admission")
    is_test_mode: bool = Field(default=False, description="Simulate write/install/build")
    log_path: str = Field(description="Session log file")
    server_pid: int | None = Field(default=None, description="Prior server process")
    state: SessionState = Field(default=SessionState.PENDING)
    app_directory_modified: bool = Field(default=False)
    file_count: int | None = Field(default=None, description="Entries in the package")
    written_count: int = Field(default=0, description="Entries written successfully")
    failed_count: int = Field(default=0, description="Entries that failed to write")
    needs_install: bool | None = Field(default=None, description="Manifest changed")
    new_server_pid: int | None = Field(default=None, description="Relaunched server process")
    error_code: str | None = Field(default=None)
    error_message: str | None = Field(default=None)
    started_at: str = Field(default_factory=lambda: datetime.now(UTC).isoformat())
    last_transition_at: str | None = Field(default=None)
    finished_at: str | None = Field(default=None)

    @property
    def state_path(self) -> Path:
        """State file kept next to the session log."""
        return state_path_for(Path(self.log_path))

    @property
    def is_terminal(self) -> bool:
        """True once the session can no longer change state."""
        return self.state in TERMINAL_STATES


class SessionTracker:
    """
    Applies validated transitions to a RelaunchSession and persists them.

    Example:
        >>> tracker = SessionTracker(session)
        >>> tracker.transition_to(SessionState.AWAIT_SHUTDOWN)
    """

    def __init__(self, session: RelaunchSession, *, persist: bool = True) -> None:
        self._session = session
        self._persist = persist

    @property
    def session(self) -> RelaunchSession:
        """Get the tracked session."""
        return self._session

    @property
    def state(self) -> SessionState:
        """Get the current state."""
        return self._session.state

    def transition_to(
        self,
        new_state: SessionState,
        *,
        error: Exception | None = None,
    ) -> None:
        """
        Move the session to a new state.

        Args:
            new_state: The state to transition to.
            error: Failure that caused the transition, recorded on the session.

        Raises:
            InvalidArgumentError: If the transition is not valid.
        """
        current = self._session.state

        if new_state not in _VALID_TRANSITIONS.get(current, set()):
            raise InvalidArgumentError(
                f"Invalid state transition from {current.value} to {new_state.value}",
                details={
                    "current_state": current.value,
                    "target_state": new_state.value,
                    "valid_transitions": sorted(
                        s.value for s in _VALID_TRANSITIONS.get(current, set())
                    ),
                },
            )

        logger.debug(
            f"State transition: {current.value} -> {new_state.value}",
            extra={
                "old_state": current.value,
                "new_state": new_state.value,
                "app_directory_modified": self._session.app_directory_modified,
            },
        )

        now = datetime.now(UTC).isoformat()
        self._session.state = new_state
        self._session.last_transition_at = now
        if error is not None:
            self._session.error_code = getattr(error, "error_code", type(error).__name__)
            self._session.error_message = str(error)
        if new_state in TERMINAL_STATES:
            self._session.finished_at = now

        self.save()

    def mark_modified(self) -> None:
        """
        Record that the managed tree is about to be written.

        Raises:
            InvalidArgumentError: Outside the write state, or if already set.
        """
        if self._session.state is not SessionState.WRITE:
            raise InvalidArgumentError(
                "The managed tree may only be modified in the write state",
                details={"state": self._session.state.value},
            )
        if self._session.app_directory_modified:
            raise InvalidArgumentError("Managed tree already marked as modified")

        self._session.app_directory_modified = True
        self.save()

    def save(self) -> None:
        """Persist the session next to its log."""
        if not self._persist:
            return
        path = self._session.state_path
        try:
            atomic_write_bytes(path, self._session.model_dump_json(indent=2).encode())
        except OSError as e:
            logger.warning(f"Failed to save session state: {e}")


def load_session(state_path: Path) -> RelaunchSession | None:
    """Load a persisted session, or None if it is missing or unreadable."""
    try:
        with open(state_path) as f:
            return RelaunchSession(**json.load(f))
    except FileNotFoundError:
        return None
    except (OSError, ValueError, TypeError) as e:
        logger.warning(f"Failed to load session state {state_path}: {e}")
        return None


# =============================================================================
# Session log locations
# =============================================================================


def state_path_for(log_path: Path) -> Path:
    """State file belonging to a session log."""
    return log_path.with_name(log_path.name + STATE_FILE_SUFFIX)


def new_session_log_path(config: HotReloadConfig, now: datetime | None = None) -> Path:
    """
    Allocate a fresh session log path in the configured log directory.

    Names embed a UTC timestamp so lexical order is chronological.
    """
    now = now or datetime.now(UTC)
    stamp = now.strftime("%Y%m%dT%H%M%S%fZ")
    return config.resolve(config.log_dir) / f"{SESSION_LOG_PREFIX}{stamp}{SESSION_LOG_SUFFIX}"


def latest_session_log(log_dir: Path) -> Path | None:
    """Return the most recent session log in ``log_dir``, if any."""
    if not log_dir.is_dir():
        return None
    logs = sorted(log_dir.glob(f"{SESSION_LOG_PREFIX}*{SESSION_LOG_SUFFIX}"))
    return logs[-1] if logs else None


def read_session_log(path: Path | None) -> str:
    """Read a session log, returning a placeholder line when unavailable."""
    if path is None:
        return "[No hot reload log available]\n"
    try:
        return path.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError:
        return "[Log file not available yet]\n"
    except OSError as e:
        return f"[Log file not readable: {e}]\n"
