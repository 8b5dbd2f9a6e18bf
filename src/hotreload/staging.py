"""
The single staging slot for inbound packages.

Only one relaunch session may be in flight at a time. The slot is a fixed
staging path plus a lock file next to it, created exclusively and holding
a lease ``{token, pid, acquired_at}``. The admitting server acquires the
lease, transfers it to the supervisor it spawns, and the supervisor
releases it before exiting. A lease whose holder process is gone is stale
and may be reclaimed.
"""

from __future__ import annotations

import json
import os
import secrets
from datetime import UTC, datetime
from pathlib import Path

from pydantic import BaseModel, Field, ValidationError

from hotreload.errors import PolicyError
from hotreload.logging import get_logger
from hotreload.operations import atomic_write_bytes, ensure_directory
from hotreload.process_utils import is_process_alive

logger = get_logger(__name__)

LOCK_SUFFIX = ".lock"


class SlotLease(BaseModel):
    """Contents of the staging slot lock file."""

    token: str = Field(description="Opaque lease token")
    pid: int = Field(description="Process currently holding the lease")
    acquired_at: str = Field(description="ISO 8601 timestamp of acquisition")


class StagingSlot:
    """
    Exclusive access to the staging path.

    Example:
        >>> slot = StagingSlot(Path("data/temp/hot-reload-inbound.zip"))
        >>> token = slot.acquire()
        >>> slot.write(token, package_bytes)
        >>> slot.transfer(token, supervisor_pid)
    """

    def __init__(self, staging_path: Path) -> None:
        self._staging_path = staging_path
        self._lock_path = staging_path.with_name(staging_path.name + LOCK_SUFFIX)

    @property
    def staging_path(self) -> Path:
        """Get the staging file path."""
        return self._staging_path

    @property
    def lock_path(self) -> Path:
        """Get the lock file path."""
        return self._lock_path

    def holder(self) -> SlotLease | None:
        """Return the current lease, or None if the slot is free or unreadable."""
        try:
            data = json.loads(self._lock_path.read_text())
            return SlotLease(**data)
        except FileNotFoundError:
            return None
        except (OSError, json.JSONDecodeError, TypeError, ValidationError) as e:
            logger.warning(f"Unreadable staging lock {self._lock_path}: {e}")
            return None

    def is_held(self) -> bool:
        """Check whether a live process holds the slot."""
        lease = self.holder()
        return lease is not None and is_process_alive(lease.pid)

    def acquire(self, pid: int | None = None) -> str:
        """
        Acquire the slot.

        Args:
            pid: Holder process (defaults to the current process).

        Returns:
            The lease token.

        Raises:
            PolicyError: If a live process already holds the slot (409).
        """
        pid = pid if pid is not None else os.getpid()
        lease = SlotLease(
            token=secrets.token_hex(16),
            pid=pid,
            acquired_at=datetime.now(UTC).isoformat(),
        )

        for _ in range(2):
            if self._try_create(lease):
                logger.debug(
                    "Acquired staging slot",
                    extra={"lock_path": str(self._lock_path), "pid": pid},
                )
                return lease.token

            current = self.holder()
            if current is not None and is_process_alive(current.pid):
                raise PolicyError(
                    "A hot reload is already in progress",
                    details={"holder_pid": current.pid, "since": current.acquired_at},
                    status_code=409,
                )

            logger.warning(
                "Reclaiming stale staging slot",
                extra={
                    "lock_path": str(self._lock_path),
                    "stale_pid": current.pid if current else None,
                },
            )
            self._lock_path.unlink(missing_ok=True)

        raise PolicyError(
            "Could not acquire the staging slot",
            details={"lock_path": str(self._lock_path)},
            status_code=409,
        )

    def _try_create(self, lease: SlotLease) -> bool:
        ensure_directory(self._lock_path.parent)
        try:
            fd = os.open(self._lock_path, os.O_CREAT | os.O_EXCL | os.O_WRONLY, 0o644)
        except FileExistsError:
            return False
        with os.fdopen(fd, "w") as f:
            f.write(lease.model_dump_json())
        return True

    def _require(self, token: str) -> SlotLease:
        lease = self.holder()
        if lease is None or lease.token != token:
            raise PolicyError(
                "Staging slot is not held by this token",
                details={"lock_path": str(self._lock_path)},
                status_code=409,
            )
        return lease

    def write(self, token: str, data: bytes) -> Path:
        """
        Replace the staged package.

        Raises:
            PolicyError: If ``token`` does not hold the slot.
            OSError: If the file cannot be written.
        """
        self._require(token)
        atomic_write_bytes(self._staging_path, data)
        return self._staging_path

    def transfer(self, token: str, pid: int) -> None:
        """
        Hand the lease to another process, keeping the token.

        Raises:
            PolicyError: If ``token`` does not hold the slot.
        """
        lease = self._require(token)
        updated = lease.model_copy(update={"pid": pid})
        atomic_write_bytes(self._lock_path, updated.model_dump_json().encode())
        logger.debug(
            "Transferred staging slot",
            extra={"from_pid": lease.pid, "to_pid": pid},
        )

    def release(self, token: str) -> bool:
        """
        Release the slot if ``token`` still holds it.

        Returns:
            True if the lock was removed.
        """
        lease = self.holder()
        if lease is None or lease.token != token:
            return False
        self._lock_path.unlink(missing_ok=True)
        logger.debug("Released staging slot", extra={"lock_path": str(self._lock_path)})
        return True

    def discard(self) -> bool:
        """Delete the staged package. Returns True if a file was removed."""
        try:
            self._staging_path.unlink()
        except FileNotFoundError:
            return False
        return True
