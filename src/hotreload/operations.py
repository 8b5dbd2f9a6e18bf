"""
Filesystem operations for staging and materializing packages.

This module implements the few filesystem primitives the protocol relies on:
- Directory creation with consistent error mapping
- Atomic single-file replacement (temp file + os.replace), used for the
  staging slot, the outbound package and state files
- Verified writes into the managed tree (write, then compare on-disk size)

CRITICAL: There is no multi-file transaction. Materializing a package is a
sequence of independent verified writes; callers must treat any failure
after the first write as leaving the tree in an unknown state.
"""

from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath

from hotreload.errors import PackageCorruptError, WriteError
from hotreload.logging import get_logger

logger = get_logger(__name__)


def ensure_directory(path: Path, *, parents: bool = True, mode: int = 0o755) -> Path:
    """
    Ensure a directory exists, creating it if necessary.

    Raises:
        WriteError: If directory cannot be created.
    """
    try:
        path.mkdir(parents=parents, mode=mode, exist_ok=True)
        return path
    except OSError as e:
        raise WriteError(
            f"Failed to create directory: {path}",
            details={"path": str(path), "error": str(e)},
        ) from e


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """
    Atomically replace ``path`` with ``data``.

    The bytes are written to a temp file in the same directory, flushed and
    fsynced, then renamed over the destination, so readers observe either
    the previous content or the complete new content.

    Raises:
        OSError: If the write or rename fails. The temp file is removed.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_name = tempfile.mkstemp(prefix=f".{path.name}.", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(temp_name, path)
        logger.debug("Atomic write completed", extra={"path": str(path), "size": len(data)})
    except BaseException:
        try:
            os.unlink(temp_name)
        except FileNotFoundError:
            pass
        raise


def resolve_destination(root: Path, relative_path: str) -> Path:
    """
    Map a package entry path onto the managed tree.

    Args:
        root: Managed tree root.
        relative_path: POSIX-style relative path from the package.

    Returns:
        The destination path, guaranteed to be inside ``root``.

    Raises:
        PackageCorruptError: If the entry would land outside ``root``.
    """
    pure = PurePosixPath(relative_path)
    if pure.is_absolute() or ".." in pure.parts or not pure.parts:
        raise PackageCorruptError(f"Unsafe entry path: {relative_path}")

    resolved_root = root.resolve()
    destination = (resolved_root / Path(*pure.parts)).resolve()
    if resolved_root != destination and resolved_root not in destination.parents:
        raise PackageCorruptError(f"Unsafe entry path: {relative_path}")
    return destination


@dataclass
class WriteResult:
    """Outcome of a single verified write."""

    path: Path
    ok: bool
    error: str | None = None


def write_file_verified(path: Path, data: bytes) -> WriteResult:
    """
    Write a file and verify it by comparing the on-disk size.

    Parent directories are created as needed. Errors are returned, not
    raised, so the caller can count successes and failures across a batch.

    Args:
        path: Destination path.
        data: Bytes to write.

    Returns:
        WriteResult describing the outcome.
    """
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        size = path.stat().st_size
    except OSError as e:
        return WriteResult(path=path, ok=False, error=f"{type(e).__name__}: {e}")

    if size != len(data):
        return WriteResult(
            path=path,
            ok=False,
            error=f"Size mismatch: wrote {len(data)}, got {size}",
        )

    return WriteResult(path=path, ok=True)
