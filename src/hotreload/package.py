"""
Deployment package building and decoding.

A deployment package is a zip archive of the source tree selected by an
inclusion policy. Building is deterministic: entries are sorted, every entry
carries the same timestamp, permissions and compression parameters, so two
builds of an unchanged tree are byte-identical and share a digest.

Decoding is a full structural pass performed in memory: every entry is
inflated and CRC-checked and every path is validated before anything is
written anywhere.
"""

from __future__ import annotations

import io
import zipfile
import zlib
from collections.abc import Iterable
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING

from hotreload.digest import compute_digest
from hotreload.errors import PackageBuildError, PackageCorruptError
from hotreload.logging import get_logger
from hotreload.operations import atomic_write_bytes

if TYPE_CHECKING:
    from hotreload.config import PackageConfig

logger = get_logger(__name__)

# Fixed entry metadata for reproducible archives
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)
ZIP_FILE_MODE = 0o100644
ZIP_CREATE_SYSTEM_UNIX = 3
ZIP_COMPRESSION = zipfile.ZIP_DEFLATED
ZIP_COMPRESS_LEVEL = 9


@dataclass(frozen=True)
class PackageEntry:
    """A single file in a deployment package.

    Attributes:
        relative_path: POSIX path relative to the tree root.
        data: File content.
    """

    relative_path: str
    data: bytes

    @property
    def size(self) -> int:
        """Content size in bytes."""
        return len(self.data)


@dataclass(frozen=True)
class DeploymentPackage:
    """An immutable, built deployment package.

    Attributes:
        data: Raw archive bytes.
        entries: Entries in archive order.
    """

    data: bytes
    entries: tuple[PackageEntry, ...]

    @property
    def digest(self) -> str:
        """Integrity digest of the raw archive bytes."""
        return compute_digest(self.data)

    @property
    def file_count(self) -> int:
        """Number of file entries."""
        return len(self.entries)


@dataclass
class InclusionPolicy:
    """
    Decides which files of a source tree go into a package.

    A file under one of ``source_dirs`` is included when its extension is in
    ``allowed_extensions`` or its name is in ``allowed_files``. Every file in
    ``required_files`` is included and must exist. Any path with a segment
    starting with ``isolation_marker`` is excluded regardless.
    """

    source_dirs: list[str] = field(default_factory=lambda: ["src"])
    allowed_extensions: set[str] = field(default_factory=lambda: {".py"})
    allowed_files: set[str] = field(default_factory=set)
    required_files: list[str] = field(default_factory=list)
    isolation_marker: str = "TEST_"

    @classmethod
    def from_config(cls, config: PackageConfig) -> InclusionPolicy:
        """Create an InclusionPolicy from configuration."""
        return cls(
            source_dirs=list(config.source_dirs),
            allowed_extensions=set(config.allowed_extensions),
            allowed_files=set(config.allowed_files),
            required_files=list(config.required_files),
            isolation_marker=config.isolation_marker,
        )

    def is_isolated(self, relative_path: PurePosixPath) -> bool:
        """Check whether any path segment marks an isolation directory."""
        if not self.isolation_marker:
            return False
        return any(part.startswith(self.isolation_marker) for part in relative_path.parts)

    def includes(self, relative_path: PurePosixPath) -> bool:
        """Check whether a source-subtree file belongs in the package."""
        if self.is_isolated(relative_path):
            return False
        return (
            relative_path.suffix.lower() in self.allowed_extensions
            or relative_path.name in self.allowed_files
        )


class PackageBuilder:
    """
    Assembles deployment packages from a source tree.

    Example:
        >>> builder = PackageBuilder(InclusionPolicy(source_dirs=["src"]))
        >>> package = builder.build(Path("."))
        >>> builder.write(package, Path("data/temp/outbound.zip"))
    """

    def __init__(self, policy: InclusionPolicy) -> None:
        """
        Initialize the builder.

        Args:
            policy: Inclusion policy deciding which files are packaged.
        """
        self._policy = policy

    @property
    def policy(self) -> InclusionPolicy:
        """Get the inclusion policy."""
        return self._policy

    def collect(self, source_root: Path) -> list[PurePosixPath]:
        """
        List the relative paths a package built from ``source_root`` contains.

        Raises:
            PackageBuildError: If the root or a required file is missing.
        """
        root = source_root.resolve()
        if not root.is_dir():
            raise PackageBuildError(
                f"Source root is not a directory: {source_root}",
                details={"source_root": str(source_root)},
            )

        selected: set[PurePosixPath] = set()

        for source_dir in self._policy.source_dirs:
            base = root / source_dir
            if not base.is_dir():
                logger.debug("Source directory not present", extra={"path": str(base)})
                continue
            for path in base.rglob("*"):
                if not path.is_file():
                    continue
                relative = PurePosixPath(path.relative_to(root).as_posix())
                if self._policy.includes(relative):
                    selected.add(relative)

        missing = [name for name in self._policy.required_files if not (root / name).is_file()]
        if missing:
            raise PackageBuildError(
                f"Required files missing: {', '.join(missing)}",
                details={"missing": missing, "source_root": str(root)},
            )

        for name in self._policy.required_files:
            selected.add(PurePosixPath(Path(name).as_posix()))

        return sorted(selected, key=str)

    def build(self, source_root: Path) -> DeploymentPackage:
        """
        Build a package from a source tree.

        Args:
            source_root: Root of the tree to package.

        Returns:
            The built DeploymentPackage.

        Raises:
            PackageBuildError: If a required file is missing or unreadable.
        """
        root = source_root.resolve()
        entries: list[PackageEntry] = []
        for relative in self.collect(root):
            try:
                data = (root / Path(*relative.parts)).read_bytes()
            except OSError as e:
                raise PackageBuildError(
                    f"Failed to read {relative}: {e}",
                    details={"path": str(relative)},
                ) from e
            entries.append(PackageEntry(relative_path=str(relative), data=data))

        package = DeploymentPackage(data=encode_entries(entries), entries=tuple(entries))
        logger.info(
            "Built deployment package",
            extra={
                "file_count": package.file_count,
                "size": len(package.data),
                "digest": package.digest,
            },
        )
        return package

    def write(self, package: DeploymentPackage, output_path: Path) -> Path:
        """
        Write a package to the staging location, replacing any prior package.

        Raises:
            PackageBuildError: If the package cannot be written.
        """
        try:
            atomic_write_bytes(output_path, package.data)
        except OSError as e:
            raise PackageBuildError(
                f"Failed to write package to {output_path}: {e}",
                details={"output_path": str(output_path)},
            ) from e
        return output_path


def encode_entries(entries: Iterable[PackageEntry]) -> bytes:
    """Encode entries as a reproducible zip archive, in the given order."""
    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=ZIP_COMPRESSION) as archive:
        for entry in entries:
            info = zipfile.ZipInfo(entry.relative_path, date_time=ZIP_EPOCH)
            info.create_system = ZIP_CREATE_SYSTEM_UNIX
            info.external_attr = ZIP_FILE_MODE << 16
            info.compress_type = ZIP_COMPRESSION
            archive.writestr(info, entry.data, compresslevel=ZIP_COMPRESS_LEVEL)
    return buffer.getvalue()


def _validate_entry_name(name: str) -> None:
    pure = PurePosixPath(name)
    if (
        not name
        or "\\" in name
        or pure.is_absolute()
        or ".." in pure.parts
        or (pure.parts and ":" in pure.parts[0])
    ):
        raise PackageCorruptError(
            f"Unsafe entry path in package: {name!r}",
            details={"path": name},
        )


def decode_package(data: bytes) -> list[PackageEntry]:
    """
    Fully decode a package in memory.

    Every member is read (inflating and CRC-checking it) and every path is
    validated. Directory members are skipped.

    Args:
        data: Raw archive bytes.

    Returns:
        File entries in archive order.

    Raises:
        PackageCorruptError: If the archive is truncated, corrupt, uses an
            unsupported compression method, contains duplicate or unsafe
            paths, or holds no files.
    """
    entries: list[PackageEntry] = []
    seen: set[str] = set()

    try:
        with zipfile.ZipFile(io.BytesIO(data)) as archive:
            for info in archive.infolist():
                if info.is_dir():
                    continue
                _validate_entry_name(info.filename)
                if info.filename in seen:
                    raise PackageCorruptError(
                        f"Duplicate entry in package: {info.filename}",
                        details={"path": info.filename},
                    )
                seen.add(info.filename)
                entries.append(
                    PackageEntry(relative_path=info.filename, data=archive.read(info))
                )
    except PackageCorruptError:
        raise
    except (zipfile.BadZipFile, zlib.error, EOFError, NotImplementedError, ValueError, OSError) as e:
        raise PackageCorruptError(
            f"Corrupt package: {type(e).__name__}: {e}",
            details={"size": len(data)},
        ) from e

    if not entries:
        raise PackageCorruptError("Package contains no files", details={"size": len(data)})

    return entries
