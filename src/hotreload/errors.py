"""
Error types for the hot reload subsystem.

This module defines the HotReloadError base class and its subclasses. The
taxonomy splits cleanly in two:

- Admission errors (AuthorizationError, PolicyError, IntegrityError,
  PackageCorruptError) always occur before the managed tree is touched.
- Materialization errors (WriteError, DependencyInstallError, BuildError)
  always occur after the first file write.

SpawnError can occur on either side; the relaunch supervisor routes every
failure by its session's app_directory_modified flag, never by error type.
"""

from __future__ import annotations

from typing import Any


class HotReloadError(Exception):
    """
    Base exception class for hot reload errors.

    HotReloadError instances are caught at the HTTP layer and mapped to
    ``{ok: false, error, code}`` responses, or caught by the relaunch
    supervisor and written to the session log.

    Attributes:
        error_code: Internal error code string (e.g., "integrity_mismatch").
        message: Human-readable error message.
        details: Optional structured details.
        status_code: HTTP status used when the error reaches a client.

    Example:
        >>> raise HotReloadError(
        ...     error_code="integrity_mismatch",
        ...     message="MD5 checksum mismatch",
        ...     details={"expected": "deadbeef"},
        ... )
    """

    status_code: int = 500

    def __init__(
        self,
        error_code: str,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        """
        Initialize a HotReloadError.

        Args:
            error_code: Internal error code string identifying the error category.
            message: Human-readable error message.
            details: Optional dictionary with structured error details.
            status_code: Optional HTTP status overriding the class default.
        """
        super().__init__(message)
        self.error_code = error_code
        self.message = message
        self.details = details or {}
        if status_code is not None:
            self.status_code = status_code

    def __repr__(self) -> str:
        """Return a detailed string representation."""
        return (
            f"{self.__class__.__name__}("
            f"error_code={self.error_code!r}, "
            f"message={self.message!r}, "
            f"details={self.details!r})"
        )

    def to_dict(self) -> dict[str, Any]:
        """
        Convert the error to a dictionary for serialization.

        Returns:
            Dictionary with error_code, message, and details.
        """
        return {
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
        }


class AuthorizationError(HotReloadError):
    """
    Error raised when the caller cannot be authenticated or lacks the
    administrative capability.

    Uses 401 when no usable credentials were presented and 403 otherwise.
    """

    status_code = 403

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        """Initialize an AuthorizationError."""
        super().__init__(
            error_code="permission_denied",
            message=message,
            details=details,
            status_code=status_code,
        )


class PolicyError(HotReloadError):
    """
    Error raised when configuration or current state forbids a hot reload.

    Covers hot reload being disabled (403) and the staging slot being held
    by another in-flight session (409).
    """

    status_code = 403

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        """Initialize a PolicyError."""
        super().__init__(
            error_code="failed_precondition",
            message=message,
            details=details,
            status_code=status_code,
        )


class IntegrityError(HotReloadError):
    """Error raised when a package digest disagrees with the declared digest."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an IntegrityError."""
        super().__init__(
            error_code="integrity_mismatch", message=message, details=details
        )


class PackageCorruptError(HotReloadError):
    """Error raised when a package cannot be fully decoded."""

    status_code = 422

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PackageCorruptError."""
        super().__init__(
            error_code="package_corrupt", message=message, details=details
        )


class PackageBuildError(HotReloadError):
    """Error raised when a deployment package cannot be assembled."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a PackageBuildError."""
        super().__init__(
            error_code="package_build_failed", message=message, details=details
        )


class InvalidArgumentError(HotReloadError):
    """Error raised for missing or malformed arguments."""

    status_code = 400

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize an InvalidArgumentError."""
        super().__init__(
            error_code="invalid_argument", message=message, details=details
        )


class ShutdownTimeoutError(HotReloadError):
    """Error raised when the prior server does not exit in time."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a ShutdownTimeoutError."""
        super().__init__(
            error_code="shutdown_timeout", message=message, details=details
        )


class WriteError(HotReloadError):
    """Error raised when one or more package entries could not be written."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a WriteError."""
        super().__init__(error_code="write_failed", message=message, details=details)


class DependencyInstallError(HotReloadError):
    """Error raised when the dependency installation step fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a DependencyInstallError."""
        super().__init__(
            error_code="install_failed", message=message, details=details
        )


class BuildError(HotReloadError):
    """Error raised when the build step fails."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a BuildError."""
        super().__init__(error_code="build_failed", message=message, details=details)


class SpawnError(HotReloadError):
    """Error raised when a detached process cannot be started."""

    def __init__(self, message: str, details: dict[str, Any] | None = None) -> None:
        """Initialize a SpawnError."""
        super().__init__(error_code="spawn_failed", message=message, details=details)
