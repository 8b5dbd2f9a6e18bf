"""
Tests for the errors module.

This test module validates:
- HotReloadError base class functionality
- Error subclasses, their codes and HTTP statuses
- Error serialization (to_dict)
"""

from __future__ import annotations

import pytest

from hotreload.errors import (
    AuthorizationError,
    BuildError,
    DependencyInstallError,
    HotReloadError,
    IntegrityError,
    InvalidArgumentError,
    PackageBuildError,
    PackageCorruptError,
    PolicyError,
    ShutdownTimeoutError,
    SpawnError,
    WriteError,
)

# =============================================================================
# Tests for HotReloadError Base Class
# =============================================================================


class TestHotReloadError:
    """Tests for HotReloadError base class."""

    def test_init_with_all_args(self) -> None:
        """Test HotReloadError initialization with all arguments."""
        error = HotReloadError(
            error_code="test_error",
            message="Test error message",
            details={"key": "value"},
            status_code=418,
        )

        assert error.error_code == "test_error"
        assert error.message == "Test error message"
        assert error.details == {"key": "value"}
        assert error.status_code == 418

    def test_init_with_minimal_args(self) -> None:
        """Test HotReloadError initialization with minimal arguments."""
        error = HotReloadError(error_code="test_error", message="Test message")

        assert error.details == {}
        assert error.status_code == 500

    def test_str_representation(self) -> None:
        """Test HotReloadError string representation."""
        error = HotReloadError(error_code="test_error", message="Test error message")
        assert str(error) == "Test error message"

    def test_repr_representation(self) -> None:
        """Test HotReloadError repr representation."""
        error = HotReloadError(
            error_code="test_error",
            message="Test message",
            details={"path": "src/app.py"},
        )
        repr_str = repr(error)

        assert "HotReloadError" in repr_str
        assert "test_error" in repr_str
        assert "src/app.py" in repr_str

    def test_to_dict(self) -> None:
        """Test HotReloadError to_dict serialization."""
        error = HotReloadError(
            error_code="test_error",
            message="Test message",
            details={"key": "value"},
        )

        assert error.to_dict() == {
            "error_code": "test_error",
            "message": "Test message",
            "details": {"key": "value"},
        }

    def test_status_override_does_not_leak_to_class(self) -> None:
        """Test per-instance status codes leave the class default alone."""
        PolicyError("busy", status_code=409)

        assert PolicyError("disabled").status_code == 403


# =============================================================================
# Tests for Error Subclasses
# =============================================================================


class TestErrorSubclasses:
    """Tests for the error taxonomy."""

    @pytest.mark.parametrize(
        ("error_cls", "error_code", "status_code"),
        [
            (IntegrityError, "integrity_mismatch", 400),
            (PackageCorruptError, "package_corrupt", 422),
            (PackageBuildError, "package_build_failed", 500),
            (InvalidArgumentError, "invalid_argument", 400),
            (ShutdownTimeoutError, "shutdown_timeout", 500),
            (WriteError, "write_failed", 500),
            (DependencyInstallError, "install_failed", 500),
            (BuildError, "build_failed", 500),
            (SpawnError, "spawn_failed", 500),
        ],
    )
    def test_codes_and_statuses(
        self, error_cls: type[HotReloadError], error_code: str, status_code: int
    ) -> None:
        """Test each subclass carries its code and HTTP status."""
        error = error_cls("boom", details={"x": 1})  # type: ignore[call-arg]

        assert isinstance(error, HotReloadError)
        assert error.error_code == error_code
        assert error.status_code == status_code
        assert error.message == "boom"
        assert error.details == {"x": 1}

    def test_authorization_error_statuses(self) -> None:
        """Test AuthorizationError defaults to 403 and accepts 401."""
        assert AuthorizationError("nope").status_code == 403
        assert AuthorizationError("who?", status_code=401).status_code == 401
        assert AuthorizationError("nope").error_code == "permission_denied"

    def test_policy_error_statuses(self) -> None:
        """Test PolicyError defaults to 403 and accepts 409."""
        assert PolicyError("disabled").status_code == 403
        assert PolicyError("busy", status_code=409).status_code == 409
        assert PolicyError("busy").error_code == "failed_precondition"

    def test_can_be_caught_as_base(self) -> None:
        """Test subclasses can be caught as HotReloadError."""
        with pytest.raises(HotReloadError) as exc_info:
            raise WriteError("2 files failed to write")

        assert exc_info.value.error_code == "write_failed"
