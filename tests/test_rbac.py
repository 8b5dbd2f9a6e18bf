"""
Tests for role-based capability checks.
"""

from __future__ import annotations

import pytest

from hotreload.context import CallerInfo
from hotreload.errors import AuthorizationError
from hotreload.security.rbac import (
    ROLE_HIERARCHY,
    has_role,
    highest_role,
    require_admin,
    require_role,
    role_level,
)

# =============================================================================
# Tests for role helpers
# =============================================================================


class TestRoleHelpers:
    """Tests for role ordering helpers."""

    def test_hierarchy_order(self) -> None:
        """Test roles are ordered by privilege."""
        assert ROLE_HIERARCHY == ["viewer", "operator", "admin"]
        assert role_level("viewer") < role_level("operator") < role_level("admin")

    def test_unknown_role_lowest(self) -> None:
        """Test unknown roles rank below every known role."""
        assert role_level("superuser") == -1
        assert not has_role("superuser", "viewer")

    @pytest.mark.parametrize(
        ("user_role", "required", "expected"),
        [
            ("admin", "admin", True),
            ("admin", "viewer", True),
            ("operator", "admin", False),
            ("viewer", "operator", False),
        ],
    )
    def test_has_role(self, user_role: str, required: str, expected: bool) -> None:
        """Test role comparisons."""
        assert has_role(user_role, required) is expected

    def test_highest_role(self) -> None:
        """Test the most privileged role is picked."""
        assert highest_role(["viewer", "admin", "operator"], "viewer") == "admin"
        assert highest_role([], "viewer") == "viewer"
        assert highest_role(["unknown"], "viewer") == "viewer"


# =============================================================================
# Tests for require_role / require_admin
# =============================================================================


class TestRequireRole:
    """Tests for capability enforcement."""

    def test_admin_allowed(self) -> None:
        """Test an admin may hot reload."""
        require_admin(CallerInfo(user_id="alice", role="admin"))

    def test_anonymous_is_401(self) -> None:
        """Test anonymous callers get 401."""
        with pytest.raises(AuthorizationError) as exc_info:
            require_admin(CallerInfo())

        assert exc_info.value.status_code == 401

    def test_insufficient_role_is_403(self) -> None:
        """Test authenticated callers without the role get 403."""
        with pytest.raises(AuthorizationError) as exc_info:
            require_admin(CallerInfo(user_id="bob", role="operator"))

        assert exc_info.value.status_code == 403
        assert exc_info.value.details["required_role"] == "admin"
        assert "perform hot reload" in exc_info.value.message

    def test_custom_role(self) -> None:
        """Test lower requirements accept lower roles."""
        require_role(CallerInfo(user_id="v", role="viewer"), "viewer", "view status")
