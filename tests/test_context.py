"""
Tests for the caller context.
"""

from __future__ import annotations

from hotreload.context import CallerInfo


class TestCallerInfo:
    """Tests for CallerInfo."""

    def test_defaults_are_anonymous(self) -> None:
        """Test a default caller is unauthenticated."""
        caller = CallerInfo()

        assert caller.role == "anonymous"
        assert not caller.is_authenticated

    def test_authenticated(self) -> None:
        """Test a caller with a user ID is authenticated."""
        assert CallerInfo(user_id="alice", role="admin").is_authenticated

    def test_describe(self) -> None:
        """Test the principal as written into session logs."""
        assert CallerInfo(user_id="alice", ip_address="10.0.0.7").describe() == "alice (10.0.0.7)"
        assert CallerInfo(user_id="bob").describe() == "bob (unknown address)"
        assert CallerInfo().describe() == "anonymous (unknown address)"

    def test_log_extra(self) -> None:
        """Test the structured logging fields."""
        caller = CallerInfo(
            user_id="alice",
            role="admin",
            ip_address="10.0.0.1",
            groups=["deployers"],
            auth_method="jwt",
        )

        assert caller.log_extra() == {
            "user_id": "alice",
            "role": "admin",
            "auth_method": "jwt",
            "client_ip": "10.0.0.1",
        }

    def test_groups_not_shared(self) -> None:
        """Test default group lists are independent."""
        first = CallerInfo()
        first.groups.append("x")

        assert CallerInfo().groups == []
