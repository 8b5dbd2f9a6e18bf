"""
Identity of the caller behind an authenticated request.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any


@dataclass
class CallerInfo:
    """
    Who is pushing or inspecting a hot reload.

    Attributes:
        user_id: Principal from the token (JWT ``sub`` or the local user ID).
        role: Role after group mapping: viewer, operator or admin.
        ip_address: Peer address of the HTTP request.
        groups: Groups carried by the token.
        auth_method: ``jwt``, ``local_token`` or ``permissive``.
    """

    user_id: str | None = None
    role: str = "anonymous"
    ip_address: str | None = None
    groups: list[str] = field(default_factory=list)
    auth_method: str | None = None

    @property
    def is_authenticated(self) -> bool:
        return self.user_id is not None

    def describe(self) -> str:
        """Human-readable principal for session log lines, e.g. ``alice (10.0.0.7)``."""
        return f"{self.user_id or 'anonymous'} ({self.ip_address or 'unknown address'})"

    def log_extra(self) -> dict[str, Any]:
        """Structured logging fields identifying the caller."""
        return {
            "user_id": self.user_id,
            "role": self.role,
            "auth_method": self.auth_method,
            "client_ip": self.ip_address,
        }
