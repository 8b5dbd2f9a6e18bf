"""
Role-based capability checks.

Hot reload and its status route require the administrative capability.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from hotreload.errors import AuthorizationError
from hotreload.logging import get_logger

if TYPE_CHECKING:
    from hotreload.context import CallerInfo

logger = get_logger(__name__)

# Role hierarchy: higher index = higher privilege
ROLE_HIERARCHY = ["viewer", "operator", "admin"]

ADMIN_ROLE = "admin"


def role_level(role: str) -> int:
    """
    Get the privilege level for a role.

    Args:
        role: Role name.

    Returns:
        Privilege level (higher = more privilege).
    """
    try:
        return ROLE_HIERARCHY.index(role)
    except ValueError:
        return -1  # Unknown role has lowest privilege


def has_role(user_role: str, required_role: str) -> bool:
    """Check if user role meets the required role level."""
    return role_level(user_role) >= role_level(required_role)


def highest_role(roles: list[str], default: str) -> str:
    """Pick the most privileged known role, falling back to ``default``."""
    best = default
    for role in roles:
        if role_level(role) > role_level(best):
            best = role
    return best


def require_role(caller: CallerInfo, required_role: str, action: str) -> None:
    """
    Enforce a minimum role for an action.

    Raises:
        AuthorizationError: If the caller is anonymous (401) or lacks the role (403).
    """
    if not caller.is_authenticated:
        raise AuthorizationError(
            "Authentication required",
            details={"action": action},
            status_code=401,
        )

    if not has_role(caller.role, required_role):
        logger.warning(
            "Permission denied: role=%s, action=%s, required=%s",
            caller.role,
            action,
            required_role,
        )
        raise AuthorizationError(
            f"Insufficient permissions to {action}",
            details={
                "action": action,
                "required_role": required_role,
                "user_role": caller.role,
            },
        )


def require_admin(caller: CallerInfo, action: str = "perform hot reload") -> None:
    """Enforce the administrative capability."""
    require_role(caller, ADMIN_ROLE, action)
