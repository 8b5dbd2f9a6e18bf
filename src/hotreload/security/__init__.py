"""
Security module for the hot reload server.

Components:
- AuthProvider: Authenticates requests (static token or shared-secret JWT)
- JWTValidator: Verifies HMAC-signed JWTs and maps groups to roles
- RBAC helpers: Role hierarchy and the administrative capability check
"""

from hotreload.security.auth import AuthProvider, JWTValidator, LocalAuthenticator
from hotreload.security.rbac import has_role, require_admin, require_role

__all__ = [
    "AuthProvider",
    "JWTValidator",
    "LocalAuthenticator",
    "has_role",
    "require_admin",
    "require_role",
]
