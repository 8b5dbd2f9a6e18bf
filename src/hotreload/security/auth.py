"""
Request authentication.

Two modes are supported:
- ``local``: a static shared token, or permissive mode for development
- ``jwt``: HMAC-signed JWTs verified against a shared secret, with groups
  mapped to internal roles

Tokens are read from ``Authorization: Bearer <token>`` or ``X-Auth-Key``.
"""

from __future__ import annotations

import hmac
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

import jwt
from jwt.exceptions import (
    DecodeError,
    ExpiredSignatureError,
    InvalidAudienceError,
    InvalidIssuerError,
    InvalidSignatureError,
    InvalidTokenError,
)

from hotreload.context import CallerInfo
from hotreload.errors import AuthorizationError
from hotreload.logging import get_logger
from hotreload.security.rbac import highest_role

if TYPE_CHECKING:
    from hotreload.config import SecurityConfig

logger = get_logger(__name__)

AUTH_KEY_HEADER = "X-Auth-Key"

# Claims that may carry group membership
_GROUP_CLAIMS = ("groups", "roles")


def _unauthenticated(message: str, reason: str, **details: Any) -> AuthorizationError:
    return AuthorizationError(
        message,
        details={"reason": reason, **details},
        status_code=401,
    )


class JWTValidator:
    """
    Validates shared-secret JWTs.

    Checks signature, expiry and, when configured, audience and issuer.

    Example:
        >>> validator = JWTValidator(secret="s3cret", role_mappings={"deployers": "admin"})
        >>> caller = validator.validate_token(token)
    """

    def __init__(
        self,
        secret: str,
        algorithm: str = "HS256",
        audience: str | None = None,
        issuer: str | None = None,
        role_mappings: dict[str, str] | None = None,
        default_role: str = "viewer",
    ) -> None:
        """
        Initialize the JWT validator.

        Args:
            secret: HMAC secret.
            algorithm: Accepted signing algorithm.
            audience: Expected audience claim, if any.
            issuer: Expected issuer claim, if any.
            role_mappings: Mapping from token groups to internal roles.
            default_role: Role when no mapping matches.
        """
        self._secret = secret
        self._algorithm = algorithm
        self._audience = audience
        self._issuer = issuer
        self._role_mappings = role_mappings or {}
        self._default_role = default_role

    @classmethod
    def from_config(cls, config: SecurityConfig) -> JWTValidator:
        """Create a JWTValidator from configuration."""
        return cls(
            secret=config.jwt_auth.secret,
            algorithm=config.jwt_auth.algorithm,
            audience=config.jwt_auth.audience,
            issuer=config.jwt_auth.issuer,
            role_mappings=config.role_mappings.groups_to_roles,
        )

    def validate_token(self, token: str) -> CallerInfo:
        """
        Validate a JWT and build the caller identity.

        Raises:
            AuthorizationError: If the token is missing or invalid (401).
        """
        if not token:
            raise _unauthenticated("No authentication token provided", "missing_token")

        if not self._secret:
            raise _unauthenticated("JWT secret not configured", "configuration_error")

        options: dict[str, Any] = {"require": ["sub", "exp"]}
        if self._audience is None:
            options["verify_aud"] = False

        try:
            payload = jwt.decode(
                token,
                self._secret,
                algorithms=[self._algorithm],
                audience=self._audience,
                issuer=self._issuer,
                options=options,
            )
        except ExpiredSignatureError as e:
            raise _unauthenticated("Token has expired", "token_expired") from e
        except InvalidSignatureError as e:
            raise _unauthenticated("Invalid token signature", "invalid_signature") from e
        except InvalidAudienceError as e:
            raise _unauthenticated(
                "Invalid token audience", "invalid_audience", expected=self._audience
            ) from e
        except InvalidIssuerError as e:
            raise _unauthenticated(
                "Invalid token issuer", "invalid_issuer", expected=self._issuer
            ) from e
        except DecodeError as e:
            raise _unauthenticated("Invalid token format", "decode_error", error=str(e)) from e
        except InvalidTokenError as e:
            raise _unauthenticated("Invalid token", "invalid_token", error=str(e)) from e

        return self._extract_caller(payload)

    def _extract_caller(self, payload: dict[str, Any]) -> CallerInfo:
        groups: list[str] = []
        for claim_name in _GROUP_CLAIMS:
            claim_value = payload.get(claim_name)
            if isinstance(claim_value, list):
                groups.extend(str(v) for v in claim_value)
            elif isinstance(claim_value, str):
                groups.append(claim_value)

        mapped = [self._role_mappings[g] for g in groups if g in self._role_mappings]
        return CallerInfo(
            user_id=str(payload["sub"]),
            role=highest_role(mapped, self._default_role),
            groups=groups,
            auth_method="jwt",
        )


class LocalAuthenticator:
    """
    Static-token authentication.

    WARNING: permissive mode accepts every request; use it only in
    development.
    """

    def __init__(
        self,
        static_token: str | None = None,
        permissive_mode: bool = False,
        default_role: str = "admin",
        default_user_id: str = "deploybot",
    ) -> None:
        self._static_token = static_token
        self._permissive_mode = permissive_mode
        self._default_role = default_role
        self._default_user_id = default_user_id

    @classmethod
    def from_config(cls, config: SecurityConfig) -> LocalAuthenticator:
        """Create a LocalAuthenticator from configuration."""
        return cls(
            static_token=config.local_auth.static_token,
            permissive_mode=config.local_auth.permissive_mode,
            default_role=config.local_auth.default_role,
            default_user_id=config.local_auth.default_user_id,
        )

    def authenticate(self, token: str | None = None) -> CallerInfo:
        """
        Authenticate using local auth mode.

        Raises:
            AuthorizationError: If the token is missing or wrong (401).
        """
        if self._permissive_mode:
            logger.warning("Permissive mode enabled - all requests allowed")
            return CallerInfo(
                user_id=self._default_user_id,
                role=self._default_role,
                auth_method="permissive",
            )

        if not token:
            raise _unauthenticated("No authentication token provided", "missing_token")

        if not self._static_token or not hmac.compare_digest(
            token.encode(), self._static_token.encode()
        ):
            raise _unauthenticated("Invalid local token", "invalid_token")

        return CallerInfo(
            user_id=self._default_user_id,
            role=self._default_role,
            auth_method="local_token",
        )


class AuthProvider:
    """
    Selects the authentication method configured for the server.
    """

    def __init__(
        self,
        mode: str,
        jwt_validator: JWTValidator | None = None,
        local_authenticator: LocalAuthenticator | None = None,
    ) -> None:
        """
        Initialize the auth provider.

        Args:
            mode: Authentication mode ('local' or 'jwt').
            jwt_validator: Validator used in jwt mode.
            local_authenticator: Authenticator used in local mode.
        """
        self._mode = mode
        self._jwt_validator = jwt_validator
        self._local_authenticator = local_authenticator

    @classmethod
    def from_config(cls, config: SecurityConfig) -> AuthProvider:
        """Create an AuthProvider from configuration."""
        if config.mode == "jwt":
            return cls(mode="jwt", jwt_validator=JWTValidator.from_config(config))
        return cls(mode="local", local_authenticator=LocalAuthenticator.from_config(config))

    @property
    def mode(self) -> str:
        """Get the authentication mode."""
        return self._mode

    def authenticate(
        self,
        headers: Mapping[str, str],
        ip_address: str | None = None,
    ) -> CallerInfo:
        """
        Authenticate a request from its headers.

        Args:
            headers: Request headers (case-insensitive mapping preferred).
            ip_address: Client address recorded on the caller.

        Returns:
            CallerInfo for the authenticated caller.

        Raises:
            AuthorizationError: If authentication fails (401).
        """
        token = extract_token(headers)

        if self._mode == "jwt":
            if self._jwt_validator is None:
                raise _unauthenticated("JWT validator not configured", "configuration_error")
            caller = self._jwt_validator.validate_token(token or "")
        else:
            if self._local_authenticator is None:
                raise _unauthenticated(
                    "Local authenticator not configured", "configuration_error"
                )
            caller = self._local_authenticator.authenticate(token)

        caller.ip_address = ip_address
        return caller


def extract_token(headers: Mapping[str, str]) -> str | None:
    """
    Extract a credential from request headers.

    Checks ``Authorization: Bearer <token>`` first, then ``X-Auth-Key``.
    """
    auth_header = headers.get("Authorization") or headers.get("authorization")
    if auth_header and auth_header.startswith("Bearer "):
        return auth_header[7:].strip() or None

    return headers.get(AUTH_KEY_HEADER) or headers.get(AUTH_KEY_HEADER.lower()) or None
