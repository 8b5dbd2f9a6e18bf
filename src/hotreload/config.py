"""
Configuration management for the hot reload server.

This module implements the AppConfig Pydantic model and configuration loading.

Configuration is loaded from multiple sources with layered precedence:
1. Built-in defaults (Pydantic model defaults)
2. YAML config file (/etc/hotreload/config.yml or --config path)
3. Environment variables (HOTRELOAD_* prefix, __ for nesting)
4. Command-line arguments (highest precedence)

The relaunch supervisor inherits the server's environment and receives the
same --config path, so both processes resolve the same configuration.
"""

from __future__ import annotations

import argparse
import os
import sys
from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_CONFIG_PATH = Path("/etc/hotreload/config.yml")
DEFAULT_ENV_PREFIX = "HOTRELOAD_"

# Placeholder in command vectors replaced by the running interpreter
PYTHON_PLACEHOLDER = "{python}"

# =============================================================================
# Server Configuration
# =============================================================================


class ServerConfig(BaseModel):
    """Server settings configuration.

    Attributes:
        host: Listen address.
        port: Public service port handed between server generations.
        log_level: Log level of the embedded uvicorn server.
        pid_file: Process identity record, relative to the app root.
    """

    host: str = Field(
        default="0.0.0.0",
        description="Listen address",
    )
    port: int = Field(
        default=8080,
        ge=1,
        le=65535,
        description="Public service port",
    )
    log_level: str = Field(
        default="info",
        description="uvicorn log level: debug, info, warn, error, critical",
    )
    pid_file: str = Field(
        default="server.pid",
        description="PID file written by the running server",
    )

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        """Validate and normalize log level."""
        valid_levels = {"debug", "info", "warn", "warning", "error", "critical"}
        v_lower = v.lower()
        if v_lower not in valid_levels:
            raise ValueError(
                f"Invalid log level: {v}. Must be one of: {', '.join(sorted(valid_levels))}"
            )
        if v_lower == "warn":
            return "warning"
        return v_lower


# =============================================================================
# Security Configuration
# =============================================================================


class RoleMappingsConfig(BaseModel):
    """Role mapping configuration.

    Attributes:
        groups_to_roles: Mapping from external groups to internal roles.
    """

    groups_to_roles: dict[str, str] = Field(
        default_factory=dict,
        description="Mapping from external groups (e.g., JWT claims) to internal roles",
    )


class LocalAuthConfig(BaseModel):
    """Local authentication configuration.

    Attributes:
        static_token: Optional static token for local authentication.
        permissive_mode: If True, allows all requests without authentication.
        default_role: Role assigned to locally authenticated callers.
        default_user_id: User ID assigned to locally authenticated callers.
    """

    static_token: str | None = Field(
        default=None,
        description="Static bearer token accepted in local mode",
    )
    permissive_mode: bool = Field(
        default=False,
        description="Allow all requests without authentication (dev only)",
    )
    default_role: str = Field(
        default="admin",
        description="Role assigned to locally authenticated callers",
    )
    default_user_id: str = Field(
        default="deploybot",
        description="User ID assigned to locally authenticated callers",
    )


class JWTAuthConfig(BaseModel):
    """Shared-secret JWT authentication configuration.

    Attributes:
        secret: HMAC secret used to verify tokens.
        algorithm: Accepted signing algorithm.
        audience: Expected audience claim (optional).
        issuer: Expected issuer claim (optional).
    """

    secret: str = Field(
        default="",
        description="HMAC secret for token verification",
    )
    algorithm: str = Field(
        default="HS256",
        description="Accepted JWT signing algorithm",
    )
    audience: str | None = Field(
        default=None,
        description="Expected audience (aud) claim",
    )
    issuer: str | None = Field(
        default=None,
        description="Expected issuer (iss) claim",
    )

    @field_validator("algorithm")
    @classmethod
    def validate_algorithm(cls, v: str) -> str:
        """Only HMAC algorithms can be verified with a shared secret."""
        v_upper = v.upper()
        if v_upper not in {"HS256", "HS384", "HS512"}:
            raise ValueError(f"Unsupported JWT algorithm: {v}")
        return v_upper


class SecurityConfig(BaseModel):
    """Security and authentication configuration.

    Attributes:
        mode: Authentication mode ('local' or 'jwt').
        local_auth: Local authentication settings.
        jwt_auth: JWT authentication settings.
        role_mappings: Mapping from external groups to internal roles.
    """

    mode: str = Field(
        default="local",
        description="Authentication mode: 'local' or 'jwt'",
    )
    local_auth: LocalAuthConfig = Field(
        default_factory=LocalAuthConfig,
        description="Local authentication settings",
    )
    jwt_auth: JWTAuthConfig = Field(
        default_factory=JWTAuthConfig,
        description="JWT authentication settings",
    )
    role_mappings: RoleMappingsConfig = Field(
        default_factory=RoleMappingsConfig,
        description="External identity to role mappings",
    )

    @field_validator("mode")
    @classmethod
    def validate_mode(cls, v: str) -> str:
        """Validate authentication mode."""
        valid_modes = {"local", "jwt"}
        v_lower = v.lower()
        if v_lower not in valid_modes:
            raise ValueError(
                f"Invalid security mode: {v}. Must be one of: {', '.join(sorted(valid_modes))}"
            )
        return v_lower


# =============================================================================
# Logging Configuration
# =============================================================================


class LoggingConfig(BaseModel):
    """Application logging configuration.

    Attributes:
        level: Log level.
        log_to_stdout: Whether to log to stdout.
        json_format: Whether stdout logs are JSON lines.
        debug_mode: Enable extra diagnostic logging.
    """

    level: str = Field(
        default="info",
        description="Log level",
    )
    log_to_stdout: bool = Field(
        default=True,
        description="Whether to log to stdout",
    )
    json_format: bool = Field(
        default=True,
        description="Emit stdout logs as JSON lines",
    )
    debug_mode: bool = Field(
        default=False,
        description="Enable extra diagnostic logging",
    )


# =============================================================================
# Hot Reload Configuration
# =============================================================================


def _default_install_command() -> list[str]:
    return [PYTHON_PLACEHOLDER, "-m", "pip", "install", "--quiet", "-e", "."]


def _default_build_command() -> list[str]:
    return [PYTHON_PLACEHOLDER, "-m", "compileall", "-q", "src"]


def _default_start_command() -> list[str]:
    return [PYTHON_PLACEHOLDER, "-m", "hotreload"]


class HotReloadConfig(BaseModel):
    """Hot reload protocol configuration.

    Attributes:
        enabled: Accept non-test hot reload requests.
        app_root: Root of the managed code tree.
        staging_path: Single staging slot for the inbound package.
        log_dir: Directory holding relaunch session logs.
        manifest_file: Dependency manifest compared before writing.
        install_command: Dependency installation step.
        build_command: Build/compilation step.
        start_command: Command launching a server generation.
        step_timeout_seconds: Timeout for install and build steps.
        shutdown_timeout_seconds: Wait bound for the prior server to exit.
        shutdown_poll_interval_seconds: Liveness polling interval.
        restart_timeout_seconds: Wait bound for the new server's health probe.
        diagnostic_host: Diagnostic listener bind address.
        diagnostic_port: Diagnostic listener port; None shares the server port
            so clients keep polling the address they pushed to.
        diagnostic_close_grace_seconds: Forced-close grace when stopping it.
    """

    enabled: bool = Field(
        default=False,
        description="Accept hot reload requests outside test mode",
    )
    app_root: str = Field(
        default=".",
        description="Root directory of the managed code tree",
    )
    staging_path: str = Field(
        default="data/temp/hot-reload-inbound.zip",
        description="Staging slot for the inbound package (relative to app_root)",
    )
    log_dir: str = Field(
        default="data/diagnostics",
        description="Relaunch session log directory (relative to app_root)",
    )
    manifest_file: str = Field(
        default="pyproject.toml",
        description="Manifest whose change triggers the install step",
    )
    install_command: list[str] = Field(
        default_factory=_default_install_command,
        description="Dependency installation command",
    )
    build_command: list[str] = Field(
        default_factory=_default_build_command,
        description="Build command",
    )
    start_command: list[str] = Field(
        default_factory=_default_start_command,
        description="Server start command",
    )
    step_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Timeout for install and build steps",
    )
    shutdown_timeout_seconds: float = Field(
        default=30.0,
        gt=0,
        description="How long to wait for the prior server to exit",
    )
    shutdown_poll_interval_seconds: float = Field(
        default=0.5,
        gt=0,
        description="Liveness polling interval while waiting for shutdown",
    )
    restart_timeout_seconds: float = Field(
        default=60.0,
        gt=0,
        description="How long to wait for the new server to answer /ping",
    )
    diagnostic_host: str = Field(
        default="0.0.0.0",
        description="Diagnostic listener bind address",
    )
    diagnostic_port: int | None = Field(
        default=None,
        ge=0,
        le=65535,
        description="Diagnostic listener port (defaults to server.port)",
    )
    diagnostic_close_grace_seconds: float = Field(
        default=2.0,
        ge=0,
        description="Grace period before lingering connections are closed",
    )

    @field_validator("install_command", "build_command", "start_command")
    @classmethod
    def validate_command(cls, v: list[str]) -> list[str]:
        """Commands must have at least a program name."""
        if not v:
            raise ValueError("Command must not be empty")
        return v

    def resolve(self, relative: str) -> Path:
        """Resolve a configured path against the app root."""
        path = Path(relative)
        if path.is_absolute():
            return path
        return Path(self.app_root).resolve() / path


# =============================================================================
# Package Configuration
# =============================================================================


class PackageConfig(BaseModel):
    """Deployment package inclusion policy.

    Attributes:
        source_dirs: Source subtrees scanned for files.
        allowed_extensions: File extensions included from source subtrees.
        allowed_files: File names included from source subtrees regardless of extension.
        required_files: Top-level manifest/config files that must exist.
        isolation_marker: Path segment prefix excluded everywhere.
        output_path: Where the builder writes the outbound package.
    """

    source_dirs: list[str] = Field(
        default_factory=lambda: ["src", "scripts"],
        description="Source subtrees included in the package",
    )
    allowed_extensions: list[str] = Field(
        default_factory=lambda: [".py", ".pyi", ".svg", ".html", ".css", ".js"],
        description="Allowed file extensions",
    )
    allowed_files: list[str] = Field(
        default_factory=lambda: ["py.typed", "requirements.txt"],
        description="Allowed file names",
    )
    required_files: list[str] = Field(
        default_factory=lambda: ["pyproject.toml"],
        description="Top-level files that must be present",
    )
    isolation_marker: str = Field(
        default="TEST_",
        description="Prefix marking isolation directories to exclude",
    )
    output_path: str = Field(
        default="data/temp/quick-deploy-outbound.zip",
        description="Outbound package path (relative to the source root)",
    )

    @field_validator("allowed_extensions")
    @classmethod
    def normalize_extensions(cls, v: list[str]) -> list[str]:
        """Normalize extensions to a leading dot and lowercase."""
        return [ext.lower() if ext.startswith(".") else f".{ext.lower()}" for ext in v]


# =============================================================================
# Main Application Configuration
# =============================================================================


class AppConfig(BaseModel):
    """
    Main application configuration model.

    Attributes:
        server: Server settings.
        security: Security and authentication settings.
        logging: Logging configuration.
        hot_reload: Hot reload protocol configuration.
        package: Deployment package inclusion policy.
        config_path: File the configuration was loaded from, if any.
    """

    server: ServerConfig = Field(
        default_factory=ServerConfig,
        description="Server settings",
    )
    security: SecurityConfig = Field(
        default_factory=SecurityConfig,
        description="Security and authentication settings",
    )
    logging: LoggingConfig = Field(
        default_factory=LoggingConfig,
        description="Logging configuration",
    )
    hot_reload: HotReloadConfig = Field(
        default_factory=HotReloadConfig,
        description="Hot reload configuration",
    )
    package: PackageConfig = Field(
        default_factory=PackageConfig,
        description="Deployment package inclusion policy",
    )
    config_path: str | None = Field(
        default=None,
        description="Source configuration file",
    )


def expand_command(command: list[str]) -> list[str]:
    """Replace the {python} placeholder with the running interpreter."""
    return [sys.executable if part == PYTHON_PLACEHOLDER else part for part in command]


# =============================================================================
# Configuration Loading Functions
# =============================================================================


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """
    Deep merge two dictionaries.

    Args:
        base: The base dictionary.
        override: The dictionary with values to override.

    Returns:
        A new dictionary with merged values.
    """
    result = base.copy()
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _load_yaml_config(config_path: Path) -> dict[str, Any]:
    """
    Load configuration from a YAML file.

    Raises:
        FileNotFoundError: If the config file doesn't exist.
        yaml.YAMLError: If the YAML is invalid.
    """
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path) as f:
        return yaml.safe_load(f) or {}


def _parse_env_value(value: str) -> Any:
    """
    Parse an environment variable value to appropriate Python type.

    Args:
        value: String value from environment variable.

    Returns:
        Parsed value (bool, int, float, list, or string).
    """
    if value.lower() in ("true", "yes", "on"):
        return True
    if value.lower() in ("false", "no", "off"):
        return False

    try:
        return int(value)
    except ValueError:
        pass

    try:
        return float(value)
    except ValueError:
        pass

    if "," in value:
        return [_parse_env_value(item.strip()) for item in value.split(",")]

    return value


def _load_env_config(prefix: str = DEFAULT_ENV_PREFIX) -> dict[str, Any]:
    """
    Load configuration from environment variables.

    Example: HOTRELOAD_HOT_RELOAD__ENABLED=true sets hot_reload.enabled.

    Args:
        prefix: Environment variable prefix.

    Returns:
        Dictionary with configuration values.
    """
    result: dict[str, Any] = {}

    for key, value in os.environ.items():
        if not key.startswith(prefix):
            continue

        parts = key[len(prefix) :].lower().split("__")

        current = result
        for part in parts[:-1]:
            if part not in current:
                current[part] = {}
            current = current[part]

        current[parts[-1]] = _parse_env_value(value)

    return result


def _parse_cli_args(args: list[str] | None = None) -> dict[str, Any]:
    """
    Parse server command-line arguments.

    Args:
        args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Dictionary with parsed arguments.
    """
    parser = argparse.ArgumentParser(
        description="Hot reload capable application server",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )

    parser.add_argument(
        "--config",
        "-c",
        type=str,
        help="Path to configuration file",
    )
    parser.add_argument(
        "--port",
        type=int,
        help="Override the public service port",
    )
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["debug", "info", "warning", "error"],
        help="Override log level",
    )
    parser.add_argument(
        "--debug",
        action="store_true",
        help="Enable debug mode",
    )

    parsed = parser.parse_args(args)

    result: dict[str, Any] = {}

    if parsed.config:
        result["_config_path"] = parsed.config

    if parsed.port:
        result["server"] = {"port": parsed.port}

    if parsed.log_level:
        result.setdefault("server", {})["log_level"] = parsed.log_level
        result["logging"] = {"level": parsed.log_level}

    if parsed.debug:
        result.setdefault("logging", {})["debug_mode"] = True
        result.setdefault("server", {})["log_level"] = "debug"

    return result


def load_config(
    config_path: Path | str | None = None,
    env_prefix: str = DEFAULT_ENV_PREFIX,
    cli_args: list[str] | None = None,
) -> AppConfig:
    """
    Load configuration from all sources with layered precedence.

    Args:
        config_path: Path to YAML configuration file. If None, uses the
            --config argument or the default path when it exists.
        env_prefix: Prefix for environment variables.
        cli_args: Command-line arguments. If None, uses sys.argv.

    Returns:
        Fully configured AppConfig instance.

    Raises:
        FileNotFoundError: If specified config file doesn't exist.
        ValidationError: If configuration is invalid.

    Example:
        >>> config = load_config(cli_args=[])
        >>> config.server.port
        8080
    """
    config_dict: dict[str, Any] = {}

    cli_config = _parse_cli_args(cli_args)

    if config_path is None:
        if "_config_path" in cli_config:
            config_path = Path(cli_config.pop("_config_path"))
        elif DEFAULT_CONFIG_PATH.exists():
            config_path = DEFAULT_CONFIG_PATH
    else:
        cli_config.pop("_config_path", None)
        config_path = Path(config_path)

    if config_path is not None:
        config_dict = _deep_merge(config_dict, _load_yaml_config(config_path))
        config_dict["config_path"] = str(config_path.resolve())

    config_dict = _deep_merge(config_dict, _load_env_config(env_prefix))
    config_dict = _deep_merge(config_dict, cli_config)

    return AppConfig(**config_dict)
