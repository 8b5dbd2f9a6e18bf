"""
Pytest configuration for the hot reload server tests.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from pathlib import Path

import pytest

from hotreload.config import AppConfig, HotReloadConfig, LocalAuthConfig, SecurityConfig
from hotreload.logging import ROOT_LOGGER_NAME, SessionLogHandler

# Configure pytest-asyncio mode
pytest_plugins = ["pytest_asyncio"]

ADMIN_TOKEN = "test-admin-token"


def pytest_configure(config: pytest.Config) -> None:
    """Configure pytest markers."""
    config.addinivalue_line(
        "markers",
        "integration: marks tests as integration tests (deselect with '-m \"not integration\"')",
    )


@pytest.fixture(autouse=True)
def _reset_package_logger() -> Iterator[None]:
    """Keep handlers and levels from leaking between tests."""
    yield
    root = logging.getLogger(ROOT_LOGGER_NAME)
    for handler in list(root.handlers):
        root.removeHandler(handler)
        if isinstance(handler, SessionLogHandler):
            handler.close()
    root.setLevel(logging.NOTSET)
    root.propagate = True


@pytest.fixture
def app_root(tmp_path: Path) -> Path:
    """A managed tree with a manifest and one source file."""
    root = tmp_path / "app"
    (root / "src" / "app").mkdir(parents=True)
    (root / "pyproject.toml").write_text('[project]\nname = "app"\n')
    (root / "src" / "app" / "main.py").write_text("VERSION = 1\n")
    return root


@pytest.fixture
def config(app_root: Path) -> AppConfig:
    """Configuration rooted at a temporary managed tree, hot reload enabled."""
    return AppConfig(
        hot_reload=HotReloadConfig(
            enabled=True,
            app_root=str(app_root),
            shutdown_timeout_seconds=1.0,
            shutdown_poll_interval_seconds=0.05,
            restart_timeout_seconds=1.0,
            diagnostic_port=0,
        ),
        security=SecurityConfig(
            mode="local",
            local_auth=LocalAuthConfig(static_token=ADMIN_TOKEN),
        ),
    )


@pytest.fixture
def admin_headers() -> dict[str, str]:
    """Authorization headers accepted by the ``config`` fixture."""
    return {"Authorization": f"Bearer {ADMIN_TOKEN}"}
