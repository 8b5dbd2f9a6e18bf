"""
Command line entry point of the hot reload server.

Usage:
    python -m hotreload [--config PATH] [--port N] [--log-level LEVEL] [--debug]
"""

from __future__ import annotations

import sys

import uvicorn

from hotreload import __version__
from hotreload.config import load_config
from hotreload.logging import get_logger, setup_logging
from hotreload.server.app import create_app

logger = get_logger(__name__)


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``hotreload-server``."""
    config = load_config(cli_args=argv if argv is not None else sys.argv[1:])
    setup_logging(config.logging)

    app = create_app(config)
    server = uvicorn.Server(
        uvicorn.Config(
            app,
            host=config.server.host,
            port=config.server.port,
            log_level=config.server.log_level,
            log_config=None,
            access_log=False,
        )
    )

    def _shutdown() -> None:
        server.should_exit = True

    app.state.shutdown_hook = _shutdown

    logger.info(
        f"hotreload {__version__} listening on {config.server.host}:{config.server.port}",
        extra={"hot_reload_enabled": config.hot_reload.enabled},
    )
    server.run()
    return 0


if __name__ == "__main__":
    sys.exit(main())
