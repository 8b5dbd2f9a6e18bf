"""
Command line entry point of the relaunch supervisor.

Usage:
    python -m hotreload.relaunch <packagePath> --md5=<hex> [--test]
        [--log=<path>] [--pid=<n>] [--token=<t>] [--config=<path>]
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from hotreload.config import load_config
from hotreload.errors import InvalidArgumentError
from hotreload.logging import attach_session_log, get_logger, setup_logging
from hotreload.relaunch.session import RelaunchSession, new_session_log_path
from hotreload.relaunch.supervisor import EXIT_FAILURE, RelaunchSupervisor

logger = get_logger(__name__)


class _ArgumentParser(argparse.ArgumentParser):
    """Argument errors exit with status 1, like every other supervisor failure."""

    def error(self, message: str) -> None:  # type: ignore[override]
        raise InvalidArgumentError(message)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """
    Parse supervisor arguments.

    Raises:
        InvalidArgumentError: If the package path or digest is missing.
    """
    parser = _ArgumentParser(
        prog="hotreload-relaunch",
        description="Materialize a staged package and relaunch the server",
    )
    parser.add_argument("package_path", nargs="?", help="Staged package path")
    parser.add_argument("--md5", help="Expected package digest (lowercase hex)")
    parser.add_argument("--test", action="store_true", help="Simulate write/install/build")
    parser.add_argument("--log", help="Session log path (allocated when omitted)")
    parser.add_argument("--pid", type=int, help="PID of the server to wait for")
    parser.add_argument("--token", help="Staging slot lease token")
    parser.add_argument("--config", help="Configuration file shared with the server")

    args = parser.parse_args(argv)

    if not args.package_path:
        raise InvalidArgumentError("Missing package path")
    if not args.md5:
        raise InvalidArgumentError("--md5=<hash> is required for integrity verification")

    return args


def main(argv: list[str] | None = None) -> int:
    """Entry point for ``hotreload-relaunch``."""
    try:
        args = parse_args(argv)
    except InvalidArgumentError as e:
        print(f"ERROR: {e.message}", file=sys.stderr)
        print(
            "Usage: hotreload-relaunch <packagePath> --md5=<hash> "
            "[--test] [--log=<path>] [--pid=<n>] [--token=<t>] [--config=<path>]",
            file=sys.stderr,
        )
        return EXIT_FAILURE

    config = load_config(args.config, cli_args=[])
    setup_logging(config.logging)

    log_path = Path(args.log) if args.log else new_session_log_path(config.hot_reload)
    attach_session_log(log_path)

    session = RelaunchSession(
        package_path=str(Path(args.package_path).resolve()),
        expected_digest=args.md5,
        is_test_mode=args.test,
        log_path=str(log_path),
        server_pid=args.pid,
    )
    supervisor = RelaunchSupervisor(config, session, slot_token=args.token)
    return asyncio.run(supervisor.run())


if __name__ == "__main__":
    sys.exit(main())
