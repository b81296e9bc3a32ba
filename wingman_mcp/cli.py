"""Command-line entry point for the wingman MCP server.

Usage:
    # Serve a tmux session over stdio (what an MCP client launches)
    wingman-mcp --session mcp-wingman

    # Observe window 2 of a GNU screen session
    wingman-mcp --terminal screen --session work --window 2

    # Inspect / clean up without serving
    wingman-mcp --terminal screen --list-sessions
    wingman-mcp --session mcp-wingman --kill-session
"""

import argparse
import logging
import sys
from typing import Optional, TextIO

from .backends import BACKENDS, BackendError, create_backend
from .config import ConfigError, ServerConfig
from .protocol import INTERNAL_ERROR, RPCResponse, TransportError, encode_response
from .server import StartupError, WingmanServer

logger = logging.getLogger("wingman_mcp")

LOG_FORMAT = "[mcp-ssh-wingman] %(asctime)s %(levelname)s %(message)s"
LOG_DATE_FORMAT = "%Y/%m/%d %H:%M:%S"


def build_parser(defaults: ServerConfig) -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="wingman-mcp",
        description="Expose a tmux or screen session read-only to an AI assistant over MCP (stdio).",
    )
    parser.add_argument("--session", default=defaults.session,
                        help="terminal session name to attach to (default: %(default)s)")
    parser.add_argument("--terminal", default=defaults.terminal,
                        help=f"terminal multiplexer type: {' or '.join(BACKENDS)} (default: %(default)s)")
    parser.add_argument("--window", default=defaults.window,
                        help="specific window/pane ID to attach to (optional)")
    parser.add_argument("--timeout", type=float, default=defaults.command_timeout,
                        help="seconds to wait for each multiplexer command (default: %(default)s)")
    parser.add_argument("--log-level", default=defaults.log_level,
                        help="logging level written to stderr (default: %(default)s)")
    parser.add_argument("--version", action="store_true", help="print version and exit")
    actions = parser.add_mutually_exclusive_group()
    actions.add_argument("--list-sessions", action="store_true",
                         help="print the sessions the multiplexer knows about and exit")
    actions.add_argument("--kill-session", action="store_true",
                         help="kill the configured session and exit")
    return parser


def configure_logging(level: str) -> None:
    # stdout carries the protocol, so logs go to stderr only
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format=LOG_FORMAT,
        datefmt=LOG_DATE_FORMAT,
        stream=sys.stderr,
    )


def _report_startup_failure(writer: TextIO, message: str) -> None:
    """Best-effort JSON-RPC error so the client sees why the server is going away."""
    try:
        writer.write(encode_response(RPCResponse.failure(None, INTERNAL_ERROR, message)) + "\n")
        writer.flush()
    except (OSError, ValueError) as e:
        logger.debug("could not report startup failure: %s", e)


def main(argv: Optional[list[str]] = None, stdin: Optional[TextIO] = None,
         stdout: Optional[TextIO] = None) -> int:
    stdin = stdin if stdin is not None else sys.stdin
    stdout = stdout if stdout is not None else sys.stdout

    try:
        defaults = ServerConfig.from_env()
    except ConfigError as e:
        print(f"wingman-mcp: {e}", file=sys.stderr)
        return 1

    args = build_parser(defaults).parse_args(argv)

    if args.version:
        print(f"mcp-ssh-wingman {defaults.build.version}", file=stdout)
        print(f"  commit: {defaults.build.commit}", file=stdout)
        print(f"  built:  {defaults.build.date}", file=stdout)
        return 0

    config = ServerConfig(
        terminal=args.terminal,
        session=args.session,
        window=args.window,
        command_timeout=args.timeout,
        log_level=args.log_level,
        build=defaults.build,
    )
    configure_logging(config.log_level)
    try:
        config.validate()
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    backend = create_backend(config.terminal, config.session, config.window, config.command_timeout)

    if args.list_sessions:
        try:
            sessions = backend.list_sessions()
        except BackendError as e:
            logger.error("%s", e)
            return 1
        for name in sessions:
            print(name, file=stdout)
        return 0

    if args.kill_session:
        try:
            backend.kill_session()
        except BackendError as e:
            logger.error("%s", e)
            return 1
        logger.info("killed %s session %r", config.terminal, config.session)
        return 0

    logger.info("Starting MCP server for %s session: %s", config.terminal, config.session)
    if config.window:
        logger.info("Targeting specific window/pane: %s", config.window)

    server = WingmanServer(backend, stdin, stdout, version=config.build.version)
    try:
        server.start()
    except StartupError as e:
        logger.error("Server error: %s", e)
        _report_startup_failure(stdout, str(e))
        return 1
    except TransportError as e:
        logger.error("Server error: %s", e)
        return 1
    return 0
