#!/usr/bin/env python3
"""
stateless-mcp CLI Entry Point

Starts the MCP server on stdio or Streamable HTTP.
"""

import argparse
import asyncio
import logging
import sys
from typing import List, Optional

from .config import ServerConfig
from .errors import ConfigError
from .http import run_http_server
from .stdio import run_stdio_server


def configure_logging(level: str) -> None:
    """Log to stderr; stdout carries the stdio protocol."""
    logging.basicConfig(
        level=getattr(logging, level),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        stream=sys.stderr
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="stateless-mcp",
        description="Minimal MCP server with a greeting prompt, a static resource "
                    "and a periodic notification tool"
    )
    parser.add_argument(
        "--log-level",
        help="Logging level (default: INFO, or STATELESS_MCP_LOG_LEVEL)"
    )

    subparsers = parser.add_subparsers(dest="transport", required=True)

    subparsers.add_parser("stdio", help="Serve JSON-RPC over stdin/stdout")

    http_parser = subparsers.add_parser("http", help="Serve Streamable HTTP on localhost")
    http_parser.add_argument("--host", help="Host to bind to (default: 127.0.0.1)")
    http_parser.add_argument("--port", type=int, help="Port to listen on (default: 8080)")
    http_parser.add_argument("--auth-token", help="Auth token (generated if not provided)")

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    """CLI entry point."""
    args = build_parser().parse_args(argv)

    overrides = {"log_level": args.log_level}
    if args.transport == "http":
        overrides.update(host=args.host, port=args.port, auth_token=args.auth_token)

    try:
        config = ServerConfig.from_env(overrides)
    except ConfigError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    configure_logging(config.log_level)

    try:
        if args.transport == "stdio":
            asyncio.run(run_stdio_server(config))
        else:
            asyncio.run(run_http_server(config))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
