#!/usr/bin/env python3
"""Command-line interface for the payments service.

Usage:
    storefront-payments serve --host 0.0.0.0 --port 8000
    storefront-payments providers
    storefront-payments init-db --database-url sqlite+aiosqlite:///./shop.db
"""

import argparse
import asyncio
import json
import logging
import sys
from typing import Optional

import uvicorn

from .api import create_app
from .config import Settings
from .connectors import build_connectors
from .database import DatabaseManager

logger = logging.getLogger(__name__)


async def init_database(database_url: Optional[str]) -> None:
    """Create the orders, payments and order_events tables if missing."""
    db_manager = DatabaseManager(database_url)
    try:
        await db_manager.initialize(create_tables=True)
    finally:
        await db_manager.shutdown()


def show_providers(settings: Settings) -> int:
    connectors = build_connectors(settings)
    summary = {name: connector.health_check() for name, connector in connectors.items()}
    print(json.dumps(summary, indent=2))
    return 0


def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser for the CLI.

    Returns:
        Configured ArgumentParser.
    """
    parser = argparse.ArgumentParser(
        prog="storefront-payments",
        description="Payment initialization and provider callback service.",
    )
    parser.add_argument(
        "--log-level",
        default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging level (default: INFO)",
    )

    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default="127.0.0.1", help="Bind address (default: 127.0.0.1)")
    serve_parser.add_argument("--port", "-p", type=int, default=8000, help="Port (default: 8000)")

    subparsers.add_parser("providers", help="Show which providers are configured")

    init_db_parser = subparsers.add_parser("init-db", help="Create database tables")
    init_db_parser.add_argument(
        "--database-url",
        help="Database URL (default: DATABASE_URL or local SQLite)",
    )

    return parser


def main(args: Optional[list] = None) -> int:
    """Main entry point for the CLI.

    Args:
        args: Optional list of command-line arguments (for testing).

    Returns:
        Exit code.
    """
    parser = create_parser()
    parsed_args = parser.parse_args(args)

    logging.basicConfig(
        level=getattr(logging, parsed_args.log_level),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    if not parsed_args.command:
        parser.print_help()
        return 1

    settings = Settings.from_env()

    if parsed_args.command == "serve":
        app = create_app(settings)
        uvicorn.run(app, host=parsed_args.host, port=parsed_args.port, log_level=parsed_args.log_level.lower())
        return 0

    if parsed_args.command == "providers":
        return show_providers(settings)

    if parsed_args.command == "init-db":
        asyncio.run(init_database(parsed_args.database_url or settings.database_url))
        logger.info("Database initialized")
        return 0

    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
