"""Command-line entry point.

Usage:
    python -m vol_query run            # fetch, ingest and serve queries
    python -m vol_query init-db        # create tables
    python -m vol_query reset-ingest   # queue a rebuild of derived state
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn

from vol_query.api import create_app
from vol_query.config import Settings, get_settings
from vol_query.pipeline import Pipeline
from vol_query.storage.database import DatabaseManager
from vol_query.storage.repos import ControlCommand, ControlCommandRepository

logger = logging.getLogger(__name__)


async def _run(settings: Settings) -> None:
    pipeline = Pipeline(settings)
    await pipeline.start()
    try:
        admin_key = settings.api.admin_key.get_secret_value() if settings.api.admin_key else None
        app = create_app(pipeline.db_manager, pipeline.ledger, admin_key=admin_key)
        config = uvicorn.Config(
            app,
            host=settings.api.host,
            port=settings.api.port,
            log_level=settings.log_level.lower(),
        )
        await uvicorn.Server(config).serve()
    finally:
        await pipeline.stop()


async def _init_db(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
    finally:
        await db.dispose_async()


async def _reset_ingest(settings: Settings) -> None:
    db = DatabaseManager(settings.database.url)
    try:
        await db.init_schema_async()
        async with db.get_async_session() as session:
            await ControlCommandRepository(session).push(ControlCommand.RESET_INGEST.value)
    finally:
        await db.dispose_async()


def _cmd_run(args: argparse.Namespace, settings: Settings) -> None:
    asyncio.run(_run(settings))


def _cmd_init_db(args: argparse.Namespace, settings: Settings) -> None:
    asyncio.run(_init_db(settings))
    print("database initialized")


def _cmd_reset_ingest(args: argparse.Namespace, settings: Settings) -> None:
    if not args.yes:
        print("reset-ingest drops all offers and assets; pass --yes to confirm", file=sys.stderr)
        sys.exit(2)
    asyncio.run(_reset_ingest(settings))
    print("RESET_INGEST queued; applied at the start of the next ingestion pass")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="vol-query", description="Ledger query service")
    sub = parser.add_subparsers(dest="cmd", required=True)

    sub.add_parser("run", help="run fetch/ingest loops and the HTTP API").set_defaults(
        func=_cmd_run
    )
    sub.add_parser("init-db", help="create database tables").set_defaults(func=_cmd_init_db)

    reset = sub.add_parser("reset-ingest", help="discard derived state and re-ingest")
    reset.add_argument("--yes", action="store_true", help="confirm the destructive reset")
    reset.set_defaults(func=_cmd_reset_ingest)
    return parser


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    logging.basicConfig(
        level=settings.get_logging_level(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Configuration: %s", settings.redacted_summary())
    try:
        args.func(args, settings)
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
