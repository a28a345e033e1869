"""Command line entry point.

Usage:
    python -m smart_wallet_tracker serve
    python -m smart_wallet_tracker track-wallet <address> [--label NAME]
    python -m smart_wallet_tracker enqueue-all
    python -m smart_wallet_tracker retry-failed
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

import uvicorn

from smart_wallet_tracker.api import create_app
from smart_wallet_tracker.config import Settings, get_settings
from smart_wallet_tracker.pipeline import Pipeline
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.repos import StagedTradeRepository, WalletJobRepository, WalletRepository

logger = logging.getLogger("smart_wallet_tracker")


def _parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="smart-wallet-tracker",
        description="Smart-money wallet tracker: webhook ingestion, FIFO PnL and consensus signals",
    )
    parser.add_argument(
        "--log-level",
        default=None,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "debug", "info", "warning", "error"],
        help="Root log level (default: LOG_LEVEL from the environment)",
    )
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server and background workers")
    serve.add_argument("--host", default=None, help="Bind host (default: API_HOST)")
    serve.add_argument("--port", type=int, default=None, help="Bind port (default: API_PORT)")
    serve.add_argument("--dry-run", action="store_true", help="Accept webhooks without staging trades")
    serve.add_argument("--init-schema", action="store_true", help="Create tables before starting (development)")

    track = sub.add_parser("track-wallet", help="Register a wallet for tracking")
    track.add_argument("address")
    track.add_argument("--label", default=None)

    sub.add_parser("enqueue-all", help="Queue a ledger recomputation for every active wallet")
    sub.add_parser("retry-failed", help="Reset failed staged trades and parked queue jobs to pending")
    return parser.parse_args(argv)


def _setup_logging(settings: Settings, override: str | None) -> None:
    level = getattr(logging, override.upper()) if override else settings.get_logging_level()
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
    )
    for noisy in ("httpx", "httpcore", "sqlalchemy.engine"):
        logging.getLogger(noisy).setLevel(max(level, logging.WARNING))


def _db(settings: Settings) -> DatabaseManager:
    return DatabaseManager(
        settings.database.url,
        pool_size=settings.database.pool_size,
        echo=settings.database.echo,
    )


async def _serve(settings: Settings, args: argparse.Namespace) -> None:
    db = _db(settings)
    try:
        # Tables must exist before the background loops first poll them.
        if args.init_schema:
            await db.init_schema_async()
        pipeline = Pipeline(settings, dry_run=args.dry_run or None, db_manager=db)
        await pipeline.start()

        auth = settings.webhook.auth_token.get_secret_value() if settings.webhook.auth_token else None
        app = create_app(pipeline, auth_token=auth)
        config = uvicorn.Config(
            app,
            host=args.host or settings.api.host,
            port=args.port or settings.api.port,
            log_level=logging.getLevelName(logging.getLogger().level).lower(),
        )
        server = uvicorn.Server(config)
        try:
            await server.serve()
        finally:
            await pipeline.stop()
    finally:
        await db.dispose_async()


async def _track_wallet(settings: Settings, address: str, label: str | None) -> None:
    db = _db(settings)
    try:
        async with db.get_async_session() as session:
            wallet = await WalletRepository(session).get_or_create(address, label=label)
            await WalletJobRepository(session).enqueue(wallet.id, priority=1)
        print(f"{wallet.address} -> {wallet.id}")
    finally:
        await db.dispose_async()


async def _enqueue_all(settings: Settings) -> int:
    db = _db(settings)
    try:
        async with db.get_async_session() as session:
            wallets = await WalletRepository(session).list_active()
            jobs = WalletJobRepository(session)
            for wallet in wallets:
                await jobs.enqueue(wallet.id)
        logger.info("Enqueued recomputation for %d wallets", len(wallets))
        return len(wallets)
    finally:
        await db.dispose_async()


async def _retry_failed(settings: Settings) -> tuple[int, int]:
    db = _db(settings)
    try:
        async with db.get_async_session() as session:
            staged = await StagedTradeRepository(session).reset_failed()
            jobs = await WalletJobRepository(session).reset_failed()
        logger.info("Reset %d staged trades and %d queue jobs to pending", staged, jobs)
        return staged, jobs
    finally:
        await db.dispose_async()


def main(argv: list[str] | None = None) -> int:
    args = _parse_args(argv)
    settings = get_settings()
    _setup_logging(settings, args.log_level)
    logger.info("Configuration: %s", settings.redacted_summary())

    try:
        if args.command == "serve":
            asyncio.run(_serve(settings, args))
        elif args.command == "track-wallet":
            asyncio.run(_track_wallet(settings, args.address, args.label))
        elif args.command == "enqueue-all":
            asyncio.run(_enqueue_all(settings))
        elif args.command == "retry-failed":
            asyncio.run(_retry_failed(settings))
    except KeyboardInterrupt:
        logger.info("Interrupted")
    return 0


if __name__ == "__main__":
    sys.exit(main())
