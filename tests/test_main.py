"""Tests for the command line entry point."""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest
from conftest import TRACKED_WALLET

from smart_wallet_tracker import __main__ as cli
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.repos import StagedTradeRepository, WalletJobRepository, WalletRepository


@pytest.fixture
def shared_db(monkeypatch, db_manager: DatabaseManager) -> DatabaseManager:
    """Point the CLI commands at the test database."""
    engine = db_manager.engine
    monkeypatch.setattr(cli, "_db", lambda settings: DatabaseManager(db_manager.database_url, engine=engine))
    return db_manager


class TestParseArgs:
    def test_track_wallet(self) -> None:
        args = cli._parse_args(["track-wallet", TRACKED_WALLET, "--label", "whale"])

        assert args.command == "track-wallet"
        assert args.address == TRACKED_WALLET
        assert args.label == "whale"

    def test_serve_options(self) -> None:
        args = cli._parse_args(["--log-level", "debug", "serve", "--port", "9000", "--dry-run"])

        assert args.command == "serve"
        assert args.port == 9000
        assert args.host is None
        assert args.dry_run is True
        assert args.init_schema is False
        assert args.log_level == "debug"

    def test_command_required(self) -> None:
        with pytest.raises(SystemExit):
            cli._parse_args([])


class TestCommands:
    @pytest.mark.asyncio
    async def test_track_wallet_registers_and_enqueues(self, shared_db: DatabaseManager, capsys) -> None:
        await cli._track_wallet(MagicMock(), TRACKED_WALLET, "whale")

        async with shared_db.get_async_session() as session:
            wallet = await WalletRepository(session).get_by_address(TRACKED_WALLET)
            jobs = await WalletJobRepository(session).list()
        assert wallet is not None
        assert wallet.label == "whale"
        assert [j.wallet_id for j in jobs] == [wallet.id]
        assert jobs[0].priority == 1
        assert wallet.id in capsys.readouterr().out

    @pytest.mark.asyncio
    async def test_enqueue_all(self, shared_db: DatabaseManager) -> None:
        async with shared_db.get_async_session() as session:
            repo = WalletRepository(session)
            await repo.get_or_create(TRACKED_WALLET)
            await repo.get_or_create("9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM")

        assert await cli._enqueue_all(MagicMock()) == 2

        async with shared_db.get_async_session() as session:
            assert len(await WalletJobRepository(session).list(status="pending")) == 2

    @pytest.mark.asyncio
    async def test_retry_failed_with_nothing_failed(self, shared_db: DatabaseManager) -> None:
        assert await cli._retry_failed(MagicMock()) == (0, 0)

        async with shared_db.get_async_session() as session:
            assert await StagedTradeRepository(session).count_by_status() == {}


class TestServe:
    @pytest.mark.asyncio
    async def test_schema_created_before_pipeline_starts(self, monkeypatch, tmp_path) -> None:
        fresh = DatabaseManager(f"sqlite+aiosqlite:///{tmp_path / 'fresh.db'}")
        monkeypatch.setattr(cli, "_db", lambda settings: fresh)
        seen: dict[str, object] = {}

        class RecordingPipeline:
            def __init__(self, settings, *, dry_run=None, db_manager=None) -> None:
                self.db = db_manager

            async def start(self) -> None:
                async with self.db.get_async_session() as session:
                    seen["wallets"] = await WalletRepository(session).list_active()

            async def stop(self) -> None:
                seen["stopped"] = True

        class IdleServer:
            def __init__(self, config) -> None:
                self.config = config

            async def serve(self) -> None:
                return None

        monkeypatch.setattr(cli, "Pipeline", RecordingPipeline)
        monkeypatch.setattr(cli.uvicorn, "Server", IdleServer)
        settings = MagicMock()
        settings.webhook.auth_token = None
        settings.api.host = "127.0.0.1"
        settings.api.port = 8000

        await cli._serve(settings, cli._parse_args(["serve", "--init-schema"]))

        assert seen == {"wallets": [], "stopped": True}
