"""Tests for the webhook ingress and read API."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
from conftest import BONK_MINT, TRACKED_WALLET

from smart_wallet_tracker.api import create_app
from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.ledger.lot_matching import LotMatchingService
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.repos import TokenRepository, TradeDTO, TradeRepository, WalletRepository

AUTH = {"Authorization": "Bearer secret"}


def _client(app) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")


async def _track(db: DatabaseManager) -> str:
    async with db.get_async_session() as session:
        wallet = await WalletRepository(session).get_or_create(TRACKED_WALLET)
    return wallet.id


async def _seed_round_trip(db: DatabaseManager) -> tuple[str, str]:
    """A priced buy and a partial sell for the tracked wallet."""
    async with db.get_async_session() as session:
        wallet = await WalletRepository(session).get_or_create(TRACKED_WALLET)
        token = await TokenRepository(session).get_or_create(BONK_MINT)
        trades = TradeRepository(session)
        buy_id = await trades.insert_if_absent(
            TradeDTO(
                staged_trade_id="staged-buy",
                tx_signature="sig-buy",
                wallet_id=wallet.id,
                token_id=token.id,
                side=TradeSide.BUY,
                amount_token=Decimal("100"),
                amount_base=Decimal("1"),
                base_token="SOL",
                price_base_per_token=Decimal("0.01"),
                timestamp=datetime(2025, 10, 19, 9, 0, tzinfo=UTC),
            )
        )
        await trades.insert_if_absent(
            TradeDTO(
                staged_trade_id="staged-sell",
                tx_signature="sig-sell",
                wallet_id=wallet.id,
                token_id=token.id,
                side=TradeSide.SELL,
                amount_token=Decimal("40"),
                amount_base=Decimal("0.5"),
                base_token="SOL",
                price_base_per_token=Decimal("0.0125"),
                timestamp=datetime(2025, 10, 19, 9, 30, tzinfo=UTC),
            )
        )
    return wallet.id, buy_id


class TestCreateApp:
    def test_requires_pipeline_or_db(self) -> None:
        with pytest.raises(ValueError):
            create_app()

    @pytest.mark.asyncio
    async def test_health_without_pipeline(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager)) as client:
            response = await client.get("/api/health")

        assert response.status_code == 200
        assert response.json() == {"status": "ok", "pipeline": "detached"}


class TestWebhookIngress:
    @pytest.mark.asyncio
    async def test_rejects_missing_authorization(
        self, db_manager: DatabaseManager, enhanced_buy_tx: dict[str, Any]
    ) -> None:
        async with _client(create_app(db=db_manager, auth_token="secret")) as client:
            response = await client.post("/api/webhooks/helius", json=[enhanced_buy_tx])

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_rejects_wrong_token(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager, auth_token="secret")) as client:
            response = await client.post("/api/webhooks/rpc", json=[], headers={"Authorization": "Bearer nope"})

        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_acknowledges_and_stages_in_background(
        self, db_manager: DatabaseManager, enhanced_buy_tx: dict[str, Any]
    ) -> None:
        wallet_id = await _track(db_manager)

        async with _client(create_app(db=db_manager, auth_token="secret")) as client:
            response = await client.post("/api/webhooks/helius", json=[enhanced_buy_tx], headers=AUTH)
            staged = await client.get("/api/trades", params={"staged": "true"})

        body = response.json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["message"] == "Webhook received"
        assert body["responseTimeMs"] >= 0

        items = staged.json()["items"]
        assert len(items) == 1
        assert items[0]["wallet_id"] == wallet_id
        assert items[0]["side"] == "buy"
        assert items[0]["status"] == "pending"

    @pytest.mark.asyncio
    async def test_raw_token_header_accepted(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager, auth_token="secret")) as client:
            response = await client.post("/api/webhooks/rpc", json=[], headers={"Authorization": "secret"})

        assert response.status_code == 200
        assert response.json()["success"] is True

    @pytest.mark.asyncio
    async def test_invalid_json_is_acknowledged_unsuccessfully(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager, auth_token="secret")) as client:
            response = await client.post(
                "/api/webhooks/helius",
                content=b"{not json",
                headers={**AUTH, "Content-Type": "application/json"},
            )

        assert response.status_code == 200
        assert response.json()["success"] is False
        assert response.json()["message"] == "Invalid JSON body"

    @pytest.mark.asyncio
    async def test_no_auth_configured_accepts_anything(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager)) as client:
            response = await client.post("/api/webhooks/helius", json={})

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_full_task_channel_falls_back_to_background(
        self, db_manager: DatabaseManager, enhanced_buy_tx: dict[str, Any]
    ) -> None:
        pipeline = MagicMock()
        pipeline.is_running = True
        pipeline.submit_webhook.return_value = False
        pipeline.handle_webhook = AsyncMock()

        async with _client(create_app(pipeline, db=db_manager)) as client:
            response = await client.post("/api/webhooks/helius", json=[enhanced_buy_tx])

        assert response.status_code == 200
        pipeline.submit_webhook.assert_called_once_with([enhanced_buy_tx])
        pipeline.handle_webhook.assert_awaited_once_with([enhanced_buy_tx])

    @pytest.mark.asyncio
    async def test_accepted_by_task_channel(self, db_manager: DatabaseManager) -> None:
        pipeline = MagicMock()
        pipeline.is_running = True
        pipeline.submit_webhook.return_value = True
        pipeline.handle_webhook = AsyncMock()

        async with _client(create_app(pipeline, db=db_manager)) as client:
            response = await client.post("/api/webhooks/rpc", json=[])

        assert response.status_code == 200
        pipeline.submit_webhook.assert_called_once_with([])
        pipeline.handle_webhook.assert_not_awaited()


class TestReadApi:
    @pytest.mark.asyncio
    async def test_trade_lookup(self, db_manager: DatabaseManager) -> None:
        _, buy_id = await _seed_round_trip(db_manager)

        async with _client(create_app(db=db_manager)) as client:
            listing = await client.get("/api/trades")
            single = await client.get(f"/api/trades/{buy_id}")
            missing = await client.get("/api/trades/nope")

        assert len(listing.json()["items"]) == 2
        assert listing.json()["limit"] == 100
        assert single.json()["side"] == "buy"
        assert single.json()["tx_signature"] == "sig-buy"
        assert missing.status_code == 404
        assert missing.json()["detail"] == "Trade not found"

    @pytest.mark.asyncio
    async def test_trade_listing_paginates(self, db_manager: DatabaseManager) -> None:
        await _seed_round_trip(db_manager)

        async with _client(create_app(db=db_manager)) as client:
            page = await client.get("/api/trades", params={"limit": 1, "offset": 1})

        assert len(page.json()["items"]) == 1
        assert page.json()["items"][0]["side"] == "buy"

    @pytest.mark.asyncio
    async def test_metrics_not_yet_available(self, db_manager: DatabaseManager) -> None:
        wallet_id = await _track(db_manager)

        async with _client(create_app(db=db_manager)) as client:
            response = await client.get(f"/api/wallets/{wallet_id}/metrics")

        assert response.status_code == 404
        assert response.json()["detail"] == "Data not yet available"

    @pytest.mark.asyncio
    async def test_wallet_ledger_after_recompute(self, db_manager: DatabaseManager) -> None:
        wallet_id, _ = await _seed_round_trip(db_manager)
        await LotMatchingService(db_manager).process_trades_for_wallet(wallet_id)

        async with _client(create_app(db=db_manager)) as client:
            lots = await client.get(f"/api/wallets/{wallet_id}/closed-lots")
            positions = await client.get(f"/api/wallets/{wallet_id}/open-positions")
            metrics = await client.get(f"/api/wallets/{wallet_id}/metrics")

        assert len(lots.json()["items"]) == 1
        assert len(positions.json()["items"]) == 1
        assert metrics.status_code == 200
        assert metrics.json()["closed_lot_count"] == 1
        assert metrics.json()["win_count"] == 1

    @pytest.mark.asyncio
    async def test_signals_empty(self, db_manager: DatabaseManager) -> None:
        async with _client(create_app(db=db_manager)) as client:
            listing = await client.get("/api/signals")
            missing = await client.get("/api/signals/nope")

        assert listing.json() == {"items": [], "limit": 100, "offset": 0}
        assert missing.status_code == 404
