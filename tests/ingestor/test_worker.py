"""Tests for the trade ingestion worker."""

from __future__ import annotations

from datetime import UTC, datetime
from decimal import Decimal
from unittest.mock import MagicMock

import pytest
from conftest import BONK_MINT, TRACKED_WALLET
from sqlalchemy import func, select

from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.ingestor.worker import TradeIngestionWorker
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.models import TradeModel
from smart_wallet_tracker.storage.repos import (
    StagedTradeDTO,
    StagedTradeRepository,
    TokenRepository,
    TradeRepository,
    WalletRepository,
)
from smart_wallet_tracker.tasks import TaskChannel
from smart_wallet_tracker.valuation.resolver import ValuationResolver
from smart_wallet_tracker.valuation.sources import PriceSource, PriceSourceError

SOL_USD = Decimal("150")


class FixedSource(PriceSource):
    name = "fixed"

    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        return SOL_USD


class BrokenSource(PriceSource):
    name = "broken"

    async def fetch_sol_usd(self, timestamp: datetime) -> Decimal:
        raise PriceSourceError("broken: upstream unavailable")


async def _stage(
    db: DatabaseManager,
    *,
    side: TradeSide = TradeSide.BUY,
    amount_token: str = "100",
    amount_base: str = "1",
    base_token: str = "SOL",
    signature: str = "sig-1",
) -> StagedTradeDTO:
    async with db.get_async_session() as session:
        wallet = await WalletRepository(session).get_or_create(TRACKED_WALLET)
        token = await TokenRepository(session).get_or_create(BONK_MINT)
        repo = StagedTradeRepository(session)
        await repo.insert_if_absent(
            StagedTradeDTO(
                tx_signature=signature,
                wallet_id=wallet.id,
                token_id=token.id,
                token_mint=BONK_MINT,
                side=side,
                amount_token=Decimal(amount_token),
                amount_base_raw=Decimal(amount_base),
                base_token=base_token,
                price_base_per_token_raw=(
                    Decimal(amount_base) / Decimal(amount_token) if side != TradeSide.VOID else Decimal(0)
                ),
                timestamp=datetime(2025, 10, 19, 12, 0, tzinfo=UTC),
            )
        )
        staged = await repo.list(wallet_id=wallet.id)
    return next(s for s in staged if s.tx_signature == signature)


def _worker(db: DatabaseManager, source: PriceSource | None = None, **kwargs) -> TradeIngestionWorker:
    resolver = ValuationResolver([source or FixedSource("http://prices.test")])
    return TradeIngestionWorker(db, resolver, **kwargs)


async def _trade_count(db: DatabaseManager) -> int:
    async with db.get_async_session() as session:
        return (await session.execute(select(func.count()).select_from(TradeModel))).scalar_one()


class TestProcessBatch:
    @pytest.mark.asyncio
    async def test_prices_sol_trade(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager)

        result = await _worker(db_manager).process_batch()

        assert result.processed == 1
        assert result.failed == 0
        async with db_manager.get_async_session() as session:
            refreshed = await StagedTradeRepository(session).get(staged.id)
            assert refreshed.status == "processed"
            assert refreshed.valuation_source == "fixed"
            assert refreshed.trade_id is not None
            trade = await TradeRepository(session).get(refreshed.trade_id)
        assert trade.side == TradeSide.BUY
        assert trade.amount_base == Decimal("1")
        assert trade.value_usd == Decimal("150")
        assert trade.price_usd_per_token == Decimal("1.5")
        assert trade.meta["valuation_source"] == "fixed"

    @pytest.mark.asyncio
    async def test_stable_trade_needs_no_source(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager, base_token="USDC", amount_base="25", amount_token="50")

        await _worker(db_manager, BrokenSource("http://prices.test")).process_batch()

        async with db_manager.get_async_session() as session:
            refreshed = await StagedTradeRepository(session).get(staged.id)
        assert refreshed.status == "processed"
        assert refreshed.valuation_source == "stable"
        assert refreshed.amount_base_usd == Decimal("25")

    @pytest.mark.asyncio
    async def test_void_trade_is_recorded_without_value(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager, side=TradeSide.VOID, amount_base="0")

        await _worker(db_manager, BrokenSource("http://prices.test")).process_batch()

        async with db_manager.get_async_session() as session:
            refreshed = await StagedTradeRepository(session).get(staged.id)
            trade = await TradeRepository(session).get(refreshed.trade_id)
        assert refreshed.status == "processed"
        assert refreshed.valuation_source == "void"
        assert trade.side == TradeSide.VOID
        assert trade.amount_base == Decimal(0)
        assert trade.value_usd is None

    @pytest.mark.asyncio
    async def test_valuation_failure_leaves_trade_retryable(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager)
        worker = _worker(db_manager, BrokenSource("http://prices.test"), retry_delay_seconds=3600)

        result = await worker.process_batch()

        assert result.failed == 1
        assert await _trade_count(db_manager) == 0
        async with db_manager.get_async_session() as session:
            refreshed = await StagedTradeRepository(session).get(staged.id)
        assert refreshed.status == "failed"
        assert refreshed.attempts == 1
        assert "All SOL/USD sources failed" in refreshed.last_error

        # Still inside the retry delay.
        assert (await worker.process_batch()).total == 0

    @pytest.mark.asyncio
    async def test_failed_trade_is_retried_after_delay(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager)
        await _worker(db_manager, BrokenSource("http://prices.test")).process_batch()

        result = await _worker(db_manager, retry_delay_seconds=0).process_batch()

        assert result.processed == 1
        async with db_manager.get_async_session() as session:
            refreshed = await StagedTradeRepository(session).get(staged.id)
        assert refreshed.status == "processed"
        assert refreshed.last_error is None


class TestProcessStagedTrade:
    @pytest.mark.asyncio
    async def test_replay_writes_single_trade(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager)
        worker = _worker(db_manager)

        first = await worker.process_staged_trade(staged)
        second = await worker.process_staged_trade(staged)

        assert first.id == second.id
        assert await _trade_count(db_manager) == 1


class TestFollowups:
    @pytest.mark.asyncio
    async def test_buy_triggers_recompute_and_consensus(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager)
        debouncer = MagicMock()
        channel = TaskChannel()
        worker = _worker(
            db_manager,
            task_channel=channel,
            recompute_debouncer=debouncer,
            consensus_detector=MagicMock(),
        )

        await worker.process_batch()

        debouncer.trigger.assert_called_once_with(staged.wallet_id)
        assert channel.pending == 1

    @pytest.mark.asyncio
    async def test_sell_only_triggers_recompute(self, db_manager: DatabaseManager) -> None:
        staged = await _stage(db_manager, side=TradeSide.SELL)
        debouncer = MagicMock()
        channel = TaskChannel()
        worker = _worker(
            db_manager,
            task_channel=channel,
            recompute_debouncer=debouncer,
            consensus_detector=MagicMock(),
        )

        await worker.process_batch()

        debouncer.trigger.assert_called_once_with(staged.wallet_id)
        assert channel.pending == 0
