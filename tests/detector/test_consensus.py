"""Tests for consensus signal detection."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest

from smart_wallet_tracker.detector.consensus import ConsensusDetector, build_cluster, chain_clusters
from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.models import new_id
from smart_wallet_tracker.storage.repos import (
    SignalRepository,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    WalletRepository,
)

T0 = datetime(2025, 10, 19, 9, 0, tzinfo=UTC)
WINDOW = timedelta(minutes=120)


def _buy(wallet_id: str, minutes: int, trade_id: str, token_id: str = "token-1") -> TradeDTO:
    return TradeDTO(
        id=trade_id,
        staged_trade_id=f"staged-{trade_id}",
        tx_signature=f"sig-{trade_id}",
        wallet_id=wallet_id,
        token_id=token_id,
        side=TradeSide.BUY,
        amount_token=Decimal("100"),
        amount_base=Decimal("1"),
        base_token="SOL",
        price_base_per_token=Decimal("0.01"),
        timestamp=T0 + timedelta(minutes=minutes),
    )


class TestChainClusters:
    def test_chains_across_window(self) -> None:
        buys = [_buy("a", 0, "t1"), _buy("b", 90, "t2"), _buy("c", 170, "t3")]

        clusters = chain_clusters(buys, WINDOW)

        assert len(clusters) == 1
        assert [t.id for t in clusters[0]] == ["t1", "t2", "t3"]

    def test_gap_splits_clusters(self) -> None:
        buys = [_buy("a", 0, "t1"), _buy("b", 60, "t2"), _buy("c", 300, "t3")]

        clusters = chain_clusters(buys, WINDOW)

        assert [[t.id for t in c] for c in clusters] == [["t1", "t2"], ["t3"]]

    def test_gap_equal_to_window_chains(self) -> None:
        assert len(chain_clusters([_buy("a", 0, "t1"), _buy("b", 120, "t2")], WINDOW)) == 1


class TestBuildCluster:
    def test_counts_each_wallet_once(self) -> None:
        cluster = build_cluster("token-1", [_buy("a", 0, "t1"), _buy("a", 10, "t2"), _buy("b", 20, "t3")])

        assert cluster.wallet_count == 2
        assert [m.id for m in cluster.members] == ["t1", "t3"]
        assert cluster.trigger.id == "t3"
        assert cluster.start == T0
        assert cluster.end == T0 + timedelta(minutes=20)

    def test_meta(self) -> None:
        meta = build_cluster("token-1", [_buy("a", 0, "t1"), _buy("b", 20, "t2")]).to_meta()

        assert meta["wallet_ids"] == ["a", "b"]
        assert meta["trade_ids"] == ["t1", "t2"]
        assert meta["buys"][0]["amount_base"] == "1"


async def _record_buy(db: DatabaseManager, address: str, minutes: int, mint: str = "BonkMint") -> TradeDTO:
    async with db.get_async_session() as session:
        wallet = await WalletRepository(session).get_or_create(address)
        token = await TokenRepository(session).get_or_create(mint)
        dto = _buy(wallet.id, minutes, new_id(), token_id=token.id)
        dto.id = None
        dto.id = await TradeRepository(session).insert_if_absent(dto)
    return dto


async def _check(detector: ConsensusDetector, trade: TradeDTO):
    assert trade.id is not None
    return await detector.check_consensus_after_buy(trade.id, trade.token_id, trade.wallet_id, trade.timestamp)


class TestConsensusDetector:
    @pytest.mark.asyncio
    async def test_single_wallet_produces_no_signal(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120)
        first = await _record_buy(db_manager, "walletA", 0)
        assert await _check(detector, first) is None

        repeat = await _record_buy(db_manager, "walletA", 30)
        assert await _check(detector, repeat) is None

    @pytest.mark.asyncio
    async def test_second_wallet_creates_signal(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120, signal_ttl_hours=24)
        first = await _record_buy(db_manager, "walletA", 0)
        assert await _check(detector, first) is None

        second = await _record_buy(db_manager, "walletB", 45)
        signal = await _check(detector, second)

        assert signal is not None
        assert signal.type == "buy"
        assert signal.model == "consensus"
        assert signal.status == "active"
        assert signal.wallet_count == 2
        assert signal.wallet_id == second.wallet_id
        assert signal.original_trade_id == second.id
        assert signal.cluster_start == first.timestamp
        assert signal.cluster_end == second.timestamp
        assert signal.expires_at is not None
        assert set(signal.meta["wallet_ids"]) == {first.wallet_id, second.wallet_id}

    @pytest.mark.asyncio
    async def test_chained_buys_extend_one_signal(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120)
        trades: list[TradeDTO] = []
        results = []
        for address, minutes in (("walletA", 0), ("walletB", 90), ("walletC", 170)):
            trade = await _record_buy(db_manager, address, minutes)
            trades.append(trade)
            results.append(await _check(detector, trade))

        assert results[0] is None
        assert results[1] is not None
        assert results[2] is not None
        assert results[2].id == results[1].id
        assert results[2].wallet_count == 3
        assert results[2].cluster_start == trades[0].timestamp
        assert results[2].cluster_end == trades[2].timestamp
        async with db_manager.get_async_session() as session:
            signals = await SignalRepository(session).list()
        assert len(signals) == 1

    @pytest.mark.asyncio
    async def test_replayed_check_does_not_duplicate(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120)
        await _record_buy(db_manager, "walletA", 0)
        second = await _record_buy(db_manager, "walletB", 10)

        first_signal = await _check(detector, second)
        replay = await _check(detector, second)

        assert replay is not None
        assert replay.id == first_signal.id
        assert replay.wallet_count == 2

    @pytest.mark.asyncio
    async def test_other_token_is_independent(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120)
        await _record_buy(db_manager, "walletA", 0, mint="BonkMint")
        other = await _record_buy(db_manager, "walletB", 10, mint="WifMint")

        assert await _check(detector, other) is None

    @pytest.mark.asyncio
    async def test_min_wallets_threshold(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120, min_wallets=3)
        await _record_buy(db_manager, "walletA", 0)
        second = await _record_buy(db_manager, "walletB", 10)
        assert await _check(detector, second) is None

        third = await _record_buy(db_manager, "walletC", 20)
        signal = await _check(detector, third)
        assert signal is not None
        assert signal.wallet_count == 3

    @pytest.mark.asyncio
    async def test_expire_signals(self, db_manager: DatabaseManager) -> None:
        detector = ConsensusDetector(db_manager, window_minutes=120, signal_ttl_hours=1)
        await _record_buy(db_manager, "walletA", 0)
        second = await _record_buy(db_manager, "walletB", 10)
        signal = await _check(detector, second)

        assert await detector.expire_signals(datetime.now(UTC)) == 0
        assert await detector.expire_signals(datetime.now(UTC) + timedelta(hours=2)) == 1

        async with db_manager.get_async_session() as session:
            expired = await SignalRepository(session).get(signal.id)
        assert expired.status == "expired"
