"""Tests for storage repositories."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

import pytest
from sqlalchemy.ext.asyncio import AsyncSession

from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.storage.repos import (
    ClaimConflictError,
    SignalDTO,
    SignalRepository,
    StagedTradeDTO,
    StagedTradeRepository,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    WalletJobRepository,
    WalletRepository,
)

# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def sample_staged_dto() -> StagedTradeDTO:
    """Create a sample staged trade DTO."""
    return StagedTradeDTO(
        tx_signature="5sig",
        wallet_id="wallet-1",
        token_id="token-1",
        token_mint="BonkMint",
        side=TradeSide.BUY,
        amount_token=Decimal("100"),
        amount_base_raw=Decimal("1"),
        base_token="SOL",
        price_base_per_token_raw=Decimal("0.01"),
        timestamp=datetime(2025, 10, 19, 12, 0, tzinfo=UTC),
    )


# ============================================================================
# WalletRepository / TokenRepository Tests
# ============================================================================


class TestWalletRepository:
    @pytest.mark.asyncio
    async def test_get_or_create_is_idempotent(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)

        first = await repo.get_or_create("WalletAddr1", label="whale")
        second = await repo.get_or_create("walletaddr1")

        assert first.id == second.id
        assert first.label == "whale"
        assert first.tracking_started_at is not None

    @pytest.mark.asyncio
    async def test_tracked_addresses_keyed_lowercase(self, async_session: AsyncSession) -> None:
        repo = WalletRepository(async_session)
        wallet = await repo.get_or_create("WalletAddr1")

        tracked = await repo.tracked_addresses()

        assert list(tracked) == ["walletaddr1"]
        assert tracked["walletaddr1"].id == wallet.id

    @pytest.mark.asyncio
    async def test_get_by_id_not_found(self, async_session: AsyncSession) -> None:
        assert await WalletRepository(async_session).get_by_id("missing") is None


class TestTokenRepository:
    @pytest.mark.asyncio
    async def test_get_or_create(self, async_session: AsyncSession) -> None:
        repo = TokenRepository(async_session)

        first = await repo.get_or_create("BonkMint")
        second = await repo.get_or_create("BonkMint")

        assert first.id == second.id
        assert first.mint_address == "BonkMint"


# ============================================================================
# Staged / priced trade Tests
# ============================================================================


class TestStagedTradeRepository:
    @pytest.mark.asyncio
    async def test_insert_if_absent(self, async_session: AsyncSession, sample_staged_dto: StagedTradeDTO) -> None:
        repo = StagedTradeRepository(async_session)

        assert await repo.insert_if_absent(sample_staged_dto) is True
        assert await repo.insert_if_absent(sample_staged_dto) is False
        assert await repo.count_by_status() == {"pending": 1}

    @pytest.mark.asyncio
    async def test_same_signature_other_side_is_distinct(
        self, async_session: AsyncSession, sample_staged_dto: StagedTradeDTO
    ) -> None:
        repo = StagedTradeRepository(async_session)
        await repo.insert_if_absent(sample_staged_dto)
        sample_staged_dto.side = TradeSide.SELL

        assert await repo.insert_if_absent(sample_staged_dto) is True

    @pytest.mark.asyncio
    async def test_failure_and_reset(self, async_session: AsyncSession, sample_staged_dto: StagedTradeDTO) -> None:
        repo = StagedTradeRepository(async_session)
        await repo.insert_if_absent(sample_staged_dto)
        staged = (await repo.list())[0]

        await repo.mark_failed(staged.id, "x" * 2000)
        failed = await repo.get(staged.id)
        assert failed.status == "failed"
        assert failed.attempts == 1
        assert len(failed.last_error) == 500

        assert await repo.find_ready(limit=10, retry_before=datetime.now(UTC) - timedelta(minutes=5)) == []
        assert await repo.reset_failed() == 1
        assert len(await repo.find_ready(limit=10, retry_before=datetime.now(UTC))) == 1


class TestTradeRepository:
    @pytest.mark.asyncio
    async def test_one_trade_per_staged_record(self, async_session: AsyncSession) -> None:
        repo = TradeRepository(async_session)
        dto = TradeDTO(
            staged_trade_id="staged-1",
            tx_signature="5sig",
            wallet_id="wallet-1",
            token_id="token-1",
            side=TradeSide.BUY,
            amount_token=Decimal("100"),
            amount_base=Decimal("1"),
            base_token="SOL",
            price_base_per_token=Decimal("0.01"),
            timestamp=datetime(2025, 10, 19, 12, 0, tzinfo=UTC),
            meta={"valuation_source": "binance"},
        )

        first = await repo.insert_if_absent(dto)
        second = await repo.insert_if_absent(dto)

        assert first == second
        stored = await repo.get(first)
        assert stored.meta == {"valuation_source": "binance"}
        assert len(await repo.list(wallet_id="wallet-1")) == 1


# ============================================================================
# SignalRepository Tests
# ============================================================================


class TestSignalRepository:
    @pytest.mark.asyncio
    async def test_unique_per_cluster_start(self, async_session: AsyncSession) -> None:
        repo = SignalRepository(async_session)
        start = datetime(2025, 10, 19, 9, 0, tzinfo=UTC)
        dto = SignalDTO(
            type="buy",
            wallet_id="wallet-2",
            token_id="token-1",
            original_trade_id="trade-2",
            model="consensus",
            wallet_count=2,
            cluster_start=start,
            cluster_end=start + timedelta(minutes=30),
            expires_at=start + timedelta(hours=24),
        )

        signal_id = await repo.insert_if_absent(dto)
        assert signal_id is not None
        assert await repo.insert_if_absent(dto) is None

        found = await repo.find_overlapping(
            token_id="token-1",
            model="consensus",
            start=start + timedelta(minutes=30),
            end=start + timedelta(minutes=90),
        )
        assert found is not None
        assert found.id == signal_id

        await repo.extend(
            signal_id,
            wallet_count=3,
            cluster_start=start,
            cluster_end=start + timedelta(minutes=90),
            meta={"wallet_ids": ["a", "b", "c"]},
        )
        extended = await repo.get(signal_id)
        assert extended.wallet_count == 3
        assert extended.meta["wallet_ids"] == ["a", "b", "c"]

        assert await repo.expire_due(start + timedelta(hours=25)) == 1
        assert (await repo.list(status="expired"))[0].id == signal_id


# ============================================================================
# WalletJobRepository Tests
# ============================================================================


class TestWalletJobRepository:
    @pytest.mark.asyncio
    async def test_enqueue_upserts_and_keeps_highest_priority(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)

        await repo.enqueue("wallet-1")
        await repo.enqueue("wallet-1", priority=2)
        await repo.enqueue("wallet-1", priority=0)

        jobs = await repo.list()
        assert len(jobs) == 1
        assert jobs[0].priority == 2
        assert jobs[0].status == "pending"

    @pytest.mark.asyncio
    async def test_claims_highest_priority_first(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-low")
        await repo.enqueue("wallet-high", priority=5)

        job = await repo.claim_next_job()

        assert job is not None
        assert job.wallet_id == "wallet-high"
        assert job.status == "processing"
        assert job.attempts == 1

    @pytest.mark.asyncio
    async def test_second_claim_conflicts(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()

        with pytest.raises(ClaimConflictError):
            await repo.try_claim(job.id)
        assert await repo.claim_next_job() is None

    @pytest.mark.asyncio
    async def test_enqueue_while_processing_keeps_owner(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()

        await repo.enqueue("wallet-1", priority=1)

        assert (await repo.get(job.id)).status == "processing"

    @pytest.mark.asyncio
    async def test_mark_completed_deletes_job(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()

        await repo.mark_completed(job.id)

        assert await repo.get(job.id) is None

    @pytest.mark.asyncio
    async def test_mark_completed_keeps_rearmed_job(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()
        # New trades arrived mid-run.
        await repo.enqueue("wallet-1")

        await repo.mark_completed(job.id)

        rearmed = await repo.get(job.id)
        assert rearmed is not None
        assert rearmed.status == "pending"
        assert rearmed.attempts == 0

    @pytest.mark.asyncio
    async def test_mark_failed_backs_off(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()
        before = datetime.now(UTC)

        await repo.mark_failed(job.id, "boom", retry_delay=timedelta(seconds=30), max_attempts=3)

        failed = await repo.get(job.id)
        assert failed.status == "pending"
        assert failed.error == "boom"
        assert failed.next_run_at >= before + timedelta(seconds=29)
        assert await repo.claim_next_job() is None
        assert await repo.claim_next_job(now=before + timedelta(minutes=1)) is not None

    @pytest.mark.asyncio
    async def test_mark_failed_parks_after_max_attempts(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()

        await repo.mark_failed(job.id, "boom", max_attempts=1)

        assert (await repo.get(job.id)).status == "failed"
        assert await repo.reset_failed() == 1
        reset = await repo.get(job.id)
        assert reset.status == "pending"
        assert reset.attempts == 0

    @pytest.mark.asyncio
    async def test_reenqueue_parked_job_resets_attempts(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        job = await repo.claim_next_job()
        await repo.mark_failed(job.id, "boom", max_attempts=1)

        await repo.enqueue("wallet-1")

        rearmed = await repo.get(job.id)
        assert rearmed.status == "pending"
        assert rearmed.attempts == 0
        assert rearmed.error is None

    @pytest.mark.asyncio
    async def test_mark_failed_raises_retry_priority(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        await repo.enqueue("wallet-2", priority=3)
        first = await repo.claim_next_job()
        second = await repo.claim_next_job()

        await repo.mark_failed(second.id, "boom", retry_priority=1)
        await repo.mark_failed(first.id, "boom", retry_priority=1)

        assert (await repo.get(second.id)).priority == 1
        assert (await repo.get(first.id)).priority == 3

    @pytest.mark.asyncio
    async def test_requeue_stale(self, async_session: AsyncSession) -> None:
        repo = WalletJobRepository(async_session)
        await repo.enqueue("wallet-1")
        await repo.enqueue("wallet-2")
        job = await repo.claim_next_job()
        await repo.claim_next_job()

        assert await repo.requeue_stale(older_than=datetime.now(UTC) - timedelta(minutes=15)) == 0
        assert await repo.requeue_stale(older_than=datetime.now(UTC) + timedelta(seconds=1)) == 2
        assert (await repo.get(job.id)).status == "pending"
