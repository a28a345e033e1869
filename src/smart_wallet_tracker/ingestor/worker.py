"""Trade ingestion worker: staged trades to priced ledger entries.

Each poll takes the oldest ready staged trades, prices them through the
valuation resolver and writes the Trade together with the staged row's
``processed`` mark in one transaction. Valuation failures leave the row
``failed`` and eligible for the next poll after the retry delay.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING

from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.storage.repos import StagedTradeDTO, StagedTradeRepository, TradeDTO, TradeRepository
from smart_wallet_tracker.valuation.resolver import Valuation, ValuationError

if TYPE_CHECKING:
    from smart_wallet_tracker.detector.consensus import ConsensusDetector
    from smart_wallet_tracker.storage.database import DatabaseManager
    from smart_wallet_tracker.tasks import Debouncer, TaskChannel
    from smart_wallet_tracker.valuation.resolver import ValuationResolver

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = 10
DEFAULT_RETRY_DELAY_SECONDS = 60
VOID_SOURCE = "void"


@dataclass
class IngestionBatchResult:
    processed: int = 0
    failed: int = 0

    @property
    def total(self) -> int:
        return self.processed + self.failed


class TradeIngestionWorker:
    """Prices staged trades and appends them to the trade ledger."""

    def __init__(
        self,
        db: DatabaseManager,
        resolver: ValuationResolver,
        *,
        batch_size: int = DEFAULT_BATCH_SIZE,
        retry_delay_seconds: int = DEFAULT_RETRY_DELAY_SECONDS,
        task_channel: TaskChannel | None = None,
        recompute_debouncer: Debouncer | None = None,
        consensus_detector: ConsensusDetector | None = None,
    ) -> None:
        self._db = db
        self._resolver = resolver
        self._batch_size = batch_size
        self._retry_delay = timedelta(seconds=retry_delay_seconds)
        self._tasks = task_channel
        self._debouncer = recompute_debouncer
        self._consensus = consensus_detector

    async def process_batch(self) -> IngestionBatchResult:
        """Process one batch of ready staged trades, oldest first."""
        result = IngestionBatchResult()
        now = datetime.now(UTC)
        async with self._db.get_async_session() as session:
            ready = await StagedTradeRepository(session).find_ready(
                limit=self._batch_size, retry_before=now - self._retry_delay
            )
        if not ready:
            return result

        for staged in ready:
            try:
                trade = await self.process_staged_trade(staged)
            except ValuationError as e:
                result.failed += 1
                logger.warning("Valuation failed for staged trade %s: %s", staged.id, e)
                await self._mark_failed(staged, str(e))
                continue
            except Exception as e:
                result.failed += 1
                logger.warning("Failed to process staged trade %s: %s", staged.id, e)
                await self._mark_failed(staged, f"{type(e).__name__}: {e}")
                continue
            result.processed += 1
            self._dispatch_followups(trade)

        logger.info("Ingestion batch: %d processed, %d failed", result.processed, result.failed)
        return result

    async def process_staged_trade(self, staged: StagedTradeDTO) -> TradeDTO:
        """Price one staged trade and write its ledger entry.

        Raises:
            ValuationError: If the trade could not be priced; nothing is written.
        """
        if staged.id is None:
            raise ValueError("Staged trade has no id")

        valuation: Valuation | None = None
        if staged.side == TradeSide.VOID:
            amount_base = Decimal(0)
            source = VOID_SOURCE
        else:
            valuation = await self._resolver.valuate(
                staged.base_token,
                staged.amount_base_raw,
                staged.amount_token,
                staged.price_base_per_token_raw,
                staged.timestamp,
            )
            amount_base = staged.amount_base_raw
            source = valuation.source

        trade = TradeDTO(
            staged_trade_id=staged.id,
            tx_signature=staged.tx_signature,
            wallet_id=staged.wallet_id,
            token_id=staged.token_id,
            side=staged.side,
            amount_token=staged.amount_token,
            amount_base=amount_base,
            base_token=staged.base_token,
            price_base_per_token=staged.price_base_per_token_raw if valuation else Decimal(0),
            timestamp=staged.timestamp,
            value_usd=valuation.amount_base_usd if valuation else None,
            price_usd_per_token=valuation.price_usd_per_token if valuation else None,
            dex=staged.dex,
            meta={
                "valuation_source": source,
                "base_usd_price": str(valuation.base_usd_price) if valuation else None,
                "token_mint": staged.token_mint,
            },
        )

        valued_at = valuation.timestamp if valuation else datetime.now(UTC)
        async with self._db.get_async_session() as session:
            trade.id = await TradeRepository(session).insert_if_absent(trade)
            await StagedTradeRepository(session).mark_processed(
                staged.id,
                trade_id=trade.id,
                amount_base_usd=trade.value_usd,
                price_usd_per_token=trade.price_usd_per_token,
                valuation_source=source,
                valuation_timestamp=valued_at,
            )
        return trade

    async def _mark_failed(self, staged: StagedTradeDTO, error: str) -> None:
        if staged.id is None:
            return
        try:
            async with self._db.get_async_session() as session:
                await StagedTradeRepository(session).mark_failed(staged.id, error)
        except Exception:
            logger.exception("Could not record failure for staged trade %s", staged.id)

    def _dispatch_followups(self, trade: TradeDTO) -> None:
        if trade.side == TradeSide.VOID:
            return
        if self._debouncer is not None:
            self._debouncer.trigger(trade.wallet_id)
        if trade.side.is_entry and self._consensus is not None and self._tasks is not None and trade.id:
            detector = self._consensus
            trade_id, token_id, wallet_id, ts = trade.id, trade.token_id, trade.wallet_id, trade.timestamp
            self._tasks.submit(
                f"consensus:{token_id}:{trade_id}",
                lambda: detector.check_consensus_after_buy(trade_id, token_id, wallet_id, ts),
            )
