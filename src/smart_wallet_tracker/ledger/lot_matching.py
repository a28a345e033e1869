"""FIFO lot matching and realized PnL.

The matcher is pure: it takes a wallet's complete trade history and returns
closed lots and open positions. :class:`LotMatchingService` loads the
history, runs the matcher and atomically replaces the derived rows.
Recomputing from the full sorted history makes out-of-order arrival harmless.
"""

from __future__ import annotations

import logging
from collections import deque
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from itertools import groupby
from typing import TYPE_CHECKING

from sqlalchemy.exc import SQLAlchemyError

from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.ledger.metrics import compute_wallet_metrics
from smart_wallet_tracker.storage.repos import (
    ClosedLotDTO,
    LedgerRepository,
    OpenPositionDTO,
    TradeDTO,
    TradeRepository,
    WalletRepository,
)

if TYPE_CHECKING:
    from smart_wallet_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

SUPPORTED_BASE_TOKENS = frozenset({"SOL", "WSOL", "USDC", "USDT"})
# Buys below this base amount are airdrops/transfers, not entries.
MIN_BUY_BASE = Decimal("0.0001")
LOT_EPSILON = Decimal("1e-8")
PERCENT_QUANTUM = Decimal("0.000001")


class RecomputationError(Exception):
    """Raised when a wallet's derived ledger could not be rebuilt."""


@dataclass
class _OpenLot:
    size: Decimal
    entry_price: Decimal
    entry_time: datetime
    trade_id: str | None


@dataclass
class MatchResult:
    """Output of one matcher run."""

    closed_lots: list[ClosedLotDTO] = field(default_factory=list)
    open_positions: list[OpenPositionDTO] = field(default_factory=list)

    @property
    def token_ids(self) -> set[str]:
        return {lot.token_id for lot in self.closed_lots} | {p.token_id for p in self.open_positions}


def _sort_key(trade: TradeDTO) -> tuple[datetime, int, str]:
    # Entries before exits at equal timestamps.
    return (trade.timestamp, 0 if trade.side.is_entry else 1, trade.id or "")


def _hold_minutes(entry: datetime, exit_: datetime) -> int:
    return max(0, round((exit_ - entry).total_seconds() / 60))


def _pnl_percent(pnl: Decimal, cost: Decimal) -> Decimal | None:
    if cost <= 0:
        return None
    return (pnl / cost * 100).quantize(PERCENT_QUANTUM)


class LotMatcher:
    """Strict FIFO matcher over one wallet's trades."""

    def __init__(self, *, tracking_start_time: datetime | None = None) -> None:
        self._tracking_start = tracking_start_time

    def match(self, wallet_id: str, trades: Iterable[TradeDTO]) -> MatchResult:
        result = MatchResult()
        by_token = sorted(trades, key=lambda t: t.token_id)
        for token_id, token_trades in groupby(by_token, key=lambda t: t.token_id):
            closed, position = self._match_token(wallet_id, token_id, sorted(token_trades, key=_sort_key))
            result.closed_lots.extend(closed)
            if position is not None:
                result.open_positions.append(position)
        return result

    def _match_token(
        self, wallet_id: str, token_id: str, trades: list[TradeDTO]
    ) -> tuple[list[ClosedLotDTO], OpenPositionDTO | None]:
        queue: deque[_OpenLot] = deque()
        closed: list[ClosedLotDTO] = []
        sequence = 1
        buy_count = 0
        sell_count = 0
        last_trade_time: datetime | None = None
        fallback_price = self._estimate_entry_price(trades)
        first_seen = trades[0].timestamp if trades else None

        for trade in trades:
            side = trade.side
            if side == TradeSide.VOID:
                continue
            if trade.base_token.upper() not in SUPPORTED_BASE_TOKENS or trade.amount_token <= 0:
                continue

            if side.is_entry:
                if trade.amount_base < MIN_BUY_BASE:
                    continue
                queue.append(
                    _OpenLot(
                        size=trade.amount_token,
                        entry_price=trade.amount_base / trade.amount_token,
                        entry_time=trade.timestamp,
                        trade_id=trade.id,
                    )
                )
                buy_count += 1
            elif side.is_exit:
                sell_count += 1
                remaining = trade.amount_token
                while remaining > LOT_EPSILON and queue:
                    lot = queue[0]
                    consumed = min(lot.size, remaining)
                    closed.append(self._close(wallet_id, token_id, lot, consumed, trade, sequence))
                    lot.size -= consumed
                    remaining -= consumed
                    if lot.size <= LOT_EPSILON:
                        queue.popleft()
                if remaining > LOT_EPSILON:
                    closed.append(
                        self._close_pre_history(
                            wallet_id, token_id, remaining, trade, sequence, fallback_price, first_seen
                        )
                    )
                if not queue:
                    sequence += 1
            else:
                raise ValueError(f"Unhandled trade side: {side!r}")
            last_trade_time = trade.timestamp

        if not queue or last_trade_time is None:
            return closed, None

        size = sum((lot.size for lot in queue), Decimal(0))
        total_cost = sum((lot.size * lot.entry_price for lot in queue), Decimal(0))
        position = OpenPositionDTO(
            wallet_id=wallet_id,
            token_id=token_id,
            size=size,
            average_entry_price=total_cost / size,
            total_cost_base=total_cost,
            first_entry_time=queue[0].entry_time,
            last_trade_time=last_trade_time,
            buy_count=buy_count,
            sell_count=sell_count,
        )
        return closed, position

    @staticmethod
    def _estimate_entry_price(trades: list[TradeDTO]) -> Decimal | None:
        """Earliest known buy price, else the earliest trade price."""
        for trade in trades:
            if trade.side.is_entry and trade.amount_token > 0 and trade.amount_base >= MIN_BUY_BASE:
                return trade.amount_base / trade.amount_token
        for trade in trades:
            if trade.side != TradeSide.VOID and trade.amount_token > 0 and trade.amount_base > 0:
                return trade.amount_base / trade.amount_token
        return None

    def _close(
        self,
        wallet_id: str,
        token_id: str,
        lot: _OpenLot,
        consumed: Decimal,
        sell: TradeDTO,
        sequence: int,
    ) -> ClosedLotDTO:
        cost_basis = consumed * lot.entry_price
        proceeds = consumed / sell.amount_token * sell.amount_base
        pnl = proceeds - cost_basis
        return ClosedLotDTO(
            wallet_id=wallet_id,
            token_id=token_id,
            size=consumed,
            entry_price=lot.entry_price,
            exit_price=sell.amount_base / sell.amount_token,
            entry_time=lot.entry_time,
            exit_time=sell.timestamp,
            hold_time_minutes=_hold_minutes(lot.entry_time, sell.timestamp),
            cost_basis=cost_basis,
            proceeds=proceeds,
            realized_pnl=pnl,
            realized_pnl_percent=_pnl_percent(pnl, cost_basis),
            buy_trade_id=lot.trade_id,
            sell_trade_id=sell.id or "",
            is_pre_history=self._tracking_start is not None and lot.entry_time < self._tracking_start,
            cost_known=True,
            sequence_number=sequence,
        )

    def _close_pre_history(
        self,
        wallet_id: str,
        token_id: str,
        size: Decimal,
        sell: TradeDTO,
        sequence: int,
        estimated_price: Decimal | None,
        first_seen: datetime | None,
    ) -> ClosedLotDTO:
        exit_price = sell.amount_base / sell.amount_token
        entry_price = estimated_price if estimated_price is not None else exit_price
        entry_time = first_seen or sell.timestamp
        if self._tracking_start is not None and self._tracking_start < entry_time:
            entry_time = self._tracking_start
        cost_basis = size * entry_price
        proceeds = size / sell.amount_token * sell.amount_base
        logger.debug(
            "Sell %s exceeds known history by %s; cost estimated at %s",
            sell.id,
            size,
            entry_price,
        )
        return ClosedLotDTO(
            wallet_id=wallet_id,
            token_id=token_id,
            size=size,
            entry_price=entry_price,
            exit_price=exit_price,
            entry_time=entry_time,
            exit_time=sell.timestamp,
            hold_time_minutes=_hold_minutes(entry_time, sell.timestamp),
            cost_basis=cost_basis,
            proceeds=proceeds,
            realized_pnl=proceeds - cost_basis,
            realized_pnl_percent=None,
            buy_trade_id=None,
            sell_trade_id=sell.id or "",
            is_pre_history=True,
            cost_known=False,
            sequence_number=sequence,
        )


class LotMatchingService:
    """Rebuilds a wallet's closed lots, open positions and metrics."""

    def __init__(self, db: DatabaseManager) -> None:
        self._db = db

    async def process_trades_for_wallet(
        self,
        wallet_id: str,
        token_filter: list[str] | None = None,
        tracking_start_time: datetime | None = None,
    ) -> MatchResult:
        """Recompute and persist the FIFO ledger for one wallet.

        Args:
            wallet_id: Wallet to rebuild.
            token_filter: Restrict the rebuild to these tokens; other tokens'
                rows are left untouched.
            tracking_start_time: Entries before this are flagged pre-history.
                Defaults to the wallet's tracking start.

        Raises:
            RecomputationError: If loading or saving failed. Nothing is
                partially written.
        """
        try:
            async with self._db.get_async_session() as session:
                if tracking_start_time is None:
                    wallet = await WalletRepository(session).get_by_id(wallet_id)
                    tracking_start_time = wallet.tracking_started_at if wallet else None
                trades = await TradeRepository(session).list_for_wallet(wallet_id, token_ids=token_filter)
        except SQLAlchemyError as e:
            raise RecomputationError(f"Failed to load trades for wallet {wallet_id}: {e}") from e

        result = LotMatcher(tracking_start_time=tracking_start_time).match(wallet_id, trades)

        try:
            async with self._db.get_async_session() as session:
                ledger = LedgerRepository(session)
                await ledger.replace_for_wallet(
                    wallet_id,
                    token_ids=token_filter,
                    closed_lots=result.closed_lots,
                    open_positions=result.open_positions,
                )
                all_lots = await ledger.list_closed_lots(wallet_id, limit=None)
                all_positions = await ledger.list_open_positions(wallet_id)
                await ledger.upsert_metrics(compute_wallet_metrics(wallet_id, all_lots, all_positions))
        except SQLAlchemyError as e:
            raise RecomputationError(f"Failed to save ledger for wallet {wallet_id}: {e}") from e

        logger.info(
            "Recomputed wallet %s: %d trades -> %d closed lots, %d open positions",
            wallet_id,
            len(trades),
            len(result.closed_lots),
            len(result.open_positions),
        )
        return result
