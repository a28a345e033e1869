"""Repository pattern implementations for data access.

This module provides data access abstractions for tracked wallets, the
staged/priced trade ledger, derived FIFO lots, consensus signals and the
wallet processing queue.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

import sqlalchemy as sa
from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from smart_wallet_tracker.ingestor.models import TradeSide
from smart_wallet_tracker.storage.models import (
    ClosedLotModel,
    OpenPositionModel,
    SignalModel,
    StagedTradeModel,
    TokenModel,
    TradeModel,
    WalletJobModel,
    WalletMetricsModel,
    WalletModel,
    new_id,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

MAX_ERROR_LENGTH = 500


class ClaimConflictError(Exception):
    """Raised when another worker claimed a queue job first."""


def as_utc(value: datetime | None) -> datetime | None:
    """Attach UTC to naive datetimes read back from SQLite."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


def _truncate(error: str | None) -> str | None:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


def _dialect_insert(session: AsyncSession, model: type[Any]) -> Any:
    """Return a dialect-specific INSERT supporting ON CONFLICT."""
    if session.get_bind().dialect.name == "sqlite":
        return sqlite_insert(model)
    return pg_insert(model)


# ============================================================================
# DTOs
# ============================================================================


@dataclass
class WalletDTO:
    """Data transfer object for tracked wallets."""

    id: str
    address: str
    label: str | None = None
    is_active: bool = True
    tracking_started_at: datetime | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletModel) -> WalletDTO:
        return cls(
            id=model.id,
            address=model.address,
            label=model.label,
            is_active=model.is_active,
            tracking_started_at=as_utc(model.tracking_started_at),
            created_at=as_utc(model.created_at),
        )


@dataclass
class TokenDTO:
    """Data transfer object for tokens."""

    id: str
    mint_address: str
    symbol: str | None = None

    @classmethod
    def from_model(cls, model: TokenModel) -> TokenDTO:
        return cls(id=model.id, mint_address=model.mint_address, symbol=model.symbol)


@dataclass
class StagedTradeDTO:
    """Data transfer object for staged (unpriced) trades."""

    tx_signature: str
    wallet_id: str
    token_id: str
    token_mint: str
    side: TradeSide
    amount_token: Decimal
    amount_base_raw: Decimal
    base_token: str
    price_base_per_token_raw: Decimal
    timestamp: datetime
    dex: str | None = None
    raw_payload: str | None = None
    status: str = "pending"
    last_error: str | None = None
    attempts: int = 0
    amount_base_usd: Decimal | None = None
    price_usd_per_token: Decimal | None = None
    valuation_source: str | None = None
    valuation_timestamp: datetime | None = None
    processed_at: datetime | None = None
    trade_id: str | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: StagedTradeModel) -> StagedTradeDTO:
        return cls(
            id=model.id,
            tx_signature=model.tx_signature,
            wallet_id=model.wallet_id,
            token_id=model.token_id,
            token_mint=model.token_mint,
            side=TradeSide.parse(model.side),
            amount_token=model.amount_token,
            amount_base_raw=model.amount_base_raw,
            base_token=model.base_token,
            price_base_per_token_raw=model.price_base_per_token_raw,
            timestamp=as_utc(model.timestamp),
            dex=model.dex,
            raw_payload=model.raw_payload,
            status=model.status,
            last_error=model.last_error,
            attempts=model.attempts,
            amount_base_usd=model.amount_base_usd,
            price_usd_per_token=model.price_usd_per_token,
            valuation_source=model.valuation_source,
            valuation_timestamp=as_utc(model.valuation_timestamp),
            processed_at=as_utc(model.processed_at),
            trade_id=model.trade_id,
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class TradeDTO:
    """Data transfer object for priced ledger trades."""

    staged_trade_id: str
    tx_signature: str
    wallet_id: str
    token_id: str
    side: TradeSide
    amount_token: Decimal
    amount_base: Decimal
    base_token: str
    price_base_per_token: Decimal
    timestamp: datetime
    value_usd: Decimal | None = None
    price_usd_per_token: Decimal | None = None
    dex: str | None = None
    meta: dict[str, Any] = field(default_factory=dict)
    id: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: TradeModel) -> TradeDTO:
        return cls(
            id=model.id,
            staged_trade_id=model.staged_trade_id,
            tx_signature=model.tx_signature,
            wallet_id=model.wallet_id,
            token_id=model.token_id,
            side=TradeSide.parse(model.side),
            amount_token=model.amount_token,
            amount_base=model.amount_base,
            base_token=model.base_token,
            price_base_per_token=model.price_base_per_token,
            timestamp=as_utc(model.timestamp),
            value_usd=model.value_usd,
            price_usd_per_token=model.price_usd_per_token,
            dex=model.dex,
            meta=json.loads(model.meta_json) if model.meta_json else {},
            created_at=as_utc(model.created_at),
        )


@dataclass
class ClosedLotDTO:
    """Data transfer object for FIFO closed lots."""

    wallet_id: str
    token_id: str
    size: Decimal
    entry_price: Decimal
    exit_price: Decimal
    entry_time: datetime
    exit_time: datetime
    hold_time_minutes: int
    cost_basis: Decimal
    proceeds: Decimal
    realized_pnl: Decimal
    realized_pnl_percent: Decimal | None
    sell_trade_id: str
    buy_trade_id: str | None = None
    is_pre_history: bool = False
    cost_known: bool = True
    sequence_number: int = 1
    id: str | None = None

    @classmethod
    def from_model(cls, model: ClosedLotModel) -> ClosedLotDTO:
        return cls(
            id=model.id,
            wallet_id=model.wallet_id,
            token_id=model.token_id,
            size=model.size,
            entry_price=model.entry_price,
            exit_price=model.exit_price,
            entry_time=as_utc(model.entry_time),
            exit_time=as_utc(model.exit_time),
            hold_time_minutes=model.hold_time_minutes,
            cost_basis=model.cost_basis,
            proceeds=model.proceeds,
            realized_pnl=model.realized_pnl,
            realized_pnl_percent=model.realized_pnl_percent,
            sell_trade_id=model.sell_trade_id,
            buy_trade_id=model.buy_trade_id,
            is_pre_history=model.is_pre_history,
            cost_known=model.cost_known,
            sequence_number=model.sequence_number,
        )


@dataclass
class OpenPositionDTO:
    """Data transfer object for FIFO open positions."""

    wallet_id: str
    token_id: str
    size: Decimal
    average_entry_price: Decimal
    total_cost_base: Decimal
    first_entry_time: datetime
    last_trade_time: datetime
    buy_count: int = 0
    sell_count: int = 0

    @classmethod
    def from_model(cls, model: OpenPositionModel) -> OpenPositionDTO:
        return cls(
            wallet_id=model.wallet_id,
            token_id=model.token_id,
            size=model.size,
            average_entry_price=model.average_entry_price,
            total_cost_base=model.total_cost_base,
            first_entry_time=as_utc(model.first_entry_time),
            last_trade_time=as_utc(model.last_trade_time),
            buy_count=model.buy_count,
            sell_count=model.sell_count,
        )


@dataclass
class WalletMetricsDTO:
    """Data transfer object for per-wallet aggregates."""

    wallet_id: str
    closed_lot_count: int
    win_count: int
    win_rate: Decimal
    realized_pnl_base: Decimal
    avg_hold_minutes: Decimal
    open_position_count: int
    computed_at: datetime

    @classmethod
    def from_model(cls, model: WalletMetricsModel) -> WalletMetricsDTO:
        return cls(
            wallet_id=model.wallet_id,
            closed_lot_count=model.closed_lot_count,
            win_count=model.win_count,
            win_rate=model.win_rate,
            realized_pnl_base=model.realized_pnl_base,
            avg_hold_minutes=model.avg_hold_minutes,
            open_position_count=model.open_position_count,
            computed_at=as_utc(model.computed_at),
        )


@dataclass
class SignalDTO:
    """Data transfer object for signals."""

    type: str
    wallet_id: str
    token_id: str
    original_trade_id: str
    model: str
    wallet_count: int
    cluster_start: datetime
    cluster_end: datetime
    meta: dict[str, Any] = field(default_factory=dict)
    price_base_per_token: Decimal | None = None
    amount_base: Decimal | None = None
    status: str = "active"
    expires_at: datetime | None = None
    id: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_model(cls, model: SignalModel) -> SignalDTO:
        return cls(
            id=model.id,
            type=model.type,
            wallet_id=model.wallet_id,
            token_id=model.token_id,
            original_trade_id=model.original_trade_id,
            model=model.model,
            wallet_count=model.wallet_count,
            cluster_start=as_utc(model.cluster_start),
            cluster_end=as_utc(model.cluster_end),
            meta=json.loads(model.meta_json) if model.meta_json else {},
            price_base_per_token=model.price_base_per_token,
            amount_base=model.amount_base,
            status=model.status,
            expires_at=as_utc(model.expires_at),
            created_at=as_utc(model.created_at),
            updated_at=as_utc(model.updated_at),
        )


@dataclass
class WalletJobDTO:
    """Data transfer object for wallet processing queue jobs."""

    id: str
    wallet_id: str
    job_type: str
    status: str
    priority: int
    attempts: int
    next_run_at: datetime
    last_attempt_at: datetime | None = None
    error: str | None = None
    created_at: datetime | None = None

    @classmethod
    def from_model(cls, model: WalletJobModel) -> WalletJobDTO:
        return cls(
            id=model.id,
            wallet_id=model.wallet_id,
            job_type=model.job_type,
            status=model.status,
            priority=model.priority,
            attempts=model.attempts,
            next_run_at=as_utc(model.next_run_at),
            last_attempt_at=as_utc(model.last_attempt_at),
            error=model.error,
            created_at=as_utc(model.created_at),
        )


# ============================================================================
# Repositories
# ============================================================================


class WalletRepository:
    """Repository for tracked wallets."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_id(self, wallet_id: str) -> WalletDTO | None:
        model = await self.session.get(WalletModel, wallet_id)
        return WalletDTO.from_model(model) if model else None

    async def get_by_address(self, address: str) -> WalletDTO | None:
        result = await self.session.execute(
            select(WalletModel).where(func.lower(WalletModel.address) == address.lower())
        )
        model = result.scalar_one_or_none()
        return WalletDTO.from_model(model) if model else None

    async def get_or_create(self, address: str, *, label: str | None = None) -> WalletDTO:
        """Register a wallet for tracking (idempotent)."""
        existing = await self.get_by_address(address)
        if existing:
            return existing
        model = WalletModel(address=address, label=label, tracking_started_at=datetime.now(UTC))
        self.session.add(model)
        await self.session.flush()
        logger.info("Tracking wallet %s (%s)", address, label or "-")
        return WalletDTO.from_model(model)

    async def list_active(self) -> list[WalletDTO]:
        result = await self.session.execute(
            select(WalletModel).where(WalletModel.is_active.is_(True)).order_by(WalletModel.created_at)
        )
        return [WalletDTO.from_model(m) for m in result.scalars().all()]

    async def tracked_addresses(self) -> dict[str, WalletDTO]:
        """Map lowercase address to wallet for every active wallet."""
        return {w.address.lower(): w for w in await self.list_active()}


class TokenRepository:
    """Repository for tokens."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def get_by_mint(self, mint_address: str) -> TokenDTO | None:
        result = await self.session.execute(select(TokenModel).where(TokenModel.mint_address == mint_address))
        model = result.scalar_one_or_none()
        return TokenDTO.from_model(model) if model else None

    async def get_or_create(self, mint_address: str, *, symbol: str | None = None) -> TokenDTO:
        stmt = _dialect_insert(self.session, TokenModel).values(
            id=new_id(),
            mint_address=mint_address,
            symbol=symbol,
            created_at=datetime.now(UTC),
        )
        await self.session.execute(stmt.on_conflict_do_nothing(index_elements=["mint_address"]))
        token = await self.get_by_mint(mint_address)
        if token is None:
            raise RuntimeError(f"Token {mint_address} missing after upsert")
        return token


class StagedTradeRepository:
    """Repository for staged (unpriced) trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: StagedTradeDTO) -> bool:
        """Insert a staged trade unless its identity already exists.

        Returns:
            True if a new row was written, False on a duplicate delivery.
        """
        now = datetime.now(UTC)
        values = {
            "id": dto.id or new_id(),
            "tx_signature": dto.tx_signature,
            "wallet_id": dto.wallet_id,
            "token_id": dto.token_id,
            "token_mint": dto.token_mint,
            "side": dto.side.value,
            "amount_token": dto.amount_token,
            "amount_base_raw": dto.amount_base_raw,
            "base_token": dto.base_token,
            "price_base_per_token_raw": dto.price_base_per_token_raw,
            "timestamp": dto.timestamp,
            "dex": dto.dex,
            "raw_payload": dto.raw_payload,
            "status": "pending",
            "attempts": 0,
            "created_at": now,
            "updated_at": now,
        }
        stmt = _dialect_insert(self.session, StagedTradeModel).values(**values)
        stmt = stmt.on_conflict_do_nothing(index_elements=["tx_signature", "wallet_id", "side"])
        result = await self.session.execute(stmt)
        return bool(result.rowcount)

    async def get(self, staged_id: str) -> StagedTradeDTO | None:
        model = await self.session.get(StagedTradeModel, staged_id, populate_existing=True)
        return StagedTradeDTO.from_model(model) if model else None

    async def find_ready(self, *, limit: int, retry_before: datetime) -> list[StagedTradeDTO]:
        """Pending trades plus failed trades whose retry delay elapsed, oldest first."""
        result = await self.session.execute(
            select(StagedTradeModel)
            .where(
                or_(
                    StagedTradeModel.status == "pending",
                    (StagedTradeModel.status == "failed") & (StagedTradeModel.updated_at <= retry_before),
                )
            )
            .order_by(StagedTradeModel.timestamp.asc(), StagedTradeModel.id.asc())
            .limit(limit)
        )
        return [StagedTradeDTO.from_model(m) for m in result.scalars().all()]

    async def list(
        self,
        *,
        wallet_id: str | None = None,
        status: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[StagedTradeDTO]:
        stmt = select(StagedTradeModel)
        if wallet_id:
            stmt = stmt.where(StagedTradeModel.wallet_id == wallet_id)
        if status:
            stmt = stmt.where(StagedTradeModel.status == status)
        if start:
            stmt = stmt.where(StagedTradeModel.timestamp >= start)
        if end:
            stmt = stmt.where(StagedTradeModel.timestamp <= end)
        stmt = stmt.order_by(StagedTradeModel.timestamp.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [StagedTradeDTO.from_model(m) for m in result.scalars().all()]

    async def mark_processed(
        self,
        staged_id: str,
        *,
        trade_id: str,
        amount_base_usd: Decimal | None,
        price_usd_per_token: Decimal | None,
        valuation_source: str,
        valuation_timestamp: datetime,
    ) -> None:
        now = datetime.now(UTC)
        await self.session.execute(
            update(StagedTradeModel)
            .where(StagedTradeModel.id == staged_id)
            .values(
                status="processed",
                trade_id=trade_id,
                amount_base_usd=amount_base_usd,
                price_usd_per_token=price_usd_per_token,
                valuation_source=valuation_source,
                valuation_timestamp=valuation_timestamp,
                processed_at=now,
                last_error=None,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(self, staged_id: str, error: str) -> None:
        """Record a failure; the row stays eligible for retry."""
        await self.session.execute(
            update(StagedTradeModel)
            .where(StagedTradeModel.id == staged_id)
            .values(
                status="failed",
                last_error=_truncate(error),
                attempts=StagedTradeModel.attempts + 1,
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

    async def reset_failed(self) -> int:
        """Return every failed staged trade to pending."""
        result = await self.session.execute(
            update(StagedTradeModel)
            .where(StagedTradeModel.status == "failed")
            .values(status="pending", updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def count_by_status(self) -> dict[str, int]:
        result = await self.session.execute(
            select(StagedTradeModel.status, sa.func.count()).group_by(StagedTradeModel.status)
        )
        return {status: int(count) for status, count in result.all()}


class TradeRepository:
    """Repository for priced ledger trades."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def insert_if_absent(self, dto: TradeDTO) -> str:
        """Write the trade for a staged record; returns the trade id.

        A staged record maps to at most one trade, so a replay returns the
        existing id instead of writing a second row.
        """
        existing = await self.session.execute(
            select(TradeModel.id).where(TradeModel.staged_trade_id == dto.staged_trade_id)
        )
        existing_id = existing.scalar_one_or_none()
        if existing_id:
            return existing_id
        model = TradeModel(
            staged_trade_id=dto.staged_trade_id,
            tx_signature=dto.tx_signature,
            wallet_id=dto.wallet_id,
            token_id=dto.token_id,
            side=dto.side.value,
            amount_token=dto.amount_token,
            amount_base=dto.amount_base,
            base_token=dto.base_token,
            price_base_per_token=dto.price_base_per_token,
            value_usd=dto.value_usd,
            price_usd_per_token=dto.price_usd_per_token,
            timestamp=dto.timestamp,
            dex=dto.dex,
            meta_json=json.dumps(dto.meta, default=str),
        )
        self.session.add(model)
        await self.session.flush()
        return model.id

    async def get(self, trade_id: str) -> TradeDTO | None:
        model = await self.session.get(TradeModel, trade_id)
        return TradeDTO.from_model(model) if model else None

    async def list(
        self,
        *,
        wallet_id: str | None = None,
        token_id: str | None = None,
        start: datetime | None = None,
        end: datetime | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[TradeDTO]:
        stmt = select(TradeModel)
        if wallet_id:
            stmt = stmt.where(TradeModel.wallet_id == wallet_id)
        if token_id:
            stmt = stmt.where(TradeModel.token_id == token_id)
        if start:
            stmt = stmt.where(TradeModel.timestamp >= start)
        if end:
            stmt = stmt.where(TradeModel.timestamp <= end)
        stmt = stmt.order_by(TradeModel.timestamp.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def list_for_wallet(self, wallet_id: str, *, token_ids: list[str] | None = None) -> list[TradeDTO]:
        """Full trade history of a wallet, oldest first."""
        stmt = select(TradeModel).where(TradeModel.wallet_id == wallet_id)
        if token_ids:
            stmt = stmt.where(TradeModel.token_id.in_(token_ids))
        stmt = stmt.order_by(TradeModel.timestamp.asc(), TradeModel.id.asc())
        result = await self.session.execute(stmt)
        return [TradeDTO.from_model(m) for m in result.scalars().all()]

    async def find_buys_for_token(self, token_id: str, *, start: datetime, end: datetime) -> list[TradeDTO]:
        entry_sides = [TradeSide.BUY.value, TradeSide.ADD.value]
        result = await self.session.execute(
            select(TradeModel)
            .where(
                (TradeModel.token_id == token_id)
                & (TradeModel.side.in_(entry_sides))
                & (TradeModel.timestamp >= start)
                & (TradeModel.timestamp <= end)
            )
            .order_by(TradeModel.timestamp.asc(), TradeModel.id.asc())
        )
        return [TradeDTO.from_model(m) for m in result.scalars().all()]


class LedgerRepository:
    """Repository for derived closed lots, open positions and wallet metrics."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def replace_for_wallet(
        self,
        wallet_id: str,
        *,
        token_ids: list[str] | None,
        closed_lots: list[ClosedLotDTO],
        open_positions: list[OpenPositionDTO],
    ) -> None:
        """Delete-then-insert the derived rows for a wallet (or a token subset).

        Runs inside the caller's transaction; the caller commits or rolls back
        the whole replacement.
        """
        lots_delete = delete(ClosedLotModel).where(ClosedLotModel.wallet_id == wallet_id)
        positions_delete = delete(OpenPositionModel).where(OpenPositionModel.wallet_id == wallet_id)
        if token_ids is not None:
            lots_delete = lots_delete.where(ClosedLotModel.token_id.in_(token_ids))
            positions_delete = positions_delete.where(OpenPositionModel.token_id.in_(token_ids))
        await self.session.execute(lots_delete.execution_options(synchronize_session=False))
        await self.session.execute(positions_delete.execution_options(synchronize_session=False))

        now = datetime.now(UTC)
        for lot in closed_lots:
            self.session.add(
                ClosedLotModel(
                    wallet_id=lot.wallet_id,
                    token_id=lot.token_id,
                    size=lot.size,
                    entry_price=lot.entry_price,
                    exit_price=lot.exit_price,
                    entry_time=lot.entry_time,
                    exit_time=lot.exit_time,
                    hold_time_minutes=lot.hold_time_minutes,
                    cost_basis=lot.cost_basis,
                    proceeds=lot.proceeds,
                    realized_pnl=lot.realized_pnl,
                    realized_pnl_percent=lot.realized_pnl_percent,
                    buy_trade_id=lot.buy_trade_id,
                    sell_trade_id=lot.sell_trade_id,
                    is_pre_history=lot.is_pre_history,
                    cost_known=lot.cost_known,
                    sequence_number=lot.sequence_number,
                    created_at=now,
                )
            )
        for position in open_positions:
            self.session.add(
                OpenPositionModel(
                    wallet_id=position.wallet_id,
                    token_id=position.token_id,
                    size=position.size,
                    average_entry_price=position.average_entry_price,
                    total_cost_base=position.total_cost_base,
                    first_entry_time=position.first_entry_time,
                    last_trade_time=position.last_trade_time,
                    buy_count=position.buy_count,
                    sell_count=position.sell_count,
                    updated_at=now,
                )
            )
        await self.session.flush()

    async def list_closed_lots(
        self, wallet_id: str, *, token_id: str | None = None, limit: int | None = 500, offset: int = 0
    ) -> list[ClosedLotDTO]:
        stmt = select(ClosedLotModel).where(ClosedLotModel.wallet_id == wallet_id)
        if token_id:
            stmt = stmt.where(ClosedLotModel.token_id == token_id)
        stmt = stmt.order_by(ClosedLotModel.exit_time.desc(), ClosedLotModel.entry_time.desc())
        result = await self.session.execute(stmt.limit(limit).offset(offset))
        return [ClosedLotDTO.from_model(m) for m in result.scalars().all()]

    async def list_open_positions(self, wallet_id: str) -> list[OpenPositionDTO]:
        result = await self.session.execute(
            select(OpenPositionModel)
            .where(OpenPositionModel.wallet_id == wallet_id)
            .order_by(OpenPositionModel.first_entry_time.asc())
        )
        return [OpenPositionDTO.from_model(m) for m in result.scalars().all()]

    async def upsert_metrics(self, dto: WalletMetricsDTO) -> None:
        values = {
            "wallet_id": dto.wallet_id,
            "closed_lot_count": dto.closed_lot_count,
            "win_count": dto.win_count,
            "win_rate": dto.win_rate,
            "realized_pnl_base": dto.realized_pnl_base,
            "avg_hold_minutes": dto.avg_hold_minutes,
            "open_position_count": dto.open_position_count,
            "computed_at": dto.computed_at,
        }
        stmt = _dialect_insert(self.session, WalletMetricsModel).values(**values)
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_id"],
            set_={k: getattr(stmt.excluded, k) for k in values if k != "wallet_id"},
        )
        await self.session.execute(stmt)

    async def get_metrics(self, wallet_id: str) -> WalletMetricsDTO | None:
        model = await self.session.get(WalletMetricsModel, wallet_id, populate_existing=True)
        return WalletMetricsDTO.from_model(model) if model else None


class SignalRepository:
    """Repository for consensus signals."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def find_overlapping(
        self, *, token_id: str, model: str, start: datetime, end: datetime
    ) -> SignalDTO | None:
        """Earliest signal for the token whose cluster range intersects [start, end]."""
        result = await self.session.execute(
            select(SignalModel)
            .where(
                (SignalModel.token_id == token_id)
                & (SignalModel.model == model)
                & (SignalModel.cluster_start <= end)
                & (SignalModel.cluster_end >= start)
            )
            .order_by(SignalModel.cluster_start.asc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        found = result.scalar_one_or_none()
        return SignalDTO.from_model(found) if found else None

    async def insert_if_absent(self, dto: SignalDTO) -> str | None:
        """Insert a signal; returns its id, or None when the cluster already has one."""
        now = datetime.now(UTC)
        signal_id = dto.id or new_id()
        stmt = _dialect_insert(self.session, SignalModel).values(
            id=signal_id,
            type=dto.type,
            wallet_id=dto.wallet_id,
            token_id=dto.token_id,
            original_trade_id=dto.original_trade_id,
            model=dto.model,
            wallet_count=dto.wallet_count,
            cluster_start=dto.cluster_start,
            cluster_end=dto.cluster_end,
            price_base_per_token=dto.price_base_per_token,
            amount_base=dto.amount_base,
            meta_json=json.dumps(dto.meta, default=str),
            status=dto.status,
            expires_at=dto.expires_at,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_nothing(index_elements=["token_id", "model", "cluster_start"])
        result = await self.session.execute(stmt)
        return signal_id if result.rowcount else None

    async def extend(
        self,
        signal_id: str,
        *,
        wallet_count: int,
        cluster_start: datetime,
        cluster_end: datetime,
        meta: dict[str, Any],
    ) -> None:
        await self.session.execute(
            update(SignalModel)
            .where(SignalModel.id == signal_id)
            .values(
                wallet_count=wallet_count,
                cluster_start=cluster_start,
                cluster_end=cluster_end,
                meta_json=json.dumps(meta, default=str),
                updated_at=datetime.now(UTC),
            )
            .execution_options(synchronize_session=False)
        )

    async def get(self, signal_id: str) -> SignalDTO | None:
        result = await self.session.execute(
            select(SignalModel).where(SignalModel.id == signal_id).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return SignalDTO.from_model(model) if model else None

    async def list(
        self,
        *,
        status: str | None = None,
        token_id: str | None = None,
        model: str | None = None,
        limit: int = 100,
        offset: int = 0,
    ) -> list[SignalDTO]:
        stmt = select(SignalModel).where(SignalModel.wallet_count >= 2)
        if status:
            stmt = stmt.where(SignalModel.status == status)
        if token_id:
            stmt = stmt.where(SignalModel.token_id == token_id)
        if model:
            stmt = stmt.where(SignalModel.model == model)
        stmt = stmt.order_by(SignalModel.created_at.desc()).limit(limit).offset(offset)
        result = await self.session.execute(stmt)
        return [SignalDTO.from_model(m) for m in result.scalars().all()]

    async def expire_due(self, now: datetime) -> int:
        """Mark active signals past their expiry as expired."""
        result = await self.session.execute(
            update(SignalModel)
            .where(
                (SignalModel.status == "active")
                & (SignalModel.expires_at.is_not(None))
                & (SignalModel.expires_at <= now)
            )
            .values(status="expired", updated_at=now)
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)


class WalletJobRepository:
    """Claim-based wallet processing queue."""

    def __init__(self, session: AsyncSession) -> None:
        self.session = session

    async def enqueue(self, wallet_id: str, *, job_type: str = "recompute", priority: int = 0) -> None:
        """Insert or re-arm the job for (wallet, job_type).

        An existing job goes back to pending, due now, keeping the higher
        priority. A job currently being processed keeps its owner and is
        re-armed so the latest trades are picked up by a follow-up run. A
        parked (failed) job starts over with zero attempts.
        """
        now = datetime.now(UTC)
        stmt = _dialect_insert(self.session, WalletJobModel).values(
            id=new_id(),
            wallet_id=wallet_id,
            job_type=job_type,
            status="pending",
            priority=priority,
            attempts=0,
            next_run_at=now,
            created_at=now,
            updated_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["wallet_id", "job_type"],
            set_={
                "status": sa.case(
                    (WalletJobModel.status == "processing", WalletJobModel.status),
                    else_="pending",
                ),
                "priority": sa.case(
                    (stmt.excluded.priority > WalletJobModel.priority, stmt.excluded.priority),
                    else_=WalletJobModel.priority,
                ),
                "attempts": sa.case(
                    (WalletJobModel.status == "failed", 0),
                    else_=WalletJobModel.attempts,
                ),
                "next_run_at": now,
                "error": None,
                "updated_at": now,
            },
        )
        await self.session.execute(stmt)

    async def _select_candidate(self, now: datetime) -> str | None:
        result = await self.session.execute(
            select(WalletJobModel.id)
            .where((WalletJobModel.status == "pending") & (WalletJobModel.next_run_at <= now))
            .order_by(WalletJobModel.priority.desc(), WalletJobModel.created_at.asc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def try_claim(self, job_id: str, *, now: datetime | None = None) -> WalletJobDTO:
        """Compare-and-swap a pending job to processing.

        Raises:
            ClaimConflictError: If the job is no longer pending.
        """
        now = now or datetime.now(UTC)
        result = await self.session.execute(
            update(WalletJobModel)
            .where((WalletJobModel.id == job_id) & (WalletJobModel.status == "pending"))
            .values(
                status="processing",
                attempts=WalletJobModel.attempts + 1,
                last_attempt_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if not result.rowcount:
            raise ClaimConflictError(job_id)
        job = await self.get(job_id)
        if job is None:
            raise ClaimConflictError(job_id)
        return job

    async def claim_next_job(self, *, now: datetime | None = None, max_races: int = 5) -> WalletJobDTO | None:
        """Claim the highest-priority due job, or return None when the queue is idle."""
        now = now or datetime.now(UTC)
        for _ in range(max_races):
            job_id = await self._select_candidate(now)
            if job_id is None:
                return None
            try:
                return await self.try_claim(job_id, now=now)
            except ClaimConflictError:
                logger.debug("Lost claim race for job %s; reselecting", job_id)
        return None

    async def mark_completed(self, job_id: str) -> None:
        """Delete a finished job unless it was re-armed while processing."""
        result = await self.session.execute(
            delete(WalletJobModel)
            .where((WalletJobModel.id == job_id) & (WalletJobModel.next_run_at <= WalletJobModel.last_attempt_at))
            .execution_options(synchronize_session=False)
        )
        if result.rowcount:
            return
        await self.session.execute(
            update(WalletJobModel)
            .where((WalletJobModel.id == job_id) & (WalletJobModel.status == "processing"))
            .values(status="pending", attempts=0, updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )

    async def mark_failed(
        self,
        job_id: str,
        error: str,
        *,
        retry_delay: timedelta = timedelta(seconds=60),
        max_attempts: int | None = None,
        retry_priority: int | None = None,
    ) -> None:
        """Reschedule a job, or park it as failed after ``max_attempts``.

        ``retry_priority`` raises the job's priority for its retry; a lower
        value never demotes it.
        """
        now = datetime.now(UTC)
        job = await self.get(job_id)
        if job is None:
            return
        exhausted = max_attempts is not None and job.attempts >= max_attempts
        priority = max(job.priority, retry_priority) if retry_priority is not None else job.priority
        await self.session.execute(
            update(WalletJobModel)
            .where(WalletJobModel.id == job_id)
            .values(
                status="failed" if exhausted else "pending",
                priority=priority,
                next_run_at=now + retry_delay,
                error=_truncate(error),
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        if exhausted:
            logger.warning("Job %s for wallet %s parked after %d attempts", job_id, job.wallet_id, job.attempts)

    async def requeue_stale(self, *, older_than: datetime) -> int:
        """Return processing jobs abandoned before ``older_than`` to pending."""
        result = await self.session.execute(
            update(WalletJobModel)
            .where((WalletJobModel.status == "processing") & (WalletJobModel.last_attempt_at <= older_than))
            .values(status="pending", updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def reset_failed(self) -> int:
        result = await self.session.execute(
            update(WalletJobModel)
            .where(WalletJobModel.status == "failed")
            .values(status="pending", attempts=0, next_run_at=datetime.now(UTC), updated_at=datetime.now(UTC))
            .execution_options(synchronize_session=False)
        )
        return int(result.rowcount or 0)

    async def get(self, job_id: str) -> WalletJobDTO | None:
        result = await self.session.execute(
            select(WalletJobModel).where(WalletJobModel.id == job_id).execution_options(populate_existing=True)
        )
        model = result.scalar_one_or_none()
        return WalletJobDTO.from_model(model) if model else None

    async def list(self, *, status: str | None = None) -> list[WalletJobDTO]:
        stmt = select(WalletJobModel)
        if status:
            stmt = stmt.where(WalletJobModel.status == status)
        result = await self.session.execute(stmt.order_by(WalletJobModel.created_at.asc()))
        return [WalletJobDTO.from_model(m) for m in result.scalars().all()]
