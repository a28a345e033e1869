"""SQLAlchemy models for persistent storage.

This module defines the database schema for tracked wallets, the staged and
priced trade ledger, derived FIFO lots/positions, consensus signals and the
wallet processing queue.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from decimal import Decimal

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


def new_id() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class WalletModel(Base):
    """Tracked smart wallet."""

    __tablename__ = "wallets"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    label: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    tracking_started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class TokenModel(Base):
    """SPL token seen in at least one tracked swap."""

    __tablename__ = "tokens"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    mint_address: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    symbol: Mapped[str | None] = mapped_column(String(32), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class StagedTradeModel(Base):
    """Normalized, unpriced swap awaiting valuation."""

    __tablename__ = "staged_trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_mint: Mapped[str] = mapped_column(String(64), nullable=False)

    # buy | sell | void
    side: Mapped[str] = mapped_column(String(8), nullable=False)
    amount_token: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    amount_base_raw: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    base_token: Mapped[str] = mapped_column(String(16), nullable=False)
    price_base_per_token_raw: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dex: Mapped[str | None] = mapped_column(String(64), nullable=True)
    raw_payload: Mapped[str | None] = mapped_column(Text, nullable=True)

    # pending | processed | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    amount_base_usd: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    price_usd_per_token: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    valuation_source: Mapped[str | None] = mapped_column(String(32), nullable=True)
    valuation_timestamp: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    trade_id: Mapped[str | None] = mapped_column(String(36), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_signature", "wallet_id", "side", name="uq_staged_trades_signature_wallet_side"),
        Index("idx_staged_trades_status_timestamp", "status", "timestamp"),
        Index("idx_staged_trades_wallet_status", "wallet_id", "status"),
    )


class TradeModel(Base):
    """Priced ledger entry. Append-only."""

    __tablename__ = "trades"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    staged_trade_id: Mapped[str] = mapped_column(String(36), nullable=False, unique=True)
    tx_signature: Mapped[str] = mapped_column(String(128), nullable=False)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)

    side: Mapped[str] = mapped_column(String(8), nullable=False)
    amount_token: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    # Native base currency units (SOL/USDC/USDT), never USD.
    amount_base: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    base_token: Mapped[str] = mapped_column(String(16), nullable=False)
    price_base_per_token: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    value_usd: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    price_usd_per_token: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    dex: Mapped[str | None] = mapped_column(String(64), nullable=True)
    meta_json: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("tx_signature", "wallet_id", "side", name="uq_trades_signature_wallet_side"),
        Index("idx_trades_wallet_timestamp", "wallet_id", "timestamp"),
        Index("idx_trades_token_side_timestamp", "token_id", "side", "timestamp"),
    )


class ClosedLotModel(Base):
    """FIFO-matched buy/sell portion with realized PnL (derived)."""

    __tablename__ = "closed_lots"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)

    size: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    entry_price: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    exit_price: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    entry_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    exit_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    hold_time_minutes: Mapped[int] = mapped_column(Integer, nullable=False)
    cost_basis: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    proceeds: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    realized_pnl: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    realized_pnl_percent: Mapped[Decimal | None] = mapped_column(Numeric(20, 6), nullable=True)

    buy_trade_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    sell_trade_id: Mapped[str] = mapped_column(String(36), nullable=False)
    is_pre_history: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    cost_known: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        Index("idx_closed_lots_wallet_token", "wallet_id", "token_id"),
        Index("idx_closed_lots_wallet_exit_time", "wallet_id", "exit_time"),
    )


class OpenPositionModel(Base):
    """Unmatched FIFO remainder for a wallet/token (derived)."""

    __tablename__ = "open_positions"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)

    size: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    average_entry_price: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    total_cost_base: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False)
    first_entry_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    last_trade_time: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    buy_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    sell_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("wallet_id", "token_id", name="uq_open_positions_wallet_token"),
    )


class WalletMetricsModel(Base):
    """Per-wallet aggregates over closed lots and open positions (derived)."""

    __tablename__ = "wallet_metrics"

    wallet_id: Mapped[str] = mapped_column(String(36), primary_key=True)
    closed_lot_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    win_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    win_rate: Mapped[Decimal] = mapped_column(Numeric(10, 6), nullable=False, default=Decimal("0"))
    realized_pnl_base: Mapped[Decimal] = mapped_column(Numeric(38, 12), nullable=False, default=Decimal("0"))
    avg_hold_minutes: Mapped[Decimal] = mapped_column(Numeric(20, 4), nullable=False, default=Decimal("0"))
    open_position_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    computed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)


class SignalModel(Base):
    """Consensus (or other model) trading signal."""

    __tablename__ = "signals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    # buy | sell
    type: Mapped[str] = mapped_column(String(8), nullable=False)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    token_id: Mapped[str] = mapped_column(String(36), nullable=False)
    original_trade_id: Mapped[str] = mapped_column(String(36), nullable=False)
    model: Mapped[str] = mapped_column(String(32), nullable=False, default="consensus")

    wallet_count: Mapped[int] = mapped_column(Integer, nullable=False)
    cluster_start: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    cluster_end: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    price_base_per_token: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    amount_base: Mapped[Decimal | None] = mapped_column(Numeric(38, 12), nullable=True)
    meta_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    # active | executed | expired
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="active")
    expires_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("token_id", "model", "cluster_start", name="uq_signals_token_model_cluster_start"),
        CheckConstraint("wallet_count >= 2", name="ck_signals_wallet_count"),
        Index("idx_signals_status_created_at", "status", "created_at"),
        Index("idx_signals_token_cluster", "token_id", "cluster_start", "cluster_end"),
    )


class WalletJobModel(Base):
    """Claim-based per-wallet recomputation job."""

    __tablename__ = "wallet_processing_queue"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    wallet_id: Mapped[str] = mapped_column(String(36), nullable=False)
    job_type: Mapped[str] = mapped_column(String(32), nullable=False, default="recompute")
    # pending | processing | failed
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    last_attempt_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    next_run_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=_utcnow)

    __table_args__ = (
        UniqueConstraint("wallet_id", "job_type", name="uq_wallet_processing_queue_wallet_job"),
        Index("idx_wallet_processing_queue_claim", "status", "next_run_at", "priority"),
    )
