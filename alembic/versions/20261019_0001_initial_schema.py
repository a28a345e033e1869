"""Initial schema: wallets, staged/priced trades, FIFO ledger, signals, queue.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000+00:00
"""

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001_initial"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(38, 12)


def upgrade() -> None:
    op.create_table(
        "wallets",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("address", sa.String(64), nullable=False),
        sa.Column("label", sa.String(128), nullable=True),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("tracking_started_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("address"),
    )

    op.create_table(
        "tokens",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("mint_address", sa.String(64), nullable=False),
        sa.Column("symbol", sa.String(32), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("mint_address"),
    )

    op.create_table(
        "staged_trades",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("tx_signature", sa.String(128), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("token_id", sa.String(36), nullable=False),
        sa.Column("token_mint", sa.String(64), nullable=False),
        sa.Column("side", sa.String(8), nullable=False),
        sa.Column("amount_token", AMOUNT, nullable=False),
        sa.Column("amount_base_raw", AMOUNT, nullable=False),
        sa.Column("base_token", sa.String(16), nullable=False),
        sa.Column("price_base_per_token_raw", AMOUNT, nullable=False),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dex", sa.String(64), nullable=True),
        sa.Column("raw_payload", sa.Text(), nullable=True),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("last_error", sa.Text(), nullable=True),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("amount_base_usd", AMOUNT, nullable=True),
        sa.Column("price_usd_per_token", AMOUNT, nullable=True),
        sa.Column("valuation_source", sa.String(32), nullable=True),
        sa.Column("valuation_timestamp", sa.DateTime(timezone=True), nullable=True),
        sa.Column("processed_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("trade_id", sa.String(36), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("tx_signature", "wallet_id", "side", name="uq_staged_trades_signature_wallet_side"),
    )
    op.create_index("idx_staged_trades_status_timestamp", "staged_trades", ["status", "timestamp"])
    op.create_index("idx_staged_trades_wallet_status", "staged_trades", ["wallet_id", "status"])

    op.create_table(
        "trades",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("staged_trade_id", sa.String(36), nullable=False),
        sa.Column("tx_signature", sa.String(128), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("token_id", sa.String(36), nullable=False),
        sa.Column("side", sa.String(8), nullable=False),
        sa.Column("amount_token", AMOUNT, nullable=False),
        sa.Column("amount_base", AMOUNT, nullable=False),
        sa.Column("base_token", sa.String(16), nullable=False),
        sa.Column("price_base_per_token", AMOUNT, nullable=False),
        sa.Column("value_usd", AMOUNT, nullable=True),
        sa.Column("price_usd_per_token", AMOUNT, nullable=True),
        sa.Column("timestamp", sa.DateTime(timezone=True), nullable=False),
        sa.Column("dex", sa.String(64), nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("staged_trade_id"),
        sa.UniqueConstraint("tx_signature", "wallet_id", "side", name="uq_trades_signature_wallet_side"),
    )
    op.create_index("idx_trades_wallet_timestamp", "trades", ["wallet_id", "timestamp"])
    op.create_index("idx_trades_token_side_timestamp", "trades", ["token_id", "side", "timestamp"])

    op.create_table(
        "closed_lots",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("token_id", sa.String(36), nullable=False),
        sa.Column("size", AMOUNT, nullable=False),
        sa.Column("entry_price", AMOUNT, nullable=False),
        sa.Column("exit_price", AMOUNT, nullable=False),
        sa.Column("entry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("exit_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("hold_time_minutes", sa.Integer(), nullable=False),
        sa.Column("cost_basis", AMOUNT, nullable=False),
        sa.Column("proceeds", AMOUNT, nullable=False),
        sa.Column("realized_pnl", AMOUNT, nullable=False),
        sa.Column("realized_pnl_percent", sa.Numeric(20, 6), nullable=True),
        sa.Column("buy_trade_id", sa.String(36), nullable=True),
        sa.Column("sell_trade_id", sa.String(36), nullable=False),
        sa.Column("is_pre_history", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("cost_known", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("sequence_number", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
    )
    op.create_index("idx_closed_lots_wallet_token", "closed_lots", ["wallet_id", "token_id"])
    op.create_index("idx_closed_lots_wallet_exit_time", "closed_lots", ["wallet_id", "exit_time"])

    op.create_table(
        "open_positions",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("token_id", sa.String(36), nullable=False),
        sa.Column("size", AMOUNT, nullable=False),
        sa.Column("average_entry_price", AMOUNT, nullable=False),
        sa.Column("total_cost_base", AMOUNT, nullable=False),
        sa.Column("first_entry_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("last_trade_time", sa.DateTime(timezone=True), nullable=False),
        sa.Column("buy_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("sell_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_id", "token_id", name="uq_open_positions_wallet_token"),
    )

    op.create_table(
        "wallet_metrics",
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("closed_lot_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("win_rate", sa.Numeric(10, 6), nullable=False, server_default="0"),
        sa.Column("realized_pnl_base", AMOUNT, nullable=False, server_default="0"),
        sa.Column("avg_hold_minutes", sa.Numeric(20, 4), nullable=False, server_default="0"),
        sa.Column("open_position_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("computed_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("wallet_id"),
    )

    op.create_table(
        "signals",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("type", sa.String(8), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("token_id", sa.String(36), nullable=False),
        sa.Column("original_trade_id", sa.String(36), nullable=False),
        sa.Column("model", sa.String(32), nullable=False, server_default="consensus"),
        sa.Column("wallet_count", sa.Integer(), nullable=False),
        sa.Column("cluster_start", sa.DateTime(timezone=True), nullable=False),
        sa.Column("cluster_end", sa.DateTime(timezone=True), nullable=False),
        sa.Column("price_base_per_token", AMOUNT, nullable=True),
        sa.Column("amount_base", AMOUNT, nullable=True),
        sa.Column("meta_json", sa.Text(), nullable=False, server_default="{}"),
        sa.Column("status", sa.String(16), nullable=False, server_default="active"),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("token_id", "model", "cluster_start", name="uq_signals_token_model_cluster_start"),
        sa.CheckConstraint("wallet_count >= 2", name="ck_signals_wallet_count"),
    )
    op.create_index("idx_signals_status_created_at", "signals", ["status", "created_at"])
    op.create_index("idx_signals_token_cluster", "signals", ["token_id", "cluster_start", "cluster_end"])

    op.create_table(
        "wallet_processing_queue",
        sa.Column("id", sa.String(36), nullable=False),
        sa.Column("wallet_id", sa.String(36), nullable=False),
        sa.Column("job_type", sa.String(32), nullable=False, server_default="recompute"),
        sa.Column("status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("last_attempt_at", sa.DateTime(timezone=True), nullable=True),
        sa.Column("next_run_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column("created_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("updated_at", sa.DateTime(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint("id"),
        sa.UniqueConstraint("wallet_id", "job_type", name="uq_wallet_processing_queue_wallet_job"),
    )
    op.create_index(
        "idx_wallet_processing_queue_claim",
        "wallet_processing_queue",
        ["status", "next_run_at", "priority"],
    )


def downgrade() -> None:
    op.drop_index("idx_wallet_processing_queue_claim", table_name="wallet_processing_queue")
    op.drop_table("wallet_processing_queue")
    op.drop_index("idx_signals_token_cluster", table_name="signals")
    op.drop_index("idx_signals_status_created_at", table_name="signals")
    op.drop_table("signals")
    op.drop_table("wallet_metrics")
    op.drop_table("open_positions")
    op.drop_index("idx_closed_lots_wallet_exit_time", table_name="closed_lots")
    op.drop_index("idx_closed_lots_wallet_token", table_name="closed_lots")
    op.drop_table("closed_lots")
    op.drop_index("idx_trades_token_side_timestamp", table_name="trades")
    op.drop_index("idx_trades_wallet_timestamp", table_name="trades")
    op.drop_table("trades")
    op.drop_index("idx_staged_trades_wallet_status", table_name="staged_trades")
    op.drop_index("idx_staged_trades_status_timestamp", table_name="staged_trades")
    op.drop_table("staged_trades")
    op.drop_table("tokens")
    op.drop_table("wallets")
