"""Tests for wallet metrics aggregation."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from decimal import Decimal

from smart_wallet_tracker.ledger.metrics import compute_wallet_metrics
from smart_wallet_tracker.storage.repos import ClosedLotDTO, OpenPositionDTO

NOW = datetime(2025, 10, 19, 12, 0, tzinfo=UTC)


def _lot(pnl: str, hold: int, *, cost_known: bool = True) -> ClosedLotDTO:
    return ClosedLotDTO(
        wallet_id="w",
        token_id="t",
        size=Decimal("10"),
        entry_price=Decimal("0.01"),
        exit_price=Decimal("0.02"),
        entry_time=NOW - timedelta(minutes=hold),
        exit_time=NOW,
        hold_time_minutes=hold,
        cost_basis=Decimal("0.1"),
        proceeds=Decimal("0.1") + Decimal(pnl),
        realized_pnl=Decimal(pnl),
        realized_pnl_percent=None,
        sell_trade_id="s",
        cost_known=cost_known,
    )


def _position() -> OpenPositionDTO:
    return OpenPositionDTO(
        wallet_id="w",
        token_id="t2",
        size=Decimal("5"),
        average_entry_price=Decimal("0.1"),
        total_cost_base=Decimal("0.5"),
        first_entry_time=NOW,
        last_trade_time=NOW,
    )


class TestComputeWalletMetrics:
    def test_aggregates_known_lots(self) -> None:
        lots = [_lot("0.1", 30), _lot("-0.05", 60), _lot("0.2", 10, cost_known=False)]

        metrics = compute_wallet_metrics("w", lots, [_position()], computed_at=NOW)

        assert metrics.closed_lot_count == 3
        assert metrics.win_count == 1
        assert metrics.win_rate == Decimal("0.500000")
        assert metrics.realized_pnl_base == Decimal("0.05")
        assert metrics.avg_hold_minutes == Decimal("45.0000")
        assert metrics.open_position_count == 1
        assert metrics.computed_at == NOW

    def test_empty_ledger(self) -> None:
        metrics = compute_wallet_metrics("w", [], [])

        assert metrics.closed_lot_count == 0
        assert metrics.win_rate == Decimal(0)
        assert metrics.avg_hold_minutes == Decimal(0)
        assert metrics.realized_pnl_base == Decimal(0)

    def test_break_even_is_not_a_win(self) -> None:
        metrics = compute_wallet_metrics("w", [_lot("0", 5), _lot("0.01", 5)], [])

        assert metrics.win_count == 1
        assert metrics.win_rate == Decimal("0.5")
