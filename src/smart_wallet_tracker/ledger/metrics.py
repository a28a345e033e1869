"""Per-wallet aggregates derived from closed lots and open positions."""

from __future__ import annotations

from collections.abc import Sequence
from datetime import UTC, datetime
from decimal import Decimal

from smart_wallet_tracker.storage.repos import ClosedLotDTO, OpenPositionDTO, WalletMetricsDTO


def compute_wallet_metrics(
    wallet_id: str,
    closed_lots: Sequence[ClosedLotDTO],
    open_positions: Sequence[OpenPositionDTO],
    *,
    computed_at: datetime | None = None,
) -> WalletMetricsDTO:
    """Summarize a wallet's ledger.

    Win rate, realized PnL and average hold time only count lots with a known
    cost basis; estimated pre-history lots are counted but not scored.
    """
    scored = [lot for lot in closed_lots if lot.cost_known]
    wins = sum(1 for lot in scored if lot.realized_pnl > 0)
    realized = sum((lot.realized_pnl for lot in scored), Decimal(0))
    if scored:
        win_rate = Decimal(wins) / Decimal(len(scored))
        avg_hold = Decimal(sum(lot.hold_time_minutes for lot in scored)) / Decimal(len(scored))
    else:
        win_rate = Decimal(0)
        avg_hold = Decimal(0)

    return WalletMetricsDTO(
        wallet_id=wallet_id,
        closed_lot_count=len(closed_lots),
        win_count=wins,
        win_rate=win_rate.quantize(Decimal("0.000001")),
        realized_pnl_base=realized,
        avg_hold_minutes=avg_hold.quantize(Decimal("0.0001")),
        open_position_count=len(open_positions),
        computed_at=computed_at or datetime.now(UTC),
    )
