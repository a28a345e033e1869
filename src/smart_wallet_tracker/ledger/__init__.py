"""Ledger layer - FIFO lot matching and wallet metrics."""

from smart_wallet_tracker.ledger.lot_matching import (
    LotMatcher,
    LotMatchingService,
    MatchResult,
    RecomputationError,
)
from smart_wallet_tracker.ledger.metrics import compute_wallet_metrics

__all__ = [
    "LotMatcher",
    "LotMatchingService",
    "MatchResult",
    "RecomputationError",
    "compute_wallet_metrics",
]
