"""Data models for the detector module."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from smart_wallet_tracker.storage.repos import TradeDTO


@dataclass(frozen=True)
class ConsensusCluster:
    """Time-chained buys of one token by distinct tracked wallets.

    Attributes:
        token_id: Token the wallets bought.
        members: Each wallet's earliest buy in the cluster, oldest first.
        start: Timestamp of the earliest member buy.
        end: Timestamp of the latest member buy.
    """

    token_id: str
    members: tuple[TradeDTO, ...]
    start: datetime
    end: datetime

    @property
    def wallet_ids(self) -> list[str]:
        return [m.wallet_id for m in self.members]

    @property
    def wallet_count(self) -> int:
        return len(self.members)

    @property
    def trigger(self) -> TradeDTO:
        """The buy that completed the quorum (second distinct wallet)."""
        return self.members[1] if len(self.members) > 1 else self.members[0]

    def to_meta(self) -> dict[str, object]:
        """Serialize membership for the signal's JSON metadata."""
        return {
            "wallet_ids": self.wallet_ids,
            "trade_ids": [m.id for m in self.members],
            "buys": [
                {
                    "wallet_id": m.wallet_id,
                    "trade_id": m.id,
                    "timestamp": m.timestamp.isoformat(),
                    "amount_base": str(m.amount_base),
                    "price_base_per_token": str(m.price_base_per_token),
                }
                for m in self.members
            ],
        }
