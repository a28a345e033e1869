"""Consensus detection: several tracked wallets buying the same token.

Buys are chained into clusters where consecutive buys are at most W apart,
so a cluster can span longer than W. A cluster with at least
``min_wallets`` distinct wallets yields one signal per (token, model,
cluster), which later buys extend instead of duplicating.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING, Any

from smart_wallet_tracker.detector.models import ConsensusCluster
from smart_wallet_tracker.storage.repos import SignalDTO, SignalRepository, TradeDTO, TradeRepository

if TYPE_CHECKING:
    from smart_wallet_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_WINDOW_MINUTES = 120
DEFAULT_MIN_WALLETS = 2
DEFAULT_SIGNAL_TTL_HOURS = 24
CONSENSUS_MODEL = "consensus"


def chain_clusters(buys: Sequence[TradeDTO], window: timedelta) -> list[list[TradeDTO]]:
    """Split buys into clusters where every consecutive gap is <= ``window``."""
    ordered = sorted(buys, key=lambda t: (t.timestamp, t.id or ""))
    clusters: list[list[TradeDTO]] = []
    for trade in ordered:
        if clusters and trade.timestamp - clusters[-1][-1].timestamp <= window:
            clusters[-1].append(trade)
        else:
            clusters.append([trade])
    return clusters


def build_cluster(token_id: str, trades: Sequence[TradeDTO]) -> ConsensusCluster:
    """Keep each wallet's earliest buy so repeat buys don't inflate the count."""
    earliest: dict[str, TradeDTO] = {}
    for trade in sorted(trades, key=lambda t: (t.timestamp, t.id or "")):
        earliest.setdefault(trade.wallet_id, trade)
    members = tuple(sorted(earliest.values(), key=lambda t: (t.timestamp, t.id or "")))
    return ConsensusCluster(
        token_id=token_id,
        members=members,
        start=members[0].timestamp,
        end=members[-1].timestamp,
    )


def _merge_meta(existing: dict[str, Any], cluster: ConsensusCluster) -> dict[str, Any]:
    buys: dict[str, dict[str, Any]] = {}
    for buy in [*existing.get("buys", []), *cluster.to_meta()["buys"]]:
        wallet_id = buy.get("wallet_id")
        if not wallet_id:
            continue
        current = buys.get(wallet_id)
        if current is None or str(buy.get("timestamp", "")) < str(current.get("timestamp", "")):
            buys[wallet_id] = buy
    merged = sorted(buys.values(), key=lambda b: str(b.get("timestamp", "")))
    return {
        "wallet_ids": [b["wallet_id"] for b in merged],
        "trade_ids": [b.get("trade_id") for b in merged],
        "buys": merged,
    }


class ConsensusDetector:
    """Creates or extends consensus signals after tracked-wallet buys.

    Example:
        ```python
        detector = ConsensusDetector(db, window_minutes=120)
        signal = await detector.check_consensus_after_buy(
            trade_id, token_id, wallet_id, timestamp
        )
        if signal is not None:
            print(f"{signal.wallet_count} wallets bought {signal.token_id}")
        ```
    """

    def __init__(
        self,
        db: DatabaseManager,
        *,
        window_minutes: int = DEFAULT_WINDOW_MINUTES,
        min_wallets: int = DEFAULT_MIN_WALLETS,
        signal_ttl_hours: int = DEFAULT_SIGNAL_TTL_HOURS,
        model: str = CONSENSUS_MODEL,
    ) -> None:
        self._db = db
        self._window = timedelta(minutes=window_minutes)
        self._min_wallets = max(2, min_wallets)
        self._ttl = timedelta(hours=signal_ttl_hours)
        self._model = model

    async def check_consensus_after_buy(
        self,
        trade_id: str,
        token_id: str,
        wallet_id: str,
        timestamp: datetime,
    ) -> SignalDTO | None:
        """Evaluate the cluster containing a new buy.

        Returns:
            The created or extended signal, or None if the cluster has fewer
            than ``min_wallets`` distinct wallets.
        """
        async with self._db.get_async_session() as session:
            buys = await TradeRepository(session).find_buys_for_token(
                token_id, start=timestamp - self._window, end=timestamp + self._window
            )

        clusters = chain_clusters(buys, self._window)
        containing = next((c for c in clusters if any(t.id == trade_id for t in c)), None)
        if containing is None:
            logger.debug("Trade %s (wallet %s) not found among buys for token %s", trade_id, wallet_id, token_id)
            return None

        cluster = build_cluster(token_id, containing)
        if cluster.wallet_count < self._min_wallets:
            return None

        async with self._db.get_async_session() as session:
            return await self._record(SignalRepository(session), cluster)

    async def _record(self, repo: SignalRepository, cluster: ConsensusCluster) -> SignalDTO | None:
        existing = await repo.find_overlapping(
            token_id=cluster.token_id, model=self._model, start=cluster.start, end=cluster.end
        )
        if existing is not None:
            return await self._extend(repo, existing, cluster)

        trigger = cluster.trigger
        now = datetime.now(UTC)
        signal_id = await repo.insert_if_absent(
            SignalDTO(
                type="buy",
                wallet_id=trigger.wallet_id,
                token_id=cluster.token_id,
                original_trade_id=trigger.id or "",
                model=self._model,
                wallet_count=cluster.wallet_count,
                cluster_start=cluster.start,
                cluster_end=cluster.end,
                meta=cluster.to_meta(),
                price_base_per_token=trigger.price_base_per_token,
                amount_base=trigger.amount_base,
                status="active",
                expires_at=now + self._ttl,
            )
        )
        if signal_id is None:
            # Another writer created the cluster's signal first.
            existing = await repo.find_overlapping(
                token_id=cluster.token_id, model=self._model, start=cluster.start, end=cluster.end
            )
            return await self._extend(repo, existing, cluster) if existing else None

        logger.info(
            "Consensus signal %s: %d wallets bought token %s between %s and %s",
            signal_id,
            cluster.wallet_count,
            cluster.token_id,
            cluster.start.isoformat(),
            cluster.end.isoformat(),
        )
        return await repo.get(signal_id)

    async def _extend(self, repo: SignalRepository, existing: SignalDTO, cluster: ConsensusCluster) -> SignalDTO:
        meta = _merge_meta(existing.meta, cluster)
        wallet_count = len(meta["wallet_ids"])
        start = min(existing.cluster_start, cluster.start)
        end = max(existing.cluster_end, cluster.end)
        if wallet_count == existing.wallet_count and start == existing.cluster_start and end == existing.cluster_end:
            return existing
        assert existing.id is not None
        await repo.extend(existing.id, wallet_count=wallet_count, cluster_start=start, cluster_end=end, meta=meta)
        logger.info("Extended consensus signal %s to %d wallets", existing.id, wallet_count)
        refreshed = await repo.get(existing.id)
        return refreshed or existing

    async def expire_signals(self, now: datetime | None = None) -> int:
        """Mark active signals past their expiry as expired."""
        async with self._db.get_async_session() as session:
            expired = await SignalRepository(session).expire_due(now or datetime.now(UTC))
        if expired:
            logger.info("Expired %d signals", expired)
        return expired
