"""Read API over trades, signals and derived wallet ledgers."""

from __future__ import annotations

import dataclasses
from collections.abc import Callable
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, HTTPException, Query

from smart_wallet_tracker.storage.repos import (
    LedgerRepository,
    SignalRepository,
    StagedTradeRepository,
    TradeRepository,
)

if TYPE_CHECKING:
    from smart_wallet_tracker.storage.database import DatabaseManager

NOT_YET_AVAILABLE = "Data not yet available"


def to_json(obj: Any) -> Any:
    """Convert DTOs into JSON-safe structures (Decimals as strings)."""
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return {f.name: to_json(getattr(obj, f.name)) for f in dataclasses.fields(obj)}
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, Decimal):
        return str(obj)
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {k: to_json(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [to_json(v) for v in obj]
    return obj


def create_read_router(get_db: Callable[[], DatabaseManager]) -> APIRouter:
    router = APIRouter()

    @router.get("/trades")
    async def list_trades(
        wallet_id: str | None = None,
        status: str | None = None,
        staged: bool = False,
        from_ts: datetime | None = Query(None, alias="from"),
        to_ts: datetime | None = Query(None, alias="to"),
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        """Priced trades, or staged records when ``staged=true``."""
        async with get_db().get_async_session() as session:
            if staged:
                rows: list[Any] = await StagedTradeRepository(session).list(
                    wallet_id=wallet_id, status=status, start=from_ts, end=to_ts, limit=limit, offset=offset
                )
            elif status not in (None, "processed"):
                rows = []
            else:
                rows = await TradeRepository(session).list(
                    wallet_id=wallet_id, start=from_ts, end=to_ts, limit=limit, offset=offset
                )
        return {"items": to_json(rows), "limit": limit, "offset": offset}

    @router.get("/trades/{trade_id}")
    async def get_trade(trade_id: str):
        async with get_db().get_async_session() as session:
            trade = await TradeRepository(session).get(trade_id)
            if trade is None:
                staged = await StagedTradeRepository(session).get(trade_id)
                if staged is not None:
                    return to_json(staged)
        if trade is None:
            raise HTTPException(status_code=404, detail="Trade not found")
        return to_json(trade)

    @router.get("/signals")
    async def list_signals(
        status: str | None = None,
        token_id: str | None = None,
        limit: int = Query(100, ge=1, le=1000),
        offset: int = Query(0, ge=0),
    ):
        async with get_db().get_async_session() as session:
            signals = await SignalRepository(session).list(
                status=status, token_id=token_id, limit=limit, offset=offset
            )
        return {"items": to_json(signals), "limit": limit, "offset": offset}

    @router.get("/signals/{signal_id}")
    async def get_signal(signal_id: str):
        async with get_db().get_async_session() as session:
            signal = await SignalRepository(session).get(signal_id)
        if signal is None:
            raise HTTPException(status_code=404, detail="Signal not found")
        return to_json(signal)

    @router.get("/wallets/{wallet_id}/closed-lots")
    async def wallet_closed_lots(
        wallet_id: str,
        token_id: str | None = None,
        limit: int = Query(500, ge=1, le=5000),
        offset: int = Query(0, ge=0),
    ):
        async with get_db().get_async_session() as session:
            lots = await LedgerRepository(session).list_closed_lots(
                wallet_id, token_id=token_id, limit=limit, offset=offset
            )
        return {"items": to_json(lots), "limit": limit, "offset": offset}

    @router.get("/wallets/{wallet_id}/open-positions")
    async def wallet_open_positions(wallet_id: str):
        async with get_db().get_async_session() as session:
            positions = await LedgerRepository(session).list_open_positions(wallet_id)
        return {"items": to_json(positions)}

    @router.get("/wallets/{wallet_id}/metrics")
    async def wallet_metrics(wallet_id: str):
        async with get_db().get_async_session() as session:
            metrics = await LedgerRepository(session).get_metrics(wallet_id)
        if metrics is None:
            raise HTTPException(status_code=404, detail=NOT_YET_AVAILABLE)
        return to_json(metrics)

    return router
