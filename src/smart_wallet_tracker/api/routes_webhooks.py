"""Webhook ingress: acknowledge first, normalize in the background."""

from __future__ import annotations

import json
import logging
import secrets
import time
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

from fastapi import APIRouter, BackgroundTasks, HTTPException, Request

from smart_wallet_tracker.ingestor.normalizer import WebhookNormalizer

if TYPE_CHECKING:
    from smart_wallet_tracker.pipeline import Pipeline
    from smart_wallet_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)


def _authorized(header: str | None, token: str) -> bool:
    if not header:
        return False
    presented = header[7:] if header.lower().startswith("bearer ") else header
    return secrets.compare_digest(presented.strip(), token)


def _ack(started: float, message: str, *, success: bool = True) -> dict[str, Any]:
    return {
        "success": success,
        "message": message,
        "responseTimeMs": round((time.perf_counter() - started) * 1000, 2),
    }


def create_webhook_router(
    pipeline: Pipeline | None,
    *,
    get_db: Callable[[], DatabaseManager],
    auth_token: str | None = None,
) -> APIRouter:
    router = APIRouter()

    async def _normalize_in_background(payload: Any) -> None:
        try:
            if pipeline is not None and pipeline.is_running:
                await pipeline.handle_webhook(payload)
                return
            async with get_db().get_async_session() as session:
                await WebhookNormalizer().normalize(session, payload)
        except Exception:
            logger.exception("Background webhook normalization failed")

    async def _receive(request: Request, background_tasks: BackgroundTasks, dialect: str) -> dict[str, Any]:
        started = time.perf_counter()
        if auth_token and not _authorized(request.headers.get("authorization"), auth_token):
            raise HTTPException(status_code=401, detail="Invalid webhook authorization")

        body = await request.body()
        try:
            payload = json.loads(body) if body else None
        except ValueError:
            logger.warning("Discarding %s webhook with invalid JSON (%d bytes)", dialect, len(body))
            return _ack(started, "Invalid JSON body", success=False)

        # A full task channel hands the payload back; it has to be staged anyway.
        if pipeline is None or not pipeline.is_running or not pipeline.submit_webhook(payload):
            background_tasks.add_task(_normalize_in_background, payload)
        logger.debug("Accepted %s webhook (%d bytes)", dialect, len(body))
        return _ack(started, "Webhook received")

    @router.post("/webhooks/helius")
    async def helius_webhook(request: Request, background_tasks: BackgroundTasks):
        """Enhanced or RPC-style payload; both dialects are accepted."""
        return await _receive(request, background_tasks, "helius")

    @router.post("/webhooks/rpc")
    async def rpc_webhook(request: Request, background_tasks: BackgroundTasks):
        return await _receive(request, background_tasks, "rpc")

    return router
