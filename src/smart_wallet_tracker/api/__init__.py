"""FastAPI application factory for webhook ingress and the read API."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import FastAPI

from smart_wallet_tracker import __version__
from smart_wallet_tracker.api.routes_read import create_read_router, to_json
from smart_wallet_tracker.api.routes_webhooks import create_webhook_router

if TYPE_CHECKING:
    from smart_wallet_tracker.pipeline import Pipeline
    from smart_wallet_tracker.storage.database import DatabaseManager


def create_app(
    pipeline: Pipeline | None = None,
    *,
    db: DatabaseManager | None = None,
    auth_token: str | None = None,
) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        pipeline: Running pipeline; webhooks are handed to its task channel.
        db: Database manager for reads (and for background normalization
            when no pipeline is attached). Defaults to the pipeline's.
        auth_token: Shared secret expected in the Authorization header.
    """
    if pipeline is None and db is None:
        raise ValueError("create_app needs a pipeline or a database manager")

    app = FastAPI(
        title="Smart Wallet Tracker API",
        version=__version__,
        docs_url="/api/docs",
        redoc_url=None,
    )

    app.state.pipeline = pipeline
    app.state.db = db

    def get_db() -> DatabaseManager:
        if db is not None:
            return db
        assert pipeline is not None
        return pipeline.db

    app.include_router(create_webhook_router(pipeline, get_db=get_db, auth_token=auth_token), prefix="/api")
    app.include_router(create_read_router(get_db), prefix="/api")

    @app.get("/api/health")
    async def health():
        if pipeline is None:
            return {"status": "ok", "pipeline": "detached"}
        return {
            "status": "ok",
            "pipeline": pipeline.state.value,
            "stats": to_json(pipeline.stats),
        }

    return app


__all__ = ["create_app"]
