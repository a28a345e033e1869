"""Main pipeline orchestrator for the Smart Wallet Tracker.

This module provides the Pipeline class that wires together ingestion,
valuation, lot matching and consensus detection, and runs their background
loops next to the HTTP server.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass
from datetime import UTC, datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from redis.asyncio import Redis

from smart_wallet_tracker.config import Settings, get_settings
from smart_wallet_tracker.detector.consensus import ConsensusDetector
from smart_wallet_tracker.ingestor.normalizer import NormalizationReport, WebhookNormalizer
from smart_wallet_tracker.ingestor.worker import TradeIngestionWorker
from smart_wallet_tracker.jobs.processor import QueueProcessor
from smart_wallet_tracker.ledger.lot_matching import LotMatchingService
from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.tasks import Debouncer, TaskChannel
from smart_wallet_tracker.valuation.cache import InMemoryPriceCache, PriceCache, RedisPriceCache
from smart_wallet_tracker.valuation.resolver import ValuationResolver
from smart_wallet_tracker.valuation.sources import default_sources

if TYPE_CHECKING:
    from smart_wallet_tracker.valuation.sources import PriceSource

logger = logging.getLogger(__name__)


class PipelineState(str, Enum):
    """Pipeline lifecycle states."""

    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    ERROR = "error"


@dataclass
class PipelineStats:
    """Statistics for the pipeline."""

    started_at: datetime | None = None
    webhooks_received: int = 0
    trades_staged: int = 0
    trades_processed: int = 0
    valuation_failures: int = 0
    recomputes_enqueued: int = 0
    jobs_processed: int = 0
    signals_expired: int = 0
    errors: int = 0
    last_trade_time: datetime | None = None
    last_error: str | None = None


class Pipeline:
    """Main pipeline orchestrator for the Smart Wallet Tracker.

    Pipeline flow:
        Webhook → Normalizer (staged) → Ingestion Worker (priced)
        Ingestion Worker → Debouncer → Processing Queue → Lot Matching
        Ingestion Worker → Task Channel → Consensus Detector

    Example:
        ```python
        from smart_wallet_tracker.config import get_settings
        from smart_wallet_tracker.pipeline import Pipeline

        pipeline = Pipeline(get_settings())
        await pipeline.start()
        pipeline.submit_webhook(payload)
        await pipeline.stop()
        ```
    """

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        dry_run: bool | None = None,
        db_manager: DatabaseManager | None = None,
        price_sources: list[PriceSource] | None = None,
    ) -> None:
        """Initialize the pipeline.

        Args:
            settings: Application settings. If not provided, uses get_settings().
            dry_run: If True, webhooks are normalized but nothing is staged.
                Overrides settings.dry_run.
            db_manager: Pre-built database manager; the pipeline will not
                dispose it on stop.
            price_sources: SOL/USD source chain override.
        """
        self._settings = settings or get_settings()
        self._dry_run = dry_run if dry_run is not None else self._settings.dry_run

        self._state = PipelineState.STOPPED
        self._stats = PipelineStats()

        # Components (initialized in start())
        self._redis: Redis | None = None
        self._db_manager: DatabaseManager | None = db_manager
        self._owns_db = db_manager is None
        self._price_sources = price_sources
        self._price_cache: PriceCache | None = None
        self._resolver: ValuationResolver | None = None
        self._normalizer: WebhookNormalizer | None = None
        self._lot_service: LotMatchingService | None = None
        self._consensus: ConsensusDetector | None = None
        self._queue: QueueProcessor | None = None
        self._worker: TradeIngestionWorker | None = None
        self._tasks: TaskChannel | None = None
        self._debouncer: Debouncer | None = None

        # Synchronization
        self._stop_event: asyncio.Event | None = None
        self._ingestion_task: asyncio.Task[None] | None = None
        self._queue_task: asyncio.Task[None] | None = None
        self._expiry_task: asyncio.Task[None] | None = None

    @property
    def state(self) -> PipelineState:
        """Current pipeline state."""
        return self._state

    @property
    def stats(self) -> PipelineStats:
        """Current pipeline statistics."""
        return self._stats

    @property
    def is_running(self) -> bool:
        """Check if pipeline is running."""
        return self._state == PipelineState.RUNNING

    @property
    def db(self) -> DatabaseManager:
        if self._db_manager is None:
            raise RuntimeError("Pipeline database is not initialized")
        return self._db_manager

    @property
    def queue(self) -> QueueProcessor | None:
        return self._queue

    @property
    def worker(self) -> TradeIngestionWorker | None:
        return self._worker

    async def start(self) -> None:
        """Start the pipeline.

        Raises:
            RuntimeError: If pipeline is already running.
            Exception: If any component fails to initialize.
        """
        if self._state != PipelineState.STOPPED:
            raise RuntimeError(f"Cannot start pipeline in state {self._state}")

        self._state = PipelineState.STARTING
        self._stop_event = asyncio.Event()
        logger.info("Starting pipeline (dry_run=%s)...", self._dry_run)

        try:
            await self._initialize_components()
            await self._start_background_services()
            self._stats.started_at = datetime.now(UTC)
            self._state = PipelineState.RUNNING
            logger.info("Pipeline started successfully")
        except Exception as e:
            self._state = PipelineState.ERROR
            self._stats.last_error = str(e)
            logger.error("Failed to start pipeline: %s", e)
            await self._cleanup()
            raise

    async def stop(self) -> None:
        """Stop the pipeline gracefully."""
        if self._state == PipelineState.STOPPED:
            return

        self._state = PipelineState.STOPPING
        logger.info("Stopping pipeline...")

        if self._stop_event:
            self._stop_event.set()

        await self._stop_background_services()
        await self._cleanup()

        self._state = PipelineState.STOPPED
        logger.info("Pipeline stopped")

    async def _initialize_components(self) -> None:
        """Initialize all pipeline components."""
        settings = self._settings

        if self._db_manager is None:
            logger.debug("Initializing database manager...")
            self._db_manager = DatabaseManager(
                settings.database.url,
                pool_size=settings.database.pool_size,
                echo=settings.database.echo,
            )

        if settings.pricing.cache_backend == "redis":
            logger.debug("Connecting to Redis price cache...")
            self._redis = Redis.from_url(settings.redis.url)
            self._price_cache = RedisPriceCache(self._redis, ttl_seconds=settings.pricing.cache_ttl_seconds)
        else:
            self._price_cache = InMemoryPriceCache(ttl_seconds=settings.pricing.cache_ttl_seconds)

        sources = self._price_sources or default_sources(
            binance_base_url=settings.pricing.binance_base_url,
            jupiter_base_url=settings.pricing.jupiter_base_url,
            coingecko_base_url=settings.pricing.coingecko_base_url,
            timeout=settings.pricing.request_timeout_seconds,
        )
        self._resolver = ValuationResolver(
            sources,
            cache=self._price_cache,
            source_timeout_seconds=settings.pricing.request_timeout_seconds,
        )

        self._tasks = TaskChannel()
        self._debouncer = Debouncer(settings.ingestion.debounce_seconds, self._enqueue_recompute)
        self._normalizer = WebhookNormalizer()
        self._lot_service = LotMatchingService(self._db_manager)
        self._consensus = ConsensusDetector(
            self._db_manager,
            window_minutes=settings.consensus.window_minutes,
            min_wallets=settings.consensus.min_wallets,
            signal_ttl_hours=settings.consensus.signal_ttl_hours,
        )
        self._queue = QueueProcessor(
            self._db_manager,
            self._lot_service,
            retry_base_seconds=settings.queue.retry_base_seconds,
            retry_max_seconds=settings.queue.retry_max_seconds,
            max_attempts=settings.queue.max_attempts,
            stale_lease_minutes=settings.queue.stale_lease_minutes,
        )
        self._worker = TradeIngestionWorker(
            self._db_manager,
            self._resolver,
            batch_size=settings.ingestion.batch_size,
            retry_delay_seconds=settings.ingestion.retry_delay_seconds,
            task_channel=self._tasks,
            recompute_debouncer=self._debouncer,
            consensus_detector=self._consensus,
        )
        logger.info("Pipeline components initialized (price sources: %s)", ", ".join(self._resolver.source_names))

    async def _start_background_services(self) -> None:
        """Start background services."""
        if self._tasks:
            await self._tasks.start()
        self._ingestion_task = asyncio.create_task(self._run_ingestion_loop())
        self._queue_task = asyncio.create_task(self._run_queue_loop())
        self._expiry_task = asyncio.create_task(self._run_expiry_loop())

    async def _sleep_or_stop(self, interval: float) -> bool:
        """Wait ``interval`` seconds; returns True if stop was requested."""
        if not self._stop_event:
            return True
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=interval)
            return True
        except TimeoutError:
            return False

    async def _run_ingestion_loop(self) -> None:
        if not self._stop_event or not self._worker:
            return

        interval = self._settings.ingestion.idle_poll_seconds
        while not self._stop_event.is_set():
            try:
                result = await self._worker.process_batch()
                self._stats.trades_processed += result.processed
                self._stats.valuation_failures += result.failed
                if result.processed:
                    self._stats.last_trade_time = datetime.now(UTC)
                # Keep draining while full batches come back.
                if result.total >= self._settings.ingestion.batch_size:
                    continue
                if await self._sleep_or_stop(interval):
                    break
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._record_error("Ingestion loop error", e)
                if await self._sleep_or_stop(interval):
                    break

    async def _run_queue_loop(self) -> None:
        if not self._stop_event or not self._queue:
            return

        interval = self._settings.queue.poll_interval_seconds
        try:
            await self._queue.requeue_stale()
        except Exception as e:
            self._record_error("Stale job requeue failed", e)
        while not self._stop_event.is_set():
            try:
                ran = await self._queue.process_next()
                if ran:
                    self._stats.jobs_processed += 1
                    continue
                if await self._sleep_or_stop(interval):
                    break
                await self._queue.requeue_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._record_error("Queue loop error", e)
                if await self._sleep_or_stop(interval):
                    break

    async def _run_expiry_loop(self) -> None:
        if not self._stop_event or not self._consensus:
            return

        interval = self._settings.consensus.expiry_interval_seconds
        while not self._stop_event.is_set():
            try:
                if await self._sleep_or_stop(interval):
                    break
                self._stats.signals_expired += await self._consensus.expire_signals()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._record_error("Signal expiry loop error", e)

    def _record_error(self, message: str, error: Exception) -> None:
        self._stats.errors += 1
        self._stats.last_error = str(error)
        logger.warning("%s: %s", message, error)

    async def _stop_background_services(self) -> None:
        """Stop background services."""
        for attr in ("_ingestion_task", "_queue_task", "_expiry_task"):
            task: asyncio.Task[None] | None = getattr(self, attr)
            if task:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
                setattr(self, attr, None)

        # Pending debounced recomputes land in the processing queue for the next run.
        if self._debouncer:
            self._debouncer.flush()
            await self._debouncer.drain()
            self._debouncer.cancel_all()
        if self._tasks:
            await self._tasks.stop()

    async def _cleanup(self) -> None:
        """Clean up resources."""
        if self._resolver:
            await self._resolver.aclose()
            self._resolver = None

        if self._db_manager and self._owns_db:
            await self._db_manager.dispose_async()
            self._db_manager = None

        if self._redis:
            await self._redis.aclose()
            self._redis = None

        logger.debug("Resources cleaned up")

    def submit_webhook(self, payload: Any) -> bool:
        """Queue a webhook body for normalization without waiting for it.

        Returns False when the pipeline is stopped or the channel is full; the
        caller then owns the payload.
        """
        self._stats.webhooks_received += 1
        if not self._tasks:
            logger.warning("Pipeline not started; webhook payload not queued")
            return False
        return self._tasks.submit("webhook", lambda: self.handle_webhook(payload))

    async def handle_webhook(self, payload: Any) -> NormalizationReport:
        """Normalize and stage one webhook body."""
        normalizer = self._normalizer or WebhookNormalizer()
        async with self.db.get_async_session() as session:
            report = await normalizer.normalize(session, payload)
            if self._dry_run:
                await session.rollback()
                logger.info("Dry run: discarded %d staged trades", report.staged)
                return report
        self._stats.trades_staged += report.staged
        return report

    async def _enqueue_recompute(self, wallet_id: str) -> None:
        """Hand a debounced recompute to the processing queue.

        The queue's claim is the only thing that runs lot matching, so one
        wallet is never recomputed by two workers at once.
        """
        if not self._queue:
            return
        try:
            await self._queue.enqueue(wallet_id)
        except Exception as e:
            self._record_error(f"Could not enqueue recompute for wallet {wallet_id}", e)
            if self._debouncer and self.is_running:
                self._debouncer.trigger(wallet_id)
            return
        self._stats.recomputes_enqueued += 1

    async def run(self) -> None:
        """Start the pipeline and run until interrupted."""
        await self.start()

        try:
            if self._stop_event:
                await self._stop_event.wait()
        except asyncio.CancelledError:
            pass
        finally:
            await self.stop()

    async def __aenter__(self) -> Pipeline:
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, *args: Any) -> None:
        """Async context manager exit."""
        await self.stop()
