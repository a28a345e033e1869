"""Processing queue drainer.

Claims wallet recomputation jobs one at a time and runs the lot matching
service for each. The claim is the only mutual exclusion between drainers,
so different wallets can be recomputed in parallel by several processes.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime, timedelta
from typing import TYPE_CHECKING

from smart_wallet_tracker.storage.repos import WalletJobDTO, WalletJobRepository

if TYPE_CHECKING:
    from smart_wallet_tracker.ledger.lot_matching import LotMatchingService
    from smart_wallet_tracker.storage.database import DatabaseManager

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_RETRY_BASE_SECONDS = 30
DEFAULT_RETRY_MAX_SECONDS = 300
DEFAULT_MAX_ATTEMPTS = 10
DEFAULT_STALE_LEASE_MINUTES = 15
RECOMPUTE_JOB = "recompute"
# Failed recomputes jump ahead of routine work when they come due again.
RETRY_PRIORITY = 1


class QueueProcessor:
    """Drains the wallet processing queue into the lot matching service."""

    def __init__(
        self,
        db: DatabaseManager,
        lot_service: LotMatchingService,
        *,
        retry_base_seconds: int = DEFAULT_RETRY_BASE_SECONDS,
        retry_max_seconds: int = DEFAULT_RETRY_MAX_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        stale_lease_minutes: int = DEFAULT_STALE_LEASE_MINUTES,
    ) -> None:
        self._db = db
        self._lot_service = lot_service
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._max_attempts = max_attempts
        self._stale_lease = timedelta(minutes=stale_lease_minutes)

    def retry_delay(self, attempts: int) -> timedelta:
        """Linear backoff capped at ``retry_max_seconds``."""
        return timedelta(seconds=min(max(attempts, 1) * self._retry_base, self._retry_max))

    async def enqueue(self, wallet_id: str, *, priority: int = 0, job_type: str = RECOMPUTE_JOB) -> None:
        async with self._db.get_async_session() as session:
            await WalletJobRepository(session).enqueue(wallet_id, job_type=job_type, priority=priority)
        logger.debug("Enqueued %s for wallet %s (priority %d)", job_type, wallet_id, priority)

    async def claim(self) -> WalletJobDTO | None:
        async with self._db.get_async_session() as session:
            return await WalletJobRepository(session).claim_next_job()

    async def process_next(self) -> bool:
        """Claim and run one job.

        Returns:
            True if a job was claimed (whether it succeeded or not).
        """
        job = await self.claim()
        if job is None:
            return False

        try:
            await self._lot_service.process_trades_for_wallet(job.wallet_id)
        except Exception as e:
            delay = self.retry_delay(job.attempts)
            logger.warning(
                "Job %s for wallet %s failed (attempt %d, retry in %ss): %s",
                job.id,
                job.wallet_id,
                job.attempts,
                int(delay.total_seconds()),
                e,
            )
            async with self._db.get_async_session() as session:
                await WalletJobRepository(session).mark_failed(
                    job.id,
                    str(e),
                    retry_delay=delay,
                    max_attempts=self._max_attempts,
                    retry_priority=RETRY_PRIORITY,
                )
            return True

        async with self._db.get_async_session() as session:
            await WalletJobRepository(session).mark_completed(job.id)
        logger.debug("Job %s for wallet %s completed", job.id, job.wallet_id)
        return True

    async def drain(self, *, max_jobs: int = 100) -> int:
        """Run due jobs until the queue is idle or ``max_jobs`` ran."""
        processed = 0
        while processed < max_jobs and await self.process_next():
            processed += 1
        return processed

    async def requeue_stale(self, now: datetime | None = None) -> int:
        """Return jobs whose worker vanished mid-processing to pending."""
        cutoff = (now or datetime.now(UTC)) - self._stale_lease
        async with self._db.get_async_session() as session:
            count = await WalletJobRepository(session).requeue_stale(older_than=cutoff)
        if count:
            logger.warning("Requeued %d stale processing jobs", count)
        return count
