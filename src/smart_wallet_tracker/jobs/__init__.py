"""Jobs layer - Wallet processing queue drainer."""

from smart_wallet_tracker.jobs.processor import RECOMPUTE_JOB, QueueProcessor

__all__ = [
    "QueueProcessor",
    "RECOMPUTE_JOB",
]
