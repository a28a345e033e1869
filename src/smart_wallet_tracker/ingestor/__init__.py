"""Data ingestion layer - Webhook payload parsing, staging and pricing."""

from smart_wallet_tracker.ingestor.models import (
    EnhancedTransaction,
    MalformedPayloadError,
    NormalizedBatch,
    NormalizedSwap,
    RpcTransaction,
    TradeSide,
)
from smart_wallet_tracker.ingestor.parser import parse_payload

__all__ = [
    "EnhancedTransaction",
    "MalformedPayloadError",
    "NormalizedBatch",
    "NormalizedSwap",
    "RpcTransaction",
    "TradeSide",
    "parse_payload",
]
