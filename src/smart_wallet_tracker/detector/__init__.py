"""Detection layer - Multi-wallet consensus signals."""

from smart_wallet_tracker.detector.consensus import (
    ConsensusDetector,
    build_cluster,
    chain_clusters,
)
from smart_wallet_tracker.detector.models import ConsensusCluster

__all__ = [
    "ConsensusCluster",
    "ConsensusDetector",
    "build_cluster",
    "chain_clusters",
]
