"""Storage layer - Database schemas and repositories."""

from smart_wallet_tracker.storage.database import (
    DatabaseManager,
    build_engine,
    create_schema,
    session_factory,
)
from smart_wallet_tracker.storage.models import (
    Base,
    ClosedLotModel,
    OpenPositionModel,
    SignalModel,
    StagedTradeModel,
    TokenModel,
    TradeModel,
    WalletJobModel,
    WalletMetricsModel,
    WalletModel,
)
from smart_wallet_tracker.storage.repos import (
    ClaimConflictError,
    ClosedLotDTO,
    LedgerRepository,
    OpenPositionDTO,
    SignalDTO,
    SignalRepository,
    StagedTradeDTO,
    StagedTradeRepository,
    TokenDTO,
    TokenRepository,
    TradeDTO,
    TradeRepository,
    WalletDTO,
    WalletJobDTO,
    WalletJobRepository,
    WalletMetricsDTO,
    WalletRepository,
)

__all__ = [
    "Base",
    "ClaimConflictError",
    "ClosedLotDTO",
    "ClosedLotModel",
    "DatabaseManager",
    "LedgerRepository",
    "OpenPositionDTO",
    "OpenPositionModel",
    "SignalDTO",
    "SignalModel",
    "SignalRepository",
    "StagedTradeDTO",
    "StagedTradeModel",
    "StagedTradeRepository",
    "TokenDTO",
    "TokenModel",
    "TokenRepository",
    "TradeDTO",
    "TradeModel",
    "TradeRepository",
    "WalletDTO",
    "WalletJobDTO",
    "WalletJobModel",
    "WalletJobRepository",
    "WalletMetricsDTO",
    "WalletMetricsModel",
    "WalletModel",
    "WalletRepository",
    "build_engine",
    "create_schema",
    "session_factory",
]
