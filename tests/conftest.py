"""Pytest configuration and fixtures."""

from __future__ import annotations

from typing import Any

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import StaticPool

from smart_wallet_tracker.storage.database import DatabaseManager
from smart_wallet_tracker.storage.models import Base

TRACKED_WALLET = "7xKXtg2CW87d97TXJSDpbD5jBkheTqA83TZRuJosgAsU"
OTHER_ACCOUNT = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
BONK_MINT = "DezXAZ8z7PnrnRJjz3wXBoRgixCa6xjnB7YaB1pPB263"
BLOCK_TIME = 1760870000


# ============================================================================
# Database fixtures
# ============================================================================


@pytest.fixture
async def async_engine():
    """Create an async in-memory SQLite engine for testing."""
    engine = create_async_engine(
        "sqlite+aiosqlite:///:memory:",
        echo=False,
        poolclass=StaticPool,
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
async def async_session(async_engine) -> AsyncSession:
    """Create an async session for testing."""
    session_factory = async_sessionmaker(bind=async_engine, expire_on_commit=False)
    async with session_factory() as session:
        yield session


@pytest.fixture
async def db_manager(tmp_path):
    """File-backed SQLite database shared by services that open their own sessions."""
    url = f"sqlite+aiosqlite:///{tmp_path / 'tracker.db'}"
    engine = create_async_engine(url, echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield DatabaseManager(url, engine=engine)
    await engine.dispose()


# ============================================================================
# Webhook payload fixtures
# ============================================================================


@pytest.fixture
def enhanced_buy_tx() -> dict[str, Any]:
    """Enhanced-dialect swap: tracked wallet pays 1 SOL for 100 BONK."""
    return {
        "signature": "4vJ9JU1bJJE96FWSJKvHsmmFADCg4gpZQff4P3bkLKi1",
        "type": "SWAP",
        "source": "RAYDIUM",
        "timestamp": BLOCK_TIME,
        "accountData": [
            {"account": TRACKED_WALLET, "nativeBalanceChange": -1_000_000_000, "tokenBalanceChanges": []},
            {
                "account": OTHER_ACCOUNT,
                "nativeBalanceChange": 0,
                "tokenBalanceChanges": [
                    {
                        "userAccount": TRACKED_WALLET,
                        "mint": BONK_MINT,
                        "rawTokenAmount": {"tokenAmount": "100000000", "decimals": 6},
                    }
                ],
            },
        ],
        "nativeTransfers": [
            {"fromUserAccount": TRACKED_WALLET, "toUserAccount": OTHER_ACCOUNT, "amount": 1_000_000_000}
        ],
        "tokenTransfers": [
            {
                "fromUserAccount": OTHER_ACCOUNT,
                "toUserAccount": TRACKED_WALLET,
                "mint": BONK_MINT,
                "tokenAmount": 100,
            }
        ],
        "events": {"swap": {"nativeInput": {"account": TRACKED_WALLET, "amount": "1000000000"}}},
    }


@pytest.fixture
def rpc_sell_tx() -> dict[str, Any]:
    """RPC-dialect swap: tracked wallet sells 40 BONK for 0.5 SOL."""
    return {
        "blockTime": BLOCK_TIME + 1800,
        "transaction": {
            "signatures": ["3nHkzqSgCPFq8KVn5mJq4xYh4Q7vWBbJ2VwHk1sZrT9e"],
            "message": {"accountKeys": [TRACKED_WALLET, OTHER_ACCOUNT]},
        },
        "meta": {
            "err": None,
            "preBalances": [5_000_000_000, 0],
            "postBalances": [5_500_000_000, 0],
            "preTokenBalances": [
                {"owner": TRACKED_WALLET, "mint": BONK_MINT, "uiTokenAmount": {"uiAmountString": "100", "decimals": 6}}
            ],
            "postTokenBalances": [
                {"owner": TRACKED_WALLET, "mint": BONK_MINT, "uiTokenAmount": {"uiAmountString": "60", "decimals": 6}}
            ],
        },
    }
