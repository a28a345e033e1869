"""Webhook normalization: raw provider payloads to staged trades.

The normalizer resolves which tracked wallet a swap belongs to, classifies
it from the wallet's own balance deltas and stages it idempotently. Pricing
happens later in the ingestion worker.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from dataclasses import dataclass, field
from decimal import Decimal
from enum import Enum
from typing import TYPE_CHECKING, Any

from smart_wallet_tracker.ingestor.models import (
    STABLE_BASE_MINTS,
    BalanceDeltas,
    EnhancedTransaction,
    NormalizedBatch,
    NormalizedSwap,
    RawTransaction,
    TradeSide,
)
from smart_wallet_tracker.ingestor.parser import parse_payload
from smart_wallet_tracker.storage.repos import (
    StagedTradeDTO,
    StagedTradeRepository,
    TokenRepository,
    WalletDTO,
    WalletRepository,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

# Native SOL movements at or below this are fees/rent, not base exposure.
BASE_DUST = Decimal("0.0001")
TOKEN_EPSILON = Decimal("1e-9")


class StageOutcome(str, Enum):
    STAGED = "staged"
    DUPLICATE = "duplicate"
    SKIPPED = "skipped"


class SkipReason(str, Enum):
    NOT_A_SWAP = "not_a_swap"
    NO_TRACKED_WALLET = "no_tracked_wallet"
    NO_TOKEN_CHANGE = "no_token_change"


@dataclass
class NormalizationReport:
    """Counts produced by one normalization run."""

    kind: str = "empty"
    staged: int = 0
    duplicates: int = 0
    skipped: Counter[str] = field(default_factory=Counter)
    errors: list[str] = field(default_factory=list)

    @property
    def total_skipped(self) -> int:
        return sum(self.skipped.values())

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "staged": self.staged,
            "duplicates": self.duplicates,
            "skipped": dict(self.skipped),
            "errors": list(self.errors),
        }


@dataclass(frozen=True)
class SwapClassification:
    token_mint: str
    side: TradeSide
    amount_token: Decimal
    amount_base: Decimal
    base_token: str

    @property
    def price_base_per_token(self) -> Decimal:
        if self.amount_token == 0 or self.amount_base == 0:
            return Decimal(0)
        return self.amount_base / self.amount_token


def classify_swap(deltas: BalanceDeltas) -> SwapClassification | SkipReason:
    """Classify a wallet's balance deltas into a staged trade side.

    The main token is the non-base mint with the largest absolute change.
    The base leg is native SOL when it moved beyond dust, otherwise the
    largest USDC/USDT change.
    """
    candidates = {
        mint: delta
        for mint, delta in deltas.tokens.items()
        if mint not in STABLE_BASE_MINTS and abs(delta) > TOKEN_EPSILON
    }
    if not candidates:
        return SkipReason.NO_TOKEN_CHANGE
    token_mint = max(candidates, key=lambda mint: abs(candidates[mint]))
    token_delta = candidates[token_mint]

    base_token = "SOL"
    base_delta = Decimal(0)
    if abs(deltas.native) > BASE_DUST:
        base_delta = deltas.native
    else:
        stables = [
            (mint, delta)
            for mint, delta in deltas.tokens.items()
            if mint in STABLE_BASE_MINTS and abs(delta) > BASE_DUST
        ]
        if stables:
            mint, base_delta = max(stables, key=lambda item: abs(item[1]))
            base_token = STABLE_BASE_MINTS[mint]

    if base_delta == 0:
        side = TradeSide.VOID
    elif token_delta > 0 and base_delta < 0:
        side = TradeSide.BUY
    elif token_delta < 0 and base_delta > 0:
        side = TradeSide.SELL
    else:
        side = TradeSide.VOID

    return SwapClassification(
        token_mint=token_mint,
        side=side,
        amount_token=abs(token_delta),
        amount_base=Decimal(0) if side == TradeSide.VOID else abs(base_delta),
        base_token=base_token,
    )


def resolve_wallet(
    tx: RawTransaction,
    tracked: dict[str, WalletDTO],
    account_addresses: tuple[str, ...] = (),
) -> WalletDTO | None:
    """Find the tracked wallet a transaction belongs to.

    Checks the payload participant list, the transaction participants, the
    native transfer parties and finally the token transfer parties (token
    balance owners for RPC), stopping at the first tracked address.
    """
    if isinstance(tx, EnhancedTransaction):
        candidates = (
            list(account_addresses),
            tx.participant_accounts(),
            tx.native_transfer_accounts(),
            tx.token_transfer_accounts(),
        )
    else:
        candidates = (list(account_addresses), tx.participant_accounts(), tx.token_owner_accounts())

    for accounts in candidates:
        for account in accounts:
            wallet = tracked.get(account.lower())
            if wallet is not None:
                return wallet
    return None


def _dex_of(tx: RawTransaction) -> str | None:
    if isinstance(tx, EnhancedTransaction):
        return tx.source
    return None


def extract_swap(
    tx: RawTransaction,
    tracked: dict[str, WalletDTO],
    account_addresses: tuple[str, ...] = (),
) -> NormalizedSwap | SkipReason:
    """Turn one decoded transaction into a swap for a tracked wallet."""
    if not tx.is_swap:
        return SkipReason.NOT_A_SWAP
    wallet = resolve_wallet(tx, tracked, account_addresses)
    if wallet is None:
        return SkipReason.NO_TRACKED_WALLET

    classification = classify_swap(tx.balance_deltas(wallet.address))
    if isinstance(classification, SkipReason):
        return classification

    return NormalizedSwap(
        tx_signature=tx.signature,
        wallet_address=wallet.address,
        token_mint=classification.token_mint,
        side=classification.side,
        amount_token=classification.amount_token,
        amount_base_raw=classification.amount_base,
        base_token=classification.base_token,
        price_base_per_token_raw=classification.price_base_per_token,
        timestamp=tx.timestamp,
        dex=_dex_of(tx),
    )


class WebhookNormalizer:
    """Parses provider payloads and stages swaps for tracked wallets."""

    def __init__(self, *, store_raw_payload: bool = True) -> None:
        self._store_raw_payload = store_raw_payload

    async def normalize(self, session: AsyncSession, raw: Any) -> NormalizationReport:
        """Normalize and stage one webhook body.

        Args:
            session: Open session; the caller owns the transaction.
            raw: Decoded JSON body.

        Returns:
            NormalizationReport with staged/duplicate/skip counts.
        """
        batch = parse_payload(raw)
        report = NormalizationReport(kind=batch.kind, errors=list(batch.errors))
        for error in batch.errors:
            logger.warning("Skipping malformed transaction: %s", error)
        if batch.is_empty:
            return report

        tracked = await WalletRepository(session).tracked_addresses()
        if not tracked:
            logger.debug("No tracked wallets; ignoring %d transactions", len(batch.transactions))
            report.skipped[SkipReason.NO_TRACKED_WALLET.value] += len(batch.transactions)
            return report

        for tx in batch.transactions:
            outcome = await self._stage_transaction(session, batch, tx, tracked, report)
            logger.debug("Transaction %s: %s", tx.signature[:16], outcome.value)

        logger.info(
            "Normalized %s batch: staged=%d duplicates=%d skipped=%d errors=%d",
            batch.kind,
            report.staged,
            report.duplicates,
            report.total_skipped,
            len(report.errors),
        )
        return report

    async def _stage_transaction(
        self,
        session: AsyncSession,
        batch: NormalizedBatch,
        tx: RawTransaction,
        tracked: dict[str, WalletDTO],
        report: NormalizationReport,
    ) -> StageOutcome:
        try:
            swap = extract_swap(tx, tracked, batch.account_addresses)
        except (ArithmeticError, AttributeError, LookupError, TypeError, ValueError) as e:
            report.errors.append(f"{tx.signature}: {e}")
            logger.warning("Failed to classify %s: %s", tx.signature[:16], e)
            return StageOutcome.SKIPPED
        if isinstance(swap, SkipReason):
            report.skipped[swap.value] += 1
            return StageOutcome.SKIPPED

        wallet = tracked[swap.wallet_address.lower()]
        token = await TokenRepository(session).get_or_create(swap.token_mint)
        inserted = await StagedTradeRepository(session).insert_if_absent(
            StagedTradeDTO(
                tx_signature=swap.tx_signature,
                wallet_id=wallet.id,
                token_id=token.id,
                token_mint=swap.token_mint,
                side=swap.side,
                amount_token=swap.amount_token,
                amount_base_raw=swap.amount_base_raw,
                base_token=swap.base_token,
                price_base_per_token_raw=swap.price_base_per_token_raw,
                timestamp=swap.timestamp,
                dex=swap.dex,
                raw_payload=json.dumps(tx.raw, default=str) if self._store_raw_payload else None,
            )
        )
        if not inserted:
            report.duplicates += 1
            return StageOutcome.DUPLICATE
        report.staged += 1
        return StageOutcome.STAGED
