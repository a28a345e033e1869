"""Data models for the ingestor module."""

from __future__ import annotations

import contextlib
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal, InvalidOperation
from enum import Enum
from typing import Any, Literal

LAMPORTS_PER_SOL = Decimal(1_000_000_000)

SOL_MINT = "So11111111111111111111111111111111111111112"
USDC_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDT_MINT = "Es9vMFrzaCERmJfrF4H2FYD4KCoNkY11McCe8BenwNYB"

# Stable base mints; WSOL is folded into the native SOL delta instead.
STABLE_BASE_MINTS: dict[str, str] = {
    USDC_MINT: "USDC",
    USDT_MINT: "USDT",
}


class MalformedPayloadError(ValueError):
    """Raised when a webhook sub-transaction cannot be decoded."""


class TradeSide(str, Enum):
    """Closed set of trade sides.

    ``add``/``remove`` are position increments/decrements recorded by older
    ingestion paths; the ledger treats them as ``buy``/``sell``.
    """

    BUY = "buy"
    SELL = "sell"
    ADD = "add"
    REMOVE = "remove"
    VOID = "void"

    @classmethod
    def parse(cls, value: str) -> TradeSide:
        """Parse a stored side string, rejecting anything outside the enum."""
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown trade side: {value!r}") from None

    @property
    def is_entry(self) -> bool:
        return self in (TradeSide.BUY, TradeSide.ADD)

    @property
    def is_exit(self) -> bool:
        return self in (TradeSide.SELL, TradeSide.REMOVE)


def to_decimal(value: Any, default: Decimal | None = None) -> Decimal | None:
    """Convert a JSON number/string to Decimal without float rounding."""
    if value is None or isinstance(value, bool):
        return default
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return default


def parse_timestamp(raw: Any) -> datetime | None:
    """Parse unix seconds, unix milliseconds or ISO-8601 into an aware datetime."""
    if isinstance(raw, (int, float)) and not isinstance(raw, bool):
        ts_f = float(raw)
        if ts_f > 1e12:
            ts_f /= 1000.0
        return datetime.fromtimestamp(ts_f, tz=UTC)
    if isinstance(raw, str):
        with contextlib.suppress(ValueError):
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            return parsed if parsed.tzinfo else parsed.replace(tzinfo=UTC)
        with contextlib.suppress(ValueError):
            return parse_timestamp(float(raw))
    return None


def _account_of(entry: Any) -> str | None:
    if isinstance(entry, str):
        return entry
    if isinstance(entry, dict):
        account = entry.get("account") or entry.get("pubkey")
        return str(account) if account else None
    return None


@dataclass(frozen=True)
class BalanceDeltas:
    """Net balance changes of one wallet inside one transaction.

    Attributes:
        native: SOL delta (lamports / 1e9), with WSOL folded in.
        tokens: Token deltas in UI units keyed by mint.
    """

    native: Decimal = Decimal(0)
    tokens: dict[str, Decimal] = field(default_factory=dict)


@dataclass(frozen=True)
class EnhancedTransaction:
    """Parsed transaction from the provider's "enhanced" webhook dialect."""

    signature: str
    type: str
    source: str | None
    timestamp: datetime
    account_data: tuple[dict[str, Any], ...]
    native_transfers: tuple[dict[str, Any], ...]
    token_transfers: tuple[dict[str, Any], ...]
    has_swap_event: bool
    raw: dict[str, Any]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> EnhancedTransaction:
        """Create an EnhancedTransaction from a webhook dictionary."""
        if not isinstance(data, dict):
            raise MalformedPayloadError("enhanced transaction must be an object")
        signature = data.get("signature")
        if not signature or not isinstance(signature, str):
            raise MalformedPayloadError("enhanced transaction has no signature")
        timestamp = parse_timestamp(data.get("timestamp"))
        if timestamp is None:
            raise MalformedPayloadError(f"enhanced transaction {signature[:16]} has no timestamp")

        def _objects(key: str) -> tuple[dict[str, Any], ...]:
            value = data.get(key) or []
            if not isinstance(value, list):
                raise MalformedPayloadError(f"{key} must be a list")
            return tuple(v for v in value if isinstance(v, dict))

        events = data.get("events") if isinstance(data.get("events"), dict) else {}
        return cls(
            signature=signature,
            type=str(data.get("type") or "UNKNOWN").upper(),
            source=str(data["source"]) if data.get("source") else None,
            timestamp=timestamp,
            account_data=_objects("accountData"),
            native_transfers=_objects("nativeTransfers"),
            token_transfers=_objects("tokenTransfers"),
            has_swap_event=bool(events.get("swap")),
            raw=data,
        )

    @property
    def is_swap(self) -> bool:
        return self.type == "SWAP" or self.has_swap_event

    def participant_accounts(self) -> list[str]:
        return [a for a in (_account_of(e) for e in self.account_data) if a]

    def native_transfer_accounts(self) -> list[str]:
        accounts: list[str] = []
        for transfer in self.native_transfers:
            for key in ("fromUserAccount", "toUserAccount"):
                if transfer.get(key):
                    accounts.append(str(transfer[key]))
        return accounts

    def token_transfer_accounts(self) -> list[str]:
        accounts: list[str] = []
        for transfer in self.token_transfers:
            for key in ("fromUserAccount", "toUserAccount"):
                if transfer.get(key):
                    accounts.append(str(transfer[key]))
        return accounts

    def balance_deltas(self, wallet: str) -> BalanceDeltas:
        """Compute the wallet's native and token deltas.

        Prefers the per-account ``nativeBalanceChange``/``tokenBalanceChanges``
        the provider computed from pre/post balances and falls back to summing
        the transfer lists.
        """
        wallet_key = wallet.lower()
        native: Decimal | None = None
        tokens: dict[str, Decimal] = {}

        for entry in self.account_data:
            if str(entry.get("account", "")).lower() == wallet_key and "nativeBalanceChange" in entry:
                lamports = to_decimal(entry.get("nativeBalanceChange"), Decimal(0))
                native = (native or Decimal(0)) + lamports / LAMPORTS_PER_SOL
            for change in entry.get("tokenBalanceChanges") or []:
                if not isinstance(change, dict):
                    continue
                if str(change.get("userAccount", "")).lower() != wallet_key:
                    continue
                raw_amount = change.get("rawTokenAmount") or {}
                if not isinstance(raw_amount, dict):
                    raise MalformedPayloadError(f"rawTokenAmount for {self.signature} is not an object")
                amount = to_decimal(raw_amount.get("tokenAmount"))
                decimals = int(raw_amount.get("decimals") or 0)
                mint = change.get("mint")
                if amount is None or not mint:
                    continue
                tokens[mint] = tokens.get(mint, Decimal(0)) + amount.scaleb(-decimals)

        if native is None:
            native = Decimal(0)
            for transfer in self.native_transfers:
                lamports = to_decimal(transfer.get("amount"), Decimal(0))
                if str(transfer.get("toUserAccount", "")).lower() == wallet_key:
                    native += lamports / LAMPORTS_PER_SOL
                if str(transfer.get("fromUserAccount", "")).lower() == wallet_key:
                    native -= lamports / LAMPORTS_PER_SOL

        if not tokens:
            for transfer in self.token_transfers:
                mint = transfer.get("mint")
                amount = to_decimal(transfer.get("tokenAmount"))
                if not mint or amount is None:
                    continue
                if str(transfer.get("toUserAccount", "")).lower() == wallet_key:
                    tokens[mint] = tokens.get(mint, Decimal(0)) + amount
                if str(transfer.get("fromUserAccount", "")).lower() == wallet_key:
                    tokens[mint] = tokens.get(mint, Decimal(0)) - amount

        native += tokens.pop(SOL_MINT, Decimal(0))
        return BalanceDeltas(native=native, tokens=tokens)


def _ui_amount(balance: dict[str, Any]) -> Decimal:
    ui = balance.get("uiTokenAmount") or {}
    if not isinstance(ui, dict):
        raise MalformedPayloadError("uiTokenAmount is not an object")
    if ui.get("uiAmountString") is not None:
        return to_decimal(ui["uiAmountString"], Decimal(0))
    if ui.get("amount") is not None:
        decimals = int(ui.get("decimals") or 0)
        return to_decimal(ui["amount"], Decimal(0)).scaleb(-decimals)
    return to_decimal(ui.get("uiAmount"), Decimal(0))


@dataclass(frozen=True)
class RpcTransaction:
    """Parsed transaction from the RPC-style (``getTransaction``) dialect."""

    signature: str
    timestamp: datetime
    account_keys: tuple[str, ...]
    pre_balances: tuple[int, ...]
    post_balances: tuple[int, ...]
    pre_token_balances: tuple[dict[str, Any], ...]
    post_token_balances: tuple[dict[str, Any], ...]
    failed: bool
    raw: dict[str, Any]

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, block_time: Any = None) -> RpcTransaction:
        """Create an RpcTransaction from ``{transaction: {message, signatures}, meta}``."""
        if not isinstance(data, dict):
            raise MalformedPayloadError("rpc transaction must be an object")
        transaction = data.get("transaction")
        meta = data.get("meta")
        if not isinstance(transaction, dict) or not isinstance(meta, dict):
            raise MalformedPayloadError("rpc transaction requires transaction and meta objects")
        message = transaction.get("message")
        if not isinstance(message, dict):
            raise MalformedPayloadError("rpc transaction has no message")

        signatures = transaction.get("signatures") or []
        signature = signatures[0] if signatures and isinstance(signatures[0], str) else data.get("signature")
        if not signature:
            raise MalformedPayloadError("rpc transaction has no signature")

        timestamp = parse_timestamp(data.get("blockTime", block_time))
        if timestamp is None:
            raise MalformedPayloadError(f"rpc transaction {str(signature)[:16]} has no blockTime")

        raw_keys = message.get("accountKeys") or message.get("staticAccountKeys") or []
        account_keys = tuple(k for k in (_account_of(key) for key in raw_keys) if k)

        try:
            pre_balances = tuple(int(v) for v in meta.get("preBalances") or [])
            post_balances = tuple(int(v) for v in meta.get("postBalances") or [])
        except (TypeError, ValueError) as e:
            raise MalformedPayloadError(f"rpc transaction has invalid balances: {e}") from e

        return cls(
            signature=str(signature),
            timestamp=timestamp,
            account_keys=account_keys,
            pre_balances=pre_balances,
            post_balances=post_balances,
            pre_token_balances=tuple(b for b in meta.get("preTokenBalances") or [] if isinstance(b, dict)),
            post_token_balances=tuple(b for b in meta.get("postTokenBalances") or [] if isinstance(b, dict)),
            failed=meta.get("err") is not None,
            raw=data,
        )

    @property
    def is_swap(self) -> bool:
        return not self.failed and bool(self.pre_token_balances or self.post_token_balances)

    def participant_accounts(self) -> list[str]:
        return list(self.account_keys)

    def token_owner_accounts(self) -> list[str]:
        owners = [b.get("owner") for b in (*self.pre_token_balances, *self.post_token_balances)]
        return [str(o) for o in owners if o]

    def balance_deltas(self, wallet: str) -> BalanceDeltas:
        wallet_key = wallet.lower()
        native = Decimal(0)
        for index, key in enumerate(self.account_keys):
            if key.lower() != wallet_key:
                continue
            if index < len(self.pre_balances) and index < len(self.post_balances):
                native = Decimal(self.post_balances[index] - self.pre_balances[index]) / LAMPORTS_PER_SOL
            break

        pre: dict[str, Decimal] = {}
        post: dict[str, Decimal] = {}
        for target, balances in ((pre, self.pre_token_balances), (post, self.post_token_balances)):
            for balance in balances:
                if str(balance.get("owner", "")).lower() != wallet_key or not balance.get("mint"):
                    continue
                mint = str(balance["mint"])
                target[mint] = target.get(mint, Decimal(0)) + _ui_amount(balance)

        tokens = {mint: post.get(mint, Decimal(0)) - pre.get(mint, Decimal(0)) for mint in {*pre, *post}}
        native += tokens.pop(SOL_MINT, Decimal(0))
        return BalanceDeltas(native=native, tokens=tokens)


RawTransaction = EnhancedTransaction | RpcTransaction


@dataclass(frozen=True)
class NormalizedBatch:
    """Provider payload resolved to one dialect.

    Attributes:
        kind: Which dialect was recognized; ``empty`` for heartbeats and
            unrecognized shapes.
        transactions: Decoded sub-transactions.
        account_addresses: Payload-level participant list (enhanced only).
        errors: One message per sub-transaction that could not be decoded.
    """

    kind: Literal["enhanced", "rpc", "empty"]
    transactions: tuple[RawTransaction, ...] = ()
    account_addresses: tuple[str, ...] = ()
    errors: tuple[str, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.transactions


@dataclass(frozen=True)
class NormalizedSwap:
    """Classified swap for one tracked wallet, ready for staging."""

    tx_signature: str
    wallet_address: str
    token_mint: str
    side: TradeSide
    amount_token: Decimal
    amount_base_raw: Decimal
    base_token: str
    price_base_per_token_raw: Decimal
    timestamp: datetime
    dex: str | None = None
