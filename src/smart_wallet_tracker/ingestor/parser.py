"""Pure parsing of provider webhook payloads into a tagged batch.

Two dialects are recognized:

* enhanced: ``{"accountData": [...], "transactions": [...]}`` or a bare list
  of enhanced transactions (``signature`` + ``type``/``tokenTransfers``).
* rpc: a list of ``{transaction, meta}`` objects, a list of blocks, or
  ``{"data": [{"blockTime": ..., "transactions": [...]}]}``.

Anything else is an empty batch, never an exception.
"""

from __future__ import annotations

import logging
from typing import Any

from smart_wallet_tracker.ingestor.models import (
    EnhancedTransaction,
    MalformedPayloadError,
    NormalizedBatch,
    RawTransaction,
    RpcTransaction,
)

logger = logging.getLogger(__name__)


def _looks_enhanced(item: Any) -> bool:
    return isinstance(item, dict) and "signature" in item and (
        "type" in item or "tokenTransfers" in item or "accountData" in item
    )


def _looks_rpc(item: Any) -> bool:
    return isinstance(item, dict) and "transaction" in item and "meta" in item


def _looks_block(item: Any) -> bool:
    return isinstance(item, dict) and isinstance(item.get("transactions"), list) and not _looks_enhanced(item)


def _accounts(raw: Any) -> tuple[str, ...]:
    if not isinstance(raw, list):
        return ()
    out: list[str] = []
    for entry in raw:
        account = entry.get("account") if isinstance(entry, dict) else entry
        if isinstance(account, str) and account:
            out.append(account)
    return tuple(out)


def _parse_enhanced(items: list[Any], account_addresses: tuple[str, ...]) -> NormalizedBatch:
    transactions: list[RawTransaction] = []
    errors: list[str] = []
    for index, item in enumerate(items):
        try:
            transactions.append(EnhancedTransaction.from_dict(item))
        except MalformedPayloadError as e:
            errors.append(f"transactions[{index}]: {e}")
    return NormalizedBatch(
        kind="enhanced",
        transactions=tuple(transactions),
        account_addresses=account_addresses,
        errors=tuple(errors),
    )


def _parse_rpc(blocks: list[tuple[Any, list[Any]]]) -> NormalizedBatch:
    transactions: list[RawTransaction] = []
    errors: list[str] = []
    for block_index, (block_time, items) in enumerate(blocks):
        for index, item in enumerate(items):
            try:
                transactions.append(RpcTransaction.from_dict(item, block_time=block_time))
            except MalformedPayloadError as e:
                errors.append(f"data[{block_index}].transactions[{index}]: {e}")
    return NormalizedBatch(kind="rpc", transactions=tuple(transactions), errors=tuple(errors))


def parse_payload(raw: Any) -> NormalizedBatch:
    """Resolve a raw webhook body to a :class:`NormalizedBatch`.

    Args:
        raw: Decoded JSON body.

    Returns:
        The batch; ``kind == "empty"`` when the shape is not recognized.
    """
    if isinstance(raw, dict):
        if isinstance(raw.get("transactions"), list) and (
            "accountData" in raw or any(_looks_enhanced(t) for t in raw["transactions"])
        ):
            return _parse_enhanced(raw["transactions"], _accounts(raw.get("accountData")))
        if isinstance(raw.get("data"), list):
            return parse_payload(raw["data"])
        if _looks_rpc(raw):
            return _parse_rpc([(raw.get("blockTime"), [raw])])
        if _looks_enhanced(raw):
            return _parse_enhanced([raw], ())
        if _looks_block(raw):
            return _parse_rpc([(raw.get("blockTime"), raw["transactions"])])
        return NormalizedBatch(kind="empty")

    if isinstance(raw, list) and raw:
        if any(_looks_rpc(item) for item in raw):
            return _parse_rpc([(None, raw)])
        if any(_looks_block(item) for item in raw):
            blocks = [(item.get("blockTime"), item["transactions"]) for item in raw if _looks_block(item)]
            return _parse_rpc(blocks)
        if any(_looks_enhanced(item) for item in raw):
            return _parse_enhanced(raw, ())

    return NormalizedBatch(kind="empty")
