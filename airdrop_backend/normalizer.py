# normalizer.py
"""
Turn an indexer webhook body into a single PaymentEvent.

The indexer has shipped several field-naming conventions over time, so
recipients, senders and amounts are looked up through ordered alias lists
instead of ad hoc `a or b or c` chains. Parsing is pure: no I/O, no clock
reads except the `now` passed in.
"""
from __future__ import annotations

import logging
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from .airdrop_models import (
    IGNORE_INVALID_BUYER,
    IGNORE_MISSING_SIGNATURE,
    IGNORE_NO_TRANSFERS,
    IGNORE_WRONG_EVENT_TYPE,
    IGNORE_ZERO_AMOUNT,
    IgnoredEvent,
    PaidAsset,
    PaymentEvent,
)
from .config import AirdropConfig
from .errors import InvalidPayload
from .pricing import parse_instant

logger = logging.getLogger(__name__)

RECIPIENT_ALIASES: Tuple[str, ...] = ("toUserAccount", "toAccount", "to", "destination")
BUYER_ALIASES: Tuple[str, ...] = ("fromUserAccount", "fromAccount", "source", "from", "sender")
NATIVE_AMOUNT_ALIASES: Tuple[str, ...] = ("amount", "lamports")
TOKEN_AMOUNT_ALIASES: Tuple[str, ...] = ("tokenAmount", "amount")
TIMESTAMP_ALIASES: Tuple[str, ...] = ("timestamp", "blockTime")

NormalizeResult = Union[PaymentEvent, IgnoredEvent]


def first_alias(entry: Dict[str, Any], aliases: Sequence[str]) -> Optional[Any]:
    """Value of the first alias key present with a non-empty value."""
    for key in aliases:
        v = entry.get(key)
        if v is None:
            continue
        if isinstance(v, str) and not v.strip():
            continue
        return v
    return None


def _text(v: Any) -> Optional[str]:
    if not isinstance(v, str):
        return None
    return v.strip() or None


def _credits(entry: Any, wallet: str) -> bool:
    return isinstance(entry, dict) and _text(first_alias(entry, RECIPIENT_ALIASES)) == wallet


def _minor_units(v: Any) -> Optional[int]:
    """Parse an integer amount of minor units; fractional or junk values are rejected."""
    if isinstance(v, bool) or v is None:
        return None
    try:
        d = Decimal(str(v).strip())
    except (InvalidOperation, ValueError):
        return None
    if not d.is_finite() or d != d.to_integral_value():
        return None
    return int(d)


def _token_amount(entry: Dict[str, Any], default_decimals: int) -> Tuple[Optional[int], int]:
    raw = entry.get("rawTokenAmount")
    if isinstance(raw, dict) and raw.get("tokenAmount") is not None:
        decimals = _minor_units(raw.get("decimals"))
        return _minor_units(raw.get("tokenAmount")), default_decimals if decimals is None else decimals
    return _minor_units(first_alias(entry, TOKEN_AMOUNT_ALIASES)), default_decimals


def _observed_at(event: Dict[str, Any], now: datetime) -> datetime:
    ts = first_alias(event, TIMESTAMP_ALIASES)
    if ts is None:
        return now
    try:
        return parse_instant(ts)
    except (ValueError, OverflowError, OSError):
        logger.warning("[airdrop] unparsable event timestamp %r, using processing time", ts)
        return now


def _find_payment(
    event: Dict[str, Any], cfg: AirdropConfig
) -> Optional[Tuple[PaidAsset, Dict[str, Any]]]:
    token_transfers = event.get("tokenTransfers") or []
    native_transfers = event.get("nativeTransfers") or []
    if isinstance(token_transfers, list):
        for t in token_transfers:
            if not _credits(t, cfg.collection_wallet):
                continue
            mint = _text(t.get("mint"))
            if mint is not None and mint != cfg.stable_mint:
                continue
            return PaidAsset.STABLE, t
    if isinstance(native_transfers, list):
        for t in native_transfers:
            if _credits(t, cfg.collection_wallet):
                return PaidAsset.NATIVE, t
    return None


def normalize_payload(payload: Any, cfg: AirdropConfig, now: datetime) -> NormalizeResult:
    """
    Select the first transfer event that pays the collection wallet.

    Raises InvalidPayload when the body is not a list of objects; every other
    problem is reported as an IgnoredEvent with a reason code.
    """
    if not isinstance(payload, list):
        raise InvalidPayload("webhook body must be a JSON array of events")
    if any(not isinstance(e, dict) for e in payload):
        raise InvalidPayload("every webhook event must be a JSON object")
    if not payload:
        return IgnoredEvent(IGNORE_NO_TRANSFERS, detail="empty event list")

    events: List[Dict[str, Any]] = [
        e for e in payload if str(e.get("type") or "").strip().upper() in cfg.transfer_event_types
    ]
    if not events:
        types = sorted({str(e.get("type")) for e in payload})
        return IgnoredEvent(IGNORE_WRONG_EVENT_TYPE, detail=f"types={types}")

    for event in events:
        found = _find_payment(event, cfg)
        if found is None:
            continue
        asset, transfer = found
        signature = _text(event.get("signature"))
        if signature is None:
            return IgnoredEvent(IGNORE_MISSING_SIGNATURE)

        buyer = _text(first_alias(transfer, BUYER_ALIASES))
        if buyer is None:
            return IgnoredEvent(IGNORE_INVALID_BUYER, source_tx_id=signature, detail="no sender field")

        if asset is PaidAsset.NATIVE:
            minor = _minor_units(first_alias(transfer, NATIVE_AMOUNT_ALIASES))
            decimals = cfg.native_decimals
        else:
            minor, decimals = _token_amount(transfer, cfg.stable_decimals)
        if minor is None or minor <= 0:
            return IgnoredEvent(IGNORE_ZERO_AMOUNT, source_tx_id=signature)

        return PaymentEvent(
            source_tx_id=signature,
            buyer_address=buyer,
            paid_asset=asset,
            paid_amount=Decimal(minor).scaleb(-decimals),
            paid_amount_minor=minor,
            observed_at=_observed_at(event, now),
        )

    return IgnoredEvent(IGNORE_NO_TRANSFERS, detail="no transfer credits the collection wallet")
