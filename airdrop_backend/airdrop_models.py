# airdrop_models.py
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel


class PaidAsset(str, Enum):
    NATIVE = "NATIVE"
    STABLE = "STABLE"


# Reasons an inbound delivery is acknowledged without a payout
IGNORE_NO_TRANSFERS = "no_transfers"
IGNORE_INVALID_BUYER = "invalid_buyer"
IGNORE_ZERO_AMOUNT = "zero_amount"
IGNORE_WRONG_EVENT_TYPE = "wrong_event_type"
IGNORE_MISSING_SIGNATURE = "missing_signature"
IGNORE_ZERO_PAYOUT = "zero_payout"


@dataclass(frozen=True)
class PaymentEvent:
    source_tx_id: str
    buyer_address: Optional[str]
    paid_asset: PaidAsset
    paid_amount: Decimal
    paid_amount_minor: int
    observed_at: datetime


@dataclass(frozen=True)
class IgnoredEvent:
    reason: str
    source_tx_id: Optional[str] = None
    detail: str = ""


@dataclass(frozen=True)
class SettlementRecord:
    source_tx_id: str
    buyer_address: str
    paid_asset: PaidAsset
    paid_amount: Decimal
    rate_applied: Decimal
    native_usd_price: Optional[Decimal]
    price_is_fallback: bool
    payout_amount: int
    payout_tx_id: str
    settled_at: datetime


# Outcome statuses of one webhook delivery
STATUS_IGNORED = "ignored"
STATUS_DUPLICATE = "duplicate"
STATUS_SETTLED = "settled"
STATUS_RETRYABLE = "retryable_failure"
STATUS_FAILED = "failed"
STATUS_NEEDS_REVIEW = "needs_review"


@dataclass
class SettlementOutcome:
    status: str
    source_tx_id: Optional[str] = None
    reason: Optional[str] = None
    detail: str = ""
    record: Optional[SettlementRecord] = None


# ---------------------------
# API models
# ---------------------------
class WebhookOut(BaseModel):
    ok: bool
    status: str
    ignored: bool = False
    reason: Optional[str] = None
    source_tx_id: Optional[str] = None
    payout_amount: Optional[int] = None
    payout_tx_id: Optional[str] = None
    price_is_fallback: Optional[bool] = None
    detail: Optional[str] = None


class RateOut(BaseModel):
    now: int
    phase: str
    rate: str
    launch_at: int
    launch_rate: str
    phases: List[Dict[str, Any]]


class SettlementOut(BaseModel):
    source_tx_id: str
    buyer_address: str
    paid_asset: str
    paid_amount: str
    rate_applied: str
    native_usd_price: Optional[str]
    price_is_fallback: bool
    payout_amount: int
    payout_tx_id: str
    settled_at: int


class ReviewItemOut(BaseModel):
    id: int
    created_at: int
    source_tx_id: str
    payout_tx_id: Optional[str]
    reason: str
    detail: Dict[str, Any]
    resolved_at: Optional[int]
    resolution_note: Optional[str]
