# pricing.py
"""
Rate schedule and payout arithmetic for the presale airdrop.

Rates are payout tokens per stable-equivalent unit (1 USDC, or 1 USD worth of
SOL at the oracle price). All token math is Decimal and floors to integer
minor units so the contract never hands out more than it was paid for.
"""
from __future__ import annotations

import bisect
from dataclasses import dataclass
from datetime import datetime, time as dtime, timezone
from decimal import Decimal, ROUND_FLOOR, localcontext
from typing import Any, Optional, Sequence, Tuple

from .airdrop_models import PaidAsset, PaymentEvent


def parse_instant(value: Any, end_of_day: bool = False) -> datetime:
    """
    Parse a config/webhook instant into an aware UTC datetime.

    Accepts unix seconds (int/float or a digit string), "YYYY-MM-DD" dates and ISO-8601
    datetimes (a trailing "Z" is allowed). A bare date means midnight, or the
    last microsecond of that day when end_of_day is set (inclusive phase ends).
    """
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        return datetime.fromtimestamp(value, tz=timezone.utc)
    else:
        s = str(value or "").strip()
        if not s:
            raise ValueError("empty instant")
        if s.isdigit():
            return datetime.fromtimestamp(int(s), tz=timezone.utc)
        if len(s) == 10:
            d = datetime.strptime(s, "%Y-%m-%d").date()
            t = dtime.max if end_of_day else dtime.min
            return datetime.combine(d, t, tzinfo=timezone.utc)
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        dt = datetime.fromisoformat(s)
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


@dataclass(frozen=True)
class RatePhase:
    name: str
    start: datetime
    end: datetime  # inclusive
    rate: Decimal

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant <= self.end


class RateSchedule:
    """Ordered, non-overlapping rate phases followed by a flat launch rate."""

    def __init__(self, phases: Sequence[RatePhase], launch_at: datetime, launch_rate: Decimal):
        if not phases:
            raise ValueError("rate schedule needs at least one phase")
        ordered = sorted(phases, key=lambda p: p.start)
        for p in ordered:
            if p.end < p.start:
                raise ValueError(f"phase {p.name!r} ends before it starts")
            if p.rate <= 0:
                raise ValueError(f"phase {p.name!r} has non-positive rate")
        for prev, nxt in zip(ordered, ordered[1:]):
            if nxt.start <= prev.end:
                raise ValueError(f"phases {prev.name!r} and {nxt.name!r} overlap")
        if launch_rate <= 0:
            raise ValueError("launch rate must be positive")

        self.phases: Tuple[RatePhase, ...] = tuple(ordered)
        self.launch_at = launch_at
        self.launch_rate = launch_rate
        self._starts = [p.start for p in self.phases]

    def phase_at(self, observed_at: datetime) -> Optional[RatePhase]:
        """Return the governing phase, or None once the launch rate applies."""
        if observed_at >= self.launch_at:
            return None
        idx = bisect.bisect_right(self._starts, observed_at) - 1
        if idx < 0:
            # before the first phase
            return self.phases[0]
        # inside phases[idx], or in the gap after it: the last phase that began wins
        return self.phases[idx]

    def resolve(self, observed_at: datetime) -> Decimal:
        phase = self.phase_at(observed_at)
        return self.launch_rate if phase is None else phase.rate

    def quote(self, observed_at: datetime) -> Tuple[str, Decimal]:
        phase = self.phase_at(observed_at)
        if phase is None:
            return "launch", self.launch_rate
        return phase.name, phase.rate


def compute_payout(
    event: PaymentEvent,
    rate: Decimal,
    price: Optional[Decimal],
    decimals: int,
) -> int:
    """
    Payout in token minor units.

    stable: floor(paid * rate * 10^decimals)
    native: floor(paid * price * rate * 10^decimals)
    """
    if rate < 0 or event.paid_amount < 0:
        raise ValueError("amounts and rates must be non-negative")
    if decimals < 0:
        raise ValueError("decimals must be non-negative")

    with localcontext() as ctx:
        ctx.prec = 80
        value = event.paid_amount * rate
        if event.paid_asset is PaidAsset.NATIVE:
            if price is None or price < 0:
                raise ValueError("native payments need a non-negative price")
            value = value * price
        value = value.scaleb(decimals)
        return int(value.to_integral_value(rounding=ROUND_FLOOR))
