"""
Cancellation and reschedule policy.

Boundaries are inclusive on the side favourable to the client: exactly 24h
before start is still a full refund, exactly 3h is still the partial tier,
exactly 6h still allows a reschedule.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

FULL_REFUND_NOTICE = timedelta(hours=24)
PARTIAL_REFUND_NOTICE = timedelta(hours=3)
RESCHEDULE_MIN_NOTICE = timedelta(hours=6)
MAX_RESCHEDULES = 1

FULL_REFUND_PERCENT = 100
PARTIAL_REFUND_PERCENT = 50
NO_REFUND_PERCENT = 0


@dataclass(frozen=True)
class RefundTier:
    percent: int
    refund_amount: Decimal
    fee_amount: Decimal


def refund_percent(start_time: datetime, now: datetime) -> int:
    notice = start_time - now
    if notice >= FULL_REFUND_NOTICE:
        return FULL_REFUND_PERCENT
    if notice >= PARTIAL_REFUND_NOTICE:
        return PARTIAL_REFUND_PERCENT
    return NO_REFUND_PERCENT


def refund_tier(amount: Decimal, start_time: datetime, now: datetime) -> RefundTier:
    """Split a paid amount into refund and cancellation fee for the given notice."""
    percent = refund_percent(start_time, now)
    refund = (amount * percent / 100).quantize(Decimal("0.01"))
    return RefundTier(percent=percent, refund_amount=refund, fee_amount=amount - refund)
