"""Revenue split and multi-level referral commission calculation.

Everything here is pure: amounts are integer minor units, every rate is applied
as ``floor(gross * rate)`` and nothing touches a store.
"""
from __future__ import annotations

from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal
from typing import Dict, Sequence, Tuple

CREATOR_SHARE_RATE = Decimal("0.70")

MAX_COMMISSION_DEPTH = 4
COMMISSION_RATES: Dict[int, Decimal] = {
    1: Decimal("0.10"),
    2: Decimal("0.05"),
    3: Decimal("0.03"),
    4: Decimal("0.02"),
}
MAX_COMMISSION_RATE = sum(COMMISSION_RATES.values(), Decimal("0"))


def _floor_amount(gross: int, rate: Decimal) -> int:
    return int((Decimal(gross) * rate).to_integral_value(rounding=ROUND_FLOOR))


def _check_gross(gross: int) -> None:
    if isinstance(gross, bool) or not isinstance(gross, int):
        raise TypeError("gross must be an integer amount of minor units")
    if gross < 0:
        raise ValueError("gross must be >= 0")


@dataclass(frozen=True)
class RevenueSplit:
    """70/30 split of a gross charge.

    The creator receives ``floor(gross * 70%)`` and the platform receives the
    remainder, so any odd cent from rounding lands with the platform.
    """

    gross: int
    creator_share: int
    platform_share: int


def split_revenue(gross: int) -> RevenueSplit:
    _check_gross(gross)
    creator_share = _floor_amount(gross, CREATOR_SHARE_RATE)
    return RevenueSplit(gross=gross, creator_share=creator_share, platform_share=gross - creator_share)


@dataclass(frozen=True)
class CommissionPayout:
    payee_id: str
    depth: int
    rate: Decimal
    amount: int


@dataclass(frozen=True)
class CommissionBreakdown:
    gross: int
    payouts: Tuple[CommissionPayout, ...] = ()

    @property
    def total_paid(self) -> int:
        return sum(payout.amount for payout in self.payouts)


def calculate_commissions(gross: int, chain: Sequence[str]) -> CommissionBreakdown:
    """Compute per-level payouts for a referral chain.

    ``chain`` lists ancestor creator ids by increasing depth (index 0 is the
    direct referrer). Only the first :data:`MAX_COMMISSION_DEPTH` ancestors are
    paid, whatever the chain length.
    """

    _check_gross(gross)
    payouts = []
    for depth, payee_id in enumerate(chain[:MAX_COMMISSION_DEPTH], start=1):
        rate = COMMISSION_RATES[depth]
        payouts.append(
            CommissionPayout(payee_id=payee_id, depth=depth, rate=rate, amount=_floor_amount(gross, rate))
        )
    return CommissionBreakdown(gross=gross, payouts=tuple(payouts))


def max_commission_exposure(gross: int) -> int:
    """Upper bound on the commissions a single charge can pay out."""

    _check_gross(gross)
    return _floor_amount(gross, MAX_COMMISSION_RATE)


__all__ = [
    "COMMISSION_RATES",
    "CREATOR_SHARE_RATE",
    "MAX_COMMISSION_DEPTH",
    "CommissionBreakdown",
    "CommissionPayout",
    "RevenueSplit",
    "calculate_commissions",
    "max_commission_exposure",
    "split_revenue",
]
