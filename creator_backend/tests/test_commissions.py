"""Tests for the revenue split and referral commission calculator."""
from __future__ import annotations

from decimal import Decimal

import pytest

from creator_backend.app.billing.commissions import (
    COMMISSION_RATES,
    MAX_COMMISSION_DEPTH,
    calculate_commissions,
    max_commission_exposure,
    split_revenue,
)


def test_split_revenue_gives_creator_seventy_percent():
    split = split_revenue(3990)

    assert split.creator_share == 2793
    assert split.platform_share == 1197
    assert split.creator_share + split.platform_share == 3990


def test_split_revenue_platform_absorbs_rounding_remainder():
    split = split_revenue(1001)

    assert split.creator_share == 700
    assert split.platform_share == 301


def test_split_revenue_zero_gross():
    split = split_revenue(0)

    assert split.creator_share == 0
    assert split.platform_share == 0


@pytest.mark.parametrize("bad", [-1, 10.5, "100", True])
def test_split_revenue_rejects_invalid_amounts(bad):
    with pytest.raises((TypeError, ValueError)):
        split_revenue(bad)


def test_single_referrer_receives_ten_percent():
    breakdown = calculate_commissions(3990, ["referrer-1"])

    assert [(p.payee_id, p.depth, p.amount) for p in breakdown.payouts] == [("referrer-1", 1, 399)]
    assert breakdown.total_paid == 399


def test_full_chain_uses_each_level_rate():
    breakdown = calculate_commissions(10000, ["l1", "l2", "l3", "l4"])

    assert [p.amount for p in breakdown.payouts] == [1000, 500, 300, 200]
    assert [p.rate for p in breakdown.payouts] == [Decimal("0.10"), Decimal("0.05"), Decimal("0.03"), Decimal("0.02")]


def test_chain_longer_than_four_levels_is_truncated():
    breakdown = calculate_commissions(9990, ["a", "b", "c", "d", "e", "f"])

    assert len(breakdown.payouts) == MAX_COMMISSION_DEPTH
    assert [p.payee_id for p in breakdown.payouts] == ["a", "b", "c", "d"]


def test_commission_amounts_are_floored():
    breakdown = calculate_commissions(1990, ["l1", "l2", "l3", "l4"])

    # 199.0, 99.5, 59.7, 39.8
    assert [p.amount for p in breakdown.payouts] == [199, 99, 59, 39]


def test_empty_chain_pays_nothing():
    breakdown = calculate_commissions(7990, [])

    assert breakdown.payouts == ()
    assert breakdown.total_paid == 0


def test_total_commissions_never_exceed_twenty_percent():
    for gross in (0, 1, 99, 1990, 3990, 7990, 9990, 72900, 123457):
        breakdown = calculate_commissions(gross, ["a", "b", "c", "d"])
        assert breakdown.total_paid <= max_commission_exposure(gross)
        assert breakdown.total_paid * 5 <= gross


def test_platform_profit_stays_non_negative_with_full_chain():
    for gross in (1, 7, 1990, 9990, 72900):
        split = split_revenue(gross)
        breakdown = calculate_commissions(gross, ["a", "b", "c", "d"])
        assert split.platform_share - breakdown.total_paid >= 0


def test_rate_table_matches_four_levels():
    assert sorted(COMMISSION_RATES) == [1, 2, 3, 4]
    assert sum(COMMISSION_RATES.values()) == Decimal("0.20")
