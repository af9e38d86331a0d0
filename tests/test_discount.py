from decimal import Decimal

import pytest

from festix import discount


@pytest.mark.parametrize("quantity,percent", [
    (50, 10), (99, 10),
    (100, 12), (149, 12),
    (150, 15), (199, 15),
    (200, 20), (5000, 20),
])
def test_tier_boundaries(quantity, percent):
    assert discount.tier_for(quantity).percent == percent


def test_below_minimum_has_no_tier():
    assert discount.tier_for(49) is None
    assert discount.tier_for(0) is None
    assert not discount.meets_minimum(49)
    assert discount.meets_minimum(50)


@pytest.mark.parametrize("total,quantity,off,final", [
    ("60000", 120, "7200.00", "52800.00"),
    # 120 tickets at 150
    ("18000", 120, "2160.00", "15840.00"),
])
def test_calculate_applies_tier_to_total(total, quantity, off, final):
    d = discount.calculate(Decimal(total), quantity)
    assert d.percent == 12
    assert d.discount_amount == Decimal(off)
    assert d.final_amount == Decimal(final)
    assert d.tier.label == "100-149 tickets"


def test_calculate_rounds_to_cents():
    d = discount.calculate(Decimal("333.33"), 50)
    assert d.discount_amount == Decimal("33.33")
    assert d.final_amount == Decimal("300.00")


def test_calculate_below_minimum_is_a_zero_quote():
    d = discount.calculate(Decimal("1000"), 10)
    assert d.percent == 0
    assert d.tier is None
    assert d.final_amount == Decimal("1000.00")


def test_next_tier_for_upsell():
    assert discount.next_tier(10) == discount.TIERS[0]
    assert discount.next_tier(60).percent == 12
    assert discount.next_tier(199).percent == 20
    assert discount.next_tier(200) is None
    assert discount.tickets_to_next_tier(60) == 40
    assert discount.tickets_to_next_tier(250) is None


def test_summary_rejects_small_orders():
    s = discount.summary(Decimal("1000"), 10)
    assert s["isValid"] is False
    assert s["discount"] is None
    assert "50" in s["message"]


def test_summary_reports_next_tier():
    s = discount.summary(Decimal("25000"), 50)
    assert s["isValid"] is True
    assert s["discount"]["discountPercent"] == 10
    assert s["discount"]["finalAmount"] == "22500.00"
    assert s["nextTier"] == {
        "tier": discount.tier_to_dict(discount.TIERS[1]),
        "ticketsNeeded": 50,
        "additionalDiscount": 2,
    }
    assert discount.summary(Decimal("1"), 200)["nextTier"] is None
