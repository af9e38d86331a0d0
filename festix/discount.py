"""Quantity-tiered discounts for corporate (B2B) orders.

    50-99 tickets    10%
    100-149 tickets  12%
    150-199 tickets  15%
    200+ tickets     20%

Below the 50 ticket minimum no corporate order is accepted; ``calculate``
still answers (percent 0) so callers can render a quote.
"""
from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional, Tuple

from .helpers import to_money


@dataclass(frozen=True)
class Tier:
    min_qty: int
    max_qty: Optional[int]  # None = unbounded
    percent: int
    label: str

    def contains(self, quantity: int) -> bool:
        return quantity >= self.min_qty and (
            self.max_qty is None or quantity <= self.max_qty
        )


@dataclass(frozen=True)
class Discount:
    quantity: int
    percent: int
    tier: Optional[Tier]
    total_amount: Decimal
    discount_amount: Decimal
    final_amount: Decimal


TIERS: Tuple[Tier, ...] = (
    Tier(50, 99, 10, "50-99 tickets"),
    Tier(100, 149, 12, "100-149 tickets"),
    Tier(150, 199, 15, "150-199 tickets"),
    Tier(200, None, 20, "200+ tickets"),
)

MIN_B2B_QUANTITY = TIERS[0].min_qty


def tiers() -> Tuple[Tier, ...]:
    return TIERS


def meets_minimum(quantity: int) -> bool:
    return quantity >= MIN_B2B_QUANTITY


def tier_for(quantity: int) -> Optional[Tier]:
    if quantity < MIN_B2B_QUANTITY:
        return None
    for tier in TIERS:
        if tier.contains(quantity):
            return tier
    return None


def calculate(total_amount, quantity: int) -> Discount:
    total = to_money(total_amount)
    tier = tier_for(quantity)
    percent = tier.percent if tier else 0
    discount_amount = to_money(total * percent / 100)
    return Discount(
        quantity=quantity,
        percent=percent,
        tier=tier,
        total_amount=total,
        discount_amount=discount_amount,
        final_amount=total - discount_amount,
    )


def next_tier(quantity: int) -> Optional[Tier]:
    current = tier_for(quantity)
    if current is None:
        return TIERS[0]
    idx = TIERS.index(current)
    if idx < len(TIERS) - 1:
        return TIERS[idx + 1]
    return None


def tickets_to_next_tier(quantity: int) -> Optional[int]:
    nxt = next_tier(quantity)
    if nxt is None:
        return None
    return max(0, nxt.min_qty - quantity)


def tier_to_dict(tier: Optional[Tier]) -> Optional[dict]:
    if tier is None:
        return None
    return {
        "minQuantity": tier.min_qty,
        "maxQuantity": tier.max_qty,
        "discountPercent": tier.percent,
        "label": tier.label,
    }


def summary(total_amount, quantity: int) -> dict:
    """Quote shown to corporate buyers, including the upsell hint."""
    if not meets_minimum(quantity):
        return {
            "isValid": False,
            "message": (
                f"Minimum quantity for a corporate order is "
                f"{MIN_B2B_QUANTITY} tickets"
            ),
            "discount": None,
            "nextTier": None,
        }

    d = calculate(total_amount, quantity)
    nxt = next_tier(quantity)
    needed = tickets_to_next_tier(quantity)
    return {
        "isValid": True,
        "message": f"{d.percent}% discount applied",
        "discount": {
            "totalQuantity": d.quantity,
            "discountPercent": d.percent,
            "discountTier": tier_to_dict(d.tier),
            "totalAmount": str(d.total_amount),
            "discountAmount": str(d.discount_amount),
            "finalAmount": str(d.final_amount),
        },
        "nextTier": None if nxt is None or needed is None else {
            "tier": tier_to_dict(nxt),
            "ticketsNeeded": needed,
            "additionalDiscount": nxt.percent - d.percent,
        },
    }
