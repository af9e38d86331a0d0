from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable, List, Optional

import structlog

from .helpers import now_ts, normalize_email, round_units, to_money
from .model.store import Store

logger = structlog.get_logger(__name__)

# orders that still "hold" a one-per-email promo
HOLDING_STATUSES = ("paid", "pending")


@dataclass(frozen=True)
class PromoResult:
    valid: bool
    code: Optional[str] = None
    percent: Optional[Decimal] = None
    discount_amount: Decimal = Decimal("0.00")
    allowed_ticket_ids: Optional[List[str]] = None
    error: Optional[str] = None
    error_code: Optional[str] = None

    @classmethod
    def invalid(cls, error_code: str, error: str) -> "PromoResult":
        return cls(valid=False, error=error, error_code=error_code)

    def to_dict(self) -> dict:
        if not self.valid:
            return {
                "valid": False,
                "error": self.error,
                "errorCode": self.error_code,
            }
        return {
            "valid": True,
            "code": self.code,
            "discountPercent": (
                None if self.percent is None else float(self.percent)
            ),
            "discountAmount": str(self.discount_amount),
            "allowedTicketIds": self.allowed_ticket_ids,
        }


class PromoValidator:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def validate(
        self,
        code: str,
        total_amount,
        email: Optional[str] = None,
        ticket_ids: Optional[Iterable[str]] = None,
        now: Optional[float] = None,
    ) -> PromoResult:
        """Checks run in a fixed order and stop at the first failure."""
        total = to_money(total_amount)
        now = now_ts() if now is None else now

        promo = await self.store.get_active_promo(code.strip())
        if promo is None:
            return PromoResult.invalid("INVALID_CODE", "Invalid promo code")

        if promo.valid_from is not None and promo.valid_from > now:
            return PromoResult.invalid(
                "NOT_YET_ACTIVE", "Promo code is not active yet"
            )
        if promo.valid_until is not None and promo.valid_until < now:
            return PromoResult.invalid("EXPIRED", "Promo code has expired")

        if (promo.usage_limit is not None
                and promo.used_count >= promo.usage_limit):
            return PromoResult.invalid(
                "USAGE_LIMIT", "Promo code usage limit reached"
            )

        if (promo.min_order_amount is not None
                and total < to_money(promo.min_order_amount)):
            return PromoResult.invalid(
                "MIN_ORDER_AMOUNT",
                f"Minimum order amount for this promo code: "
                f"{to_money(promo.min_order_amount)} MDL",
            )

        allowed = list(promo.allowed_ticket_ids or [])
        if allowed and ticket_ids is not None:
            if not set(ticket_ids) & set(allowed):
                return PromoResult.invalid(
                    "TICKET_RESTRICTION",
                    "Promo code does not apply to the selected tickets",
                )

        if promo.one_per_email and email:
            used = await self.store.has_promo_order(
                promo.code, normalize_email(email), HOLDING_STATUSES
            )
            if used:
                return PromoResult.invalid(
                    "ALREADY_USED_BY_EMAIL",
                    "You have already used this promo code",
                )

        discount = Decimal("0")
        percent = None
        if promo.discount_percent:
            percent = Decimal(promo.discount_percent)
            discount = round_units(total * percent / 100)
        elif promo.discount_amount:
            discount = to_money(promo.discount_amount)

        return PromoResult(
            valid=True,
            code=promo.code,
            percent=percent,
            # never more than the order itself
            discount_amount=to_money(min(discount, total)),
            allowed_ticket_ids=allowed or None,
        )

    async def increment_usage(self, code: str) -> None:
        if not await self.store.increment_promo_usage(code):
            logger.warning("promo usage increment missed", code=code)
