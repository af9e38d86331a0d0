"""Maps gateway notifications onto order transitions.

Both entry points (signed server-to-server callback and the buyer's
browser returning from the payment page) resolve the transaction to a
``PaymentSubject`` exactly once and then apply the same conditional
transitions, so whichever arrives second is a no-op.
"""
from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional, Union
from urllib.parse import urlencode

import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .b2b import B2BOrderManager
from .errors import (
    FestixError, GatewayError, NotFoundError, SignatureError, ValidationError,
)
from .fulfillment import FulfillmentWorker
from .gateway import PaymentGateway, callback_fields
from .helpers import to_money
from .model.db import B2BOrder, Order
from .model.store import RETAIL, Store
from .orders import OrderManager

logger = structlog.get_logger(__name__)

SUCCESS = "success"
FAILURE = "failure"
CANCELLED = "cancelled"

_STATUS_MAP = {
    "OK": SUCCESS,
    "COMPLETED": SUCCESS,
    "SUCCESS": SUCCESS,
    "APPROVED": SUCCESS,
    "FAILED": FAILURE,
    "DECLINED": FAILURE,
    "ERROR": FAILURE,
    "CANCELLED": CANCELLED,
    "CANCELED": CANCELLED,
}

MOCK_PROCESS_STATUSES = ("OK", "FAILED", "PENDING")


@dataclass(frozen=True)
class Retail:
    order: Order


@dataclass(frozen=True)
class Corporate:
    order: B2BOrder


PaymentSubject = Union[Retail, Corporate]


def map_status(status: Optional[str]) -> Optional[str]:
    """success | failure | cancelled, or None for anything unrecognised."""
    return _STATUS_MAP.get((status or "").strip().upper())


def success_url(order_number: str) -> str:
    return (f"{config.FRONTEND_URL}/checkout/success?"
            f"{urlencode({'order': order_number})}")


def failed_url(order_number: Optional[str], reason: str) -> str:
    q = {"order": order_number} if order_number else {}
    q["reason"] = reason
    return f"{config.FRONTEND_URL}/checkout/failed?{urlencode(q)}"


class Reconciler:
    def __init__(
        self,
        *,
        store: Store,
        orders: OrderManager,
        b2b: B2BOrderManager,
        gateway: PaymentGateway,
        fulfillment: FulfillmentWorker,
    ) -> None:
        self.store = store
        self.orders = orders
        self.b2b = b2b
        self.gateway = gateway
        self.fulfillment = fulfillment

    async def resolve(
        self,
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
    ) -> Optional[PaymentSubject]:
        if transaction_id:
            found = await self.store.resolve_transaction(transaction_id)
            if found is not None:
                kind, order = found
                return Retail(order) if kind == RETAIL else Corporate(order)
        if order_id:
            order = await self.store.get_order(order_id)
            if order is not None:
                return Retail(order)
            b2b_order = await self.store.get_b2b_order(order_id)
            if b2b_order is not None:
                return Corporate(b2b_order)
        return None

    async def apply(
        self, subject: PaymentSubject, outcome: str, reason: str
    ) -> bool:
        """Run the transition for ``outcome``; True if state changed.

        Side effects only follow a transition that actually happened.
        """
        order = subject.order
        if isinstance(subject, Retail):
            if outcome == SUCCESS:
                task_id = await self.orders.mark_as_paid(order.id)
                if task_id:
                    self.fulfillment.submit(task_id)
                return task_id is not None
            if outcome == FAILURE:
                return await self.orders.mark_as_failed(order.id, reason)
            return await self.orders.mark_as_cancelled(order.id, reason)

        if outcome == SUCCESS:
            changed = await self.b2b.mark_as_paid(order.id)
            if changed:
                # awaited: status pollers expect tickets once paid
                try:
                    await self.b2b.generate_tickets(order.id)
                except FestixError as e:
                    logger.error("b2b ticket generation failed",
                                 order=order.order_number, error=e.message)
                except SQLAlchemyError:
                    # the order stays paid; an admin can generate again
                    logger.error("b2b ticket generation failed",
                                 order=order.order_number, exc_info=True)
            return changed
        if outcome == FAILURE:
            return await self.b2b.mark_payment_failed(order.id, reason)
        return await self.b2b.cancel(order.id, reason)

    async def settle_free_order(self, order: Order) -> bool:
        """A retail order fully covered by its discount never reaches the
        gateway; it is paid as soon as it exists."""
        if to_money(order.total_amount) - to_money(order.discount_amount) > 0:
            raise ValidationError("Order has an amount to pay",
                                  "PAYMENT_REQUIRED")
        return await self.apply(Retail(order), SUCCESS, "FREE")

    async def handle_callback(
        self, body: Mapping[str, Any], header_signature: Optional[str] = None
    ) -> Dict[str, Any]:
        if not isinstance(body, Mapping):
            raise ValidationError("Callback body must be a JSON object")
        signature = body.get("signature") or header_signature
        if not signature:
            logger.warning("callback without signature")
            raise SignatureError("No signature provided")
        if not self.gateway.verify_signature(body, str(signature)):
            logger.warning("callback with invalid signature")
            raise SignatureError("Invalid signature")

        fields = callback_fields(body)
        transaction_id = fields.get("payId")
        if not transaction_id:
            raise ValidationError("Transaction ID is required",
                                  "MISSING_TRANSACTION_ID")
        transaction_id = str(transaction_id)
        status = fields.get("status")
        log = logger.bind(transaction_id=transaction_id, status=status)

        subject = await self.resolve(transaction_id=transaction_id)
        if subject is None:
            log.error("callback for unknown transaction")
            raise NotFoundError("Order not found")

        outcome = map_status(status)
        if outcome is None:
            log.warning("unknown gateway status, acknowledged")
            return {
                "success": True,
                "message": "Unknown status acknowledged",
                "orderNumber": subject.order.order_number,
                "applied": False,
            }

        reason = str(fields.get("statusCode") or status)
        changed = await self.apply(subject, outcome, reason)
        log.info("callback processed", order=subject.order.order_number,
                 outcome=outcome, applied=changed)
        return {
            "success": True,
            "message": "Callback processed successfully",
            "orderNumber": subject.order.order_number,
            "applied": changed,
        }

    async def handle_return(
        self,
        *,
        transaction_id: Optional[str] = None,
        order_id: Optional[str] = None,
        outcome: str = "ok",
        status_code: Optional[str] = None,
    ) -> str:
        """Apply what the browser redirect tells us and pick where to send
        the buyer. Returns the redirect URL."""
        subject = await self.resolve(transaction_id, order_id)
        if subject is None:
            logger.error("return for unknown order",
                         transaction_id=transaction_id, order_id=order_id,
                         outcome=outcome)
            return failed_url(None, "ORDER_NOT_FOUND")
        order = subject.order
        number = order.order_number

        if outcome != "ok":
            await self.apply(subject, FAILURE, status_code or "USER_CANCELLED")
            return failed_url(number, status_code or "PAYMENT_FAILED")

        # the browser is not authenticated; ask the gateway
        tid = order.maib_transaction_id or transaction_id
        if not tid:
            return success_url(number)
        try:
            status = (await self.gateway.get_status(tid))["status"]
        except GatewayError as e:
            logger.warning("status check failed on return", order=number,
                           error=e.message)
            return success_url(number)

        mapped = map_status(status)
        if mapped is not None:
            await self.apply(subject, mapped, status)
        if mapped in (FAILURE, CANCELLED):
            return failed_url(number, status)
        return success_url(number)

    async def handle_mock_payment(
        self, transaction_id: str, status: str
    ) -> Dict[str, Any]:
        """Settle a mock transaction the way the real gateway would: flip
        its status and deliver a signed callback."""
        if not self.gateway.mock:
            raise ValidationError("Mock mode is disabled", "MOCK_DISABLED")
        if not transaction_id:
            raise ValidationError("Missing transaction ID",
                                  "MISSING_TRANSACTION_ID")
        status = (status or "").upper()
        if status not in MOCK_PROCESS_STATUSES:
            raise ValidationError(
                "Invalid status. Must be OK, FAILED, or PENDING",
                "INVALID_STATUS",
            )
        if not self.gateway.set_status(transaction_id, status):
            raise NotFoundError("Transaction not found")
        subject = await self.resolve(transaction_id=transaction_id)
        if subject is None:
            raise NotFoundError("Order not found")
        number = subject.order.order_number

        if status == "PENDING":
            return {"success": True, "message": "Payment left as pending",
                    "orderNumber": number}

        tx = self.gateway.transactions[transaction_id]
        body: Dict[str, Any] = {"result": {
            "payId": transaction_id,
            "orderId": subject.order.id,
            "status": status,
            "statusCode": "000" if status == "OK" else "MOCK_FAILED",
            "amount": str(tx["amount"]),
            "currency": config.CURRENCY,
        }}
        body["signature"] = self.gateway.sign(body)
        await self.handle_callback(body)

        if status == "OK":
            return {"success": True, "redirectUrl": success_url(number)}
        return {"success": True,
                "redirectUrl": failed_url(number, "MOCK_FAILED")}
