"""Corporate (B2B) orders.

Lines stay aggregated (one row per ticket type and quantity) until the order
is paid; ``generate_tickets`` then explodes them into one row per physical
ticket, once. Every status change is appended to the order history.
"""
from __future__ import annotations
import json
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import config, discount
from .collaborators import ArtifactGenerator, Notifier
from .errors import FestixError, NotFoundError, PersistenceError, ValidationError
from .gateway import PaymentGateway, TransactionResult
from .helpers import normalize_email, now_ts, order_number, random_code, to_money
from .model.db import B2BOrder, B2BOrderHistory, B2BOrderItem
from .model.store import B2B, Store
from .orders import CartLine, best_effort, persist_with_fresh_number, price_lines

logger = structlog.get_logger(__name__)

ORDER_PREFIX = "B2B"
INVOICE_PREFIX = "INV-B2B"
PAYMENT_METHODS = ("online", "invoice")

PAYABLE_STATUSES = ("pending", "invoice_sent", "payment_failed", "cancelled")
OPEN_STATUSES = ("pending", "invoice_sent", "payment_failed")


@dataclass(frozen=True)
class Company:
    name: str
    tax_id: Optional[str] = None
    address: Optional[str] = None


@dataclass(frozen=True)
class Contact:
    name: str
    email: str
    phone: str = ""


def b2b_ticket_code(number: str) -> str:
    return f"B2B-{number}-{random_code(6)}"


class B2BOrderManager:
    def __init__(
        self,
        *,
        store: Store,
        gateway: PaymentGateway,
        artifacts: ArtifactGenerator,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.gateway = gateway
        self.artifacts = artifacts
        self.notifier = notifier

    async def require_order(self, order_id: str) -> B2BOrder:
        order = await self.store.get_b2b_order(order_id)
        if order is None:
            raise NotFoundError("B2B order not found")
        return order

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    async def create_order(
        self,
        company: Company,
        contact: Contact,
        items: Sequence[CartLine],
        payment_method: str = "online",
        notes: Optional[str] = None,
        language: str = "ro",
        client_ip: Optional[str] = None,
    ) -> B2BOrder:
        if payment_method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method: {payment_method}",
                                  "INVALID_PAYMENT_METHOD")
        if not company.name or not contact.name or not contact.email:
            raise ValidationError("Company and contact details are required",
                                  "MISSING_FIELDS")
        priced = await price_lines(self.store, items)
        quantity = sum(line.quantity for line, _ in priced)
        if not discount.meets_minimum(quantity):
            raise ValidationError(
                f"Minimum order quantity is {discount.MIN_B2B_QUANTITY} "
                f"tickets",
                "MIN_QUANTITY",
            )
        total = sum((price * line.quantity for line, price in priced),
                    Decimal("0.00"))
        quote = discount.calculate(total, quantity)
        factor = Decimal(100 - quote.percent) / 100
        is_invoice = payment_method == "invoice"

        def build():
            ts = now_ts()
            number = order_number(ORDER_PREFIX, ts)
            order = B2BOrder(
                id=uuid.uuid4().hex,
                order_number=number,
                company_name=company.name,
                company_tax_id=company.tax_id,
                company_address=company.address,
                contact_name=contact.name,
                contact_email=normalize_email(contact.email),
                contact_phone=contact.phone or "",
                language=language,
                client_ip=client_ip,
                notes=notes,
                payment_method=payment_method,
                status="invoice_sent" if is_invoice else "pending",
                payment_status="pending",
                total_amount=quote.total_amount,
                discount_percent=quote.percent,
                discount_amount=quote.discount_amount,
                final_amount=quote.final_amount,
                invoice_number=(
                    number.replace(ORDER_PREFIX, INVOICE_PREFIX, 1)
                    if is_invoice else None
                ),
                created_at=ts,
                updated_at=ts,
            )
            rows = [
                B2BOrderItem(
                    id=uuid.uuid4().hex,
                    b2b_order_id=order.id,
                    ticket_id=line.ticket_id,
                    ticket_option_id=line.option_id,
                    quantity=line.quantity,
                    unit_price=price,
                    discount_percent=quote.percent,
                    total_price=to_money(price * line.quantity * factor),
                    created_at=ts,
                )
                for line, price in priced
            ]
            return order, rows

        async def insert(order, rows):
            await self.store.insert_b2b_order(order, rows, "Order created")

        order = await persist_with_fresh_number(build, insert, "B2B order")
        logger.info("b2b order created", order=order.order_number,
                    company=order.company_name, quantity=quantity,
                    discount_percent=order.discount_percent,
                    final=str(order.final_amount))
        return order

    async def open_transaction(
        self, order: B2BOrder, client_ip: str
    ) -> TransactionResult:
        if order.payment_method != "online" or order.status != "pending":
            raise ValidationError("Order is not awaiting online payment",
                                  "ORDER_NOT_PENDING")
        tx = await self.gateway.create_transaction(
            amount=to_money(order.final_amount),
            currency=config.CURRENCY,
            client_ip=client_ip or "127.0.0.1",
            order_ref=order.id,
            customer={
                "name": order.contact_name,
                "email": order.contact_email,
                "phone": order.contact_phone,
            },
            return_urls={
                "ok": f"{config.API_URL}/api/maib/return/ok",
                "fail": f"{config.API_URL}/api/maib/return/fail",
            },
            callback_url=f"{config.API_URL}/api/maib/callback",
            description=(
                f"B2B Order #{order.order_number} - {order.company_name}"
            ),
            language=order.language,
        )
        try:
            linked = await self.store.link_transaction(
                B2B, order.id, tx["transaction_id"]
            )
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to link payment transaction") from e
        if not linked:
            raise ValidationError("Order already has a payment transaction",
                                  "TRANSACTION_EXISTS")
        return tx

    async def issue_invoice(self, order_id: str) -> str:
        order = await self.require_order(order_id)
        if order.status not in ("pending", "invoice_sent"):
            raise ValidationError(
                f"Cannot issue an invoice for a {order.status} order",
                "INVALID_STATUS",
            )
        if not order.invoice_number:
            number = order.order_number.replace(ORDER_PREFIX,
                                                INVOICE_PREFIX, 1)
            await self.store.update_b2b(order.id, invoice_number=number)
            order.invoice_number = number

        items = await self.store.get_b2b_items(order.id)
        url = await best_effort(
            self.artifacts.generate_invoice(order, items),
            "invoice generation", order=order.order_number,
        )
        if not url:
            raise FestixError("Failed to generate invoice", "INVOICE_FAILED")

        ts = now_ts()
        await self.store.update_b2b(order.id, invoice_url=url,
                                    invoice_sent_at=ts)
        await self.store.transition_b2b(
            order.id, ("pending", "invoice_sent"), "invoice_sent",
            note=f"Invoice {order.invoice_number} generated",
        )
        order.invoice_url = url
        await best_effort(
            self.notifier.send_b2b_invoice(order, url),
            "invoice email", order=order.order_number,
        )
        logger.info("b2b invoice issued", order=order.order_number,
                    invoice=order.invoice_number)
        return url

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    async def mark_as_paid(
        self, order_id: str, changed_by: Optional[str] = None
    ) -> bool:
        changed = await self.store.transition_b2b(
            order_id, PAYABLE_STATUSES, "paid",
            note="Payment confirmed", changed_by=changed_by,
            payment_status="ok", paid_at=now_ts(),
        )
        if changed:
            logger.info("b2b order paid", order_id=order_id, by=changed_by)
        return changed

    async def mark_payment_failed(self, order_id: str, reason: str) -> bool:
        changed = await self.store.transition_b2b(
            order_id, ("pending", "invoice_sent"), "payment_failed",
            note=f"Payment failed: {reason}", payment_status="failed",
        )
        if changed:
            logger.info("b2b payment failed", order_id=order_id, reason=reason)
        return changed

    async def cancel(
        self, order_id: str, reason: str, changed_by: Optional[str] = None
    ) -> bool:
        changed = await self.store.transition_b2b(
            order_id, OPEN_STATUSES, "cancelled",
            note=f"Cancelled: {reason}", changed_by=changed_by,
        )
        if changed:
            logger.info("b2b order cancelled", order_id=order_id,
                        reason=reason)
        return changed

    async def generate_tickets(
        self, order_id: str, changed_by: Optional[str] = None
    ) -> int:
        """Explode a paid order into physical tickets and render them.

        Returns the number of tickets. Items that fail to render keep an
        empty URL; the order still moves to tickets_generated.
        """
        order = await self.require_order(order_id)
        if order.status != "paid":
            raise ValidationError(
                "Order must be paid before generating tickets",
                "ORDER_NOT_PAID",
            )

        items = await self.store.get_b2b_items(order.id)
        aggregated = [i for i in items if i.ticket_code is None]
        if aggregated:
            ts = now_ts()
            tickets = []
            for line in aggregated:
                unit_total = to_money(
                    to_money(line.total_price) / line.quantity
                )
                for _ in range(line.quantity):
                    code = b2b_ticket_code(order.order_number)
                    tickets.append(B2BOrderItem(
                        id=uuid.uuid4().hex,
                        b2b_order_id=order.id,
                        ticket_id=line.ticket_id,
                        ticket_option_id=line.ticket_option_id,
                        quantity=1,
                        unit_price=line.unit_price,
                        discount_percent=line.discount_percent,
                        total_price=unit_total,
                        ticket_code=code,
                        qr_data=json.dumps({
                            "orderId": order.id,
                            "ticketCode": code,
                            "ticketId": line.ticket_id,
                            "optionId": line.ticket_option_id,
                            "companyName": order.company_name,
                        }, separators=(",", ":")),
                        status="valid",
                        created_at=ts,
                    ))
            if not await self.store.explode_b2b_items(order.id, tickets):
                logger.info("b2b items already exploded",
                            order=order.order_number)
            items = await self.store.get_b2b_items(order.id)

        missing = [i for i in items if not i.ticket_url]
        if missing:
            urls = await best_effort(
                self.artifacts.generate(order, missing),
                "b2b ticket generation", order=order.order_number,
            ) or [""] * len(missing)
            fresh = [(i.id, u) for i, u in zip(missing, urls) if u]
            if fresh:
                await self.store.set_b2b_item_urls(fresh)
            if len(fresh) < len(missing):
                logger.error("some b2b tickets were not generated",
                             order=order.order_number,
                             missing=len(missing) - len(fresh))

        await self.store.transition_b2b(
            order.id, ("paid",), "tickets_generated",
            note=f"{len(items)} tickets generated", changed_by=changed_by,
            tickets_generated_at=now_ts(),
        )
        logger.info("b2b tickets generated", order=order.order_number,
                    count=len(items))
        return len(items)

    async def send_tickets(
        self, order_id: str, changed_by: Optional[str] = None
    ) -> int:
        order = await self.require_order(order_id)
        items = await self.store.get_b2b_items(order.id)
        if not await self.store.transition_b2b(
            order.id, ("tickets_generated",), "tickets_sent",
            note=f"{len(items)} tickets sent to {order.contact_email}",
            changed_by=changed_by, tickets_sent_at=now_ts(),
        ):
            raise ValidationError("Tickets must be generated first",
                                  "INVALID_STATUS")
        sent = await best_effort(
            self.notifier.send_b2b_tickets(order, len(items)),
            "b2b tickets email", order=order.order_number,
        )
        if not sent:
            logger.error("b2b tickets email not delivered",
                         order=order.order_number)
        return len(items)

    async def complete(
        self, order_id: str, changed_by: Optional[str] = None
    ) -> None:
        await self.require_order(order_id)
        if not await self.store.transition_b2b(
            order_id, ("tickets_sent",), "completed",
            note="Order completed", changed_by=changed_by,
        ):
            raise ValidationError("Tickets must be sent first",
                                  "INVALID_STATUS")

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_order(self, order_id: str) -> Optional[B2BOrder]:
        return await self.store.get_b2b_order(order_id)

    async def get_order_by_number(self, number: str) -> Optional[B2BOrder]:
        return await self.store.get_b2b_order_by_number(number)

    async def get_order_detail(
        self, order_id: str
    ) -> Tuple[B2BOrder, List[B2BOrderItem], List[B2BOrderHistory]]:
        order = await self.require_order(order_id)
        items = await self.store.get_b2b_items(order_id)
        history = await self.store.get_b2b_history(order_id)
        return order, items, history

    async def list_orders(self, **filters) -> Tuple[List[B2BOrder], int]:
        return await self.store.list_b2b_orders(**filters)
