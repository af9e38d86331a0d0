from __future__ import annotations
import uuid
from dataclasses import dataclass
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, List, Optional, Sequence, Tuple

import structlog
from sqlalchemy.exc import SQLAlchemyError

from . import config
from .collaborators import ArtifactGenerator, Notifier
from .errors import (
    FestixError, GatewayError, NotFoundError, PersistenceError, ValidationError,
)
from .gateway import PaymentGateway, TransactionResult
from .helpers import (
    hours_ago, normalize_email, now_ts, order_number, qr_payload, ticket_code,
    to_money,
)
from .model.db import Order, OrderItem
from .model.store import OrderNumberTaken, RETAIL, Store
from .promo import PromoValidator

logger = structlog.get_logger(__name__)

ORDER_PREFIX = "FL"
INVITATION_PREFIX = "INV"
ORDER_NUMBER_ATTEMPTS = 3

# a captured payment wins over anything short of paid/refunded
PAYABLE_STATUSES = ("pending", "failed", "expired", "cancelled")


@dataclass(frozen=True)
class CartLine:
    ticket_id: str
    quantity: int
    option_id: Optional[str] = None


@dataclass(frozen=True)
class CustomerInfo:
    first_name: str
    last_name: str
    email: str
    phone: str = ""

    @property
    def name(self) -> str:
        return f"{self.first_name} {self.last_name}".strip()


async def price_lines(
    store: Store, lines: Sequence[CartLine]
) -> List[Tuple[CartLine, Decimal]]:
    """Current unit price (ticket price + option modifier) per cart line."""
    if not lines:
        raise ValidationError("At least one ticket is required", "EMPTY_CART")
    tickets = await store.get_tickets(line.ticket_id for line in lines)
    options = await store.get_options(
        line.option_id for line in lines if line.option_id
    )
    priced = []
    for line in lines:
        if line.quantity < 1:
            raise ValidationError(
                f"Invalid quantity for ticket {line.ticket_id}",
                "INVALID_QUANTITY",
            )
        ticket = tickets.get(line.ticket_id)
        if ticket is None or not ticket.is_active:
            raise ValidationError(
                f"Ticket not found: {line.ticket_id}", "TICKET_NOT_FOUND"
            )
        unit_price = to_money(ticket.price)
        if line.option_id:
            option = options.get(line.option_id)
            if option is None or option.ticket_id != ticket.id:
                raise ValidationError(
                    f"Ticket option not found: {line.option_id}",
                    "OPTION_NOT_FOUND",
                )
            unit_price += to_money(option.price_modifier or 0)
        priced.append((line, unit_price))
    return priced


async def persist_with_fresh_number(
    build: Callable[[], Tuple[object, list]],
    insert: Callable[[object, list], Awaitable[None]],
    what: str,
):
    """Insert a freshly numbered order; on a number collision build a new
    one and try again."""
    for attempt in range(1, ORDER_NUMBER_ATTEMPTS + 1):
        order, items = build()
        try:
            await insert(order, items)
            return order
        except OrderNumberTaken:
            logger.warning("order number collision", what=what,
                           order_number=order.order_number, attempt=attempt)
        except SQLAlchemyError as e:
            logger.error("order insert failed", what=what, exc_info=True)
            raise PersistenceError(f"Failed to create {what}") from e
    raise PersistenceError(f"Could not allocate a unique {what} number")


async def best_effort(coro: Awaitable, what: str, **ctx):
    """Await a side effect whose failure must not undo the caller's state
    change. Returns None when it raised."""
    try:
        return await coro
    except Exception:
        logger.error(f"{what} failed", exc_info=True, **ctx)
        return None


class OrderManager:
    """Retail order state machine.

    pending -> paid | failed | expired | cancelled; paid -> refunded by an
    admin only. Transitions are conditional, so each reports whether it
    actually happened and repeats are harmless.
    """

    def __init__(
        self,
        *,
        store: Store,
        promos: PromoValidator,
        gateway: PaymentGateway,
        artifacts: ArtifactGenerator,
        notifier: Notifier,
    ) -> None:
        self.store = store
        self.promos = promos
        self.gateway = gateway
        self.artifacts = artifacts
        self.notifier = notifier

    # ------------------------------------------------------------------
    # creation
    # ------------------------------------------------------------------
    async def create_order(
        self,
        customer: CustomerInfo,
        items: Sequence[CartLine],
        promo_code: Optional[str] = None,
        language: str = "ro",
        client_ip: Optional[str] = None,
    ) -> Order:
        priced = await price_lines(self.store, items)
        email = normalize_email(customer.email)

        # at most one live pending order per customer
        cancelled = await self.store.cancel_pending_by_email(email)
        if cancelled:
            logger.info("cancelled previous pending orders", email=email,
                        orders=cancelled)

        total = sum((price * line.quantity for line, price in priced),
                    Decimal("0.00"))

        discount = Decimal("0.00")
        applied_code = None
        if promo_code and promo_code.strip():
            result = await self.promos.validate(
                promo_code,
                total,
                email=email,
                ticket_ids=sorted({line.ticket_id for line, _ in priced}),
            )
            if result.valid:
                discount = result.discount_amount
                applied_code = result.code
            else:
                logger.warning("promo code rejected at checkout",
                               code=promo_code, reason=result.error_code)

        def build():
            ts = now_ts()
            order = Order(
                id=uuid.uuid4().hex,
                order_number=order_number(ORDER_PREFIX, ts),
                status="pending",
                payment_status="pending",
                customer_email=email,
                customer_name=customer.name,
                customer_phone=customer.phone or "",
                total_amount=to_money(total),
                discount_amount=to_money(discount),
                promo_code=applied_code,
                language=language,
                client_ip=client_ip,
                reminder_count=0,
                is_invitation=False,
                created_at=ts,
                updated_at=ts,
            )
            rows = []
            for line, price in priced:
                for _ in range(line.quantity):
                    code = ticket_code()
                    rows.append(OrderItem(
                        id=uuid.uuid4().hex,
                        order_id=order.id,
                        ticket_id=line.ticket_id,
                        ticket_option_id=line.option_id,
                        quantity=1,
                        unit_price=price,
                        ticket_code=code,
                        qr_data=qr_payload(code),
                        status="valid",
                        is_invitation=False,
                        created_at=ts,
                    ))
            return order, rows

        order = await persist_with_fresh_number(
            build, self.store.insert_order, "order"
        )

        if applied_code:
            await self.promos.increment_usage(applied_code)

        logger.info("order created", order=order.order_number,
                    total=str(order.total_amount),
                    discount=str(order.discount_amount))
        return order

    async def create_invitation(
        self,
        customer: CustomerInfo,
        items: Sequence[CartLine],
        language: str = "ro",
        note: Optional[str] = None,
    ) -> Order:
        """Free tickets: no gateway, paid on creation, then rendered and
        mailed on a best-effort basis."""
        priced = await price_lines(self.store, items)
        email = normalize_email(customer.email)

        def build():
            ts = now_ts()
            order = Order(
                id=uuid.uuid4().hex,
                order_number=order_number(INVITATION_PREFIX, ts),
                status="paid",
                payment_status="ok",
                customer_email=email,
                customer_name=customer.name,
                customer_phone=customer.phone or "",
                total_amount=Decimal("0.00"),
                discount_amount=Decimal("0.00"),
                promo_code=note or None,
                language=language,
                is_invitation=True,
                reminder_count=0,
                created_at=ts,
                updated_at=ts,
                paid_at=ts,
            )
            rows = []
            for line, _ in priced:
                for _ in range(line.quantity):
                    code = ticket_code()
                    rows.append(OrderItem(
                        id=uuid.uuid4().hex,
                        order_id=order.id,
                        ticket_id=line.ticket_id,
                        ticket_option_id=line.option_id,
                        quantity=1,
                        unit_price=Decimal("0.00"),
                        ticket_code=code,
                        qr_data=qr_payload(code, inv=True),
                        status="valid",
                        is_invitation=True,
                        created_at=ts,
                    ))
            return order, rows

        order = await persist_with_fresh_number(
            build, self.store.insert_order, "invitation"
        )
        logger.info("invitation created", order=order.order_number,
                    email=email)

        order_items = await self.store.get_order_items(order.id)
        urls = await self._ensure_artifacts(order, order_items)
        await best_effort(
            self.notifier.send_invitation_email(order, order_items, urls),
            "invitation email", order=order.order_number,
        )
        return order

    # ------------------------------------------------------------------
    # gateway linkage
    # ------------------------------------------------------------------
    async def open_transaction(
        self, order: Order, client_ip: str
    ) -> TransactionResult:
        """Ask the gateway for a payment page. A GatewayError leaves the
        order pending without a transaction id; retry with a new one."""
        if order.status != "pending":
            raise ValidationError("Only pending orders can be paid",
                                  "ORDER_NOT_PENDING")
        if order.maib_transaction_id:
            raise ValidationError("Order already has a payment transaction",
                                  "TRANSACTION_EXISTS")
        amount = to_money(order.total_amount) - to_money(order.discount_amount)
        tx = await self.gateway.create_transaction(
            amount=amount,
            currency=config.CURRENCY,
            client_ip=client_ip or "127.0.0.1",
            order_ref=order.id,
            customer={
                "name": order.customer_name,
                "email": order.customer_email,
                "phone": order.customer_phone,
            },
            return_urls={
                "ok": f"{config.API_URL}/api/maib/return/ok",
                "fail": f"{config.API_URL}/api/maib/return/fail",
            },
            callback_url=f"{config.API_URL}/api/maib/callback",
            description=f"Order #{order.order_number}",
            language=order.language,
        )
        await self.link_transaction(order.id, tx["transaction_id"])
        return tx

    async def link_transaction(self, order_id: str, transaction_id: str) -> None:
        try:
            linked = await self.store.link_transaction(
                RETAIL, order_id, transaction_id
            )
        except SQLAlchemyError as e:
            raise PersistenceError("Failed to link payment transaction") from e
        if not linked:
            raise ValidationError("Order already has a payment transaction",
                                  "TRANSACTION_EXISTS")
        logger.info("transaction linked", order_id=order_id,
                    transaction_id=transaction_id)

    # ------------------------------------------------------------------
    # transitions
    # ------------------------------------------------------------------
    async def mark_as_paid(self, order_id: str) -> Optional[str]:
        """Returns the id of the confirmation task written with the paid
        transition, or None when the order was not payable."""
        task_id = await self.store.pay_order(
            order_id, PAYABLE_STATUSES,
            payment_status="ok", paid_at=now_ts(), failure_reason=None,
        )
        if task_id:
            logger.info("order paid", order_id=order_id, task_id=task_id)
        return task_id

    async def mark_as_failed(self, order_id: str, reason: str) -> bool:
        changed = await self.store.transition_order(
            order_id, ("pending",),
            status="failed", payment_status="failed", failure_reason=reason,
        )
        if changed:
            logger.info("order failed", order_id=order_id, reason=reason)
        return changed

    async def mark_as_cancelled(self, order_id: str, reason: str) -> bool:
        changed = await self.store.transition_order(
            order_id, ("pending",),
            status="cancelled", payment_status="failed",
            failure_reason=reason,
        )
        if changed:
            logger.info("order cancelled", order_id=order_id, reason=reason)
        return changed

    async def cancel_pending_orders_by_email(self, email: str) -> int:
        numbers = await self.store.cancel_pending_by_email(
            normalize_email(email)
        )
        return len(numbers)

    async def expire_old_pending_orders(self, hours_old: float) -> int:
        numbers = await self.store.expire_pending_before(hours_ago(hours_old))
        if numbers:
            logger.info("expired old pending orders", count=len(numbers),
                        orders=numbers)
        return len(numbers)

    async def pending_for_reminder(
        self, stage: int, hours_old: float
    ) -> List[Order]:
        return await self.store.pending_for_reminder(
            stage, hours_ago(hours_old)
        )

    async def record_reminder_sent(self, order_id: str, stage: int) -> bool:
        return await self.store.advance_reminder(order_id, stage)

    # ------------------------------------------------------------------
    # post-payment
    # ------------------------------------------------------------------
    async def _ensure_artifacts(
        self, order: Order, items: Sequence[OrderItem]
    ) -> List[str]:
        """URLs for all items, rendering only the ones that have none yet."""
        missing = [i for i in items if not i.pdf_url]
        fresh = {}
        if missing:
            urls = await best_effort(
                self.artifacts.generate(order, missing),
                "ticket generation", order=order.order_number,
            ) or [""] * len(missing)
            fresh = {i.id: u for i, u in zip(missing, urls) if u}
            if fresh:
                await self.store.set_item_urls(fresh.items())
            if len(fresh) < len(missing):
                logger.error("some tickets were not generated",
                             order=order.order_number,
                             missing=len(missing) - len(fresh))
        return [i.pdf_url or fresh.get(i.id, "") for i in items]

    async def process_successful_order(self, order_id: str) -> bool:
        """Render tickets and send the confirmation for a paid order.

        Returns True once the obligation is discharged: the confirmation
        went out, or the order is no longer paid. Ticket rendering failures
        are logged and left to a resend; they do not undo the payment.
        """
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status != "paid":
            logger.warning("skipping fulfillment of non-paid order",
                           order=order.order_number, status=order.status)
            return True
        items = await self.store.get_order_items(order_id)
        if not items:
            logger.error("paid order has no items", order=order.order_number)
            return True

        urls = await self._ensure_artifacts(order, items)
        sent = await best_effort(
            self.notifier.send_order_confirmation(order, items, urls),
            "order confirmation", order=order.order_number,
        )
        if sent:
            logger.info("order processed", order=order.order_number)
        else:
            logger.error("order confirmation not delivered",
                         order=order.order_number)
        return bool(sent)

    async def resend_tickets(self, order_id: str) -> Order:
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status != "paid":
            raise ValidationError("Can only resend tickets for paid orders",
                                  "ORDER_NOT_PAID")
        items = await self.store.get_order_items(order_id)
        if not items:
            raise NotFoundError("Order items not found")

        urls = await self._ensure_artifacts(order, items)
        missing = sum(1 for u in urls if not u)
        if missing:
            raise ValidationError(f"{missing} ticket PDFs are not ready yet",
                                  "TICKETS_NOT_READY")

        send = (self.notifier.send_invitation_email if order.is_invitation
                else self.notifier.send_order_confirmation)
        if not await best_effort(send(order, items, urls), "ticket resend",
                                 order=order.order_number):
            raise FestixError("Failed to send email", "EMAIL_FAILED")
        logger.info("tickets resent", order=order.order_number)
        return order

    async def refund(
        self, order_id: str, reason: str, refunded_by: Optional[str] = None
    ) -> Order:
        if not reason or not reason.strip():
            raise ValidationError("Refund reason is required",
                                  "REASON_REQUIRED")
        order = await self.store.get_order(order_id)
        if order is None:
            raise NotFoundError("Order not found")
        if order.status != "paid":
            raise ValidationError("Can only refund paid orders",
                                  "ORDER_NOT_PAID")

        if order.maib_transaction_id and not order.is_invitation:
            result = await self.gateway.refund(order.maib_transaction_id)
            if not result["success"]:
                raise GatewayError(
                    f"Refund declined by gateway: {result['status']}"
                )

        if not await self.store.refund_order(order_id, reason.strip(),
                                             refunded_by):
            raise ValidationError("Can only refund paid orders",
                                  "ORDER_NOT_PAID")
        logger.info("order refunded", order=order.order_number,
                    by=refunded_by or "admin")
        return await self.store.get_order(order_id)

    # ------------------------------------------------------------------
    # reads
    # ------------------------------------------------------------------
    async def get_order(self, order_id: str) -> Optional[Order]:
        return await self.store.get_order(order_id)

    async def get_order_by_number(self, number: str) -> Optional[Order]:
        return await self.store.get_order_by_number(number)

    async def get_order_tickets(self, number: str) -> Optional[dict]:
        order = await self.store.get_order_by_number(number)
        if order is None:
            return None
        items = await self.store.get_order_items(order.id)
        return await tickets_view(self.store, order, items, "pdf_url")


async def tickets_view(store: Store, order, items: Iterable,
                       url_attr: str) -> dict:
    items = list(items)
    tickets = await store.get_tickets(i.ticket_id for i in items)
    options = await store.get_options(
        i.ticket_option_id for i in items if i.ticket_option_id
    )
    out = []
    for item in items:
        ticket = tickets.get(item.ticket_id)
        option = options.get(item.ticket_option_id or "")
        out.append({
            "ticketCode": item.ticket_code or "",
            "ticketName": (ticket.name_ro if ticket else "") or "Ticket",
            "optionName": option.name_ro if option else None,
            "pdfUrl": getattr(item, url_attr),
        })
    return {
        "orderNumber": order.order_number,
        "status": order.status,
        "tickets": out,
    }
