from __future__ import annotations
from contextlib import asynccontextmanager
from typing import (
    AsyncContextManager, AsyncIterator, Callable, Dict, Iterable, List,
    Optional, Sequence, Tuple,
)
import uuid

from sqlalchemy import select, update, delete, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from ..helpers import now_ts
from .db import (
    Ticket,
    TicketOption,
    Order,
    OrderItem,
    PromoCode,
    B2BOrder,
    B2BOrderItem,
    B2BOrderHistory,
    PaymentLink,
    FulfillmentTask,
)

Gated = Callable[[], AsyncContextManager[None]]

RETAIL = "retail"
B2B = "b2b"

RETAIL_CONFIRMATION = "retail_confirmation"


class OrderNumberTaken(Exception):
    """The freshly generated order number collided with an existing one."""


class _LostRace(Exception):
    # raised inside a transaction to roll it back
    pass


class Store:
    """All reads and writes of the order/payment tables.

    Every public method runs in its own transaction behind the engine gate,
    so methods must never call each other while holding it. State changes
    are conditional updates (``WHERE status IN ...``) that report whether a
    row actually moved; that is what makes replays and races harmless.
    """

    def __init__(self, *, sessions: async_sessionmaker, gated: Gated) -> None:
        self.sessions = sessions
        self.gated = gated

    @asynccontextmanager
    async def _tx(self) -> AsyncIterator[AsyncSession]:
        async with self.gated():
            async with self.sessions() as db:
                async with db.begin():
                    yield db

    async def add_all(self, objs: Iterable) -> None:
        async with self._tx() as db:
            db.add_all(list(objs))

    # ------------------------------------------------------------------
    # catalog
    # ------------------------------------------------------------------
    async def get_tickets(self, ids: Iterable[str]) -> Dict[str, Ticket]:
        ids = list(set(ids))
        if not ids:
            return {}
        async with self._tx() as db:
            rows = (await db.execute(
                select(Ticket).where(Ticket.id.in_(ids))
            )).scalars().all()
        return {t.id: t for t in rows}

    async def get_options(self, ids: Iterable[str]) -> Dict[str, TicketOption]:
        ids = list(set(ids))
        if not ids:
            return {}
        async with self._tx() as db:
            rows = (await db.execute(
                select(TicketOption).where(TicketOption.id.in_(ids))
            )).scalars().all()
        return {o.id: o for o in rows}

    # ------------------------------------------------------------------
    # retail orders
    # ------------------------------------------------------------------
    async def insert_order(self, order: Order, items: List[OrderItem]) -> None:
        """Order and items commit together or not at all."""
        try:
            async with self._tx() as db:
                db.add(order)
                await db.flush()
                db.add_all(items)
        except IntegrityError as e:
            if "order_number" in str(e.orig):
                raise OrderNumberTaken(order.order_number) from e
            raise

    async def get_order(self, order_id: str) -> Optional[Order]:
        async with self._tx() as db:
            return await db.get(Order, order_id)

    async def get_order_by_number(self, number: str) -> Optional[Order]:
        async with self._tx() as db:
            return (await db.execute(
                select(Order).where(Order.order_number == number)
            )).scalars().first()

    async def get_order_items(self, order_id: str) -> List[OrderItem]:
        async with self._tx() as db:
            rows = (await db.execute(
                select(OrderItem)
                .where(OrderItem.order_id == order_id)
                .order_by(OrderItem.created_at, OrderItem.ticket_code)
            )).scalars().all()
        return list(rows)

    async def transition_order(
        self, order_id: str, from_statuses: Sequence[str], **values
    ) -> bool:
        values.setdefault("updated_at", now_ts())
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.status.in_(list(from_statuses)))
                .values(**values)
            )
        return res.rowcount == 1

    async def pay_order(
        self, order_id: str, from_statuses: Sequence[str], **values
    ) -> Optional[str]:
        """Move an order to paid and write its confirmation outbox row in
        the same transaction. Returns the task id, or None when the order
        was not in ``from_statuses``."""
        values.setdefault("updated_at", now_ts())
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.status.in_(list(from_statuses)))
                .values(status="paid", **values)
            )
            if res.rowcount != 1:
                return None
            task = self._new_task(RETAIL_CONFIRMATION, order_id)
            db.add(task)
        return task.id

    async def cancel_pending_by_email(self, email: str) -> List[str]:
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.customer_email == email)
                .where(Order.status == "pending")
                .values(status="cancelled", updated_at=now_ts())
                .returning(Order.order_number)
            )
            return list(res.scalars().all())

    async def expire_pending_before(self, cutoff: float) -> List[str]:
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.status == "pending")
                .where(Order.created_at < cutoff)
                .values(status="expired", updated_at=now_ts())
                .returning(Order.order_number)
            )
            return list(res.scalars().all())

    async def pending_for_reminder(
        self, stage: int, cutoff: float
    ) -> List[Order]:
        async with self._tx() as db:
            rows = (await db.execute(
                select(Order)
                .where(Order.status == "pending")
                .where(Order.reminder_count == stage)
                .where(Order.created_at < cutoff)
                .order_by(Order.created_at)
            )).scalars().all()
        return list(rows)

    async def advance_reminder(self, order_id: str, stage: int) -> bool:
        ts = now_ts()
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.reminder_count == stage)
                .values(
                    reminder_count=Order.reminder_count + 1,
                    reminder_sent_at=ts,
                    updated_at=ts,
                )
            )
        return res.rowcount == 1

    async def set_item_urls(self, urls: Iterable[Tuple[str, str]]) -> None:
        async with self._tx() as db:
            for item_id, url in urls:
                await db.execute(
                    update(OrderItem)
                    .where(OrderItem.id == item_id)
                    .values(pdf_url=url)
                )

    async def refund_order(
        self, order_id: str, reason: str, refunded_by: Optional[str]
    ) -> bool:
        ts = now_ts()
        async with self._tx() as db:
            res = await db.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.status == "paid")
                .values(
                    status="refunded",
                    payment_status="reversed",
                    refund_reason=reason,
                    refunded_at=ts,
                    refunded_by=refunded_by,
                    updated_at=ts,
                )
            )
            if res.rowcount != 1:
                return False
            await db.execute(
                update(OrderItem)
                .where(OrderItem.order_id == order_id)
                .values(status="refunded")
            )
        return True

    # ------------------------------------------------------------------
    # promo codes
    # ------------------------------------------------------------------
    async def get_active_promo(self, code: str) -> Optional[PromoCode]:
        async with self._tx() as db:
            return (await db.execute(
                select(PromoCode)
                .where(PromoCode.code == code.upper())
                .where(PromoCode.is_active.is_(True))
            )).scalars().first()

    async def has_promo_order(
        self, code: str, email: str, statuses: Sequence[str]
    ) -> bool:
        async with self._tx() as db:
            found = (await db.execute(
                select(Order.id)
                .where(Order.promo_code == code)
                .where(Order.customer_email == email)
                .where(Order.status.in_(list(statuses)))
                .limit(1)
            )).first()
        return found is not None

    async def increment_promo_usage(self, code: str) -> bool:
        async with self._tx() as db:
            res = await db.execute(
                update(PromoCode)
                .where(PromoCode.code == code.upper())
                .values(used_count=PromoCode.used_count + 1)
            )
        return res.rowcount == 1

    # ------------------------------------------------------------------
    # payment links
    # ------------------------------------------------------------------
    async def link_transaction(
        self, kind: str, order_id: str, transaction_id: str
    ) -> bool:
        """Attach a gateway transaction to an order, at most once.

        Returns False when the order already carries a transaction id or
        does not exist. A transaction id that is already linked to any
        order raises IntegrityError.
        """
        model = Order if kind == RETAIL else B2BOrder
        ts = now_ts()
        async with self._tx() as db:
            res = await db.execute(
                update(model)
                .where(model.id == order_id)
                .where(model.maib_transaction_id.is_(None))
                .values(maib_transaction_id=transaction_id, updated_at=ts)
            )
            if res.rowcount != 1:
                return False
            db.add(PaymentLink(
                transaction_id=transaction_id,
                subject_kind=kind,
                order_id=order_id,
                created_at=ts,
            ))
        return True

    async def resolve_transaction(
        self, transaction_id: str
    ) -> Optional[Tuple[str, Order | B2BOrder]]:
        async with self._tx() as db:
            link = await db.get(PaymentLink, transaction_id)
            if link is None:
                return None
            model = Order if link.subject_kind == RETAIL else B2BOrder
            order = await db.get(model, link.order_id)
        if order is None:
            return None
        return link.subject_kind, order

    # ------------------------------------------------------------------
    # B2B orders
    # ------------------------------------------------------------------
    async def insert_b2b_order(
        self, order: B2BOrder, items: List[B2BOrderItem], note: str
    ) -> None:
        try:
            async with self._tx() as db:
                db.add(order)
                await db.flush()
                db.add_all(items)
                db.add(B2BOrderHistory(
                    b2b_order_id=order.id, status=order.status,
                    note=note, created_at=order.created_at,
                ))
        except IntegrityError as e:
            if "order_number" in str(e.orig) or "invoice_number" in str(e.orig):
                raise OrderNumberTaken(order.order_number) from e
            raise

    async def get_b2b_order(self, order_id: str) -> Optional[B2BOrder]:
        async with self._tx() as db:
            return await db.get(B2BOrder, order_id)

    async def get_b2b_order_by_number(self, number: str) -> Optional[B2BOrder]:
        async with self._tx() as db:
            return (await db.execute(
                select(B2BOrder).where(B2BOrder.order_number == number)
            )).scalars().first()

    async def get_b2b_items(self, order_id: str) -> List[B2BOrderItem]:
        async with self._tx() as db:
            rows = (await db.execute(
                select(B2BOrderItem)
                .where(B2BOrderItem.b2b_order_id == order_id)
                .order_by(B2BOrderItem.created_at, B2BOrderItem.id)
            )).scalars().all()
        return list(rows)

    async def get_b2b_history(self, order_id: str) -> List[B2BOrderHistory]:
        async with self._tx() as db:
            rows = (await db.execute(
                select(B2BOrderHistory)
                .where(B2BOrderHistory.b2b_order_id == order_id)
                .order_by(B2BOrderHistory.created_at.desc(),
                          B2BOrderHistory.id.desc())
            )).scalars().all()
        return list(rows)

    async def transition_b2b(
        self,
        order_id: str,
        from_statuses: Sequence[str],
        status: str,
        *,
        note: Optional[str] = None,
        changed_by: Optional[str] = None,
        **values,
    ) -> bool:
        ts = now_ts()
        values.setdefault("updated_at", ts)
        async with self._tx() as db:
            res = await db.execute(
                update(B2BOrder)
                .where(B2BOrder.id == order_id)
                .where(B2BOrder.status.in_(list(from_statuses)))
                .values(status=status, **values)
            )
            if res.rowcount != 1:
                return False
            db.add(B2BOrderHistory(
                b2b_order_id=order_id, status=status,
                changed_by=changed_by, note=note, created_at=ts,
            ))
        return True

    async def update_b2b(self, order_id: str, **values) -> None:
        values.setdefault("updated_at", now_ts())
        async with self._tx() as db:
            await db.execute(
                update(B2BOrder).where(B2BOrder.id == order_id).values(**values)
            )

    async def explode_b2b_items(
        self, order_id: str, tickets: List[B2BOrderItem]
    ) -> bool:
        """Replace the aggregated rows with one row per physical ticket.

        One-way: only runs while the order is ``paid`` and still holds
        aggregated rows.
        """
        try:
            async with self._tx() as db:
                order = await db.get(B2BOrder, order_id)
                if order is None or order.status != "paid":
                    return False
                aggregated = (await db.execute(
                    select(B2BOrderItem.id)
                    .where(B2BOrderItem.b2b_order_id == order_id)
                    .where(B2BOrderItem.ticket_code.is_(None))
                )).scalars().all()
                if not aggregated:
                    return False
                res = await db.execute(
                    delete(B2BOrderItem)
                    .where(B2BOrderItem.id.in_(aggregated))
                )
                if res.rowcount != len(aggregated):
                    raise _LostRace(order_id)
                db.add_all(tickets)
        except _LostRace:
            return False
        return True

    async def set_b2b_item_urls(self, urls: Iterable[Tuple[str, str]]) -> None:
        async with self._tx() as db:
            for item_id, url in urls:
                await db.execute(
                    update(B2BOrderItem)
                    .where(B2BOrderItem.id == item_id)
                    .values(ticket_url=url)
                )

    async def list_b2b_orders(
        self,
        *,
        status: Optional[str] = None,
        payment_method: Optional[str] = None,
        company_name: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> Tuple[List[B2BOrder], int]:
        q = select(B2BOrder)
        if status:
            q = q.where(B2BOrder.status == status)
        if payment_method:
            q = q.where(B2BOrder.payment_method == payment_method)
        if company_name:
            q = q.where(B2BOrder.company_name.ilike(f"%{company_name}%"))
        async with self._tx() as db:
            total = (await db.execute(
                select(func.count()).select_from(q.subquery())
            )).scalar_one()
            rows = (await db.execute(
                q.order_by(B2BOrder.created_at.desc())
                .limit(limit).offset(offset)
            )).scalars().all()
        return list(rows), int(total)

    # ------------------------------------------------------------------
    # fulfillment outbox
    # ------------------------------------------------------------------
    def _new_task(self, kind: str, order_id: str) -> FulfillmentTask:
        return FulfillmentTask(
            id=uuid.uuid4().hex, kind=kind, order_id=order_id,
            status="pending", attempts=0, created_at=now_ts(),
        )

    async def enqueue_task(self, kind: str, order_id: str) -> str:
        task = self._new_task(kind, order_id)
        async with self._tx() as db:
            db.add(task)
        return task.id

    async def claim_task(
        self, task_id: str, lease_cutoff: float
    ) -> Optional[FulfillmentTask]:
        ts = now_ts()
        async with self._tx() as db:
            res = await db.execute(
                update(FulfillmentTask)
                .where(FulfillmentTask.id == task_id)
                .where(
                    (FulfillmentTask.status == "pending")
                    | ((FulfillmentTask.status == "running")
                       & (FulfillmentTask.claimed_at < lease_cutoff))
                )
                .values(status="running", claimed_at=ts, updated_at=ts)
            )
            if res.rowcount != 1:
                return None
            return await db.get(FulfillmentTask, task_id)

    async def finish_task(
        self,
        task_id: str,
        ok: bool,
        error: Optional[str] = None,
        max_attempts: int = 5,
    ) -> str:
        async with self._tx() as db:
            task = await db.get(FulfillmentTask, task_id)
            if task is None:
                return "missing"
            task.attempts += 1
            task.updated_at = now_ts()
            task.claimed_at = None
            if ok:
                task.status = "done"
                task.last_error = None
            else:
                task.last_error = (error or "")[:500]
                task.status = (
                    "failed" if task.attempts >= max_attempts else "pending"
                )
            return task.status

    async def get_task(self, task_id: str) -> Optional[FulfillmentTask]:
        async with self._tx() as db:
            return await db.get(FulfillmentTask, task_id)

    async def redrivable_tasks(self, lease_cutoff: float) -> List[str]:
        async with self._tx() as db:
            rows = (await db.execute(
                select(FulfillmentTask.id)
                .where(
                    (FulfillmentTask.status == "pending")
                    | ((FulfillmentTask.status == "running")
                       & (FulfillmentTask.claimed_at < lease_cutoff))
                )
                .order_by(FulfillmentTask.created_at)
            )).scalars().all()
        return list(rows)
