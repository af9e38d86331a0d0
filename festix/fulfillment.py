"""Post-payment work for retail orders, off the webhook's critical path.

A confirmed payment writes an outbox row (``FulfillmentTask``) in the same
transaction that marks the order paid, then hands it to this worker; the
callback returns without waiting. Rows survive a crash: the scheduler's
redrive job picks up pending rows and running rows whose lease has expired.
"""
from __future__ import annotations
import asyncio
from typing import Optional, Set

import structlog

from .helpers import now_ts
from .model.store import RETAIL_CONFIRMATION, Store
from .orders import OrderManager

logger = structlog.get_logger(__name__)


class FulfillmentWorker:
    def __init__(
        self,
        *,
        store: Store,
        orders: OrderManager,
        concurrency: int = 4,
        max_attempts: int = 5,
        lease_seconds: float = 600,
    ) -> None:
        self.store = store
        self.orders = orders
        self.max_attempts = max_attempts
        self.lease_seconds = lease_seconds
        self._sem = asyncio.Semaphore(max(1, concurrency))
        self._inflight: Set[asyncio.Task] = set()
        self._queued: Set[str] = set()

    def _lease_cutoff(self) -> float:
        return now_ts() - self.lease_seconds

    async def enqueue(self, order_id: str) -> str:
        task_id = await self.store.enqueue_task(RETAIL_CONFIRMATION, order_id)
        self.submit(task_id)
        return task_id

    def submit(self, task_id: str) -> Optional[asyncio.Task]:
        """Schedule a task row; not awaited. None if already queued here."""
        if task_id in self._queued:
            return None
        self._queued.add(task_id)
        t = asyncio.create_task(self._run(task_id))
        self._inflight.add(t)
        t.add_done_callback(self._inflight.discard)
        return t

    async def _run(self, task_id: str) -> Optional[str]:
        try:
            async with self._sem:
                task = await self.store.claim_task(task_id,
                                                   self._lease_cutoff())
                if task is None:
                    return None
                error = None
                try:
                    ok = await self.orders.process_successful_order(
                        task.order_id
                    )
                    if not ok:
                        error = "confirmation not delivered"
                except Exception as e:
                    logger.error("fulfillment task crashed", task_id=task_id,
                                 order_id=task.order_id, exc_info=True)
                    ok, error = False, f"{type(e).__name__}: {e}"

                status = await self.store.finish_task(
                    task_id, ok, error, self.max_attempts
                )
                if status == "failed":
                    logger.error("fulfillment gave up", task_id=task_id,
                                 order_id=task.order_id, error=error)
                elif status == "pending":
                    logger.warning("fulfillment will be retried",
                                   task_id=task_id, order_id=task.order_id,
                                   error=error)
                return status
        finally:
            self._queued.discard(task_id)

    async def redrive(self) -> int:
        ids = await self.store.redrivable_tasks(self._lease_cutoff())
        submitted = sum(1 for task_id in ids if self.submit(task_id))
        if submitted:
            logger.info("fulfillment redrive", submitted=submitted)
        return submitted

    async def drain(self) -> None:
        """Wait for in-flight tasks (shutdown, tests)."""
        while self._inflight:
            await asyncio.gather(*list(self._inflight),
                                 return_exceptions=True)
