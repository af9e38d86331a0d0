"""In-process periodic jobs: payment reminders, expiry, outbox redrive.

Each job has a single-flight guard; a tick that finds the previous run of
the same job still going is skipped.
"""
from __future__ import annotations
import asyncio
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, List, Optional

import structlog

from . import config
from .collaborators import Notifier
from .fulfillment import FulfillmentWorker
from .orders import OrderManager, best_effort

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class Job:
    name: str
    interval: float  # seconds
    run: Callable[[], Awaitable[int]]


class Scheduler:
    def __init__(
        self,
        *,
        orders: OrderManager,
        notifier: Notifier,
        fulfillment: FulfillmentWorker,
        first_reminder_hours: float = config.FIRST_REMINDER_HOURS,
        second_reminder_hours: float = config.SECOND_REMINDER_HOURS,
        expire_hours: float = config.PENDING_ORDER_EXPIRE_HOURS,
    ) -> None:
        self.orders = orders
        self.notifier = notifier
        self.fulfillment = fulfillment
        self.first_reminder_hours = first_reminder_hours
        self.second_reminder_hours = second_reminder_hours
        self.expire_hours = expire_hours

        self.jobs: Dict[str, Job] = {
            job.name: job for job in (
                Job("first_reminder", 15 * 60, self.send_first_reminders),
                Job("second_reminder", 60 * 60, self.send_second_reminders),
                Job("expire_pending", 60 * 60, self.expire_pending),
                Job("fulfillment_redrive", 5 * 60, self.fulfillment.redrive),
            )
        }
        self._running: Dict[str, asyncio.Lock] = {
            name: asyncio.Lock() for name in self.jobs
        }
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # jobs
    # ------------------------------------------------------------------
    async def _send_reminders(self, stage: int, hours_old: float) -> int:
        send = (self.notifier.send_first_reminder if stage == 0
                else self.notifier.send_second_reminder)
        due = await self.orders.pending_for_reminder(stage, hours_old)
        sent = 0
        for order in due:
            ok = await best_effort(send(order), "reminder",
                                   order=order.order_number, stage=stage)
            if not ok:
                # counter untouched, next tick retries
                logger.warning("reminder not delivered",
                               order=order.order_number, stage=stage)
                continue
            if await self.orders.record_reminder_sent(order.id, stage):
                sent += 1
        return sent

    async def send_first_reminders(self) -> int:
        return await self._send_reminders(0, self.first_reminder_hours)

    async def send_second_reminders(self) -> int:
        return await self._send_reminders(1, self.second_reminder_hours)

    async def expire_pending(self) -> int:
        return await self.orders.expire_old_pending_orders(self.expire_hours)

    # ------------------------------------------------------------------
    # running
    # ------------------------------------------------------------------
    async def run_once(self, name: str) -> Optional[int]:
        """Run one job now. None when a previous run is still in flight."""
        if name not in self.jobs:
            raise ValueError(f"unknown job: {name}")
        lock = self._running[name]
        if lock.locked():
            logger.warning("job still running, tick skipped", job=name)
            return None
        async with lock:
            count = await self.jobs[name].run()
        logger.info("job finished", job=name, count=count)
        return count

    async def _loop(self, job: Job) -> None:
        while True:
            await asyncio.sleep(job.interval)
            try:
                await self.run_once(job.name)
            except Exception:
                logger.error("job failed", job=job.name, exc_info=True)

    def start(self) -> None:
        if self._tasks:
            return
        for job in self.jobs.values():
            self._tasks.append(asyncio.create_task(self._loop(job)))
        logger.info("scheduler started", jobs=sorted(self.jobs))

    async def stop(self) -> None:
        for t in self._tasks:
            t.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("scheduler stopped")
