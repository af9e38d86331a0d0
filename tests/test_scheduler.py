import asyncio

import pytest

from conftest import backdate, cart, customer


@pytest.fixture
def scheduler(services):
    return services.scheduler


async def _order(services, email="ana@example.com", hours=None):
    order = await services.orders.create_order(customer(email), cart())
    if hours is not None:
        await backdate(services.store, order.id, hours)
    return order


async def test_first_reminder_goes_to_stale_pending_orders(services,
                                                           scheduler,
                                                           notifier):
    stale = await _order(services, "stale@example.com", hours=2)
    await _order(services, "fresh@example.com")

    assert await scheduler.run_once("first_reminder") == 1
    assert [s[1] for s in notifier.of("first_reminder")] == \
        [stale.order_number]
    fresh = await services.orders.get_order(stale.id)
    assert fresh.reminder_count == 1
    assert fresh.reminder_sent_at is not None

    assert await scheduler.run_once("first_reminder") == 0
    assert len(notifier.of("first_reminder")) == 1


async def test_reminder_counter_moves_only_on_delivery(services, scheduler,
                                                       notifier):
    order = await _order(services, hours=2)
    notifier.ok = False
    assert await scheduler.run_once("first_reminder") == 0
    assert (await services.orders.get_order(order.id)).reminder_count == 0

    notifier.ok = True
    assert await scheduler.run_once("first_reminder") == 1
    assert (await services.orders.get_order(order.id)).reminder_count == 1


async def test_second_reminder_follows_the_first(services, scheduler,
                                                 notifier):
    order = await _order(services, hours=25)
    # the second stage only looks at orders that already got the first
    assert await scheduler.run_once("second_reminder") == 0

    assert await scheduler.run_once("first_reminder") == 1
    assert await scheduler.run_once("second_reminder") == 1
    assert await scheduler.run_once("second_reminder") == 0
    assert (await services.orders.get_order(order.id)).reminder_count == 2
    assert [s[0] for s in notifier.sent] == [
        "first_reminder", "second_reminder",
    ]


async def test_paid_orders_are_not_reminded(services, scheduler, notifier):
    order = await _order(services, hours=2)
    await services.orders.mark_as_paid(order.id)
    await services.fulfillment.drain()
    assert await scheduler.run_once("first_reminder") == 0
    assert notifier.of("first_reminder") == []


async def test_expire_pending(services, scheduler):
    old = await _order(services, "old@example.com", hours=73)
    young = await _order(services, "young@example.com", hours=10)
    assert await scheduler.run_once("expire_pending") == 1
    assert (await services.orders.get_order(old.id)).status == "expired"
    assert (await services.orders.get_order(young.id)).status == "pending"


async def test_unknown_job(scheduler):
    with pytest.raises(ValueError):
        await scheduler.run_once("nightly_backup")


async def test_overlapping_run_is_skipped(services, scheduler):
    await _order(services, hours=73)
    async with scheduler._running["expire_pending"]:
        assert await scheduler.run_once("expire_pending") is None
    assert await scheduler.run_once("expire_pending") == 1


async def test_start_and_stop(scheduler):
    scheduler.start()
    scheduler.start()
    assert len(scheduler._tasks) == len(scheduler.jobs)
    await asyncio.sleep(0)
    await scheduler.stop()
    assert scheduler._tasks == []
