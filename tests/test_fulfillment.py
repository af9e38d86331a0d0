import pytest
from sqlalchemy.exc import OperationalError

from conftest import cart, customer, pay
from festix.helpers import now_ts


@pytest.fixture
def worker(services):
    return services.fulfillment


async def _tasks(store):
    ids = await store.redrivable_tasks(now_ts() + 1)
    return [await store.get_task(i) for i in ids]


async def test_successful_task_is_done(services, store, worker):
    order = await services.orders.create_order(customer(), cart())
    await pay(services, order)
    assert await _tasks(store) == []
    assert await worker.redrive() == 0


async def test_undelivered_confirmation_is_retried(services, store, worker,
                                                   notifier):
    order = await services.orders.create_order(customer(), cart())
    notifier.ok = False
    await pay(services, order)

    (task,) = await _tasks(store)
    assert task.order_id == order.id
    assert task.status == "pending"
    assert task.attempts == 1
    assert task.last_error == "confirmation not delivered"

    notifier.ok = True
    assert await worker.redrive() == 1
    await worker.drain()
    done = await store.get_task(task.id)
    assert done.status == "done"
    assert done.attempts == 2
    assert done.last_error is None
    # the payment itself was never in question
    assert (await services.orders.get_order(order.id)).status == "paid"


async def test_task_gives_up_after_max_attempts(services, store, worker,
                                                notifier):
    worker.max_attempts = 2
    notifier.ok = False
    order = await services.orders.create_order(customer(), cart())
    await pay(services, order)
    (task,) = await _tasks(store)

    await worker.redrive()
    await worker.drain()
    failed = await store.get_task(task.id)
    assert failed.status == "failed"
    assert failed.attempts == 2
    assert await worker.redrive() == 0


async def test_crashing_task_records_the_error(store, worker):
    await worker.enqueue("no-such-order")
    await worker.drain()
    (task,) = await _tasks(store)
    assert task.attempts == 1
    assert task.last_error.startswith("NotFoundError")


async def test_submit_deduplicates_queued_tasks(store, worker):
    task_id = await store.enqueue_task("retail_confirmation", "no-such-order")
    assert worker.submit(task_id) is not None
    assert worker.submit(task_id) is None
    await worker.drain()
    assert (await store.get_task(task_id)).attempts == 1


async def test_paid_transition_writes_its_task(services, store, worker,
                                              notifier):
    order = await services.orders.create_order(customer(), cart())
    task_id = await services.orders.mark_as_paid(order.id)
    task = await store.get_task(task_id)
    assert task.order_id == order.id
    assert task.kind == "retail_confirmation"
    assert task.status == "pending"
    assert await services.orders.mark_as_paid(order.id) is None

    # a process that died right after the commit still has the row
    assert await worker.redrive() == 1
    await worker.drain()
    assert (await store.get_task(task_id)).status == "done"
    assert len(notifier.of("confirmation")) == 1


async def test_failed_task_insert_keeps_order_payable(services, store, worker,
                                                      gateway, notifier,
                                                      monkeypatch):
    order = await services.orders.create_order(customer(), cart())
    tx = await services.orders.open_transaction(order, "10.0.0.1")
    body = {"result": {"payId": tx["transaction_id"], "status": "OK",
                       "statusCode": "000"}}
    body["signature"] = gateway.sign(body)

    new_task = store._new_task
    calls = []

    def flaky(kind, order_id):
        calls.append(order_id)
        if len(calls) == 1:
            raise OperationalError("INSERT", {}, Exception("db blip"))
        return new_task(kind, order_id)

    monkeypatch.setattr(store, "_new_task", flaky)

    with pytest.raises(OperationalError):
        await services.reconciler.handle_callback(body)
    assert (await services.orders.get_order(order.id)).status == "pending"

    # the gateway retries the callback
    result = await services.reconciler.handle_callback(body)
    assert result["applied"] is True
    await worker.redrive()
    await worker.drain()
    assert (await services.orders.get_order(order.id)).status == "paid"
    assert len(notifier.of("confirmation")) == 1


async def test_expired_lease_is_redriven(services, store, worker):
    order = await services.orders.create_order(customer(), cart())
    task_id = await services.orders.mark_as_paid(order.id)
    # a worker that died mid-task
    assert await store.claim_task(task_id, now_ts()) is not None

    assert await worker.redrive() == 0
    worker.lease_seconds = -5
    assert await worker.redrive() == 1
    await worker.drain()
    assert (await store.get_task(task_id)).status == "done"
