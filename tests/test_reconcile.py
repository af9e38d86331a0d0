import pytest
from sqlalchemy.exc import OperationalError

from conftest import GENERAL, cart, customer, pay
from festix.b2b import Company, Contact
from festix.errors import NotFoundError, SignatureError, ValidationError
from festix.orders import CartLine
from festix.reconcile import failed_url, map_status, success_url


@pytest.fixture
def reconciler(services):
    return services.reconciler


async def _pending(services, email="ana@example.com"):
    order = await services.orders.create_order(customer(email), cart())
    tx = await services.orders.open_transaction(order, "10.0.0.1")
    return order, tx["transaction_id"]


def _callback(gateway, tid, status="OK", code="000", signed=True):
    body = {"result": {
        "payId": tid,
        "status": status,
        "statusCode": code,
        "amount": 500,
        "currency": "MDL",
    }}
    if signed:
        body["signature"] = gateway.sign(body)
    return body


@pytest.mark.parametrize("status,outcome", [
    ("OK", "success"),
    ("completed", "success"),
    (" Approved ", "success"),
    ("DECLINED", "failure"),
    ("ERROR", "failure"),
    ("CANCELED", "cancelled"),
    ("PENDING", None),
    ("", None),
    (None, None),
])
def test_map_status(status, outcome):
    assert map_status(status) == outcome


def test_redirect_urls():
    assert success_url("FL2507-AAAAAA").endswith(
        "/checkout/success?order=FL2507-AAAAAA")
    assert failed_url(None, "ORDER_NOT_FOUND").endswith(
        "/checkout/failed?reason=ORDER_NOT_FOUND")


async def test_signed_callback_marks_paid_and_fulfils(services, reconciler,
                                                      gateway, notifier):
    order, tid = await _pending(services)
    result = await reconciler.handle_callback(_callback(gateway, tid))
    assert result["success"] is True
    assert result["applied"] is True
    assert result["orderNumber"] == order.order_number
    await services.fulfillment.drain()

    paid = await services.orders.get_order(order.id)
    assert paid.status == "paid"
    assert paid.payment_status == "ok"
    assert len(notifier.of("confirmation")) == 1


async def test_replayed_callback_is_a_no_op(services, reconciler, gateway,
                                            notifier):
    order, tid = await _pending(services)
    body = _callback(gateway, tid)
    await reconciler.handle_callback(body)
    await services.fulfillment.drain()

    again = await reconciler.handle_callback(body)
    await services.fulfillment.drain()
    assert again["success"] is True
    assert again["applied"] is False
    assert len(notifier.of("confirmation")) == 1


async def test_signature_in_header_is_accepted(services, reconciler, gateway):
    order, tid = await _pending(services)
    body = _callback(gateway, tid, signed=False)
    await reconciler.handle_callback(body, gateway.sign(body))
    assert (await services.orders.get_order(order.id)).status == "paid"


@pytest.mark.parametrize("signature,message", [
    (None, "No signature provided"),
    ("bm90IGEgc2lnbmF0dXJl", "Invalid signature"),
])
async def test_bad_signature_changes_nothing(services, reconciler, gateway,
                                             notifier, signature, message):
    order, tid = await _pending(services)
    body = _callback(gateway, tid, signed=False)
    if signature:
        body["signature"] = signature
    with pytest.raises(SignatureError, match=message):
        await reconciler.handle_callback(body)
    await services.fulfillment.drain()
    assert (await services.orders.get_order(order.id)).status == "pending"
    assert notifier.sent == []


async def test_tampered_body_is_rejected(services, reconciler, gateway):
    order, tid = await _pending(services)
    body = _callback(gateway, tid, status="FAILED", code="51")
    body["result"]["status"] = "OK"
    with pytest.raises(SignatureError):
        await reconciler.handle_callback(body)
    assert (await services.orders.get_order(order.id)).status == "pending"


async def test_callback_without_transaction_id(reconciler, gateway):
    body = {"result": {"status": "OK"}}
    body["signature"] = gateway.sign(body)
    with pytest.raises(ValidationError) as e:
        await reconciler.handle_callback(body)
    assert e.value.code == "MISSING_TRANSACTION_ID"


async def test_callback_for_unknown_transaction(reconciler, gateway):
    with pytest.raises(NotFoundError):
        await reconciler.handle_callback(_callback(gateway, "MOCK_unknown"))


async def test_unknown_status_is_acknowledged(services, reconciler, gateway):
    order, tid = await _pending(services)
    result = await reconciler.handle_callback(
        _callback(gateway, tid, status="HOLD"))
    assert result["success"] is True
    assert result["applied"] is False
    assert (await services.orders.get_order(order.id)).status == "pending"


async def test_failed_and_cancelled_callbacks(services, reconciler, gateway):
    failed, tid = await _pending(services, "a@example.com")
    await reconciler.handle_callback(
        _callback(gateway, tid, status="DECLINED", code="51"))
    fresh = await services.orders.get_order(failed.id)
    assert fresh.status == "failed"
    assert fresh.failure_reason == "51"

    cancelled, tid2 = await _pending(services, "b@example.com")
    await reconciler.handle_callback(
        _callback(gateway, tid2, status="CANCELLED", code=""))
    fresh = await services.orders.get_order(cancelled.id)
    assert fresh.status == "cancelled"
    assert fresh.failure_reason == "CANCELLED"

    # a success that arrives after the failure still counts
    await reconciler.handle_callback(_callback(gateway, tid))
    assert (await services.orders.get_order(failed.id)).status == "paid"


async def test_b2b_payment_generates_tickets(services, reconciler, store,
                                             notifier):
    order = await services.b2b.create_order(
        Company(name="Acme SRL"), Contact(name="Ion", email="ion@acme.md"),
        [CartLine(GENERAL, 50)],
    )
    tx = await services.b2b.open_transaction(order, "10.0.0.1")
    result = await reconciler.handle_mock_payment(tx["transaction_id"], "ok")
    assert result["redirectUrl"] == success_url(order.order_number)

    fresh = await services.b2b.get_order(order.id)
    assert fresh.status == "tickets_generated"
    assert fresh.payment_status == "ok"
    items = await store.get_b2b_items(order.id)
    assert len(items) == 50
    assert all(i.ticket_url for i in items)
    # b2b tickets go out on an admin action, not on payment
    assert notifier.of("b2b_tickets") == []


async def test_b2b_failed_payment(services, reconciler):
    order = await services.b2b.create_order(
        Company(name="Acme SRL"), Contact(name="Ion", email="ion@acme.md"),
        [CartLine(GENERAL, 50)],
    )
    tx = await services.b2b.open_transaction(order, "10.0.0.1")
    result = await reconciler.handle_mock_payment(tx["transaction_id"],
                                                  "FAILED")
    assert result["redirectUrl"] == failed_url(order.order_number,
                                               "MOCK_FAILED")
    assert (await services.b2b.get_order(order.id)).status == "payment_failed"


# ----------------------------
# browser return
# ----------------------------
async def test_return_fail_marks_failed(services, reconciler):
    order, tid = await _pending(services)
    url = await reconciler.handle_return(transaction_id=tid, outcome="fail")
    assert url == failed_url(order.order_number, "PAYMENT_FAILED")
    fresh = await services.orders.get_order(order.id)
    assert fresh.status == "failed"
    assert fresh.failure_reason == "USER_CANCELLED"


async def test_return_fail_with_status_code(services, reconciler):
    order, _ = await _pending(services)
    url = await reconciler.handle_return(order_id=order.id, outcome="fail",
                                         status_code="116")
    assert url == failed_url(order.order_number, "116")
    assert (await services.orders.get_order(order.id)).failure_reason == "116"


async def test_return_ok_confirms_with_gateway(services, reconciler, gateway,
                                               notifier):
    order, tid = await _pending(services)
    # the callback has not arrived yet, but the gateway captured the payment
    gateway.set_status(tid, "OK")
    url = await reconciler.handle_return(transaction_id=tid, outcome="ok")
    await services.fulfillment.drain()
    assert url == success_url(order.order_number)
    assert (await services.orders.get_order(order.id)).status == "paid"
    assert len(notifier.of("confirmation")) == 1

    # the late callback is harmless
    await reconciler.handle_callback(_callback(gateway, tid))
    await services.fulfillment.drain()
    assert len(notifier.of("confirmation")) == 1


async def test_return_ok_while_pending_changes_nothing(services, reconciler):
    order, tid = await _pending(services)
    url = await reconciler.handle_return(transaction_id=tid, outcome="ok")
    assert url == success_url(order.order_number)
    assert (await services.orders.get_order(order.id)).status == "pending"


async def test_return_ok_reports_gateway_failure(services, reconciler,
                                                 gateway):
    order, tid = await _pending(services)
    gateway.set_status(tid, "FAILED")
    url = await reconciler.handle_return(transaction_id=tid, outcome="ok")
    assert url == failed_url(order.order_number, "FAILED")
    assert (await services.orders.get_order(order.id)).status == "failed"


async def test_return_ok_survives_gateway_outage(services, reconciler,
                                                 gateway):
    order, tid = await _pending(services)
    gateway.configure(False)
    url = await reconciler.handle_return(transaction_id=tid, outcome="ok")
    assert url == success_url(order.order_number)
    assert (await services.orders.get_order(order.id)).status == "pending"


async def test_return_for_unknown_order(reconciler):
    url = await reconciler.handle_return(transaction_id="MOCK_nope",
                                         outcome="ok")
    assert url == failed_url(None, "ORDER_NOT_FOUND")


# ----------------------------
# mock processing + free orders
# ----------------------------
async def test_mock_payment_validation(services, reconciler, gateway):
    order, tid = await _pending(services)
    with pytest.raises(ValidationError) as e:
        await reconciler.handle_mock_payment(tid, "MAYBE")
    assert e.value.code == "INVALID_STATUS"
    with pytest.raises(NotFoundError):
        await reconciler.handle_mock_payment("MOCK_nope", "OK")

    result = await reconciler.handle_mock_payment(tid, "pending")
    assert result["success"] is True
    assert "redirectUrl" not in result
    assert (await services.orders.get_order(order.id)).status == "pending"

    gateway.mock = False
    with pytest.raises(ValidationError) as e:
        await reconciler.handle_mock_payment(tid, "OK")
    assert e.value.code == "MOCK_DISABLED"


async def test_mock_failure_redirects_to_failed_page(services):
    order = await services.orders.create_order(customer(), cart())
    await pay(services, order, "FAILED")
    fresh = await services.orders.get_order(order.id)
    assert fresh.status == "failed"
    assert fresh.failure_reason == "MOCK_FAILED"


async def test_free_order_settles_without_gateway(services, reconciler,
                                                  gateway, notifier):
    order = await services.orders.create_order(customer(), cart(),
                                               promo_code="FREEPASS")
    assert order.discount_amount == order.total_amount
    assert await reconciler.settle_free_order(order)
    await services.fulfillment.drain()
    assert (await services.orders.get_order(order.id)).status == "paid"
    assert len(notifier.of("confirmation")) == 1
    assert gateway.calls == []

    paying = await services.orders.create_order(customer("b@example.com"),
                                                cart())
    with pytest.raises(ValidationError) as e:
        await reconciler.settle_free_order(paying)
    assert e.value.code == "PAYMENT_REQUIRED"


async def test_b2b_storage_error_after_payment_is_acknowledged(
        services, reconciler, store, gateway, monkeypatch):
    order = await services.b2b.create_order(
        Company(name="Acme SRL"), Contact(name="Ion", email="ion@acme.md"),
        [CartLine(GENERAL, 50)],
    )
    tx = await services.b2b.open_transaction(order, "10.0.0.1")

    async def broken(*args):
        raise OperationalError("INSERT", {}, Exception("db blip"))

    monkeypatch.setattr(store, "explode_b2b_items", broken)
    result = await reconciler.handle_callback(
        _callback(gateway, tx["transaction_id"]))
    assert result["success"] is True
    assert result["applied"] is True
    assert (await services.b2b.get_order(order.id)).status == "paid"

    monkeypatch.undo()
    assert await services.b2b.generate_tickets(order.id) == 50


async def test_b2b_cancel_callback_records_gateway_code(services, reconciler,
                                                       gateway):
    order = await services.b2b.create_order(
        Company(name="Acme SRL"), Contact(name="Ion", email="ion@acme.md"),
        [CartLine(GENERAL, 50)],
    )
    tx = await services.b2b.open_transaction(order, "10.0.0.1")
    await reconciler.handle_callback(
        _callback(gateway, tx["transaction_id"], status="CANCELLED",
                  code="402"))
    fresh, _, history = await services.b2b.get_order_detail(order.id)
    assert fresh.status == "cancelled"
    assert history[0].note == "Cancelled: 402"
