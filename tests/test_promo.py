from decimal import Decimal

import pytest

from conftest import GENERAL, VIP, cart, customer


@pytest.fixture
def promos(services):
    return services.promos


async def test_percent_discount_rounds_to_whole_units(promos):
    r = await promos.validate("summer10", Decimal("1234.00"))
    assert r.valid
    assert r.code == "SUMMER10"
    assert r.discount_amount == Decimal("123.00")


async def test_fixed_discount_never_exceeds_total(promos):
    r = await promos.validate("FIXED100", Decimal("60"))
    assert r.valid
    assert r.discount_amount == Decimal("60.00")


@pytest.mark.parametrize("code,error_code", [
    ("NOPE", "INVALID_CODE"),
    ("PAUSED", "INVALID_CODE"),
    ("SOON", "NOT_YET_ACTIVE"),
    ("OLDNEWS", "EXPIRED"),
    ("SOLDOUT", "USAGE_LIMIT"),
    ("BIGSPEND", "MIN_ORDER_AMOUNT"),
])
async def test_rejections(promos, code, error_code):
    r = await promos.validate(code, Decimal("500"))
    assert not r.valid
    assert r.error_code == error_code
    assert r.discount_amount == Decimal("0.00")


async def test_ticket_restriction(promos):
    r = await promos.validate("VIPONLY", Decimal("500"), ticket_ids=[GENERAL])
    assert r.error_code == "TICKET_RESTRICTION"
    r = await promos.validate("VIPONLY", Decimal("2000"),
                              ticket_ids=[GENERAL, VIP])
    assert r.valid
    assert r.allowed_ticket_ids == [VIP]


async def test_one_per_email_counts_paid_and_pending(services, promos):
    order = await services.orders.create_order(customer(), cart(),
                                               promo_code="ONCE")
    assert order.promo_code == "ONCE"

    r = await promos.validate("ONCE", Decimal("500"),
                              email="ANA@example.com")
    assert r.error_code == "ALREADY_USED_BY_EMAIL"
    r = await promos.validate("ONCE", Decimal("500"), email="bob@example.com")
    assert r.valid


async def test_checks_stop_at_first_failure(promos):
    # expired and under the minimum: expiry is checked first
    r = await promos.validate("OLDNEWS", Decimal("1"))
    assert r.error_code == "EXPIRED"


async def test_increment_usage_is_additive(services, store):
    await services.promos.increment_usage("summer10")
    await services.promos.increment_usage("SUMMER10")
    promo = await store.get_active_promo("SUMMER10")
    assert promo.used_count == 2


async def test_to_dict_shapes(promos):
    ok = (await promos.validate("SUMMER10", Decimal("500"))).to_dict()
    assert ok == {
        "valid": True,
        "code": "SUMMER10",
        "discountPercent": 10.0,
        "discountAmount": "50.00",
        "allowedTicketIds": None,
    }
    bad = (await promos.validate("NOPE", Decimal("500"))).to_dict()
    assert bad["valid"] is False
    assert bad["errorCode"] == "INVALID_CODE"
