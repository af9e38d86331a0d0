from decimal import Decimal

import httpx
import pytest
from sqlalchemy import update

from festix.gateway import MockGateway
from festix.helpers import now_ts
from festix.model.db import Order, PromoCode, Ticket, TicketOption
from festix.orders import CartLine, CustomerInfo
from festix.server import build_services, create_app, init_db

SIGNATURE_KEY = "test-signature-key"

GENERAL = "t-general"
VIP = "t-vip"
RETIRED = "t-retired"
CAMPING = "o-camping"


class FakeArtifacts:
    """Records what it was asked to render; URLs are derived from codes."""

    def __init__(self):
        self.rendered = []
        self.invoices = []
        self.fail_codes = set()
        self.broken = False

    async def generate(self, order, items):
        if self.broken:
            raise RuntimeError("renderer down")
        urls = []
        for item in items:
            self.rendered.append(item.ticket_code)
            if item.ticket_code in self.fail_codes:
                urls.append("")
            else:
                urls.append(f"https://cdn.test/{item.ticket_code}.pdf")
        return urls

    async def generate_invoice(self, order, items):
        self.invoices.append(order.invoice_number)
        return f"https://cdn.test/{order.invoice_number}.pdf"


class FakeNotifier:
    def __init__(self):
        self.sent = []
        self.ok = True

    async def _record(self, kind, order, **extra):
        self.sent.append((kind, order.order_number, extra))
        return self.ok

    async def send_order_confirmation(self, order, items, urls):
        return await self._record("confirmation", order, urls=list(urls))

    async def send_first_reminder(self, order):
        return await self._record("first_reminder", order)

    async def send_second_reminder(self, order):
        return await self._record("second_reminder", order)

    async def send_invitation_email(self, order, items, urls):
        return await self._record("invitation", order, urls=list(urls))

    async def send_b2b_invoice(self, order, invoice_url):
        return await self._record("b2b_invoice", order, url=invoice_url)

    async def send_b2b_tickets(self, order, ticket_count):
        return await self._record("b2b_tickets", order, count=ticket_count)

    def of(self, kind):
        return [s for s in self.sent if s[0] == kind]


def catalog():
    ts = now_ts()
    return [
        Ticket(id=GENERAL, name="General", name_ro="General",
               name_ru="Общий", price=Decimal("500.00"), is_active=True),
        Ticket(id=VIP, name="VIP", name_ro="VIP", name_ru="VIP",
               price=Decimal("1500.00"), is_active=True),
        Ticket(id=RETIRED, name="Early bird", name_ro="Early bird",
               name_ru="Early bird", price=Decimal("300.00"),
               is_active=False),
        TicketOption(id=CAMPING, ticket_id=GENERAL, name_ro="Camping",
                     name_ru="Кемпинг", price_modifier=Decimal("200.00")),
        PromoCode(id="p1", code="SUMMER10", discount_percent=Decimal("10"),
                  created_at=ts),
        PromoCode(id="p2", code="FIXED100", discount_amount=Decimal("100"),
                  created_at=ts),
        PromoCode(id="p3", code="OLDNEWS", discount_percent=Decimal("20"),
                  valid_until=ts - 3600, created_at=ts),
        PromoCode(id="p4", code="SOLDOUT", discount_percent=Decimal("5"),
                  usage_limit=1, used_count=1, created_at=ts),
        PromoCode(id="p5", code="VIPONLY", discount_percent=Decimal("15"),
                  allowed_ticket_ids=[VIP], created_at=ts),
        PromoCode(id="p6", code="ONCE", discount_percent=Decimal("10"),
                  one_per_email=True, created_at=ts),
        PromoCode(id="p7", code="BIGSPEND", discount_amount=Decimal("50"),
                  min_order_amount=Decimal("1000"), created_at=ts),
        PromoCode(id="p8", code="FREEPASS", discount_percent=Decimal("100"),
                  created_at=ts),
        PromoCode(id="p9", code="SOON", discount_percent=Decimal("10"),
                  valid_from=ts + 86400, created_at=ts),
        PromoCode(id="p10", code="PAUSED", discount_percent=Decimal("10"),
                  is_active=False, created_at=ts),
    ]


def customer(email="ana@example.com"):
    return CustomerInfo(first_name="Ana", last_name="Popescu", email=email,
                        phone="+37369000000")


def cart(*lines):
    return [CartLine(*line) for line in lines] or [CartLine(GENERAL, 1)]


@pytest.fixture
def gateway():
    return MockGateway(signature_key=SIGNATURE_KEY,
                       pay_url_base="http://api.test")


@pytest.fixture
def artifacts():
    return FakeArtifacts()


@pytest.fixture
def notifier():
    return FakeNotifier()


@pytest.fixture
async def services(gateway, artifacts, notifier):
    s = build_services(database_url="sqlite://", gateway=gateway,
                       artifacts=artifacts, notifier=notifier)
    await init_db(s)
    await s.store.add_all(catalog())
    yield s
    await s.fulfillment.drain()
    await s.engine.dispose()


@pytest.fixture
def store(services):
    return services.store


@pytest.fixture
async def client(services):
    app = create_app(services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport,
                                 base_url="http://api.test") as c:
        yield c


@pytest.fixture
async def admin_client(client):
    from festix import config
    r = await client.post("/admin/login", data={
        "username": config.ADMIN_USERNAME,
        "password": config.ADMIN_PASSWORD,
    })
    assert r.status_code == 200
    return client


async def pay(services, order, status="OK"):
    """Open a mock transaction for ``order`` and settle it."""
    tx = await services.orders.open_transaction(order, "10.0.0.1")
    await services.reconciler.handle_mock_payment(tx["transaction_id"],
                                                  status)
    await services.fulfillment.drain()
    return tx["transaction_id"]


async def backdate(store, order_id, hours):
    """Pretend ``order_id`` was created ``hours`` ago."""
    async with store.sessions() as db:
        async with db.begin():
            await db.execute(
                update(Order).where(Order.id == order_id)
                .values(created_at=now_ts() - hours * 3600)
            )
