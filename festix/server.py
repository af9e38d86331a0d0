from __future__ import annotations
from contextlib import asynccontextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Form, HTTPException, Request
from fastapi.responses import HTMLResponse, ORJSONResponse, RedirectResponse
from fastapi.templating import Jinja2Templates
from sqlalchemy.ext.asyncio import AsyncEngine
from starlette.middleware.sessions import SessionMiddleware
from starlette.status import HTTP_303_SEE_OTHER

from . import config, discount
from .b2b import B2BOrderManager, Company, Contact
from .collaborators import ArtifactGenerator, Notifier, new_collaborators
from .errors import FestixError, NotFoundError, ValidationError
from .fulfillment import FulfillmentWorker
from .gateway import PaymentGateway, new_gateway
from .helpers import ct_equal, is_valid_email, now_ts, to_iso
from .infra.log import configure_logging
from .infra.sql import open_database
from .model.db import Base
from .model.store import Store
from .orders import CartLine, CustomerInfo, OrderManager, price_lines, tickets_view
from .promo import PromoValidator
from .reconcile import Reconciler, success_url
from .scheduler import Scheduler

logger = structlog.get_logger(__name__)

templates = Jinja2Templates(directory=str(Path(__file__).parent / "templates"))

LANGUAGES = ("ro", "ru")
MAX_RETAIL_LINE_QTY = 10


# ----------------------------
# Wiring
# ----------------------------
@dataclass
class Services:
    engine: AsyncEngine
    store: Store
    gateway: PaymentGateway
    artifacts: ArtifactGenerator
    notifier: Notifier
    promos: PromoValidator
    orders: OrderManager
    b2b: B2BOrderManager
    fulfillment: FulfillmentWorker
    reconciler: Reconciler
    scheduler: Scheduler
    http: Optional[httpx.AsyncClient] = None

    async def aclose(self) -> None:
        await self.scheduler.stop()
        await self.fulfillment.drain()
        await self.gateway.aclose()
        if self.http is not None:
            await self.http.aclose()
        await self.engine.dispose()


def build_services(
    *,
    database_url: Optional[str] = None,
    gateway: Optional[PaymentGateway] = None,
    artifacts: Optional[ArtifactGenerator] = None,
    notifier: Optional[Notifier] = None,
) -> Services:
    db = open_database(database_url or config.DATABASE_URL)
    store = Store(sessions=db.sessions, gated=db.gated)

    http = None
    if artifacts is None or notifier is None:
        if config.ARTIFACTS_URL or config.NOTIFIER_URL:
            http = httpx.AsyncClient(timeout=config.COLLABORATOR_TIMEOUT)
        default_artifacts, default_notifier = new_collaborators(http)
        artifacts = artifacts or default_artifacts
        notifier = notifier or default_notifier
    gateway = gateway or new_gateway()

    promos = PromoValidator(store)
    orders = OrderManager(store=store, promos=promos, gateway=gateway,
                          artifacts=artifacts, notifier=notifier)
    b2b = B2BOrderManager(store=store, gateway=gateway,
                          artifacts=artifacts, notifier=notifier)
    fulfillment = FulfillmentWorker(
        store=store,
        orders=orders,
        concurrency=config.FULFILLMENT_CONCURRENCY,
        max_attempts=config.FULFILLMENT_MAX_ATTEMPTS,
        lease_seconds=config.FULFILLMENT_LEASE_SECONDS,
    )
    reconciler = Reconciler(store=store, orders=orders, b2b=b2b,
                            gateway=gateway, fulfillment=fulfillment)
    scheduler = Scheduler(orders=orders, notifier=notifier,
                          fulfillment=fulfillment)
    return Services(
        engine=db.engine, store=store, gateway=gateway, artifacts=artifacts,
        notifier=notifier, promos=promos, orders=orders, b2b=b2b,
        fulfillment=fulfillment, reconciler=reconciler, scheduler=scheduler,
        http=http,
    )


async def init_db(services: Services) -> None:
    async with services.engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


def get_services(request: Request) -> Services:
    return request.app.state.services


# ----------------------------
# Request parsing
# ----------------------------
def _text(data: Any, key: str, required: bool = True,
          what: Optional[str] = None) -> Optional[str]:
    value = data.get(key) if isinstance(data, dict) else None
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise ValidationError(f"{what or key} is required",
                                  "MISSING_FIELDS")
        return None
    if not isinstance(value, (str, int, float)):
        raise ValidationError(f"{what or key} must be a string",
                              "INVALID_FIELD")
    return str(value).strip()


def _language(data: dict) -> str:
    language = data.get("language") or "ro"
    if language not in LANGUAGES:
        raise ValidationError("language must be one of ro, ru",
                              "INVALID_LANGUAGE")
    return language


def _cart(raw: Any, max_qty: Optional[int] = None) -> List[CartLine]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("At least one ticket is required", "EMPTY_CART")
    lines = []
    for entry in raw:
        if not isinstance(entry, dict):
            raise ValidationError("Invalid cart line", "INVALID_FIELD")
        quantity = entry.get("quantity", 1)
        if (not isinstance(quantity, int) or isinstance(quantity, bool)
                or quantity < 1 or (max_qty and quantity > max_qty)):
            raise ValidationError("Invalid ticket quantity",
                                  "INVALID_QUANTITY")
        lines.append(CartLine(
            ticket_id=_text(entry, "ticketId"),
            quantity=quantity,
            option_id=(_text(entry, "optionId", required=False)
                       or _text(entry, "ticketOptionId", required=False)),
        ))
    return lines


def _customer(raw: Any) -> CustomerInfo:
    if not isinstance(raw, dict):
        raise ValidationError("Customer details are required",
                              "MISSING_FIELDS")
    email = _text(raw, "email")
    if not is_valid_email(email):
        raise ValidationError("A valid email address is required",
                              "INVALID_EMAIL")
    return CustomerInfo(
        first_name=_text(raw, "firstName"),
        last_name=_text(raw, "lastName"),
        email=email,
        phone=_text(raw, "phone", required=False) or "",
    )


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "127.0.0.1"


# ----------------------------
# Views
# ----------------------------
def order_view(o) -> dict:
    return {
        "id": o.id,
        "orderNumber": o.order_number,
        "status": o.status,
        "paymentStatus": o.payment_status,
        "customerEmail": o.customer_email,
        "customerName": o.customer_name,
        "totalAmount": str(o.total_amount),
        "discountAmount": str(o.discount_amount),
        "promoCode": o.promo_code,
        "isInvitation": bool(o.is_invitation),
        "transactionId": o.maib_transaction_id,
        "failureReason": o.failure_reason,
        "refundReason": o.refund_reason,
        "createdAt": to_iso(o.created_at),
        "paidAt": to_iso(o.paid_at),
        "refundedAt": to_iso(o.refunded_at),
    }


def b2b_view(o) -> dict:
    return {
        "id": o.id,
        "orderNumber": o.order_number,
        "companyName": o.company_name,
        "companyTaxId": o.company_tax_id,
        "companyAddress": o.company_address,
        "contactName": o.contact_name,
        "contactEmail": o.contact_email,
        "contactPhone": o.contact_phone,
        "paymentMethod": o.payment_method,
        "status": o.status,
        "paymentStatus": o.payment_status,
        "totalAmount": str(o.total_amount),
        "discountPercent": o.discount_percent,
        "discountAmount": str(o.discount_amount),
        "finalAmount": str(o.final_amount),
        "invoiceNumber": o.invoice_number,
        "invoiceUrl": o.invoice_url,
        "transactionId": o.maib_transaction_id,
        "notes": o.notes,
        "createdAt": to_iso(o.created_at),
        "paidAt": to_iso(o.paid_at),
        "ticketsGeneratedAt": to_iso(o.tickets_generated_at),
        "ticketsSentAt": to_iso(o.tickets_sent_at),
    }


def b2b_item_view(i) -> dict:
    return {
        "id": i.id,
        "ticketId": i.ticket_id,
        "ticketOptionId": i.ticket_option_id,
        "quantity": i.quantity,
        "unitPrice": str(i.unit_price),
        "discountPercent": i.discount_percent,
        "totalPrice": str(i.total_price),
        "ticketCode": i.ticket_code,
        "ticketUrl": i.ticket_url,
        "status": i.status,
    }


def history_view(h) -> dict:
    return {
        "status": h.status,
        "changedBy": h.changed_by,
        "note": h.note,
        "createdAt": to_iso(h.created_at),
    }


# ----------------------------
# Admin session
# ----------------------------
def is_admin(request: Request) -> bool:
    return bool(request.session.get("admin_user"))


def require_admin(request: Request) -> str:
    if not is_admin(request):
        raise HTTPException(status_code=401, detail="Admin login required")
    return request.session["admin_user"]


# ----------------------------
# App
# ----------------------------
def create_app(services: Optional[Services] = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owned = services is None
        if owned:
            configure_logging()
            config.validate_config()
            app.state.services = build_services()
        svc: Services = app.state.services
        await init_db(svc)
        if config.ENABLE_CRON_JOBS:
            svc.scheduler.start()
        # outbox rows left behind by a previous process
        await svc.fulfillment.redrive()
        logger.info("festix started", env=config.APP_ENV,
                    mock_payments=svc.gateway.mock,
                    cron=config.ENABLE_CRON_JOBS)
        try:
            yield
        finally:
            if owned:
                await svc.aclose()
            else:
                await svc.scheduler.stop()
                await svc.fulfillment.drain()

    app = FastAPI(
        title="Festix",
        default_response_class=ORJSONResponse,
        lifespan=lifespan,
    )
    app.add_middleware(SessionMiddleware, secret_key=config.SESSION_SECRET)
    if services is not None:
        app.state.services = services

    @app.exception_handler(FestixError)
    async def _festix_error(request: Request, exc: FestixError):
        if exc.status_code >= 500:
            logger.error("request failed", path=request.url.path,
                         code=exc.code, error=exc.message)
        return ORJSONResponse(
            {"success": False, "error": exc.message, "code": exc.code},
            status_code=exc.status_code,
        )

    @app.get("/health")
    async def health():
        return {"success": True, "status": "healthy",
                "timestamp": to_iso(now_ts())}

    # ----------------------------
    # Checkout
    # ----------------------------
    @app.post("/api/checkout/create-order")
    async def create_order(
        payload: dict, request: Request,
        s: Services = Depends(get_services),
    ):
        client_ip = _client_ip(request)
        order = await s.orders.create_order(
            _customer(payload.get("customer")),
            _cart(payload.get("items"), MAX_RETAIL_LINE_QTY),
            promo_code=_text(payload, "promoCode", required=False),
            language=_language(payload),
            client_ip=client_ip,
        )
        if order.total_amount - order.discount_amount <= 0:
            await s.reconciler.settle_free_order(order)
            return {"success": True, "data": {
                "orderId": order.id,
                "orderNumber": order.order_number,
                "redirectUrl": success_url(order.order_number),
                "transactionId": None,
            }}
        tx = await s.orders.open_transaction(order, client_ip)
        return {"success": True, "data": {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "redirectUrl": tx["pay_url"],
            "transactionId": tx["transaction_id"],
        }}

    @app.get("/api/checkout/status/{order_number}")
    async def checkout_status(order_number: str,
                              s: Services = Depends(get_services)):
        order = await s.orders.get_order_by_number(order_number)
        if order is None:
            raise NotFoundError("Order not found")
        return {"success": True, "data": {
            "orderNumber": order.order_number,
            "status": order.status,
            "paymentStatus": order.payment_status,
            "totalAmount": str(order.total_amount),
            "discountAmount": str(order.discount_amount),
        }}

    @app.get("/api/checkout/tickets/{order_number}")
    async def checkout_tickets(order_number: str,
                               s: Services = Depends(get_services)):
        data = await s.orders.get_order_tickets(order_number)
        if data is None:
            b2b_order = await s.b2b.get_order_by_number(order_number)
            if b2b_order is not None:
                items = await s.store.get_b2b_items(b2b_order.id)
                data = await tickets_view(s.store, b2b_order, items,
                                          "ticket_url")
        if data is None:
            raise NotFoundError("Order not found")
        return {"success": True, "data": data}

    @app.get("/api/checkout/callback")
    async def checkout_callback(trans_id: Optional[str] = None,
                                s: Services = Depends(get_services)):
        if not trans_id:
            raise ValidationError("Missing transaction ID",
                                  "MISSING_TRANSACTION_ID")
        url = await s.reconciler.handle_return(transaction_id=trans_id,
                                               outcome="ok")
        return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    @app.post("/api/checkout/mock-process")
    async def checkout_mock_process(payload: dict,
                                    s: Services = Depends(get_services)):
        return await s.reconciler.handle_mock_payment(
            _text(payload, "transactionId", what="Transaction ID"),
            _text(payload, "status"),
        )

    # ----------------------------
    # Gateway callback + buyer return
    # ----------------------------
    async def _gateway_callback(request: Request, s: Services):
        try:
            body = await request.json()
        except ValueError:
            raise ValidationError("Callback body must be JSON")
        return await s.reconciler.handle_callback(
            body, request.headers.get("x-maib-signature")
        )

    @app.post("/api/maib/callback")
    async def maib_callback(request: Request,
                            s: Services = Depends(get_services)):
        return await _gateway_callback(request, s)

    @app.post("/api/webhook/maib")
    async def maib_webhook(request: Request,
                           s: Services = Depends(get_services)):
        return await _gateway_callback(request, s)

    @app.get("/api/maib/return/ok")
    async def maib_return_ok(payId: Optional[str] = None,
                             orderId: Optional[str] = None,
                             s: Services = Depends(get_services)):
        url = await s.reconciler.handle_return(
            transaction_id=payId, order_id=orderId, outcome="ok",
        )
        return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    @app.get("/api/maib/return/fail")
    async def maib_return_fail(payId: Optional[str] = None,
                               orderId: Optional[str] = None,
                               statusCode: Optional[str] = None,
                               s: Services = Depends(get_services)):
        url = await s.reconciler.handle_return(
            transaction_id=payId, order_id=orderId, outcome="fail",
            status_code=statusCode,
        )
        return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    # ----------------------------
    # Promo
    # ----------------------------
    @app.post("/api/promo/validate")
    async def promo_validate(payload: dict,
                             s: Services = Depends(get_services)):
        code = _text(payload, "code")
        total = payload.get("totalAmount")
        if (not isinstance(total, (int, float)) or isinstance(total, bool)
                or total <= 0):
            raise ValidationError("Invalid request", "INVALID_FIELD")
        email = _text(payload, "email", required=False)
        ticket_ids = payload.get("ticketIds") or None
        if ticket_ids is not None and not isinstance(ticket_ids, list):
            raise ValidationError("Invalid request", "INVALID_FIELD")
        result = await s.promos.validate(code, str(total), email=email,
                                         ticket_ids=ticket_ids)
        data = result.to_dict()
        if not result.valid:
            return {"success": False, "error": data["error"],
                    "errorCode": data["errorCode"]}
        data.pop("valid")
        return {"success": True, "data": data}

    # ----------------------------
    # B2B (public)
    # ----------------------------
    @app.get("/api/b2b/discount-tiers")
    async def b2b_discount_tiers():
        return {"success": True, "data": [
            discount.tier_to_dict(t) for t in discount.tiers()
        ]}

    @app.post("/api/b2b/calculate-discount")
    async def b2b_calculate_discount(payload: dict,
                                     s: Services = Depends(get_services)):
        priced = await price_lines(s.store, _cart(payload.get("items")))
        quantity = sum(line.quantity for line, _ in priced)
        total = sum(price * line.quantity for line, price in priced)
        summary = discount.summary(total, quantity)
        return {"success": True, "data": {
            "totalQuantity": quantity,
            **summary,
            "tiers": [discount.tier_to_dict(t) for t in discount.tiers()],
        }}

    @app.post("/api/b2b/create-order")
    async def b2b_create_order(payload: dict, request: Request,
                               s: Services = Depends(get_services)):
        company = payload.get("company") or {}
        contact = payload.get("contact") or {}
        email = _text(contact, "email", what="contact email")
        if not is_valid_email(email):
            raise ValidationError("A valid email address is required",
                                  "INVALID_EMAIL")
        payment_method = _text(payload, "paymentMethod")
        client_ip = _client_ip(request)
        order = await s.b2b.create_order(
            Company(
                name=_text(company, "name", what="company name"),
                tax_id=_text(company, "taxId", required=False),
                address=_text(company, "address", required=False),
            ),
            Contact(
                name=_text(contact, "name", what="contact name"),
                email=email,
                phone=_text(contact, "phone", required=False) or "",
            ),
            _cart(payload.get("items")),
            payment_method=payment_method,
            notes=_text(payload, "notes", required=False),
            language=_language(payload),
            client_ip=client_ip,
        )

        redirect_url = transaction_id = invoice_url = None
        if order.payment_method == "online":
            tx = await s.b2b.open_transaction(order, client_ip)
            redirect_url = tx["pay_url"]
            transaction_id = tx["transaction_id"]
        else:
            try:
                invoice_url = await s.b2b.issue_invoice(order.id)
            except FestixError as e:
                # the order stands; the invoice can be regenerated by admin
                logger.error("invoice not issued", order=order.order_number,
                             error=e.message)
        return {"success": True, "data": {
            "orderId": order.id,
            "orderNumber": order.order_number,
            "invoiceNumber": order.invoice_number,
            "invoiceUrl": invoice_url,
            "paymentMethod": order.payment_method,
            "redirectUrl": redirect_url,
            "transactionId": transaction_id,
        }}

    # ----------------------------
    # B2B (admin)
    # ----------------------------
    @app.get("/api/b2b/orders")
    async def b2b_list_orders(
        status: Optional[str] = None,
        paymentMethod: Optional[str] = None,
        companyName: Optional[str] = None,
        limit: int = 50,
        offset: int = 0,
        admin: str = Depends(require_admin),
        s: Services = Depends(get_services),
    ):
        rows, total = await s.b2b.list_orders(
            status=status, payment_method=paymentMethod,
            company_name=companyName,
            limit=max(1, min(limit, 200)), offset=max(0, offset),
        )
        return {"success": True, "data": {
            "orders": [b2b_view(o) for o in rows], "total": total,
        }}

    @app.get("/api/b2b/orders/{order_id}")
    async def b2b_get_order(order_id: str,
                            admin: str = Depends(require_admin),
                            s: Services = Depends(get_services)):
        order, items, history = await s.b2b.get_order_detail(order_id)
        return {"success": True, "data": {
            "order": b2b_view(order),
            "items": [b2b_item_view(i) for i in items],
            "history": [history_view(h) for h in history],
        }}

    @app.patch("/api/b2b/orders/{order_id}/mark-paid")
    async def b2b_mark_paid(order_id: str,
                            admin: str = Depends(require_admin),
                            s: Services = Depends(get_services)):
        await s.b2b.require_order(order_id)
        if not await s.b2b.mark_as_paid(order_id, changed_by=admin):
            raise ValidationError("Order cannot be marked as paid",
                                  "INVALID_STATUS")
        return {"success": True, "message": "Order marked as paid"}

    @app.post("/api/b2b/orders/{order_id}/generate-invoice")
    async def b2b_generate_invoice(order_id: str,
                                   admin: str = Depends(require_admin),
                                   s: Services = Depends(get_services)):
        url = await s.b2b.issue_invoice(order_id)
        return {"success": True, "message": "Invoice generated successfully",
                "data": {"invoiceUrl": url}}

    @app.post("/api/b2b/orders/{order_id}/generate-tickets")
    async def b2b_generate_tickets(order_id: str,
                                   admin: str = Depends(require_admin),
                                   s: Services = Depends(get_services)):
        count = await s.b2b.generate_tickets(order_id, changed_by=admin)
        return {"success": True, "message": "Tickets generated successfully",
                "data": {"ticketCount": count}}

    @app.post("/api/b2b/orders/{order_id}/send-tickets")
    async def b2b_send_tickets(order_id: str,
                               admin: str = Depends(require_admin),
                               s: Services = Depends(get_services)):
        count = await s.b2b.send_tickets(order_id, changed_by=admin)
        return {"success": True, "message": "Tickets marked as sent",
                "data": {"ticketCount": count}}

    @app.post("/api/b2b/orders/{order_id}/complete")
    async def b2b_complete(order_id: str,
                           admin: str = Depends(require_admin),
                           s: Services = Depends(get_services)):
        await s.b2b.complete(order_id, changed_by=admin)
        return {"success": True, "message": "Order completed"}

    @app.patch("/api/b2b/orders/{order_id}/cancel")
    async def b2b_cancel(order_id: str, payload: dict,
                         admin: str = Depends(require_admin),
                         s: Services = Depends(get_services)):
        reason = _text(payload, "reason", what="Cancellation reason")
        await s.b2b.require_order(order_id)
        if not await s.b2b.cancel(order_id, reason, changed_by=admin):
            raise ValidationError("Order cannot be cancelled",
                                  "INVALID_STATUS")
        return {"success": True, "message": "Order cancelled"}

    # ----------------------------
    # Admin
    # ----------------------------
    @app.post("/admin/login")
    async def admin_login(
        request: Request,
        username: str = Form(...),
        password: str = Form(...),
    ):
        ok_user = ct_equal(username.strip(), config.ADMIN_USERNAME)
        ok_pass = ct_equal(password, config.ADMIN_PASSWORD)
        if ok_user and ok_pass:
            request.session["admin_user"] = username.strip()
            return {"success": True}
        logger.warning("admin login failed", username=username.strip())
        return ORJSONResponse(
            {"success": False, "error": "Invalid credentials."},
            status_code=401,
        )

    @app.get("/admin/logout")
    async def admin_logout(request: Request):
        request.session.clear()
        return {"success": True}

    @app.post("/api/admin/orders/{order_id}/resend-tickets")
    async def admin_resend_tickets(order_id: str,
                                   admin: str = Depends(require_admin),
                                   s: Services = Depends(get_services)):
        order = await s.orders.resend_tickets(order_id)
        return {"success": True,
                "message": f"Tickets resent to {order.customer_email}"}

    @app.post("/api/admin/orders/{order_id}/refund")
    async def admin_refund(order_id: str, payload: dict,
                           admin: str = Depends(require_admin),
                           s: Services = Depends(get_services)):
        reason = _text(payload, "reason", required=False) or ""
        order = await s.orders.refund(order_id, reason, refunded_by=admin)
        return {"success": True, "message": "Order refunded",
                "data": order_view(order)}

    @app.post("/api/admin/invitations")
    async def admin_invitations(payload: dict,
                                admin: str = Depends(require_admin),
                                s: Services = Depends(get_services)):
        order = await s.orders.create_invitation(
            _customer(payload.get("customer")),
            _cart(payload.get("items")),
            language=_language(payload),
            note=_text(payload, "note", required=False),
        )
        return {"success": True,
                "message": "Invitation created successfully",
                "orderNumber": order.order_number,
                "orderId": order.id}

    # ----------------------------
    # Mock payment page
    # ----------------------------
    @app.get("/mockpay/{transaction_id}", response_class=HTMLResponse)
    async def mockpay_screen(request: Request, transaction_id: str,
                             s: Services = Depends(get_services)):
        if not s.gateway.mock:
            raise NotFoundError("Mock payments are disabled")
        subject = await s.reconciler.resolve(transaction_id=transaction_id)
        tx = s.gateway.transactions.get(transaction_id)
        if subject is None or tx is None:
            raise NotFoundError("Transaction not found")
        return templates.TemplateResponse(request, "mockpay.html", {
            "transaction_id": transaction_id,
            "order_number": subject.order.order_number,
            "amount": str(tx["amount"]),
            "currency": config.CURRENCY,
            "status": tx["status"],
        })

    @app.post("/mockpay/{transaction_id}/emit")
    async def mockpay_emit(transaction_id: str, t: str = Form(...),
                           s: Services = Depends(get_services)):
        result = await s.reconciler.handle_mock_payment(transaction_id, t)
        # pending: back to the payment screen
        url = result.get("redirectUrl") or f"/mockpay/{transaction_id}"
        return RedirectResponse(url=url, status_code=HTTP_303_SEE_OTHER)

    return app


app = create_app()
