"""Contracts of the services this core hands work to.

Ticket rendering (PDF + QR) and e-mail delivery live outside this service.
When ``ARTIFACTS_URL`` / ``NOTIFIER_URL`` are configured they are reached
over HTTP; otherwise log-only stand-ins keep the payment flow usable in
development.
"""
from __future__ import annotations
import asyncio
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
import structlog

from . import config
from .helpers import to_iso

logger = structlog.get_logger(__name__)


class ArtifactGenerator(Protocol):
    async def generate(self, order, items: Sequence) -> List[str]:
        """One URL per item, same order; "" where an item failed."""
        ...

    async def generate_invoice(self, order, items: Sequence) -> str: ...


class Notifier(Protocol):
    async def send_order_confirmation(
        self, order, items: Sequence, urls: Sequence[str]
    ) -> bool: ...

    async def send_first_reminder(self, order) -> bool: ...

    async def send_second_reminder(self, order) -> bool: ...

    async def send_invitation_email(
        self, order, items: Sequence, urls: Sequence[str]
    ) -> bool: ...

    async def send_b2b_invoice(self, order, invoice_url: str) -> bool: ...

    async def send_b2b_tickets(self, order, ticket_count: int) -> bool: ...


# ----------------------------
# payload helpers
# ----------------------------
def order_payload(order) -> Dict[str, Any]:
    b2b = hasattr(order, "company_name")
    return {
        "id": order.id,
        "orderNumber": order.order_number,
        "email": order.contact_email if b2b else order.customer_email,
        "name": order.contact_name if b2b else order.customer_name,
        "companyName": order.company_name if b2b else None,
        "language": order.language,
        "status": order.status,
        "totalAmount": str(order.total_amount),
        "discountAmount": str(order.discount_amount),
        "isInvitation": bool(getattr(order, "is_invitation", False)),
        "createdAt": to_iso(order.created_at),
    }


def item_payload(item) -> Dict[str, Any]:
    return {
        "id": item.id,
        "ticketId": item.ticket_id,
        "optionId": item.ticket_option_id,
        "ticketCode": item.ticket_code,
        "qrData": item.qr_data,
        "unitPrice": str(item.unit_price),
    }


# ----------------------------
# HTTP implementations
# ----------------------------
class HttpArtifactGenerator:
    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    async def _render(self, order, item) -> str:
        try:
            r = await self.http.post(f"{self.base_url}/tickets", json={
                "order": order_payload(order),
                "item": item_payload(item),
            })
            r.raise_for_status()
            return str(r.json().get("url") or "")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("ticket render failed", order=order.order_number,
                         ticket_code=item.ticket_code, error=str(e))
            return ""

    async def generate(self, order, items: Sequence) -> List[str]:
        return list(await asyncio.gather(
            *(self._render(order, item) for item in items)
        ))

    async def generate_invoice(self, order, items: Sequence) -> str:
        try:
            r = await self.http.post(f"{self.base_url}/invoices", json={
                "order": order_payload(order),
                "invoiceNumber": order.invoice_number,
                "items": [
                    {
                        "ticketId": i.ticket_id,
                        "optionId": i.ticket_option_id,
                        "quantity": i.quantity,
                        "unitPrice": str(i.unit_price),
                        "totalPrice": str(i.total_price),
                    }
                    for i in items
                ],
            })
            r.raise_for_status()
            return str(r.json().get("url") or "")
        except (httpx.HTTPError, ValueError) as e:
            logger.error("invoice render failed", order=order.order_number,
                         error=str(e))
            return ""


class HttpNotifier:
    def __init__(self, base_url: str, http: httpx.AsyncClient) -> None:
        self.base_url = base_url.rstrip("/")
        self.http = http

    async def _send(self, template: str, order, **extra) -> bool:
        body = {"template": template, "order": order_payload(order)}
        body.update(extra)
        try:
            r = await self.http.post(f"{self.base_url}/emails", json=body)
            r.raise_for_status()
            return True
        except httpx.HTTPError as e:
            logger.error("email delivery failed", template=template,
                         order=order.order_number, error=str(e))
            return False

    async def send_order_confirmation(self, order, items, urls) -> bool:
        return await self._send(
            "order_confirmation", order,
            items=[item_payload(i) for i in items], urls=list(urls),
        )

    async def send_first_reminder(self, order) -> bool:
        return await self._send("first_reminder", order)

    async def send_second_reminder(self, order) -> bool:
        return await self._send("second_reminder", order)

    async def send_invitation_email(self, order, items, urls) -> bool:
        return await self._send(
            "invitation", order,
            items=[item_payload(i) for i in items], urls=list(urls),
        )

    async def send_b2b_invoice(self, order, invoice_url: str) -> bool:
        return await self._send("b2b_invoice", order, invoiceUrl=invoice_url)

    async def send_b2b_tickets(self, order, ticket_count: int) -> bool:
        return await self._send("b2b_tickets", order,
                                ticketCount=ticket_count)


# ----------------------------
# log-only stand-ins
# ----------------------------
class LoggingArtifactGenerator:
    async def generate(self, order, items: Sequence) -> List[str]:
        logger.warning("no ticket renderer configured",
                       order=order.order_number, items=len(items))
        return ["" for _ in items]

    async def generate_invoice(self, order, items: Sequence) -> str:
        logger.warning("no invoice renderer configured",
                       order=order.order_number)
        return ""


class LoggingNotifier:
    async def _log(self, template: str, order, **extra) -> bool:
        logger.info("email (not delivered, no notifier configured)",
                    template=template, order=order.order_number, **extra)
        return True

    async def send_order_confirmation(self, order, items, urls) -> bool:
        return await self._log("order_confirmation", order, items=len(items))

    async def send_first_reminder(self, order) -> bool:
        return await self._log("first_reminder", order)

    async def send_second_reminder(self, order) -> bool:
        return await self._log("second_reminder", order)

    async def send_invitation_email(self, order, items, urls) -> bool:
        return await self._log("invitation", order, items=len(items))

    async def send_b2b_invoice(self, order, invoice_url: str) -> bool:
        return await self._log("b2b_invoice", order)

    async def send_b2b_tickets(self, order, ticket_count: int) -> bool:
        return await self._log("b2b_tickets", order, tickets=ticket_count)


def new_collaborators(
    http: Optional[httpx.AsyncClient] = None,
) -> tuple[ArtifactGenerator, Notifier]:
    if http is None and (config.ARTIFACTS_URL or config.NOTIFIER_URL):
        http = httpx.AsyncClient(timeout=config.COLLABORATOR_TIMEOUT)
    artifacts: ArtifactGenerator = (
        HttpArtifactGenerator(config.ARTIFACTS_URL, http)
        if config.ARTIFACTS_URL else LoggingArtifactGenerator()
    )
    notifier: Notifier = (
        HttpNotifier(config.NOTIFIER_URL, http)
        if config.NOTIFIER_URL else LoggingNotifier()
    )
    return artifacts, notifier
