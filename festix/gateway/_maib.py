from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional

import httpx
import structlog

from ..errors import GatewayError
from ._base import (
    Customer,
    PaymentGateway,
    RefundResult,
    ReturnUrls,
    StatusResult,
    TransactionResult,
    verify_payload,
)

logger = structlog.get_logger(__name__)


def _error_message(resp: httpx.Response) -> str:
    try:
        data = resp.json()
    except ValueError:
        return resp.text or resp.reason_phrase or "Unknown error"
    errors = data.get("errors") if isinstance(data, dict) else None
    if isinstance(errors, list) and errors:
        return ", ".join(
            f"{e.get('errorCode')}: {e.get('errorMessage')}" for e in errors
        )
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return resp.text


def _result(data: Dict[str, Any]) -> Dict[str, Any]:
    inner = data.get("result")
    return inner if isinstance(inner, dict) else data


class MaibGateway(PaymentGateway):
    """MAIB e-commerce REST API.

    Every call fetches a fresh access token first. Transport problems,
    timeouts and non-2xx answers surface as GatewayError; nothing is
    retried here, a failed initiation is retried by opening a new
    transaction.
    """

    def __init__(
        self,
        *,
        base_url: str,
        project_id: str,
        project_secret: str,
        signature_key: str,
        timeout: float = 10.0,
        http: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.project_id = project_id
        self.project_secret = project_secret
        self.signature_key = signature_key
        self._own_http = http is None
        self.http = http or httpx.AsyncClient(timeout=timeout)

    async def aclose(self) -> None:
        if self._own_http:
            await self.http.aclose()

    async def _post(
        self, path: str, body: Dict[str, Any], token: Optional[str] = None
    ) -> Dict[str, Any]:
        headers = {"content-type": "application/json"}
        if token:
            headers["authorization"] = f"Bearer {token}"
        try:
            resp = await self.http.post(
                f"{self.base_url}{path}", json=body, headers=headers
            )
        except httpx.TimeoutException as e:
            raise GatewayError(f"MAIB {path} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"MAIB {path} unreachable: {e}") from e

        if resp.status_code >= 400:
            msg = _error_message(resp)
            logger.error("maib request failed", path=path,
                         status=resp.status_code, error=msg)
            raise GatewayError(f"MAIB {path} failed: {resp.status_code} {msg}")
        try:
            data = resp.json()
        except ValueError as e:
            raise GatewayError(f"MAIB {path} returned invalid JSON") from e
        if not isinstance(data, dict):
            raise GatewayError(f"MAIB {path} returned unexpected body")
        return data

    async def _token(self) -> str:
        data = await self._post("/generate-token", {
            "projectId": self.project_id,
            "projectSecret": self.project_secret,
        })
        token = _result(data).get("accessToken") or data.get("accessToken") \
            or data.get("token")
        if not token:
            raise GatewayError("No access token in MAIB response")
        return token

    async def create_transaction(
        self,
        *,
        amount: Decimal,
        currency: str,
        client_ip: str,
        order_ref: str,
        customer: Customer,
        return_urls: ReturnUrls,
        callback_url: str,
        description: str = "",
        language: str = "ro",
        items: Optional[List[Dict[str, Any]]] = None,
    ) -> TransactionResult:
        token = await self._token()
        body: Dict[str, Any] = {
            "amount": float(amount),
            "currency": currency,
            "clientIp": client_ip,
            "language": language or "ro",
            "orderId": order_ref,
            "okUrl": return_urls["ok"],
            "failUrl": return_urls["fail"],
            "callbackUrl": callback_url,
        }
        if description:
            body["description"] = description
        if customer.get("name"):
            body["clientName"] = customer["name"]
        if customer.get("email"):
            body["email"] = customer["email"]
        if customer.get("phone"):
            body["phone"] = customer["phone"]
        if items:
            body["items"] = items

        logger.info("maib payment request", order_ref=order_ref,
                    amount=body["amount"], currency=currency)
        data = _result(await self._post("/pay", body, token))
        pay_url, pay_id = data.get("payUrl"), data.get("payId")
        if not pay_url or not pay_id:
            raise GatewayError(
                "Invalid payment response: missing payUrl or payId"
            )
        return {"transaction_id": pay_id, "pay_url": pay_url}

    async def get_status(self, transaction_id: str) -> StatusResult:
        token = await self._token()
        info = _result(await self._post(
            "/pay-info", {"payId": transaction_id}, token
        ))
        return {"status": str(info.get("status") or ""), "raw": info}

    async def refund(
        self, transaction_id: str, amount: Optional[Decimal] = None
    ) -> RefundResult:
        token = await self._token()
        body: Dict[str, Any] = {"payId": transaction_id}
        if amount:
            body["refundAmount"] = float(amount)
        data = await self._post("/refund", body, token)
        if not data.get("ok", False):
            errors = data.get("errors") or []
            msg = ", ".join(
                f"{e.get('errorCode')}: {e.get('errorMessage')}"
                for e in errors if isinstance(e, dict)
            ) or "Unknown error"
            raise GatewayError(f"Refund failed: {msg}")
        status = _result(data).get("status")
        return {"success": status == "OK", "status": status}

    def verify_signature(
        self, payload: Mapping[str, Any], signature: Optional[str]
    ) -> bool:
        return verify_payload(payload, signature, self.signature_key)
