from __future__ import annotations
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, TypedDict
import base64
import hashlib
import hmac


class TransactionResult(TypedDict):
    transaction_id: str
    pay_url: str


class StatusResult(TypedDict):
    status: str
    raw: Dict[str, Any]


class RefundResult(TypedDict):
    success: bool
    status: Optional[str]


class Customer(TypedDict, total=False):
    name: str
    email: str
    phone: str


class ReturnUrls(TypedDict):
    ok: str
    fail: str


# ----------------------------
# Callback signature
# ----------------------------
def callback_fields(payload: Mapping[str, Any]) -> Mapping[str, Any]:
    # MAIB nests the interesting part under "result"; older hooks are flat
    inner = payload.get("result")
    return inner if isinstance(inner, Mapping) else payload


def _sign_str(value: Any) -> str:
    # values are rendered the way the gateway's JavaScript side does
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, Decimal):
        return format(value.normalize(), "f")
    if isinstance(value, Mapping):
        return "[object Object]"
    if isinstance(value, (list, tuple)):
        return ",".join(_sign_str(v) for v in value)
    return str(value)


def sign_payload(payload: Mapping[str, Any], secret: str) -> str:
    """sha256 over the sorted values (minus ``signature``) joined by ':' with
    the secret appended, base64 encoded."""
    fields = callback_fields(payload)
    values = [
        _sign_str(fields[k]) for k in sorted(fields) if k != "signature"
    ]
    values.append(secret)
    digest = hashlib.sha256(":".join(values).encode("utf-8")).digest()
    return base64.b64encode(digest).decode()


def verify_payload(
    payload: Mapping[str, Any], signature: Optional[str], secret: str
) -> bool:
    if not signature or not secret:
        return False
    expected = sign_payload(payload, secret)
    return hmac.compare_digest(expected.encode(), signature.encode())


# ----------------------------
# Payment Gateway Interface
# ----------------------------
class PaymentGateway(ABC):
    mock: bool = False

    @abstractmethod
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
    ) -> TransactionResult: ...

    @abstractmethod
    async def get_status(self, transaction_id: str) -> StatusResult: ...

    @abstractmethod
    async def refund(
        self, transaction_id: str, amount: Optional[Decimal] = None
    ) -> RefundResult: ...

    @abstractmethod
    def verify_signature(
        self, payload: Mapping[str, Any], signature: Optional[str]
    ) -> bool: ...

    async def aclose(self) -> None:
        return None
