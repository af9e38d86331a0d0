"""Stand-in for the MAIB API used in mock mode and in tests.

Each instance keeps its own transaction table, so nothing leaks between
app instances or test cases. Callbacks are signed and verified with the
same scheme as the real gateway.
"""
from __future__ import annotations
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional
import secrets

import structlog

from ..errors import GatewayError
from ._base import (
    Customer,
    PaymentGateway,
    RefundResult,
    ReturnUrls,
    StatusResult,
    TransactionResult,
    sign_payload,
    verify_payload,
)

logger = structlog.get_logger(__name__)

MOCK_STATUSES = ("PENDING", "OK", "FAILED", "REVERSED")

_ID_ALPHABET = (
    "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz"
)


class MockGateway(PaymentGateway):
    mock = True

    def __init__(self, *, signature_key: str, pay_url_base: str) -> None:
        self.signature_key = signature_key
        self.pay_url_base = pay_url_base.rstrip("/")
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.calls: List[Dict[str, Any]] = []
        self.should_succeed = True
        self.failure_reason = "Mock gateway unavailable"

    def configure(
        self, should_succeed: bool,
        failure_reason: str = "Mock gateway unavailable",
    ) -> None:
        """Make subsequent calls fail with GatewayError (or succeed again)."""
        self.should_succeed = should_succeed
        self.failure_reason = failure_reason

    def _check(self) -> None:
        if not self.should_succeed:
            raise GatewayError(self.failure_reason)

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
        self.calls.append({
            "method": "create_transaction",
            "amount": amount,
            "currency": currency,
            "order_ref": order_ref,
        })
        self._check()
        tid = "MOCK_" + "".join(
            secrets.choice(_ID_ALPHABET) for _ in range(20)
        )
        self.transactions[tid] = {
            "status": "PENDING",
            "amount": amount,
            "order_ref": order_ref,
        }
        logger.info("mock transaction created", transaction_id=tid,
                    amount=str(amount))
        return {
            "transaction_id": tid,
            "pay_url": f"{self.pay_url_base}/mockpay/{tid}",
        }

    async def get_status(self, transaction_id: str) -> StatusResult:
        self.calls.append({"method": "get_status",
                           "transaction_id": transaction_id})
        self._check()
        tx = self.transactions.get(transaction_id)
        if tx is None:
            return {"status": "NOT_FOUND", "raw": {}}
        return {
            "status": tx["status"],
            "raw": {
                "payId": transaction_id,
                "status": tx["status"],
                "amount": float(tx["amount"]),
                "cardNumber": "4***1234",
            },
        }

    async def refund(
        self, transaction_id: str, amount: Optional[Decimal] = None
    ) -> RefundResult:
        self.calls.append({"method": "refund",
                           "transaction_id": transaction_id,
                           "amount": amount})
        self._check()
        tx = self.transactions.get(transaction_id)
        if tx is None or tx["status"] != "OK":
            return {"success": False, "status": "NOT_REFUNDABLE"}
        tx["status"] = "REVERSED"
        return {"success": True, "status": "OK"}

    def set_status(self, transaction_id: str, status: str) -> bool:
        """Manual override hook (the mock payment screen's buttons)."""
        status = status.upper()
        if status not in MOCK_STATUSES:
            raise ValueError(f"invalid mock status: {status}")
        tx = self.transactions.get(transaction_id)
        if tx is None:
            return False
        tx["status"] = status
        logger.info("mock transaction updated",
                    transaction_id=transaction_id, status=status)
        return True

    def sign(self, payload: Mapping[str, Any]) -> str:
        return sign_payload(payload, self.signature_key)

    def verify_signature(
        self, payload: Mapping[str, Any], signature: Optional[str]
    ) -> bool:
        return verify_payload(payload, signature, self.signature_key)
