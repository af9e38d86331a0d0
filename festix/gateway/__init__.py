from typing import Optional

import httpx

from ._base import (
    PaymentGateway,
    TransactionResult,
    StatusResult,
    RefundResult,
    Customer,
    ReturnUrls,
    callback_fields,
    sign_payload,
    verify_payload,
)
from ._maib import MaibGateway
from ._mock import MockGateway, MOCK_STATUSES
from .. import config


# Factory keeps server.py constructor-agnostic; mock vs. real is decided
# once, at configuration time.
def new_gateway(*, mock: Optional[bool] = None,
                http: Optional[httpx.AsyncClient] = None) -> PaymentGateway:
    if config.MAIB_MOCK_MODE if mock is None else mock:
        return MockGateway(
            signature_key=config.MAIB_SIGNATURE_KEY,
            pay_url_base=config.API_URL,
        )
    return MaibGateway(
        base_url=config.MAIB_BASE_URL,
        project_id=config.MAIB_PROJECT_ID,
        project_secret=config.MAIB_PROJECT_SECRET,
        signature_key=config.MAIB_SIGNATURE_KEY,
        timeout=config.MAIB_TIMEOUT,
        http=http,
    )


__all__ = [
    "PaymentGateway", "MaibGateway", "MockGateway", "MOCK_STATUSES",
    "TransactionResult", "StatusResult", "RefundResult", "Customer",
    "ReturnUrls", "callback_fields", "sign_payload", "verify_payload",
    "new_gateway",
]
