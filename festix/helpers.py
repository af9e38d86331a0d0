import time
import re
import json
import secrets
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hmac
from typing import Optional, Union

# uppercase alphanumerics; no "_" or "-" so codes read cleanly on paper
CODE_ALPHABET = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"

CENTS = Decimal("0.01")
UNITS = Decimal("1")


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


def hours_ago(hours: float, now: Optional[float] = None) -> float:
    return (now_ts() if now is None else now) - hours * 3600


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def normalize_email(email: str) -> str:
    return email.strip().lower()


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Money
# ----------------------------
def to_money(value: Union[Decimal, int, float, str]) -> Decimal:
    if not isinstance(value, Decimal):
        # str() first so 0.1 stays 0.1 instead of its binary expansion
        value = Decimal(str(value))
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


def round_units(value: Decimal) -> Decimal:
    return value.quantize(UNITS, rounding=ROUND_HALF_UP)


# ----------------------------
# Codes
# ----------------------------
def random_code(length: int) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length))


def order_number(prefix: str, ts: Optional[float] = None) -> str:
    """FL2507-7KQ2ZD style numbers: prefix, 2-digit year and month, 6 chars."""
    d = datetime.fromtimestamp(now_ts() if ts is None else ts, tz=timezone.utc)
    return f"{prefix}{d:%y%m}-{random_code(6)}"


def ticket_code() -> str:
    return random_code(12)


def qr_payload(code: str, **extra) -> str:
    data = {"code": code, "ts": int(now_ts() * 1000)}
    data.update(extra)
    return json.dumps(data, separators=(",", ":"))
