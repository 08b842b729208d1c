import time
import re
import secrets
import uuid
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
import hashlib
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
def now_ts() -> float:
    return time.time()


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


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


# ----------------------------
# Signatures & tokens
# ----------------------------
def sign_payload(secret: str, body: bytes) -> str:
    """HMAC-SHA-512 over the raw body, hex encoded (gateway webhook format)."""
    return hmac.new(secret.encode(), body, hashlib.sha512).hexdigest()


def verify_signature(
        secret: str, body: bytes, signature: Optional[str]) -> bool:
    if not signature or not secret:
        return False
    expected = sign_payload(secret, body)
    # digests of another length can never match
    if len(expected) != len(signature):
        return False
    return ct_equal(expected, signature)


def new_token() -> str:
    # 256 bits, never derived from a ticket id
    return secrets.token_urlsafe(32)


def new_id() -> str:
    return uuid.uuid4().hex


# ----------------------------
# Money
# ----------------------------
def to_minor_units(price: Decimal | int | float | str) -> int:
    amount = Decimal(str(price)) * 100
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
