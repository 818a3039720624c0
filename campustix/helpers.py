import time
import re
import secrets
from datetime import datetime, timezone
import hmac
from typing import Optional


# ----------------------------
# Helpers
# ----------------------------
_CODE_ALPHABET = "0123456789ABCDEFGHJKLMNPQRSTUVWXYZ"


def now_ts() -> float:
    return time.time()


def to_iso(ts: float | None) -> Optional[str]:
    if ts is None:
        return None
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def year_of(ts: float) -> int:
    return datetime.fromtimestamp(ts, tz=timezone.utc).year


def is_valid_email(email: Optional[str]) -> bool:
    if not email:
        return False
    email = email.strip()
    # simple but effective email check
    return re.match(r"^[^@\s]+@[^@\s]+\.[^@\s]+$", email) is not None


def ct_equal(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode(), b.encode())


def random_code(n: int) -> str:
    return "".join(secrets.choice(_CODE_ALPHABET) for _ in range(n))


def new_registration_number(ts: float) -> str:
    return f"CT-{year_of(ts)}-{random_code(10)}"


def new_ticket_number(ts: float) -> str:
    return f"CT-TIX-{year_of(ts)}-{random_code(12)}"


def new_order_id(ts: float) -> str:
    return f"CT-ORDER-{int(ts * 1000)}-{secrets.token_hex(4)}"
