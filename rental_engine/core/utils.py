import json
import secrets
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
from uuid import uuid4 as _uuid4

CENT = Decimal("0.01")


def uuid4() -> str:
    return str(_uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for DateTime(timezone=True)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def money(value) -> Decimal:
    """Quantize to two decimal places, half-up."""
    if not isinstance(value, Decimal):
        value = Decimal(str(value))
    return value.quantize(CENT, rounding=ROUND_HALF_UP)


def generate_rental_code(now: datetime) -> str:
    return f"RNT-{now:%y%m%d}-{_uuid4().hex[:8].upper()}"


def generate_session_id() -> str:
    return secrets.token_hex(32)


def json_default(o):
    if isinstance(o, Decimal):
        return str(o)
    if isinstance(o, (date, datetime)):
        return o.isoformat()
    return str(o)


def json_dumps(obj) -> str:
    return json.dumps(obj, ensure_ascii=False, default=json_default)
