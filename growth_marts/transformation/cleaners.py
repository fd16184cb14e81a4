"""
Data Cleaning Module

Field-level parsers used by the staging normalizer:
- Currency strings to fixed-point Decimal
- Integer counters that arrive as strings
- ISO timestamps (any offset) to naive UTC
- Storefront GIDs to bare ids
- Landing-page query strings and referrer hosts

Parsers raise ``MalformedRecord`` for values that cannot be trusted; the
normalizer catches it per record, logs, and moves on.
"""

from datetime import date, datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Dict, Optional
from urllib.parse import parse_qsl, urlsplit
import re

CENTS = Decimal("0.01")
ZERO = Decimal("0")

_CURRENCY_NOISE = re.compile(r"[$€£¥,\s]")
_GID_PREFIX = re.compile(r"^gid://[^/]+/[^/]+/")


class MalformedRecord(ValueError):
    """A raw payload field that cannot be parsed into its staging type"""

    def __init__(self, field: str, value: Any, reason: str = "unparseable"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"{field}: {reason} ({value!r})")


def quantize_money(amount: Decimal) -> Decimal:
    """Round to cents, half-up"""
    return amount.quantize(CENTS, rounding=ROUND_HALF_UP)


def parse_money(
    value: Any,
    field: str,
    required: bool = False,
    allow_negative: bool = False,
) -> Decimal:
    """
    Parse a monetary amount into a Decimal.

    Accepts numbers and strings with currency symbols or thousands separators
    (``"$1,234.50"``). Missing optional values parse as zero.

    Raises:
        MalformedRecord: unparseable, missing while required, or negative
            while ``allow_negative`` is False
    """
    if value is None or (isinstance(value, str) and not value.strip()):
        if required:
            raise MalformedRecord(field, value, "missing")
        return ZERO

    if isinstance(value, bool):
        raise MalformedRecord(field, value)

    try:
        if isinstance(value, (int, Decimal)):
            amount = Decimal(value)
        elif isinstance(value, float):
            amount = Decimal(str(value))
        else:
            amount = Decimal(_CURRENCY_NOISE.sub("", str(value)))
    except (InvalidOperation, ValueError):
        raise MalformedRecord(field, value) from None

    if not amount.is_finite():
        raise MalformedRecord(field, value, "not finite")
    if amount < 0 and not allow_negative:
        raise MalformedRecord(field, value, "negative")
    return amount


def parse_count(value: Any, field: str) -> int:
    """Parse a non-negative counter; missing values count as zero"""
    if value is None or value == "":
        return 0
    try:
        count = int(Decimal(str(value)))
    except (InvalidOperation, ValueError):
        raise MalformedRecord(field, value) from None
    if count < 0:
        raise MalformedRecord(field, value, "negative")
    return count


def parse_timestamp(value: Any, field: str) -> datetime:
    """
    Parse an ISO-8601 timestamp to a naive UTC datetime.

    Offset-aware inputs are converted to UTC; naive inputs are taken as UTC.
    """
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise MalformedRecord(field, value) from None
    else:
        raise MalformedRecord(field, value, "missing")

    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_day(value: Any, field: str) -> date:
    """Parse a calendar day (``YYYY-MM-DD`` or ``YYYYMMDD``)"""
    if isinstance(value, str) and re.fullmatch(r"\d{8}", value.strip()):
        text = value.strip()
        value = f"{text[:4]}-{text[4:6]}-{text[6:]}"
    return parse_timestamp(value, field).date()


def strip_gid(value: Any) -> Optional[str]:
    """``gid://shopify/Customer/123`` -> ``123``; plain ids pass through"""
    if value is None or value == "":
        return None
    return _GID_PREFIX.sub("", str(value))


def query_params(url: Optional[str]) -> Dict[str, str]:
    """Query parameters of a landing URL or path; malformed URLs give {}"""
    if not url or "?" not in url:
        return {}
    try:
        return dict(parse_qsl(urlsplit(url).query))
    except ValueError:
        return {}


def referrer_host(url: Optional[str]) -> str:
    """Lower-cased host of a referrer URL, tolerating bare domains"""
    if not url:
        return ""
    text = url.strip().lower()
    if "//" not in text:
        text = "//" + text
    try:
        return urlsplit(text).hostname or ""
    except ValueError:
        return ""


def clean_str(value: Any, max_length: Optional[int] = None) -> Optional[str]:
    """Trim a string field; empty strings become None"""
    if value is None:
        return None
    text = str(value).strip()
    if not text:
        return None
    return text[:max_length] if max_length else text


def to_cents(amount: Any) -> int:
    """Money -> integer cents, half-up"""
    if not isinstance(amount, Decimal):
        amount = Decimal(str(amount))
    return int((amount * 100).quantize(Decimal(1), rounding=ROUND_HALF_UP))
