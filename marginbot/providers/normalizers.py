"""Field normalisation utilities shared by the consult provider and pipeline.

Centralising the parsing of provider payloads and client fields here means:

* Parsing logic is tested once, in isolation from HTTP and the store.
* The outbound request builder and the inbound result mapper agree on
  formats (dates, phones, decimal values).

Typical usage::

    from marginbot.providers.normalizers import (
        clean_description,
        format_birth_date,
        map_status,
        parse_margin_value,
        parse_signer_phone,
        utc_day_range,
    )

    parse_margin_value("1.234,56")   # 1234.56
    map_status("CONSENT_APPROVED")   # "consent-approved"
"""

from __future__ import annotations

import logging
import math
import re
from dataclasses import dataclass
from datetime import UTC, date, datetime, time, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Final

from marginbot.core.models import RecordStatus

__all__ = [
    "SignerPhone",
    "parse_margin_value",
    "map_status",
    "clean_description",
    "format_birth_date",
    "parse_signer_phone",
    "utc_day_range",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Provider status codes and the store status each one maps to.
_STATUS_MAP: Final[dict[str, RecordStatus]] = {
    "CONSENT_APPROVED": RecordStatus.CONSENT_APPROVED,
    "WAITING_CONSENT": RecordStatus.AWAITING_CONSENT,
    "WAITING_CONSULT": RecordStatus.AWAITING_CONSULT,
    "WAITING_CREDIT_ANALYSIS": RecordStatus.AWAITING_CREDIT_ANALYSIS,
    "FAILED": RecordStatus.FAILED,
    "REJECTED": RecordStatus.REJECTED,
    "SUCCESS": RecordStatus.SUCCESS,
}

_PLAIN_DECIMAL_RE: Final[re.Pattern[str]] = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)$")
_WHITESPACE_RE: Final[re.Pattern[str]] = re.compile(r"\s+")
_NON_DIGITS_RE: Final[re.Pattern[str]] = re.compile(r"\D")
_CENTS: Final[Decimal] = Decimal("0.01")

#: Accepted textual birth-date layouts besides ISO 8601.
_BIRTH_DATE_FORMATS: Final[tuple[str, ...]] = ("%d/%m/%Y", "%d-%m-%Y")


def _has_value(value: object) -> bool:
    return value is not None and str(value).strip() != ""


def _round_cents(value: Decimal) -> float | None:
    # quantize fails once the value has more digits than the context precision.
    try:
        return float(value.quantize(_CENTS, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        logger.debug("Margin value %s is out of range; ignoring it.", value)
        return None


# ---------------------------------------------------------------------------
# Inbound (result payload) normalisers
# ---------------------------------------------------------------------------


def parse_margin_value(raw: Any) -> float | None:
    """Parse a released-margin value into a float rounded to 2 decimals.

    Strings may use either ``.`` or ``,`` as the decimal point.  When both
    appear, whichever comes **last** is the decimal point and the other is a
    thousands separator.  A lone ``,`` is the decimal point.

    Examples::

        parse_margin_value("1.234,56")   # 1234.56
        parse_margin_value("1,234.56")   # 1234.56
        parse_margin_value("50")         # 50.0
        parse_margin_value(" 12,5 ")     # 12.5
        parse_margin_value("")           # None
        parse_margin_value("n/a")        # None

    Args:
        raw: Value as found in the provider payload (``str``, ``int``,
            ``float`` or ``None``).

    Returns:
        The parsed value, or ``None`` when *raw* is absent or unparseable.
    """
    if raw is None or isinstance(raw, bool):
        return None

    if isinstance(raw, int | float):
        if not math.isfinite(raw):
            return None
        return _round_cents(Decimal(str(raw)))

    value = _WHITESPACE_RE.sub("", str(raw))
    if not value:
        return None

    has_dot = "." in value
    has_comma = "," in value
    if has_dot and has_comma:
        if value.rfind(",") > value.rfind("."):
            value = value.replace(".", "").replace(",", ".", 1)
        else:
            value = value.replace(",", "")
    elif has_comma:
        value = value.replace(",", ".", 1)

    if not _PLAIN_DECIMAL_RE.match(value):
        return None

    return _round_cents(Decimal(value))


def map_status(raw: Any) -> str | None:
    """Map a provider status code onto the store status vocabulary.

    Matching is case-insensitive.  Unknown codes pass through unchanged so
    new provider states are never silently dropped.

    Returns:
        The store status string, or ``None`` for a blank / absent value.
    """
    if not _has_value(raw):
        return None
    mapped = _STATUS_MAP.get(str(raw).strip().upper())
    if mapped is None:
        return str(raw)
    return str(mapped)


def clean_description(raw: Any) -> str | None:
    """Trim a provider description; blank becomes ``None``."""
    if not _has_value(raw):
        return None
    return str(raw).strip()


# ---------------------------------------------------------------------------
# Outbound (consult request) normalisers
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class SignerPhone:
    """Phone number split the way the consult API expects it."""

    country_code: str
    area_code: str
    number: str

    def as_payload(self) -> dict[str, str]:
        """Return the JSON shape used in consult requests."""
        return {
            "countryCode": self.country_code,
            "areaCode": self.area_code,
            "phoneNumber": self.number,
        }


def format_birth_date(raw: Any) -> str:
    """Return a birth date as ``YYYY-MM-DD``, or ``""`` if it cannot be read.

    Accepts :class:`~datetime.date` / :class:`~datetime.datetime` objects,
    ISO 8601 strings (date or date-time) and ``dd/mm/YYYY`` strings.
    """
    if raw is None:
        return ""
    if isinstance(raw, datetime):
        if raw.tzinfo is not None:
            raw = raw.astimezone(UTC)
        return raw.date().isoformat()
    if isinstance(raw, date):
        return raw.isoformat()

    text = str(raw).strip()
    if not text:
        return ""

    try:
        return format_birth_date(datetime.fromisoformat(text))
    except ValueError:
        pass

    for fmt in _BIRTH_DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue

    logger.debug("Unparseable birth date %r — sending empty value", text)
    return ""


def parse_signer_phone(raw: Any, fallback: SignerPhone) -> SignerPhone:
    """Split a free-form phone number into country code, area code and number.

    Best-effort heuristic:

    1. Strip every non-digit; nothing left → *fallback*.
    2. If the digits start with the default country code and there are at
       least 12 of them, drop the country code.
    3. Keep only the last 11 digits.
    4. 11 or 10 digits → area code (2) + number; 9 or 8 digits → number
       with the fallback area code; anything else → *fallback*.

    Args:
        raw: Phone as stored for the client.
        fallback: Default phone used when *raw* cannot be interpreted.  Its
            country code is also the one recognised in step 2.

    Returns:
        A :class:`SignerPhone`.
    """
    digits = _NON_DIGITS_RE.sub("", str(raw or ""))
    if not digits:
        return fallback

    country_code = fallback.country_code or "55"
    if digits.startswith(country_code) and len(digits) >= 12:
        digits = digits[len(country_code):]

    if len(digits) > 11:
        digits = digits[-11:]

    if len(digits) in (10, 11):
        return SignerPhone(country_code=country_code, area_code=digits[:2], number=digits[2:])

    if len(digits) in (8, 9):
        return SignerPhone(
            country_code=country_code,
            area_code=fallback.area_code,
            number=digits,
        )

    return fallback


def utc_day_range(now: datetime | None = None) -> tuple[str, str]:
    """Return the current UTC calendar day as a pair of ISO timestamps.

    Timestamps are truncated to whole seconds: ``00:00:00`` to ``23:59:59``.

    Args:
        now: Reference instant; defaults to the current time.

    Returns:
        ``(start, end)`` such as
        ``("2026-10-19T00:00:00Z", "2026-10-19T23:59:59Z")``.
    """
    now = now or datetime.now(UTC)
    if now.tzinfo is not None:
        now = now.astimezone(UTC)
    start = datetime.combine(now.date(), time(0, 0, 0))
    end = start + timedelta(days=1) - timedelta(seconds=1)
    return (
        start.strftime("%Y-%m-%dT%H:%M:%SZ"),
        end.strftime("%Y-%m-%dT%H:%M:%SZ"),
    )
