"""Canonical identifier strategy for Marginbot.

Two identifiers are shared by every layer of the application and must be
computed the same way everywhere:

Document number
---------------
Client rows carry a free-form document number (``"123.456.789-01"``,
``" 12345678901"``, ``"4567"`` …).  The canonical form is the **11-digit,
left-zero-padded digit string**.  The store matches and deduplicates rows by
this value, the provider is queried with it, and the result payload is keyed
by it.  A document that yields more than 11 digits has no canonical form and
is treated as invalid.

+-------------------------+-------------------+
| Raw value               | Canonical         |
+=========================+===================+
| ``"123.456.789-01"``    | ``"12345678901"`` |
+-------------------------+-------------------+
| ``"4567"``              | ``"00000004567"`` |
+-------------------------+-------------------+
| ``"123456789012"``      | ``None``          |
+-------------------------+-------------------+

Rate-window key
---------------
The hourly rate window belongs to the tenant that owns a credential, so
rotating a tenant's token does not reset its window.  Credentials without a
tenant fall back to a per-credential key.

Typical usage::

    from marginbot.core.ids import normalize_document, rate_window_key

    normalize_document("123.456.789-01")      # "12345678901"
    rate_window_key(" acme ", 7)              # "tenant:acme"
    rate_window_key(None, 7)                  # "credential:7"
"""

from __future__ import annotations

import logging
import re
from typing import Final

__all__ = [
    "DOCUMENT_LENGTH",
    "normalize_document",
    "rate_window_key",
]

logger = logging.getLogger(__name__)

#: Number of digits in a canonical document number.
DOCUMENT_LENGTH: Final[int] = 11

_NON_DIGITS: Final[re.Pattern[str]] = re.compile(r"\D")


def normalize_document(value: object) -> str | None:
    """Return the canonical 11-digit document number, or ``None`` if invalid.

    Args:
        value: Raw document number in any formatting (``str``, ``int`` or
            ``None``).

    Returns:
        The left-zero-padded 11-digit string, or ``None`` when *value* holds
        no digits or more than :data:`DOCUMENT_LENGTH` digits.
    """
    if value is None:
        return None
    digits = _NON_DIGITS.sub("", str(value))
    if not digits or len(digits) > DOCUMENT_LENGTH:
        return None
    return digits.zfill(DOCUMENT_LENGTH)


def rate_window_key(tenant: str | None, credential_id: object) -> str:
    """Return the key under which a credential's hourly window is tracked.

    Args:
        tenant: Tenant ("empresa") that owns the credential.  Blank values
            are treated as absent.
        credential_id: The credential's own identifier, used when the tenant
            is absent.

    Returns:
        ``"tenant:<tenant>"`` or ``"credential:<id>"``.
    """
    if tenant is not None and str(tenant).strip():
        return f"tenant:{str(tenant).strip()}"
    return f"credential:{credential_id if credential_id is not None else 'unknown'}"
