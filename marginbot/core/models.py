"""Marginbot core domain models.

This module defines the records that flow between the store, the
orchestrator and the consult provider:

* :class:`ClientRecord` — one pending client row read from the store.
* :class:`Credential` — one active bearer token, scoped to a tenant.
* :class:`ResultPayload` — the normalised consult result written back to
  the store.
* :class:`RecordStatus` — the fixed status vocabulary of client rows.

All models are **frozen** so they can be shared between concurrently running
worker tasks without accidental mutation.

Typical usage::

    from marginbot.core.models import ClientRecord

    record = ClientRecord(
        id=1,
        document_number="123.456.789-01",
        name="Maria Silva",
        sex="F",
        birth_date="1990-04-12",
    )
    record.document11           # "12345678901"
    record.has_required_fields  # True
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from enum import StrEnum
from typing import Final

from pydantic import BaseModel, Field, field_validator

from marginbot.core.ids import normalize_document, rate_window_key

__all__ = [
    "RecordStatus",
    "PENDING_STATUS_RANK",
    "ClientRecord",
    "Credential",
    "ResultPayload",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------


class RecordStatus(StrEnum):
    """Status vocabulary stored in the ``clients.status`` column."""

    AWAITING = "awaiting"
    AWAITING_CONSULT = "awaiting-consult"
    CONSENT_APPROVED = "consent-approved"
    AWAITING_CONSENT = "awaiting-consent"
    AWAITING_CREDIT_ANALYSIS = "awaiting-credit-analysis"
    FAILED = "failed"
    REJECTED = "rejected"
    SUCCESS = "success"


#: Statuses that make a row eligible for a cycle, with their priority rank.
#: Higher ranks are selected first.
PENDING_STATUS_RANK: Final[dict[RecordStatus, int]] = {
    RecordStatus.CONSENT_APPROVED: 3,
    RecordStatus.AWAITING_CONSULT: 2,
    RecordStatus.AWAITING: 1,
}


def _has_value(value: object) -> bool:
    return value is not None and str(value).strip() != ""


# ---------------------------------------------------------------------------
# Store records
# ---------------------------------------------------------------------------


class ClientRecord(BaseModel):
    """A pending client row awaiting a consult outcome.

    Attributes:
        id: Store primary key; ``None`` for records built outside the store.
        document_number: Raw document number exactly as stored.
        name: Client full name (sent as the consult signer name).
        sex: Client sex / gender code.
        birth_date: Birth date as stored (ISO string, ``date`` or
            ``datetime``).  Formatted by the provider client.
        email: Contact e-mail; may be empty.
        phone: Contact phone in any formatting; may be empty.
        status: Current status value (see :class:`RecordStatus`).
    """

    model_config = {"frozen": True}

    id: int | None = None
    document_number: str | None = None
    name: str | None = None
    sex: str | None = None
    birth_date: str | date | datetime | None = None
    email: str | None = None
    phone: str | None = None
    status: str | None = None

    @field_validator("document_number", "phone", mode="before")
    @classmethod
    def _coerce_numeric_to_str(cls, v: object) -> object:
        """Document and phone columns are sometimes stored as numbers."""
        if isinstance(v, int) and not isinstance(v, bool):
            return str(v)
        return v

    @property
    def document11(self) -> str | None:
        """Canonical 11-digit document number, or ``None`` if invalid."""
        return normalize_document(self.document_number)

    @property
    def has_required_fields(self) -> bool:
        """``True`` when every field needed to open a consult is present."""
        return (
            _has_value(self.document_number)
            and _has_value(self.sex)
            and _has_value(self.birth_date)
            and _has_value(self.name)
        )


class Credential(BaseModel):
    """An access token used to call the consult provider.

    Only the most recently issued credential of each tenant is active.

    Attributes:
        id: Store identifier of the credential row.
        access_token: Bearer token sent in the ``Authorization`` header.
        tenant: Owning tenant ("empresa"); ``None`` when not recorded.
        issued_at: When the token was issued.
        expires_in: Token lifetime in seconds as reported by the issuer.
    """

    model_config = {"frozen": True}

    id: int
    access_token: str = Field(..., min_length=1)
    tenant: str | None = None
    issued_at: datetime | None = None
    expires_in: int | None = None

    @property
    def tenant_label(self) -> str | None:
        """Trimmed tenant, or ``None`` when blank."""
        if self.tenant is None or not self.tenant.strip():
            return None
        return self.tenant.strip()

    @property
    def rate_key(self) -> str:
        """Key of this credential's hourly rate window."""
        return rate_window_key(self.tenant, self.id)


class ResultPayload(BaseModel):
    """Normalised consult result, ready to be merged into a client row.

    Attributes:
        document11: Canonical document number the update is keyed by.
        available_margin: Released margin value (2 dp); ``None`` keeps the
            stored value.
        status: Mapped status; ``None`` keeps the stored value.
        description: Provider description; always overwrites, including
            with ``None``.
        credential_tenant: Tenant of the credential that produced the
            result; ``None`` keeps the stored value.
    """

    model_config = {"frozen": True}

    document11: str = Field(..., min_length=11, max_length=11)
    available_margin: float | None = None
    status: str | None = None
    description: str | None = None
    credential_tenant: str | None = None
