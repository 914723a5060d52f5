"""Consignment consult API provider.

Implements the three calls of the consult sequence against the private
consignment endpoints:

* ``POST /private-consignment/consult`` — open a consult for a client.
* ``POST /private-consignment/consult/{id}/authorize`` — authorize it.
* ``GET  /private-consignment/consult`` — look up today's (UTC) results for
  a document number, first page only.

Each call authenticates with the credential's bearer token.  Responses are
returned with their status untouched; see
:class:`~marginbot.providers.base.BaseConsultProvider` for the contract.

Typical usage::

    from marginbot.core.settings import Settings
    from marginbot.providers.api.consult import ConsultProvider

    async with ConsultProvider(Settings()) as provider:
        response = await provider.create_consult(credential, record)
"""

from __future__ import annotations

import logging
from typing import Any, Final

import httpx

from marginbot.core.models import ClientRecord, Credential
from marginbot.core.settings import Settings
from marginbot.providers.api.http_client import ProviderHttpClient
from marginbot.providers.base import BaseConsultProvider, ProviderResponse
from marginbot.providers.normalizers import (
    format_birth_date,
    parse_signer_phone,
    utc_day_range,
)

__all__ = [
    "CONSULT_PATH",
    "AUTHORIZE_PATH",
    "ConsultProvider",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

#: Create-consult (POST) and result-lookup (GET) endpoint.
CONSULT_PATH: Final[str] = "/private-consignment/consult"

#: Authorize endpoint; ``{id}`` is the consult id returned on creation.
AUTHORIZE_PATH: Final[str] = "/private-consignment/consult/{id}/authorize"

#: Page size of the result lookup.  Only the first page is ever read.
_RESULT_PAGE_SIZE: Final[int] = 50


def _decode_body(response: httpx.Response) -> Any:
    if not response.content:
        return None
    try:
        return response.json()
    except ValueError:
        return response.text


def _auth_headers(credential: Credential) -> dict[str, str]:
    return {"Authorization": f"Bearer {credential.access_token}"}


class ConsultProvider(BaseConsultProvider):
    """Live consult provider backed by :class:`ProviderHttpClient`.

    Args:
        settings: Application settings (base URL, provider code, timeouts,
            fallback signer phone).
        transport: Optional custom httpx transport, used by tests.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self._provider_code = settings.consult_provider
        self._fallback_phone = settings.default_signer_phone
        self._client = ProviderHttpClient(
            base_url=settings.consult_base_url,
            timeout=settings.http_timeout_s,
            max_attempts=settings.http_max_attempts,
            transport=transport,
            label=self.name,
        )

    async def close(self) -> None:
        await self._client.close()

    # ------------------------------------------------------------------
    # Request builders
    # ------------------------------------------------------------------

    def build_consult_body(self, record: ClientRecord) -> dict[str, Any]:
        """Return the JSON body of a create-consult request for *record*."""
        return {
            "borrowerDocumentNumber": record.document11 or "",
            "gender": str(record.sex or ""),
            "birthDate": format_birth_date(record.birth_date),
            "signerName": str(record.name or ""),
            "signerEmail": str(record.email or ""),
            "signerPhone": parse_signer_phone(record.phone, self._fallback_phone).as_payload(),
            "provider": self._provider_code,
        }

    # ------------------------------------------------------------------
    # BaseConsultProvider
    # ------------------------------------------------------------------

    async def create_consult(
        self, credential: Credential, record: ClientRecord
    ) -> ProviderResponse:
        response = await self._client.post(
            CONSULT_PATH,
            json=self.build_consult_body(record),
            headers=_auth_headers(credential),
        )
        return ProviderResponse(status=response.status_code, body=_decode_body(response))

    async def authorize(self, credential: Credential, consult_id: str) -> ProviderResponse:
        response = await self._client.post(
            AUTHORIZE_PATH.format(id=consult_id),
            json={},
            headers=_auth_headers(credential),
        )
        return ProviderResponse(status=response.status_code, body=_decode_body(response))

    async def fetch_result(
        self, credential: Credential, document_number: str
    ) -> ProviderResponse:
        start_date, end_date = utc_day_range()
        response = await self._client.get(
            CONSULT_PATH,
            params={
                "startDate": start_date,
                "endDate": end_date,
                "limit": _RESULT_PAGE_SIZE,
                "page": 1,
                "search": document_number,
                "provider": self._provider_code,
            },
            headers=_auth_headers(credential),
        )
        return ProviderResponse(status=response.status_code, body=_decode_body(response))
