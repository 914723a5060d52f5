"""Consult provider interface contract and response types.

The orchestrator talks to the downstream consignment API only through
:class:`BaseConsultProvider`.  The live implementation is
:class:`~marginbot.providers.api.consult.ConsultProvider`; tests substitute
in-memory fakes.

Contract
--------
* Every call returns a :class:`ProviderResponse` carrying the HTTP status
  and decoded body, **whatever the status**.  Deciding what a 400 or a 500
  means is the pipeline's job.
* A call that produced no HTTP response at all raises
  :class:`~marginbot.core.exceptions.ProviderTransportError`, so transport
  failures stay distinguishable from error statuses.

Result payloads are modelled by :class:`ConsultResultItem`, whose fields are
all optional; :func:`merge_result_items` applies the "first element, fall
back to the second" extraction rule with explicit presence checks.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from types import TracebackType
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from marginbot.core.models import ClientRecord, Credential

__all__ = [
    "ProviderResponse",
    "ConsultResultItem",
    "result_items_from_body",
    "merge_result_items",
    "BaseConsultProvider",
]

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Response types
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ProviderResponse:
    """Status code and decoded body of one provider call.

    Attributes:
        status: HTTP status code.
        body: Decoded JSON body, the raw text when the body is not JSON, or
            ``None`` for an empty body.
    """

    status: int
    body: Any = None

    @property
    def is_success(self) -> bool:
        """``True`` for any 2xx status."""
        return 200 <= self.status < 300

    @property
    def consult_id(self) -> str | None:
        """The ``id`` of a freshly created consult, if the body carries one."""
        if isinstance(self.body, dict):
            value = self.body.get("id")
            if value is not None and str(value).strip():
                return str(value)
        return None


class ConsultResultItem(BaseModel):
    """One element of the ``data`` array returned by a result lookup.

    ``None`` means the field was missing or null in the payload.  Fields keep
    the raw payload value of any type; the normalisers coerce each one on
    its own.
    """

    model_config = ConfigDict(extra="ignore", populate_by_name=True, frozen=True)

    document_number: Any = Field(None, alias="documentNumber")
    available_margin_value: Any = Field(None, alias="availableMarginValue")
    status: Any = None
    description: Any = None

    @property
    def is_empty(self) -> bool:
        """``True`` when none of the extracted fields is present."""
        return (
            self.document_number is None
            and self.available_margin_value is None
            and self.status is None
            and self.description is None
        )


def _parse_item(raw: Any) -> ConsultResultItem:
    if not isinstance(raw, dict):
        logger.debug("Result item is not an object — ignored: %r", raw)
        return ConsultResultItem()
    return ConsultResultItem.model_validate(raw)


def result_items_from_body(body: Any) -> list[ConsultResultItem]:
    """Return the result items of a lookup response body.

    Anything other than a ``{"data": [...]}`` object yields an empty list.
    Only the first two elements are parsed; nothing beyond them is used.
    """
    if not isinstance(body, dict):
        return []
    data = body.get("data")
    if not isinstance(data, list):
        return []
    return [_parse_item(raw) for raw in data[:2]] if data else []


def merge_result_items(items: list[ConsultResultItem]) -> ConsultResultItem:
    """Take every field from the first item, falling back to the second.

    Args:
        items: Parsed result items (only the first two are consulted).

    Returns:
        A merged :class:`ConsultResultItem`; empty when *items* is empty.
    """
    first = items[0] if items else ConsultResultItem()
    second = items[1] if len(items) > 1 else ConsultResultItem()

    def pick(name: str) -> Any:
        value = getattr(first, name)
        return value if value is not None else getattr(second, name)

    return ConsultResultItem(
        document_number=pick("document_number"),
        available_margin_value=pick("available_margin_value"),
        status=pick("status"),
        description=pick("description"),
    )


# ---------------------------------------------------------------------------
# Provider contract
# ---------------------------------------------------------------------------


class BaseConsultProvider(ABC):
    """Abstract base for consult providers.

    The async context manager protocol is provided for free; override
    :meth:`close` to release resources.
    """

    name: str = "consult"

    async def close(self) -> None:  # noqa: B027
        """Release any resources held by this provider."""

    async def __aenter__(self) -> BaseConsultProvider:
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc_val: BaseException | None,
        exc_tb: TracebackType | None,
    ) -> None:
        await self.close()

    @abstractmethod
    async def create_consult(
        self, credential: Credential, record: ClientRecord
    ) -> ProviderResponse:
        """Open a consult for *record*.

        A 2xx response body carries the new consult ``id``; a 400 means a
        consult for the document is already in progress.

        Raises:
            ProviderTransportError: No HTTP response was received.
        """

    @abstractmethod
    async def authorize(self, credential: Credential, consult_id: str) -> ProviderResponse:
        """Authorize a consult created by :meth:`create_consult`.

        Raises:
            ProviderTransportError: No HTTP response was received.
        """

    @abstractmethod
    async def fetch_result(
        self, credential: Credential, document_number: str
    ) -> ProviderResponse:
        """Look up today's (UTC) consult results for *document_number*.

        Raises:
            ProviderTransportError: No HTTP response was received.
        """
