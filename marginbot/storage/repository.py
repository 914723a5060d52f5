"""Repositories for client records and credentials.

Provides the two data-access objects the orchestrator works with:

* :class:`ClientRepository` — pending-batch selection and result write-back
  for the ``clients`` table.
* :class:`CredentialRepository` — active credential lookup for the
  ``credentials`` table.

Rows are matched by the canonical 11-digit document number computed by the
``doc11()`` SQL function that :func:`~marginbot.storage.database.open_db`
registers.  Every database failure is re-raised as
:class:`~marginbot.core.exceptions.StorageError`.

Typical usage::

    from marginbot.storage.database import open_db
    from marginbot.storage.repository import ClientRepository

    async def run() -> None:
        conn = await open_db()
        clients = ClientRepository(conn)

        batch = await clients.fetch_pending_batch(500)
        rows = await clients.update_by_document(payload)
        await conn.close()
"""

from __future__ import annotations

import asyncio
import logging
from datetime import UTC, date, datetime
from typing import Any, Final

import aiosqlite
from pydantic import ValidationError

from marginbot.core.exceptions import StorageError
from marginbot.core.models import (
    PENDING_STATUS_RANK,
    ClientRecord,
    Credential,
    RecordStatus,
    ResultPayload,
)

__all__ = [
    "ClientRepository",
    "CredentialRepository",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# SQL
# ---------------------------------------------------------------------------

_RANK_CASE: Final[str] = (
    "CASE status "
    + " ".join(f"WHEN '{status}' THEN {rank}" for status, rank in PENDING_STATUS_RANK.items())
    + " ELSE 0 END"
)

_PENDING_PLACEHOLDERS: Final[str] = ", ".join("?" * len(PENDING_STATUS_RANK))

#: One row per canonical document: the best-ranked pending row, random among
#: rows of equal rank.  Rows whose document has no canonical form are skipped.
_SQL_PENDING_BATCH: Final[str] = f"""
WITH pending AS (
    SELECT
        id, document_number, name, sex, birth_date, email, phone, status,
        doc11(document_number) AS doc11_key,
        {_RANK_CASE} AS status_rank
    FROM clients
    WHERE status IN ({_PENDING_PLACEHOLDERS})
),
ranked AS (
    SELECT
        *,
        ROW_NUMBER() OVER (
            PARTITION BY doc11_key
            ORDER BY status_rank DESC, RANDOM()
        ) AS doc_rownum
    FROM pending
    WHERE doc11_key IS NOT NULL
)
SELECT id, document_number, name, sex, birth_date, email, phone, status
FROM ranked
WHERE doc_rownum = 1
ORDER BY status_rank DESC, RANDOM()
LIMIT ?
"""

_SQL_UPDATE_BY_DOCUMENT: Final[str] = """
UPDATE clients
SET
    available_margin  = COALESCE(?, available_margin),
    status            = COALESCE(?, status),
    description       = ?,
    credential_tenant = COALESCE(?, credential_tenant),
    consulted_at      = ?
WHERE doc11(document_number) = ?
"""

#: Latest credential of each tenant (credentials without a tenant form one
#: group), ordered by id.  Tenants are grouped by their trimmed value, the
#: same value the rate-window key is built from.
_SQL_ACTIVE_CREDENTIALS: Final[str] = """
WITH latest AS (
    SELECT
        id, access_token, tenant, issued_at, expires_in,
        ROW_NUMBER() OVER (
            PARTITION BY NULLIF(TRIM(tenant, char(32, 9, 10, 13)), '')
            ORDER BY issued_at DESC, id DESC
        ) AS rn
    FROM credentials
)
SELECT id, access_token, tenant, issued_at, expires_in
FROM latest
WHERE rn = 1
ORDER BY id ASC
"""


def _iso(value: str | date | datetime | None) -> str | None:
    if isinstance(value, datetime | date):
        return value.isoformat()
    return value


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------


class ClientRepository:
    """Data-access object for the ``clients`` table.

    Owns no connection lifecycle; the caller supplies an open
    :class:`aiosqlite.Connection` (see
    :func:`~marginbot.storage.database.open_db`) and closes it when done.

    Writes are serialised by an :class:`asyncio.Lock` so that concurrently
    running credential workers never interleave an ``UPDATE`` with another
    worker's ``COMMIT`` on the shared connection.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn
        self._write_lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Read helpers
    # ------------------------------------------------------------------

    async def fetch_pending_batch(self, limit: int) -> list[ClientRecord]:
        """Return up to *limit* pending records, one per canonical document.

        Selection rules:

        * Only rows whose status is pending (``consent-approved``,
          ``awaiting-consult``, ``awaiting``).
        * Rows whose document cannot be normalised are excluded.
        * Rows sharing a canonical document are deduplicated, keeping the
          best-ranked one (random among equal ranks).
        * Result ordered by rank descending, random within a rank.

        Args:
            limit: Maximum number of rows.  ``<= 0`` returns ``[]``.

        Raises:
            StorageError: The query failed.
        """
        if limit <= 0:
            return []

        params: list[Any] = [str(status) for status in PENDING_STATUS_RANK]
        params.append(limit)
        try:
            cursor = await self._conn.execute(_SQL_PENDING_BATCH, params)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not fetch pending batch: {exc}") from exc

        records: list[ClientRecord] = []
        for row in rows:
            try:
                records.append(ClientRecord(**dict(row)))
            except ValidationError as exc:
                raise StorageError(f"Malformed client row id={row['id']}: {exc}") from exc

        logger.debug("fetch_pending_batch: %d row(s) selected (limit=%d)", len(records), limit)
        return records

    # ------------------------------------------------------------------
    # Write helpers
    # ------------------------------------------------------------------

    async def update_by_document(self, payload: ResultPayload) -> int:
        """Merge a consult result into every row matching its document.

        ``available_margin``, ``status`` and ``credential_tenant`` are only
        overwritten when the payload carries a value; ``description`` is
        always overwritten; ``consulted_at`` is set to the current UTC time.

        Args:
            payload: Normalised result keyed by canonical document number.

        Returns:
            Number of rows affected (``0`` when no row matches).

        Raises:
            StorageError: The update or its commit failed.
        """
        params = (
            payload.available_margin,
            payload.status,
            payload.description,
            payload.credential_tenant,
            datetime.now(UTC).isoformat(),
            payload.document11,
        )
        async with self._write_lock:
            try:
                cursor = await self._conn.execute(_SQL_UPDATE_BY_DOCUMENT, params)
                rows_affected = cursor.rowcount
                await self._conn.commit()
            except aiosqlite.Error as exc:
                raise StorageError(
                    f"Could not update client {payload.document11}: {exc}"
                ) from exc

        logger.debug(
            "update_by_document %s → %d row(s) (status=%s margin=%s)",
            payload.document11,
            rows_affected,
            payload.status,
            payload.available_margin,
        )
        return max(rows_affected, 0)

    async def insert(
        self,
        *,
        document_number: str | None,
        name: str | None = None,
        sex: str | None = None,
        birth_date: str | date | None = None,
        email: str | None = None,
        phone: str | None = None,
        status: str | None = RecordStatus.AWAITING,
    ) -> int:
        """Insert a client row and return its id.  Used for seeding."""
        async with self._write_lock:
            try:
                cursor = await self._conn.execute(
                    """
                    INSERT INTO clients
                        (document_number, name, sex, birth_date, email, phone, status)
                    VALUES
                        (?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        document_number,
                        name,
                        sex,
                        _iso(birth_date),
                        email,
                        phone,
                        str(status) if status is not None else None,
                    ),
                )
                await self._conn.commit()
            except aiosqlite.Error as exc:
                raise StorageError(f"Could not insert client: {exc}") from exc
        return int(cursor.lastrowid or 0)


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------


class CredentialRepository:
    """Data-access object for the ``credentials`` table.

    Args:
        conn: Open, configured :class:`aiosqlite.Connection`.
    """

    def __init__(self, conn: aiosqlite.Connection) -> None:
        self._conn = conn

    async def fetch_active(self) -> list[Credential]:
        """Return the latest credential of each tenant, ordered by id.

        "Latest" means greatest ``issued_at``, ties broken by greatest id.

        Raises:
            StorageError: The query failed or a row is malformed.
        """
        try:
            cursor = await self._conn.execute(_SQL_ACTIVE_CREDENTIALS)
            rows = await cursor.fetchall()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not fetch active credentials: {exc}") from exc

        try:
            credentials = [Credential(**dict(row)) for row in rows]
        except ValidationError as exc:
            raise StorageError(f"Malformed credential row: {exc}") from exc

        logger.debug("fetch_active: %d active credential(s)", len(credentials))
        return credentials

    async def insert(
        self,
        *,
        access_token: str,
        tenant: str | None = None,
        issued_at: datetime | None = None,
        expires_in: int | None = None,
    ) -> int:
        """Insert a credential row and return its id.  Used for seeding."""
        issued = issued_at or datetime.now(UTC)
        try:
            cursor = await self._conn.execute(
                """
                INSERT INTO credentials (access_token, tenant, issued_at, expires_in)
                VALUES (?, ?, ?, ?)
                """,
                (access_token, tenant, issued.isoformat(), expires_in),
            )
            await self._conn.commit()
        except aiosqlite.Error as exc:
            raise StorageError(f"Could not insert credential: {exc}") from exc
        return int(cursor.lastrowid or 0)
