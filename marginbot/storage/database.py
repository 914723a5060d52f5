"""SQLite database initialisation for Marginbot.

This module is responsible for:

* Opening (or creating) the SQLite file.
* Configuring low-level PRAGMA settings (WAL journal mode, foreign keys).
* Registering the ``doc11()`` SQL function, the store-side twin of
  :func:`~marginbot.core.ids.normalize_document`, so that matching and
  deduplication by document number happen inside the query.
* Bootstrapping the schema via ``CREATE TABLE IF NOT EXISTS`` and adding
  columns missing from an older ``clients`` table.  Safe to call on every
  startup.

Consumers should call :func:`open_db` once at process startup and share the
returned connection with the repository layer.  The connection must be closed
explicitly (``await conn.close()``); the orchestrator does this on shutdown.

Typical usage::

    from marginbot.storage.database import open_db

    async def main() -> None:
        conn = await open_db(Path("data/marginbot.db"))
        # ... pass conn to ClientRepository / CredentialRepository ...
        await conn.close()
"""

from __future__ import annotations

import logging
from pathlib import Path

import aiosqlite

from marginbot.core.ids import normalize_document

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

#: Fallback database path when no explicit path is passed to :func:`open_db`.
DEFAULT_DB_PATH: Path = Path("data/marginbot.db")

# ---------------------------------------------------------------------------
# DDL
# ---------------------------------------------------------------------------

#: ``clients`` holds the records awaiting a consult and their outcome.
#:
#: Column notes
#: ------------
#: document_number    Raw document as captured; matched via ``doc11()``.
#: status             One of :class:`~marginbot.core.models.RecordStatus`.
#: available_margin   Released margin of the last successful lookup.
#: description        Provider description of the last lookup (always
#:                    overwritten, may become NULL).
#: credential_tenant  Tenant of the credential that produced the last result.
#: consulted_at       ISO-8601 UTC timestamp of the last store update.
_DDL_CLIENTS = """\
CREATE TABLE IF NOT EXISTS clients (
    id                INTEGER  PRIMARY KEY AUTOINCREMENT,
    document_number   TEXT,
    name              TEXT,
    sex               TEXT,
    birth_date        TEXT,
    email             TEXT,
    phone             TEXT,
    status            TEXT,
    available_margin  REAL,
    description       TEXT,
    credential_tenant TEXT,
    consulted_at      TEXT
)"""

#: ``credentials`` holds issued access tokens.  Only the latest token of each
#: tenant is used.
_DDL_CREDENTIALS = """\
CREATE TABLE IF NOT EXISTS credentials (
    id           INTEGER  PRIMARY KEY AUTOINCREMENT,
    access_token TEXT     NOT NULL,
    tenant       TEXT,
    issued_at    TEXT     NOT NULL,
    expires_in   INTEGER
)"""

_DDL_CLIENTS_STATUS_INDEX = (
    "CREATE INDEX IF NOT EXISTS idx_clients_status ON clients (status)"
)

#: Columns added after the first schema version, with their declared type.
_LATE_CLIENT_COLUMNS: tuple[tuple[str, str], ...] = (
    ("description", "TEXT"),
    ("credential_tenant", "TEXT"),
)

# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


async def open_db(path: Path | str | None = None) -> aiosqlite.Connection:
    """Open (or create) the SQLite database and configure it for production.

    Steps performed on every call:

    1. Create parent directories for the DB file if they do not exist.
    2. Open the ``aiosqlite`` connection.
    3. Set ``row_factory = aiosqlite.Row`` so columns can be accessed by name.
    4. Enable WAL journal mode and foreign-key enforcement.
    5. Register the ``doc11()`` SQL function.
    6. Call :func:`create_schema` to bootstrap tables (idempotent).

    Args:
        path: Filesystem path for the SQLite file.  Defaults to
            :data:`DEFAULT_DB_PATH`.

    Returns:
        An open, configured :class:`aiosqlite.Connection`.  The caller is
        responsible for closing it.

    Raises:
        aiosqlite.OperationalError: If the database file cannot be opened or
            created (e.g. permission denied on the parent directory).
    """
    db_path = Path(path or DEFAULT_DB_PATH)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    logger.debug("Opening SQLite database at %s", db_path)

    conn: aiosqlite.Connection = await aiosqlite.connect(db_path)
    conn.row_factory = aiosqlite.Row

    await _configure_pragmas(conn)
    await conn.create_function("doc11", 1, normalize_document, deterministic=True)
    await create_schema(conn)

    logger.info("SQLite database ready at %s (WAL mode enabled, schema verified)", db_path)
    return conn


async def create_schema(conn: aiosqlite.Connection) -> None:
    """Create all required tables and late-added columns if missing.

    Idempotent; existing data is untouched.

    Args:
        conn: An open :class:`aiosqlite.Connection`.
    """
    await conn.execute(_DDL_CLIENTS)
    await conn.execute(_DDL_CREDENTIALS)
    await conn.execute(_DDL_CLIENTS_STATUS_INDEX)

    cursor = await conn.execute("PRAGMA table_info(clients)")
    existing = {row[1] for row in await cursor.fetchall()}
    for column, column_type in _LATE_CLIENT_COLUMNS:
        if column not in existing:
            await conn.execute(f"ALTER TABLE clients ADD COLUMN {column} {column_type}")
            logger.info("Added missing column clients.%s", column)

    await conn.commit()
    logger.debug("Schema bootstrap complete (clients, credentials verified)")


# ---------------------------------------------------------------------------
# Internals
# ---------------------------------------------------------------------------


async def _configure_pragmas(conn: aiosqlite.Connection) -> None:
    """Apply PRAGMA settings that must be set immediately after opening."""
    result = await conn.execute("PRAGMA journal_mode=WAL")
    row = await result.fetchone()
    mode = row[0] if row else "unknown"
    if mode != "wal":
        logger.warning(
            "Requested WAL journal mode but SQLite reported: %r. "
            "This may happen for in-memory databases (':memory:').",
            mode,
        )
    else:
        logger.debug("SQLite journal_mode set to WAL")

    await conn.execute("PRAGMA foreign_keys=ON")
