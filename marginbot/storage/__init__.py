"""SQLite-backed store for client records and provider credentials."""

from marginbot.storage.database import DEFAULT_DB_PATH, create_schema, open_db
from marginbot.storage.repository import ClientRepository, CredentialRepository

__all__ = [
    "DEFAULT_DB_PATH",
    "open_db",
    "create_schema",
    "ClientRepository",
    "CredentialRepository",
]
