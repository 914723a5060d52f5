"""Shared pytest fixtures and configuration for the Marginbot test suite.

This file is loaded automatically by pytest before any test module.
It provides project-wide fixtures used across unit and integration tests.
"""

from __future__ import annotations

import logging
import os
from collections.abc import AsyncGenerator
from pathlib import Path

import aiosqlite
import pytest
from pydantic_settings import SettingsConfigDict

from marginbot.core import configure_logging
from marginbot.core.models import ClientRecord, Credential
from marginbot.core.settings import Settings
from marginbot.storage.database import open_db

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------


@pytest.fixture(autouse=True)
def _configure_test_logging() -> None:
    """Force DEBUG logging in text format for every test.

    ``force=True`` ensures the configuration is applied even when pytest's own
    ``log_cli`` handler is already present.
    """
    configure_logging(level="DEBUG", fmt="text", force=True)


# ---------------------------------------------------------------------------
# Environment
# ---------------------------------------------------------------------------


@pytest.fixture()
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove every env var that feeds :class:`Settings` for the duration of a test.

    Also disables pydantic-settings ``.env`` file loading so values from a
    local ``.env`` file do not leak into Settings isolation tests.
    """
    prefixes = (
        "DATABASE_",
        "CONSULT_",
        "HTTP_",
        "SIGNER_",
        "WAIT_",
        "MAX_RECORDS_",
        "SCHEDULER_",
        "CYCLE_",
        "RUN_ON_",
        "STATUS_",
        "LOG_LEVEL",
        "LOG_FORMAT",
    )
    for key in list(os.environ):
        if any(key.startswith(prefix) for prefix in prefixes):
            monkeypatch.delenv(key, raising=False)

    monkeypatch.setattr(
        Settings,
        "model_config",
        SettingsConfigDict(
            env_file=None,
            env_file_encoding="utf-8",
            extra="ignore",
        ),
    )


# ---------------------------------------------------------------------------
# Domain builders
# ---------------------------------------------------------------------------


def make_record(
    id: int = 1,
    *,
    document_number: str | None = "123.456.789-01",
    name: str | None = "Maria Silva",
    sex: str | None = "F",
    birth_date: str | None = "1990-04-12",
    email: str | None = "maria@example.com",
    phone: str | None = "(11) 98765-4321",
    status: str | None = "awaiting",
) -> ClientRecord:
    """Build a valid :class:`ClientRecord`; override any field by keyword."""
    return ClientRecord(
        id=id,
        document_number=document_number,
        name=name,
        sex=sex,
        birth_date=birth_date,
        email=email,
        phone=phone,
        status=status,
    )


def make_credential(
    id: int = 1,
    *,
    tenant: str | None = "acme",
    access_token: str = "token-abc",
) -> Credential:
    """Build a :class:`Credential`; override any field by keyword."""
    return Credential(id=id, tenant=tenant, access_token=access_token)


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest.fixture()
async def db_conn(tmp_path: Path) -> AsyncGenerator[aiosqlite.Connection, None]:
    """Open a real SQLite database in a temp directory with WAL mode."""
    conn = await open_db(tmp_path / "marginbot_test.db")
    yield conn
    await conn.close()


# ---------------------------------------------------------------------------
# Misc helpers
# ---------------------------------------------------------------------------


@pytest.fixture()
def logger() -> logging.Logger:
    """Return a ``logging.Logger`` scoped to the running test."""
    return logging.getLogger("tests")
