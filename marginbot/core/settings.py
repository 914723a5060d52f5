"""Marginbot application settings loaded from environment and ``.env`` files.

Uses :mod:`pydantic_settings` to parse environment variables (and optionally
an ``.env`` file) into a validated settings object.

The field name is the **lowercase** version of the env-var name (e.g.
``WAIT_BETWEEN_CALLS_S`` → ``wait_between_calls_s``).

Typical usage::

    from marginbot.core.settings import Settings

    settings = Settings()                     # loads from env + .env
    settings.default_signer_phone             # fallback SignerPhone
"""

from __future__ import annotations

import logging
from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from marginbot.providers.normalizers import SignerPhone

__all__ = ["Settings"]

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Central application configuration.

    Values are loaded in priority order:

    1. Actual environment variables (highest priority).
    2. ``.env`` file in the working directory.
    3. Field defaults (lowest priority).
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------
    database_path: str = Field(
        default="data/marginbot.db",
        description="Path to the SQLite database file.",
    )

    # ------------------------------------------------------------------
    # Consult provider
    # ------------------------------------------------------------------
    consult_base_url: str = Field(
        default="https://bff.v8sistema.com",
        description="Base URL of the consignment consult API.",
    )
    consult_provider: str = Field(
        default="QI",
        description="Provider code sent with every consult request.",
    )
    http_timeout_s: float = Field(
        default=30.0,
        gt=0.0,
        description="Per-request HTTP timeout in seconds.",
    )
    http_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for requests whose connection could not be established.",
    )

    # ------------------------------------------------------------------
    # Fallback signer phone
    # ------------------------------------------------------------------
    signer_phone_number: str = Field(
        default="900000000",
        description="Phone number used when a client's phone cannot be parsed.",
    )
    signer_phone_country_code: str = Field(
        default="55",
        description="Default country code for signer phones.",
    )
    signer_phone_area_code: str = Field(
        default="11",
        description="Area code used for phones given without one.",
    )

    # ------------------------------------------------------------------
    # Job pacing
    # ------------------------------------------------------------------
    wait_between_calls_s: float = Field(
        default=3.0,
        ge=0.0,
        description="Delay before each follow-up provider call of a record.",
    )
    wait_between_records_s: float = Field(
        default=0.0,
        ge=0.0,
        description="Delay between two records of the same credential.",
    )
    max_records_per_credential: int = Field(
        default=250,
        ge=0,
        description="Records per credential per cycle (hard ceiling 250; 0 = ceiling).",
    )

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------
    scheduler_enabled: bool = Field(
        default=True,
        description="Run cycles on a fixed interval in continuous mode.",
    )
    cycle_interval_s: int = Field(
        default=3600,
        ge=1,
        description="Seconds between scheduled cycles.",
    )
    run_on_startup: bool = Field(
        default=True,
        description="Run one cycle immediately when continuous mode starts.",
    )

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------
    status_path: str = Field(
        default="/tmp/marginbot_status.json",
        description="Where the JSON status snapshot is written after every cycle.",
    )
    log_level: str = Field(default="INFO", description="Logging level.")
    log_format: str = Field(default="text", description="Log format: 'text' or 'json'.")

    # ------------------------------------------------------------------
    # Field validators
    # ------------------------------------------------------------------

    @field_validator("consult_base_url")
    @classmethod
    def _validate_base_url(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("consult_base_url must not be blank")
        return v.rstrip("/")

    @field_validator("log_level")
    @classmethod
    def _validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR"}
        v_upper = v.upper()
        if v_upper not in allowed:
            raise ValueError(f"log_level must be one of {allowed}, got {v!r}")
        return v_upper

    @field_validator("log_format")
    @classmethod
    def _validate_log_format(cls, v: str) -> str:
        allowed = {"text", "json"}
        v_lower = v.lower()
        if v_lower not in allowed:
            raise ValueError(f"log_format must be one of {allowed}, got {v!r}")
        return v_lower

    # ------------------------------------------------------------------
    # Derived helpers
    # ------------------------------------------------------------------

    @property
    def database_path_resolved(self) -> Path:
        """Return the database path as a resolved :class:`~pathlib.Path`."""
        return Path(self.database_path).resolve()

    @property
    def default_signer_phone(self) -> SignerPhone:
        """Fallback phone sent when a client's own phone is unusable."""
        return SignerPhone(
            country_code=self.signer_phone_country_code,
            area_code=self.signer_phone_area_code,
            number=self.signer_phone_number,
        )
