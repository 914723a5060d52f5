"""Marginbot exception taxonomy.

Every custom exception inherits from :class:`MarginbotError`.  Exceptions are
organised by architectural layer so callers can catch at the right granularity:

    Layer hierarchy
    ---------------
    MarginbotError
    ├── ConfigError
    ├── StorageError
    └── ProviderError
        └── ProviderTransportError

Usage:

    from marginbot.core.exceptions import ProviderTransportError

    raise ProviderTransportError("consult", "Connection refused") from exc
"""

from __future__ import annotations

import logging

__all__ = [
    "MarginbotError",
    "ConfigError",
    "StorageError",
    "ProviderError",
    "ProviderTransportError",
]

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Base
# ---------------------------------------------------------------------------


class MarginbotError(Exception):
    """Root exception for all Marginbot errors."""


# ---------------------------------------------------------------------------
# Config layer
# ---------------------------------------------------------------------------


class ConfigError(MarginbotError):
    """Raised when the application configuration is invalid or incomplete."""


# ---------------------------------------------------------------------------
# Storage layer
# ---------------------------------------------------------------------------


class StorageError(MarginbotError):
    """Raised when a database read or write fails.

    The orchestrator counts these as *store errors*, distinct from provider
    API errors.
    """


# ---------------------------------------------------------------------------
# Provider layer
# ---------------------------------------------------------------------------


class ProviderError(MarginbotError):
    """Base class for all provider-level errors.

    Args:
        provider: Short name of the provider (e.g. ``"consult"``).
        message: Human-readable error description.
    """

    def __init__(self, provider: str, message: str) -> None:
        self.provider = provider
        super().__init__(f"[{provider}] {message}")


class ProviderTransportError(ProviderError):
    """Raised when a request never produced an HTTP response.

    Covers DNS failures, refused connections, timeouts and dropped sockets.
    An HTTP error status is *not* a transport error: those are returned to
    the caller as a :class:`~marginbot.providers.base.ProviderResponse`.
    """

