"""Core domain models, settings, logging configuration, and shared utilities."""

from marginbot.core.exceptions import (
    ConfigError,
    MarginbotError,
    ProviderError,
    ProviderTransportError,
    StorageError,
)
from marginbot.core.logging_config import JsonFormatter, configure_logging
from marginbot.core.models import ClientRecord, Credential, RecordStatus, ResultPayload
from marginbot.core.settings import Settings

__all__ = [
    # Logging
    "configure_logging",
    "JsonFormatter",
    # Domain models
    "ClientRecord",
    "Credential",
    "RecordStatus",
    "ResultPayload",
    # Settings
    "Settings",
    # Exceptions
    "MarginbotError",
    "ConfigError",
    "StorageError",
    "ProviderError",
    "ProviderTransportError",
]
