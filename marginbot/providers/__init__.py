"""Consult provider contract and the field normalisers it shares with the pipeline."""

from marginbot.providers.base import BaseConsultProvider, ProviderResponse

__all__ = ["BaseConsultProvider", "ProviderResponse"]
