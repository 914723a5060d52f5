"""HTTP implementation of the consignment consult provider."""

from marginbot.providers.api.consult import ConsultProvider
from marginbot.providers.api.http_client import ProviderHttpClient

__all__ = ["ProviderHttpClient", "ConsultProvider"]
