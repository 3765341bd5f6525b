"""Adapter selection by provider type."""

from typing import Optional

import httpx

from ..models import ProviderRecord, ProviderType
from ..storage import DuckDBStorage
from .anthropic_provider import AnthropicProvider
from .base import BaseProvider
from .google_provider import GoogleProvider
from .ollama_provider import OllamaProvider
from .openai_provider import OpenAIProvider

_ADAPTERS = {
    ProviderType.ANTHROPIC: AnthropicProvider,
    ProviderType.GOOGLE: GoogleProvider,
    ProviderType.OLLAMA: OllamaProvider,
}


def get_provider(
    record: ProviderRecord,
    storage: Optional[DuckDBStorage] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> BaseProvider:
    """Adapter for a provider record; every other type speaks the OpenAI wire format."""
    adapter_class = _ADAPTERS.get(record.type, OpenAIProvider)
    return adapter_class(record, storage=storage, http_client=http_client)
