"""Provider and model resolution for conversation turns."""

import logging
from dataclasses import dataclass
from typing import Callable, Dict, List, Optional

from .config import Config
from .exceptions import ConfigurationError
from .models import ModelInfo, ProviderRecord, TokenUsage
from .providers.base import BaseProvider
from .providers.factory import get_provider
from .storage import DuckDBStorage

logger = logging.getLogger(__name__)


@dataclass
class ResolvedModel:
    """Everything a turn needs to talk to one model."""

    provider: ProviderRecord
    adapter: BaseProvider
    info: ModelInfo

    @property
    def api_model_id(self) -> str:
        return self.info.target_model_id


class ModelManager:
    """Resolves provider/model pairings from storage and caches adapters.

    Resolution never touches the network, so configuration problems surface
    before anything is persisted for a turn.
    """

    def __init__(
        self,
        storage: DuckDBStorage,
        config: Optional[Config] = None,
        provider_factory: Callable[..., BaseProvider] = get_provider,
    ):
        self.storage = storage
        self.config = config or Config()
        self.provider_factory = provider_factory
        self._adapters: Dict[int, BaseProvider] = {}

    async def get_provider_record(self, provider_id: Optional[int] = None) -> ProviderRecord:
        """Provider by id, else the configured default, else the active one."""
        provider_id = provider_id if provider_id is not None else self.config.default_provider_id
        if provider_id is not None:
            record = await self.storage.get_provider(provider_id)
            if record is None:
                raise ConfigurationError(f"Provider {provider_id} not found")
            return record

        record = await self.storage.get_active_provider()
        if record is None:
            raise ConfigurationError("No active provider configured")
        return record

    async def get_adapter(self, record: ProviderRecord) -> BaseProvider:
        """Cached adapter for ``record``, rebuilt when the record has changed."""
        adapter = self._adapters.get(record.id)
        if adapter is not None and adapter.provider == record:
            return adapter
        if adapter is not None:
            await self._close_adapter(adapter)
        adapter = self.provider_factory(record, storage=self.storage)
        self._adapters[record.id] = adapter
        return adapter

    async def list_models(self, provider_id: Optional[int] = None) -> List[ModelInfo]:
        record = await self.get_provider_record(provider_id)
        adapter = await self.get_adapter(record)
        return await adapter.list_models()

    async def resolve(
        self, model_id: Optional[str] = None, provider_id: Optional[int] = None
    ) -> ResolvedModel:
        """Resolve the model a turn should use.

        Raises:
            ConfigurationError: no provider, no model, or the model is disabled
        """
        record = await self.get_provider_record(provider_id)
        model_id = model_id or self.config.default_model
        if not model_id:
            raise ConfigurationError(f"No model selected for provider '{record.name}'")

        adapter = await self.get_adapter(record)
        info = await adapter.describe_model(model_id)
        if not info.is_enabled:
            raise ConfigurationError(f"Model '{model_id}' is disabled")
        return ResolvedModel(provider=record, adapter=adapter, info=info)

    @staticmethod
    def estimate_cost(info: ModelInfo, usage: Optional[TokenUsage]) -> Optional[float]:
        """Estimate the cost of a reply from per-1k token prices."""
        if usage is None:
            return None
        if info.input_cost_per_1k is None and info.output_cost_per_1k is None:
            return None
        input_cost = usage.prompt_tokens / 1000 * (info.input_cost_per_1k or 0.0)
        output_cost = usage.completion_tokens / 1000 * (info.output_cost_per_1k or 0.0)
        return input_cost + output_cost

    @staticmethod
    async def _close_adapter(adapter: BaseProvider) -> None:
        try:
            await adapter.aclose()
        except Exception as e:
            logger.warning(f"Error closing provider adapter: {e}")

    async def aclose(self) -> None:
        for adapter in self._adapters.values():
            await self._close_adapter(adapter)
        self._adapters.clear()
