"""Base class shared by all provider adapters."""

import logging
from abc import ABC, abstractmethod
from typing import AsyncIterator, Dict, List, Optional, Union

import httpx

from ..exceptions import ProviderError
from ..models import (
    ManualModel,
    ModelConfigRecord,
    ModelInfo,
    Protocol,
    ProviderRecord,
    ProviderType,
)
from ..storage import DuckDBStorage
from .types import ChatDelta, ChatReply, ChatRequest, ResponseRequest

logger = logging.getLogger(__name__)

# Provider types whose models do not get tools unless configured otherwise
DEFAULT_DISABLED_SUPPORTS_TOOLS_PROVIDERS = frozenset({ProviderType.OLLAMA})

API_ORDER_BASE = 1000
MANUAL_ORDER_OFFSET = 500

ReplyOrStream = Union[ChatReply, AsyncIterator[ChatDelta]]


def _first_set(*values):
    for value in values:
        if value is not None:
            return value
    return None


class BaseProvider(ABC):
    """A provider adapter.

    Subclasses translate the unified request/reply shapes to one provider's
    wire format. Model listing and capability merging live here.
    """

    default_base_url: Optional[str] = None

    def __init__(
        self,
        provider: ProviderRecord,
        storage: Optional[DuckDBStorage] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.provider = provider
        self.storage = storage
        self._http_client = http_client
        self._owns_http_client = http_client is None

    @property
    def base_url(self) -> str:
        url = self.provider.base_url or self.default_base_url or ""
        return url.rstrip("/")

    @property
    def http_client(self) -> httpx.AsyncClient:
        if self._http_client is None:
            # No read timeout: a slow stream is only ended by user cancellation
            self._http_client = httpx.AsyncClient(timeout=None)
        return self._http_client

    async def aclose(self) -> None:
        if self._http_client is not None and self._owns_http_client:
            await self._http_client.aclose()
            self._http_client = None

    async def raise_for_status(self, response: httpx.Response) -> None:
        """Raise ProviderError carrying the status code for an error response."""
        if response.status_code < 400:
            return
        body = (await response.aread()).decode("utf-8", errors="replace")
        await response.aclose()
        raise ProviderError(
            f"{self.provider.name} request failed with status {response.status_code}: {body[:500]}",
            status_code=response.status_code,
        )

    @abstractmethod
    async def fetch_api_models(self) -> List[Dict[str, str]]:
        """Live model list from the provider API as ``{"id", "name"}`` dicts."""

    @abstractmethod
    async def chat_completion(self, request: ChatRequest) -> ReplyOrStream:
        """Turn-based completion; returns an async iterator of deltas when ``request.stream``."""

    async def create_response(self, request: ResponseRequest) -> ReplyOrStream:
        """Item-based completion, for providers offering it."""
        raise ProviderError(
            f"Provider '{self.provider.name}' ({self.provider.type.value}) does not support the response API"
        )

    # ------------------------------------------------------------------
    # Model listing
    # ------------------------------------------------------------------

    async def _local_model_sources(self):
        if self.storage is None:
            return [], {}
        manual = await self.storage.get_manual_models(self.provider.id)
        configs = await self.storage.get_model_configs(self.provider.id)
        return manual, configs

    async def list_models(self) -> List[ModelInfo]:
        """Merged model list sorted by order.

        Sources, lowest precedence first: the live API list, manual models
        (which replace the API entry sharing their key), stored per-model
        config layered on top of either.
        """
        try:
            api_models = await self.fetch_api_models()
        except Exception as e:
            logger.warning(f"Failed to fetch models from provider '{self.provider.name}': {e}")
            api_models = []

        manual_models, configs = await self._local_model_sources()
        manual_keys = {model.uuid for model in manual_models}
        api_index = {entry["id"]: index for index, entry in enumerate(api_models)}

        models: List[ModelInfo] = []
        for index, entry in enumerate(api_models):
            if entry["id"] in manual_keys:
                continue
            models.append(
                self._merge_api_model(entry, configs.get(entry["id"]), API_ORDER_BASE + index)
            )

        for offset, manual in enumerate(manual_models):
            if manual.uuid in api_index:
                default_order = API_ORDER_BASE + api_index[manual.uuid]
            else:
                default_order = API_ORDER_BASE + len(api_models) + MANUAL_ORDER_OFFSET + offset
            models.append(
                self._merge_manual_model(
                    manual,
                    configs.get(manual.uuid),
                    default_order,
                    is_api_override=manual.uuid in api_index,
                )
            )

        models.sort(key=lambda model: model.order)
        return models

    async def describe_model(self, model_id: str) -> ModelInfo:
        """Merged info for one model from local records only (no network)."""
        manual_models, configs = await self._local_model_sources()
        for manual in manual_models:
            if manual.uuid == model_id:
                return self._merge_manual_model(manual, configs.get(model_id), API_ORDER_BASE)
        return self._merge_api_model(
            {"id": model_id, "name": model_id}, configs.get(model_id), API_ORDER_BASE
        )

    def _default_supports_tools(self) -> bool:
        return self.provider.type not in DEFAULT_DISABLED_SUPPORTS_TOOLS_PROVIDERS

    def _merge_api_model(
        self, entry: Dict[str, str], config: Optional[ModelConfigRecord], default_order: int
    ) -> ModelInfo:
        return ModelInfo(
            id=entry["id"],
            target_model_id=entry["id"],
            name=entry.get("name") or entry["id"],
            provider_id=self.provider.id,
            provider_name=self.provider.name,
            provider_type=self.provider.type,
            is_enabled=_first_set(config and config.is_enabled, True),
            enable_stream=_first_set(config and config.enable_stream, True),
            supports_tools=_first_set(
                config and config.supports_tools, self._default_supports_tools()
            ),
            supports_images=_first_set(config and config.supports_images, True),
            protocol=_first_set(
                config and config.protocol,
                self.provider.default_protocol,
                Protocol.CHAT_COMPLETION,
            ),
            order=_first_set(config and config.sort_order, default_order),
        )

    def _merge_manual_model(
        self,
        manual: ManualModel,
        config: Optional[ModelConfigRecord],
        default_order: int,
        is_api_override: bool = False,
    ) -> ModelInfo:
        return ModelInfo(
            id=manual.uuid,
            target_model_id=manual.model_id,
            name=manual.name,
            provider_id=self.provider.id,
            provider_name=self.provider.name,
            provider_type=self.provider.type,
            is_enabled=_first_set(config and config.is_enabled, manual.is_enabled, True),
            enable_stream=_first_set(config and config.enable_stream, manual.enable_stream, True),
            supports_tools=_first_set(
                config and config.supports_tools,
                manual.supports_tools,
                self._default_supports_tools(),
            ),
            supports_images=_first_set(
                config and config.supports_images, manual.supports_images, True
            ),
            protocol=_first_set(
                config and config.protocol,
                manual.protocol,
                self.provider.default_protocol,
                Protocol.CHAT_COMPLETION,
            ),
            order=_first_set(config and config.sort_order, default_order),
            is_manual=True,
            is_api_override=is_api_override,
            context_window=manual.context_window,
            max_tokens=manual.max_tokens,
            input_cost_per_1k=manual.input_cost_per_1k,
            output_cost_per_1k=manual.output_cost_per_1k,
            description=manual.description,
            default_system_prompt=manual.default_system_prompt,
            extra_params=dict(manual.extra_params),
        )
