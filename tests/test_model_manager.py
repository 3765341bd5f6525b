"""Tests for provider/model resolution."""

from unittest.mock import AsyncMock, Mock

import pytest

from branchchat.config import Config
from branchchat.exceptions import ConfigurationError
from branchchat.model_manager import ModelManager
from branchchat.models import (
    ManualModel,
    ModelConfigRecord,
    ModelInfo,
    ProviderType,
    TokenUsage,
)
from branchchat.providers import OllamaProvider
from branchchat.storage import DuckDBStorage


@pytest.fixture
def storage():
    """Create a storage instance for testing."""
    return DuckDBStorage(":memory:")


@pytest.mark.asyncio
async def test_no_provider_is_a_configuration_error(storage):
    """Test resolution without any provider."""
    manager = ModelManager(storage, Config())

    with pytest.raises(ConfigurationError, match="No active provider"):
        await manager.resolve("m")


@pytest.mark.asyncio
async def test_unknown_provider_id(storage):
    """Test that an explicit provider id must exist."""
    manager = ModelManager(storage, Config())

    with pytest.raises(ConfigurationError, match="Provider 42 not found"):
        await manager.resolve("m", provider_id=42)


@pytest.mark.asyncio
async def test_missing_model(storage):
    """Test that a model must be chosen explicitly or by config."""
    await storage.add_provider("local", ProviderType.OLLAMA, is_active=True)
    manager = ModelManager(storage, Config())

    with pytest.raises(ConfigurationError, match="No model selected"):
        await manager.resolve()


@pytest.mark.asyncio
async def test_disabled_model_is_rejected(storage):
    """Test that a disabled model cannot be used."""
    provider = await storage.add_provider("local", ProviderType.OLLAMA, is_active=True)
    await storage.save_model_config(
        ModelConfigRecord(provider_id=provider.id, model_id="llama3", is_enabled=False)
    )
    manager = ModelManager(storage, Config())

    with pytest.raises(ConfigurationError, match="disabled"):
        await manager.resolve("llama3")


@pytest.mark.asyncio
async def test_resolve_uses_active_provider_and_config_default(storage):
    """Test fallback to the active provider and the default model."""
    await storage.add_provider("other", ProviderType.OPENAI_COMPATIBLE)
    active = await storage.add_provider("local", ProviderType.OLLAMA, is_active=True)
    manager = ModelManager(storage, Config(default_model="llama3"))

    resolved = await manager.resolve()

    assert resolved.provider.id == active.id
    assert isinstance(resolved.adapter, OllamaProvider)
    assert resolved.api_model_id == "llama3"


@pytest.mark.asyncio
async def test_manual_model_maps_to_target_id(storage):
    """Test that a manual model's uuid resolves to its API model id."""
    provider = await storage.add_provider("local", ProviderType.OLLAMA, is_active=True)
    await storage.add_manual_model(
        ManualModel(
            uuid="fast",
            provider_id=provider.id,
            model_id="llama3:8b-q4",
            name="Fast",
            input_cost_per_1k=0.001,
        )
    )
    manager = ModelManager(storage, Config())

    resolved = await manager.resolve("fast")

    assert resolved.api_model_id == "llama3:8b-q4"
    assert resolved.info.name == "Fast"
    assert resolved.info.input_cost_per_1k == 0.001


@pytest.mark.asyncio
async def test_adapters_are_cached_per_provider(storage):
    """Test that the factory is called once per provider record."""
    provider = await storage.add_provider("local", ProviderType.OLLAMA, is_active=True)
    adapter = Mock()
    adapter.provider = provider
    adapter.describe_model = AsyncMock(
        return_value=ModelInfo(
            id="m",
            target_model_id="m",
            name="m",
            provider_id=provider.id,
            provider_name="local",
            provider_type=ProviderType.OLLAMA,
        )
    )
    adapter.aclose = AsyncMock()
    factory = Mock(return_value=adapter)
    manager = ModelManager(storage, Config(), provider_factory=factory)

    await manager.resolve("m")
    await manager.resolve("m")
    await manager.aclose()

    factory.assert_called_once_with(provider, storage=storage)
    adapter.aclose.assert_awaited_once()


@pytest.mark.asyncio
async def test_changed_provider_record_replaces_and_closes_adapter(storage):
    """Test that an edited provider gets a new adapter and the old one is closed."""
    provider = await storage.add_provider("local", ProviderType.OLLAMA, api_key="old")
    updated = provider.model_copy(update={"api_key": "new"})

    def build(record, storage=None):
        adapter = Mock()
        adapter.provider = record
        adapter.aclose = AsyncMock()
        return adapter

    manager = ModelManager(storage, Config(), provider_factory=build)

    first = await manager.get_adapter(provider)
    assert await manager.get_adapter(provider) is first

    second = await manager.get_adapter(updated)

    assert second is not first
    assert second.provider.api_key == "new"
    first.aclose.assert_awaited_once()
    second.aclose.assert_not_awaited()


def test_estimate_cost():
    """Test cost estimation from per-1k prices."""
    info = ModelInfo(
        id="m",
        target_model_id="m",
        name="m",
        provider_id=1,
        provider_name="p",
        provider_type=ProviderType.OPENAI_COMPATIBLE,
        input_cost_per_1k=0.01,
        output_cost_per_1k=0.03,
    )
    usage = TokenUsage(prompt_tokens=2000, completion_tokens=1000, total_tokens=3000)

    assert ModelManager.estimate_cost(info, usage) == pytest.approx(0.05)
    assert ModelManager.estimate_cost(info, None) is None
    assert ModelManager.estimate_cost(info.model_copy(update={"input_cost_per_1k": None, "output_cost_per_1k": None}), usage) is None
