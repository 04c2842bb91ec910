"""Provider lookup by id."""

from __future__ import annotations

from pydantic import BaseModel

from promptlib.errors import NotFoundError, ValidationError
from promptlib.providers.anthropic import AnthropicAdapter
from promptlib.providers.base import BaseProviderAdapter
from promptlib.providers.meta import MetaAdapter
from promptlib.providers.openai import OpenAIAdapter
from promptlib.schemas.provider import AnthropicConfig, MetaConfig, OpenAIConfig, ProviderConfig


class ProviderInfo(BaseModel):
    id: str
    name: str
    supported_models: list[str]
    default_model: str | None


class ProviderRegistry:
    """Holds one adapter per provider id, in registration order."""

    def __init__(self) -> None:
        self._adapters: dict[str, BaseProviderAdapter] = {}

    def register_adapter(self, adapter: BaseProviderAdapter) -> None:
        if adapter.id in self._adapters:
            raise ValidationError(f"Provider adapter with id '{adapter.id}' is already registered")
        self._adapters[adapter.id] = adapter

    def get_adapter(self, provider_id: str) -> BaseProviderAdapter:
        adapter = self._adapters.get(provider_id)
        if adapter is None:
            raise NotFoundError(f"Provider adapter with id '{provider_id}' not found")
        return adapter

    def has_provider(self, provider_id: str) -> bool:
        return provider_id in self._adapters

    def unregister_adapter(self, provider_id: str) -> None:
        if provider_id not in self._adapters:
            raise NotFoundError(f"Provider adapter with id '{provider_id}' not found")
        del self._adapters[provider_id]

    def get_all_adapters(self) -> list[BaseProviderAdapter]:
        return list(self._adapters.values())

    def list_providers(self) -> list[ProviderInfo]:
        return [self._info(a) for a in self._adapters.values()]

    def supports_model(self, model: str) -> list[ProviderInfo]:
        return [self._info(a) for a in self._adapters.values() if a.supports(model)]

    def find_best_provider(self, model: str) -> BaseProviderAdapter | None:
        """Return the first registered adapter that supports ``model``."""
        for adapter in self._adapters.values():
            if adapter.supports(model):
                return adapter
        return None

    @staticmethod
    def _info(adapter: BaseProviderAdapter) -> ProviderInfo:
        return ProviderInfo(
            id=adapter.id,
            name=adapter.name,
            supported_models=list(adapter.supported_models),
            default_model=adapter.get_default_options().model,
        )


def describe_config(config: ProviderConfig) -> list[str]:
    """Human-readable notes about the provider-specific parts of ``config``."""
    match config:
        case OpenAIConfig():
            return [f"API base: {config.api_base}"]
        case AnthropicConfig():
            return [
                f"API version: {config.api_version}",
                f"max_tokens required (default {config.default_max_tokens})",
            ]
        case MetaConfig():
            return [f"Model families: {', '.join(config.model_families)}"]
        case _:
            raise TypeError(f"Unknown provider configuration: {type(config).__name__}")


def default_registry() -> ProviderRegistry:
    registry = ProviderRegistry()
    for adapter in (OpenAIAdapter(), AnthropicAdapter(), MetaAdapter()):
        registry.register_adapter(adapter)
    return registry
