"""Provider format adapters."""

from promptlib.providers.anthropic import AnthropicAdapter
from promptlib.providers.base import BaseProviderAdapter
from promptlib.providers.meta import MetaAdapter
from promptlib.providers.openai import OpenAIAdapter
from promptlib.providers.registry import ProviderRegistry, default_registry, describe_config

__all__ = [
    "AnthropicAdapter",
    "BaseProviderAdapter",
    "MetaAdapter",
    "OpenAIAdapter",
    "ProviderRegistry",
    "default_registry",
    "describe_config",
]
