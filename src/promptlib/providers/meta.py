from __future__ import annotations

from typing import Any

from promptlib.providers.openai import OpenAIAdapter
from promptlib.schemas.provider import (
    MetaConfig,
    ProviderCapabilities,
    RateLimits,
    RenderOptions,
)

_DISPLAY_NAMES = {
    "llama-3.1-405b-instruct": "Llama 3.1 405B Instruct",
    "llama-3.1-70b-instruct": "Llama 3.1 70B Instruct",
    "llama-3.1-8b-instruct": "Llama 3.1 8B Instruct",
    "llama-3-70b-instruct": "Llama 3 70B Instruct",
    "llama-3-8b-instruct": "Llama 3 8B Instruct",
    "llama-2-70b-chat": "Llama 2 70B Chat",
    "llama-2-13b-chat": "Llama 2 13B Chat",
    "llama-2-7b-chat": "Llama 2 7B Chat",
}


def model_family(model: str | None) -> str:
    model = model or ""
    if "llama-3.1" in model:
        return "Llama 3.1"
    if "llama-3" in model:
        return "Llama 3"
    if "llama-2" in model:
        return "Llama 2"
    return "Unknown"


class MetaAdapter(OpenAIAdapter):
    """Llama models take OpenAI-shaped chat messages."""

    id = "meta"
    name = "Meta"
    supported_models = tuple(_DISPLAY_NAMES)
    deprecated_models = ("llama-2-70b-chat", "llama-2-13b-chat", "llama-2-7b-chat")
    capabilities = ProviderCapabilities(
        max_context_length=128000,
        supported_message_roles=["system", "user", "assistant"],
    )
    default_model = "llama-3.1-70b-instruct"

    def _metadata(self, messages: list[dict[str, str]], options: RenderOptions) -> dict[str, Any]:
        metadata = super()._metadata(messages, options)
        metadata["modelFamily"] = model_family(options.model)
        return metadata

    def model_display_name(self, model: str) -> str:
        return _DISPLAY_NAMES.get(model, model)

    def model_context_length(self, model: str) -> int:
        if model.startswith("llama-3.1"):
            return 128000
        if model.startswith("llama-3"):
            return 8192
        return 4096

    def get_configuration(self) -> MetaConfig:
        return MetaConfig(
            id=self.id,
            name=self.name,
            default_model=self.default_model,
            models=self.describe_models(),
            capabilities=self.capabilities,
            rate_limits=RateLimits(requests_per_minute=200, tokens_per_minute=10000),
            model_families=sorted({model_family(m) for m in self.supported_models}),
        )
