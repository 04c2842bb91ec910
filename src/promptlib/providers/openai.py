from __future__ import annotations

from typing import Any

from promptlib.providers.base import BaseProviderAdapter
from promptlib.schemas.prompt import ValidationResult
from promptlib.schemas.provider import (
    OpenAIConfig,
    ProviderCapabilities,
    ProviderPayload,
    RateLimits,
    RenderOptions,
)

_DISPLAY_NAMES = {
    "gpt-4": "GPT-4",
    "gpt-4-turbo": "GPT-4 Turbo",
    "gpt-4-turbo-preview": "GPT-4 Turbo Preview",
    "gpt-4-0125-preview": "GPT-4 Turbo (0125)",
    "gpt-4-1106-preview": "GPT-4 Turbo (1106)",
    "gpt-3.5-turbo": "GPT-3.5 Turbo",
    "gpt-3.5-turbo-0125": "GPT-3.5 Turbo (0125)",
    "gpt-3.5-turbo-1106": "GPT-3.5 Turbo (1106)",
}


class OpenAIAdapter(BaseProviderAdapter):
    """Chat Completions payloads: ``{model, messages, temperature?, top_p?, max_tokens?}``."""

    id = "openai"
    name = "OpenAI"
    supported_models = tuple(_DISPLAY_NAMES)
    deprecated_models = ("gpt-4-1106-preview", "gpt-3.5-turbo-1106")
    capabilities = ProviderCapabilities(
        max_context_length=128000,
        supported_message_roles=["system", "user", "assistant"],
    )
    default_model = "gpt-4-turbo"

    def build_payload(self, system: str, user: str, options: RenderOptions) -> ProviderPayload:
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": user})
        body: dict[str, Any] = {"model": options.model, "messages": messages}
        self._apply_sampling(body, options)
        return ProviderPayload(
            provider=self.id,
            model=options.model or self.default_model,
            content=body,
            metadata=self._metadata(messages, options),
        )

    def _metadata(self, messages: list[dict[str, str]], options: RenderOptions) -> dict[str, Any]:
        return {
            "messageCount": len(messages),
            "hasSystemMessage": any(m["role"] == "system" for m in messages),
            "estimatedTokens": self.estimate_tokens(" ".join(m["content"] for m in messages)),
        }

    def validate(self, payload: ProviderPayload) -> ValidationResult:
        errors: list[str] = []
        content = self._check_common(payload, errors)
        if content is not None:
            self._check_messages(content, list(self.capabilities.supported_message_roles), errors)
            self._check_sampling(content, errors)
        return ValidationResult.of(errors)

    def get_default_options(self) -> RenderOptions:
        return RenderOptions(model=self.default_model, temperature=0.7, max_tokens=4096)

    def model_display_name(self, model: str) -> str:
        return _DISPLAY_NAMES.get(model, model)

    def model_context_length(self, model: str) -> int:
        if model == "gpt-4":
            return 8192
        if model.startswith("gpt-3.5"):
            return 16385
        return 128000

    def get_configuration(self) -> OpenAIConfig:
        return OpenAIConfig(
            id=self.id,
            name=self.name,
            default_model=self.default_model,
            models=self.describe_models(),
            capabilities=self.capabilities,
            rate_limits=RateLimits(requests_per_minute=500, tokens_per_minute=150000),
        )
