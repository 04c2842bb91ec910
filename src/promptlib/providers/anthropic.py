from __future__ import annotations

from typing import Any

from promptlib.providers.base import BaseProviderAdapter
from promptlib.schemas.prompt import ValidationResult
from promptlib.schemas.provider import (
    AnthropicConfig,
    ProviderCapabilities,
    ProviderPayload,
    RateLimits,
    RenderOptions,
)

DEFAULT_MAX_TOKENS = 4096

_DISPLAY_NAMES = {
    "claude-3-5-sonnet-20241022": "Claude 3.5 Sonnet (Latest)",
    "claude-3-5-sonnet-20240620": "Claude 3.5 Sonnet",
    "claude-3-opus-20240229": "Claude 3 Opus",
    "claude-3-sonnet-20240229": "Claude 3 Sonnet",
    "claude-3-haiku-20240307": "Claude 3 Haiku",
    "claude-3-5-haiku-20241022": "Claude 3.5 Haiku",
}


class AnthropicAdapter(BaseProviderAdapter):
    """Messages API payloads.

    System instructions travel in a top-level ``system`` string rather than as
    a message, and ``max_tokens`` is always present.
    """

    id = "anthropic"
    name = "Anthropic"
    supported_models = tuple(_DISPLAY_NAMES)
    deprecated_models = ("claude-3-5-sonnet-20240620",)
    capabilities = ProviderCapabilities(
        max_context_length=200000,
        supported_message_roles=["user", "assistant"],
    )
    max_temperature = 1.0
    default_model = "claude-3-5-sonnet-20241022"

    def _temperature_error(self) -> str:
        return "Temperature must be between 0 and 1 for Anthropic"

    def build_payload(self, system: str, user: str, options: RenderOptions) -> ProviderPayload:
        messages = [{"role": "user", "content": user}]
        body: dict[str, Any] = {
            "model": options.model,
            "messages": messages,
            "max_tokens": options.max_tokens or DEFAULT_MAX_TOKENS,
        }
        if system:
            body["system"] = system
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.top_p is not None:
            body["top_p"] = options.top_p
        return ProviderPayload(
            provider=self.id,
            model=options.model or self.default_model,
            content=body,
            metadata={
                "messageCount": len(messages),
                "hasSystemMessage": bool(system),
                "estimatedTokens": self.estimate_tokens(f"{system} {user}"),
            },
        )

    def validate(self, payload: ProviderPayload) -> ValidationResult:
        errors: list[str] = []
        content = self._check_common(payload, errors)
        if content is not None:
            if content.get("max_tokens") is None:
                errors.append("max_tokens is required for Anthropic API")
            self._check_messages(content, list(self.capabilities.supported_message_roles), errors)
            if "system" in content and not isinstance(content["system"], str):
                errors.append("System message must be a string")
            self._check_sampling(content, errors)
        return ValidationResult.of(errors)

    def get_default_options(self) -> RenderOptions:
        return RenderOptions(model=self.default_model, temperature=0.7, max_tokens=DEFAULT_MAX_TOKENS)

    def model_display_name(self, model: str) -> str:
        return _DISPLAY_NAMES.get(model, model)

    def model_max_tokens(self, model: str) -> int:
        return 8192 if model.startswith("claude-3-5") else 4096

    def get_configuration(self) -> AnthropicConfig:
        return AnthropicConfig(
            id=self.id,
            name=self.name,
            default_model=self.default_model,
            models=self.describe_models(),
            capabilities=self.capabilities,
            rate_limits=RateLimits(requests_per_minute=50, tokens_per_minute=40000),
            default_max_tokens=DEFAULT_MAX_TOKENS,
        )
