"""Common contract for provider format adapters."""

from __future__ import annotations

import math
from abc import ABC, abstractmethod
from typing import Any, ClassVar

from promptlib.errors import ValidationError
from promptlib.schemas.prompt import StructuredPrompt, ValidationResult
from promptlib.schemas.provider import (
    ModelDescriptor,
    ModelInfo,
    ProviderCapabilities,
    ProviderConfig,
    ProviderPayload,
    RenderOptions,
)


class BaseProviderAdapter(ABC):
    """Turns a :class:`StructuredPrompt` into one provider's request payload.

    Adapters never substitute variables; the caller hands them a prompt whose
    placeholders are already resolved.
    """

    id: ClassVar[str]
    name: ClassVar[str]
    supported_models: ClassVar[tuple[str, ...]]
    deprecated_models: ClassVar[tuple[str, ...]] = ()
    default_model: ClassVar[str]
    capabilities: ClassVar[ProviderCapabilities]
    max_temperature: ClassVar[float] = 2.0

    def supports(self, model: str | None) -> bool:
        return model in self.supported_models

    def estimate_tokens(self, text: str) -> int:
        """Roughly four characters per token."""
        return math.ceil(len(text) / 4)

    def get_model_info(self, model: str) -> ModelInfo | None:
        if not self.supports(model):
            return None
        return ModelInfo(
            max_tokens=self.model_max_tokens(model),
            context_length=self.model_context_length(model),
            supports_system_messages=self.capabilities.supports_system_messages,
        )

    def model_max_tokens(self, model: str) -> int:
        return 4096

    def model_context_length(self, model: str) -> int:
        return self.capabilities.max_context_length

    def model_display_name(self, model: str) -> str:
        return model

    def describe_models(self) -> list[ModelDescriptor]:
        return [
            ModelDescriptor(
                id=model,
                name=self.model_display_name(model),
                context_length=self.model_context_length(model),
                deprecated=model in self.deprecated_models,
            )
            for model in self.supported_models
        ]

    def validate_render_options(self, options: RenderOptions) -> ValidationResult:
        errors: list[str] = []
        if not self.supports(options.model):
            errors.append(f"Model '{options.model}' is not supported by {self.name}")
        if options.temperature is not None:
            if not self.capabilities.supports_temperature:
                errors.append(f"{self.name} does not support temperature parameter")
            elif not 0 <= options.temperature <= self.max_temperature:
                errors.append(self._temperature_error())
        if options.top_p is not None:
            if not self.capabilities.supports_top_p:
                errors.append(f"{self.name} does not support top_p parameter")
            elif not 0 <= options.top_p <= 1:
                errors.append("top_p must be between 0 and 1")
        if options.max_tokens is not None:
            if not self.capabilities.supports_max_tokens:
                errors.append(f"{self.name} does not support max_tokens parameter")
            elif options.max_tokens <= 0:
                errors.append("max_tokens must be greater than 0")
        return ValidationResult.of(errors)

    def _temperature_error(self) -> str:
        return f"Temperature must be between 0 and {self.max_temperature:g}"

    def render(self, structured: StructuredPrompt, options: RenderOptions) -> ProviderPayload:
        """Validate ``options`` and ``structured`` then build the payload."""
        result = self.validate_render_options(options)
        if not result.is_valid:
            raise ValidationError.from_errors("Invalid render options", result.errors)
        if not structured.user_template:
            raise ValidationError("Invalid structured prompt: User template is required")
        system = options.system_override or "\n\n".join(structured.system)
        return self.build_payload(system, structured.user_template, options)

    @abstractmethod
    def build_payload(self, system: str, user: str, options: RenderOptions) -> ProviderPayload: ...

    @abstractmethod
    def validate(self, payload: ProviderPayload) -> ValidationResult: ...

    @abstractmethod
    def get_default_options(self) -> RenderOptions: ...

    @abstractmethod
    def get_configuration(self) -> ProviderConfig: ...

    # ------------------------------------------------------------------
    # Helpers shared by the chat-message shaped providers
    # ------------------------------------------------------------------

    def _check_common(self, payload: ProviderPayload, errors: list[str]) -> dict[str, Any] | None:
        if payload.provider != self.id:
            errors.append(f"Expected provider '{self.id}', got '{payload.provider}'")
        content = payload.content
        if not content:
            errors.append("Payload content is required")
            return None
        model = content.get("model")
        if not model:
            errors.append("Model is required")
        elif not self.supports(model):
            errors.append(f"Unsupported model: {model}")
        return content

    def _check_messages(self, content: dict[str, Any], roles: list[str], errors: list[str]) -> None:
        messages = content.get("messages")
        if not isinstance(messages, list):
            errors.append("Messages must be a list")
            return
        if not messages:
            errors.append("At least one message is required")
        for index, message in enumerate(messages):
            if message.get("role") not in roles:
                errors.append(f"Invalid role at message {index}: {message.get('role')}")
            if not isinstance(message.get("content"), str):
                errors.append(f"Message content must be a string at index {index}")

    def _check_sampling(self, content: dict[str, Any], errors: list[str]) -> None:
        temperature = content.get("temperature")
        if temperature is not None and not 0 <= temperature <= self.max_temperature:
            errors.append(self._temperature_error())
        top_p = content.get("top_p")
        if top_p is not None and not 0 <= top_p <= 1:
            errors.append("top_p must be between 0 and 1")
        max_tokens = content.get("max_tokens")
        if max_tokens is not None and (not isinstance(max_tokens, int) or max_tokens <= 0):
            errors.append("max_tokens must be a positive number")

    @staticmethod
    def _apply_sampling(body: dict[str, Any], options: RenderOptions) -> None:
        if options.temperature is not None:
            body["temperature"] = options.temperature
        if options.top_p is not None:
            body["top_p"] = options.top_p
        if options.max_tokens is not None:
            body["max_tokens"] = options.max_tokens
