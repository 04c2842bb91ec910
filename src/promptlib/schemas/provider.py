from __future__ import annotations

from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field


class RenderOptions(BaseModel):
    model: str | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    system_override: str | None = None
    variables: dict[str, Any] | None = None


class ProviderPayload(BaseModel):
    provider: str
    model: str
    content: dict[str, Any]
    metadata: dict[str, Any] = Field(default_factory=dict)
    variables_used: list[str] | None = None


class ProviderCapabilities(BaseModel):
    supports_system_messages: bool = True
    supports_multiple_messages: bool = True
    supports_temperature: bool = True
    supports_top_p: bool = True
    supports_max_tokens: bool = True
    max_context_length: int
    supported_message_roles: list[str]


class ModelDescriptor(BaseModel):
    id: str
    name: str
    context_length: int
    deprecated: bool = False


class ModelInfo(BaseModel):
    max_tokens: int
    context_length: int
    supports_system_messages: bool


class RateLimits(BaseModel):
    requests_per_minute: int
    tokens_per_minute: int


class _ProviderConfigBase(BaseModel):
    id: str
    name: str
    default_model: str
    models: list[ModelDescriptor]
    capabilities: ProviderCapabilities
    rate_limits: RateLimits


class OpenAIConfig(_ProviderConfigBase):
    provider: Literal["openai"] = "openai"
    api_base: str = "https://api.openai.com/v1"


class AnthropicConfig(_ProviderConfigBase):
    provider: Literal["anthropic"] = "anthropic"
    api_version: str = "2023-06-01"
    # The Messages API rejects requests without max_tokens.
    default_max_tokens: int = 4096


class MetaConfig(_ProviderConfigBase):
    provider: Literal["meta"] = "meta"
    model_families: list[str] = Field(default_factory=list)


ProviderConfig = Annotated[
    Union[OpenAIConfig, AnthropicConfig, MetaConfig],
    Field(discriminator="provider"),
]
