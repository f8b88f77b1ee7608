from __future__ import annotations

import os
from typing import Any, Iterator, Literal

from pydantic import BaseModel, ConfigDict, Field, model_validator

ClientBackend = Literal["sdk", "http"]


class ProviderConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(min_length=1)
    base_url: str = Field(min_length=1)
    api_key: str | None = None
    api_key_env: str | None = None
    models: list[str] = Field(min_length=1)
    default_model: str | None = None

    @model_validator(mode="after")
    def _default_model_is_listed(self) -> ProviderConfig:
        if self.default_model is not None and self.default_model not in self.models:
            raise ValueError(
                f"default_model {self.default_model} is not listed for provider {self.name}"
            )
        return self

    @property
    def normalized_base_url(self) -> str:
        base = self.base_url.rstrip("/")
        if base.endswith("/v1"):
            base = base[: -len("/v1")]
        return base

    def api_url(self, path: str) -> str:
        return f"{self.normalized_base_url}/v1/{path.lstrip('/')}"

    def resolved_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None

    def resolve_model(self, model: str | None) -> str:
        if model:
            return model
        return self.default_model or self.models[0]


class ProviderRegistry:
    def __init__(self, providers: list[ProviderConfig]) -> None:
        self._providers: dict[str, ProviderConfig] = {}
        for provider in providers:
            if provider.name in self._providers:
                raise ValueError(f"Duplicate provider name: {provider.name}")
            self._providers[provider.name] = provider

    @classmethod
    def from_config(cls, data: dict[str, Any]) -> ProviderRegistry:
        raw_providers = data.get("providers")
        if not isinstance(raw_providers, list) or not raw_providers:
            raise ValueError("providers config must be a non-empty list")
        return cls([ProviderConfig.model_validate(item) for item in raw_providers])

    def get(self, name: str) -> ProviderConfig:
        provider = self._providers.get(name)
        if provider is None:
            raise ValueError(f"Unknown provider: {name}")
        return provider

    def names(self) -> list[str]:
        return list(self._providers)

    def __iter__(self) -> Iterator[ProviderConfig]:
        return iter(self._providers.values())

    def __len__(self) -> int:
        return len(self._providers)
