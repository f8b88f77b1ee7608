from __future__ import annotations

import threading
import time
from typing import Any, Callable, Protocol

from batchllm.llm_client.base import (
    ChatMessage,
    CompletionResult,
    Timeouts,
    extract_completion_text,
    to_dict,
)
from batchllm.llm_client.normalize_usage import normalize_usage
from batchllm.llm_client.providers import ProviderConfig, ProviderRegistry
from batchllm.utils.error_taxonomy import raise_if_cancelled


class ChatCompletionsService(Protocol):
    def create(self, **kwargs: Any) -> Any: ...


ServiceFactory = Callable[[ProviderConfig], ChatCompletionsService]


class OpenAIRequestClient:
    """Chat completion client built on the OpenAI SDK for compatible providers."""

    def __init__(
        self,
        *,
        providers: ProviderRegistry,
        service_factory: ServiceFactory | None = None,
    ) -> None:
        self._providers = providers
        self._service_factory = service_factory
        self._services: dict[str, ChatCompletionsService] = {}

    def complete(
        self,
        *,
        provider_name: str,
        model: str,
        messages: list[ChatMessage],
        timeouts: Timeouts,
        params: dict[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult:
        provider = self._providers.get(provider_name)
        service = self._resolve_service(provider)
        payload = self.build_request_payload(
            model=model,
            messages=messages,
            params=params or {},
        )

        raise_if_cancelled(cancel_event)
        start_time = time.perf_counter()
        response = service.create(timeout=timeouts.as_httpx(), **payload)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        response_payload = to_dict(response)
        text = extract_completion_text(response_payload or response)
        usage_raw = response_payload.get("usage")
        if not isinstance(usage_raw, dict):
            usage_raw = to_dict(getattr(response, "usage", None))

        return CompletionResult(
            text=text,
            raw=response_payload,
            usage=normalize_usage(usage_raw),
            provider=provider.name,
            model=model,
            timings={"t_request_ms": elapsed_ms},
        )

    @staticmethod
    def build_request_payload(
        *,
        model: str,
        messages: list[ChatMessage],
        params: dict[str, Any],
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": model,
            "messages": [dict(message) for message in messages],
        }

        temperature = params.get("temperature")
        if temperature is not None:
            payload["temperature"] = temperature

        max_tokens = params.get("max_tokens")
        if max_tokens is not None:
            payload["max_tokens"] = int(max_tokens)

        return payload

    def _resolve_service(self, provider: ProviderConfig) -> ChatCompletionsService:
        service = self._services.get(provider.name)
        if service is not None:
            return service

        if self._service_factory is not None:
            service = self._service_factory(provider)
        else:
            service = _build_sdk_service(provider)

        self._services[provider.name] = service
        return service


def _build_sdk_service(provider: ProviderConfig) -> ChatCompletionsService:
    try:
        from openai import OpenAI
    except ImportError as error:
        raise RuntimeError("openai package is not installed") from error

    client = OpenAI(
        api_key=provider.resolved_api_key() or "not-set",
        base_url=f"{provider.normalized_base_url}/v1",
        max_retries=0,
    )
    return client.chat.completions
