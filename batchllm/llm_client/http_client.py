from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any

import httpx

from batchllm.llm_client.base import (
    ChatMessage,
    CompletionResult,
    Timeouts,
    extract_completion_text,
)
from batchllm.llm_client.normalize_usage import normalize_usage
from batchllm.llm_client.providers import ProviderConfig, ProviderRegistry
from batchllm.utils.error_taxonomy import HttpStatusError, raise_if_cancelled

DEFAULT_TEMPERATURE = 0.2


@dataclass(frozen=True, slots=True)
class ProbeResult:
    provider: str
    reachable: bool
    status_code: int | None
    latency_ms: float
    error: BaseException | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider": self.provider,
            "reachable": self.reachable,
            "status_code": self.status_code,
            "latency_ms": round(self.latency_ms, 3),
            "error": None if self.error is None else str(self.error),
        }


class HttpRequestClient:
    """Chat completion client that talks to ``/v1/chat/completions`` via httpx."""

    def __init__(
        self,
        *,
        providers: ProviderRegistry,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self._providers = providers
        self._transport = transport

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
        body: dict[str, Any] = {
            "model": model,
            "messages": [dict(message) for message in messages],
            "temperature": DEFAULT_TEMPERATURE,
        }
        body.update(params or {})

        raise_if_cancelled(cancel_event)
        start_time = time.perf_counter()
        with httpx.Client(
            timeout=timeouts.as_httpx(),
            headers=_auth_headers(provider),
            transport=self._transport,
        ) as client:
            response = client.post(provider.api_url("chat/completions"), json=body)
        elapsed_ms = (time.perf_counter() - start_time) * 1000

        if response.status_code >= 400:
            raise HttpStatusError(response.status_code, _error_reason(response))

        payload = response.json()
        usage_raw = payload.get("usage") if isinstance(payload, dict) else None
        return CompletionResult(
            text=extract_completion_text(payload),
            raw=payload if isinstance(payload, dict) else {"body": payload},
            usage=normalize_usage(usage_raw if isinstance(usage_raw, dict) else None),
            provider=provider.name,
            model=model,
            timings={"t_request_ms": elapsed_ms},
        )


def probe_provider(
    provider: ProviderConfig,
    *,
    timeout_seconds: float,
    transport: httpx.BaseTransport | None = None,
) -> ProbeResult:
    """GET ``/v1/models``; any HTTP answer means the provider is reachable."""

    start_time = time.perf_counter()
    try:
        with httpx.Client(
            timeout=timeout_seconds,
            headers=_auth_headers(provider),
            transport=transport,
        ) as client:
            response = client.get(provider.api_url("models"))
    except (httpx.ConnectError, httpx.TimeoutException) as error:
        return ProbeResult(
            provider=provider.name,
            reachable=False,
            status_code=None,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            error=error,
        )
    except httpx.HTTPError as error:
        return ProbeResult(
            provider=provider.name,
            reachable=True,
            status_code=None,
            latency_ms=(time.perf_counter() - start_time) * 1000,
            error=error,
        )

    return ProbeResult(
        provider=provider.name,
        reachable=True,
        status_code=response.status_code,
        latency_ms=(time.perf_counter() - start_time) * 1000,
    )


def _auth_headers(provider: ProviderConfig) -> dict[str, str]:
    headers = {"Content-Type": "application/json"}
    api_key = provider.resolved_api_key()
    if api_key:
        headers["Authorization"] = f"Bearer {api_key}"
    return headers


def _error_reason(response: httpx.Response) -> str:
    try:
        data = response.json()
    except ValueError:
        data = None

    if isinstance(data, dict):
        error = data.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str) and error:
            return error
        if data.get("message"):
            return str(data["message"])

    return response.reason_phrase or response.text or "http error"
