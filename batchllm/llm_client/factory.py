from __future__ import annotations

from batchllm.config.settings import Settings
from batchllm.llm_client.base import RequestClient
from batchllm.llm_client.http_client import HttpRequestClient
from batchllm.llm_client.openai_client import OpenAIRequestClient
from batchllm.llm_client.providers import ProviderRegistry
from batchllm.llm_client.retrying import RetryingRequestClient, RetryPolicy


def build_request_client(
    settings: Settings,
    providers: ProviderRegistry,
) -> RequestClient:
    inner: RequestClient
    if settings.client_backend == "http":
        inner = HttpRequestClient(providers=providers)
    else:
        inner = OpenAIRequestClient(providers=providers)

    return RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(
            enabled=settings.enable_auto_retry,
            max_retry_count=settings.max_retry_count,
            retry_delay_seconds=settings.retry_delay_ms / 1000,
        ),
        providers=providers,
        probe_before_request=settings.probe_before_request,
    )
