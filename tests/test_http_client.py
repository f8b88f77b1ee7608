from __future__ import annotations

import json

import httpx
import pytest

from batchllm.llm_client.base import Timeouts
from batchllm.llm_client.http_client import HttpRequestClient, probe_provider
from batchllm.llm_client.providers import ProviderConfig, ProviderRegistry
from batchllm.utils.error_taxonomy import HttpStatusError, classify_error

PROVIDER = ProviderConfig(
    name="local",
    base_url="http://127.0.0.1:11434/v1/",
    api_key="secret",
    models=["qwen2.5:14b"],
)


def _client(handler) -> HttpRequestClient:
    return HttpRequestClient(
        providers=ProviderRegistry([PROVIDER]),
        transport=httpx.MockTransport(handler),
    )


def test_complete_posts_chat_request() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "identifier,question"}}],
                "usage": {"input_tokens": 12, "output_tokens": 3},
            },
        )

    result = _client(handler).complete(
        provider_name="local",
        model="qwen2.5:14b",
        messages=[{"role": "user", "content": "doc"}],
        timeouts=Timeouts(),
        params={"temperature": 0.1},
    )

    request = seen[0]
    body = json.loads(request.content)
    assert str(request.url) == "http://127.0.0.1:11434/v1/chat/completions"
    assert request.headers["Authorization"] == "Bearer secret"
    assert body["model"] == "qwen2.5:14b"
    assert body["temperature"] == 0.1
    assert result.text == "identifier,question"
    assert result.usage == {"prompt_tokens": 12, "completion_tokens": 3, "total_tokens": 15}


def test_complete_defaults_temperature() -> None:
    bodies: list[dict] = []

    def handler(request: httpx.Request) -> httpx.Response:
        bodies.append(json.loads(request.content))
        return httpx.Response(200, json={"choices": [{"text": "legacy"}]})

    result = _client(handler).complete(
        provider_name="local", model="qwen2.5:14b", messages=[], timeouts=Timeouts()
    )

    assert bodies[0]["temperature"] == 0.2
    assert result.text == "legacy"


def test_error_status_raises_with_provider_reason() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(429, json={"error": {"message": "slow down"}})

    with pytest.raises(HttpStatusError) as excinfo:
        _client(handler).complete(
            provider_name="local", model="qwen2.5:14b", messages=[], timeouts=Timeouts()
        )

    assert excinfo.value.status_code == 429
    assert str(excinfo.value) == "HTTP 429: slow down"
    assert classify_error(excinfo.value).type == "rate_limit"


def test_probe_treats_connect_error_as_unreachable() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    probe = probe_provider(
        PROVIDER, timeout_seconds=1.0, transport=httpx.MockTransport(handler)
    )

    assert probe.reachable is False
    assert probe.status_code is None
    assert probe.to_dict()["error"] == "connection refused"


def test_probe_treats_any_http_answer_as_reachable() -> None:
    paths: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        paths.append(request.url.path)
        return httpx.Response(404)

    probe = probe_provider(
        PROVIDER, timeout_seconds=1.0, transport=httpx.MockTransport(handler)
    )

    assert paths == ["/v1/models"]
    assert probe.reachable is True
    assert probe.status_code == 404
