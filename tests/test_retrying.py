from __future__ import annotations

import threading
import time
from typing import Any

import httpx
import pytest

from batchllm.llm_client.base import CompletionResult, Timeouts
from batchllm.llm_client.http_client import ProbeResult
from batchllm.llm_client.providers import ProviderConfig, ProviderRegistry
from batchllm.llm_client.retrying import RetryingRequestClient, RetryPolicy
from batchllm.utils.error_taxonomy import (
    HttpStatusError,
    ProviderUnreachableError,
    TaskCancelledError,
)

REGISTRY = ProviderRegistry(
    [ProviderConfig(name="local", base_url="http://127.0.0.1:11434", models=["m"])]
)


class ScriptedClient:
    def __init__(self, script: list[Any]) -> None:
        self.script = list(script)
        self.calls = 0

    def complete(self, **kwargs: Any) -> CompletionResult:
        self.calls += 1
        step = self.script.pop(0)
        if isinstance(step, BaseException):
            raise step
        return CompletionResult(text=step, raw={}, usage={}, provider="local", model="m")


def _complete(
    client: RetryingRequestClient,
    cancel_event: threading.Event | None = None,
) -> CompletionResult:
    return client.complete(
        provider_name="local",
        model="m",
        messages=[{"role": "user", "content": "doc"}],
        timeouts=Timeouts(),
        cancel_event=cancel_event,
    )


def test_transient_failures_are_retried_and_counted() -> None:
    inner = ScriptedClient([HttpStatusError(503, "busy"), ConnectionResetError("reset"), "ok"])
    sleeps: list[float] = []
    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(max_retry_count=3, retry_delay_seconds=0.5),
        sleep_fn=sleeps.append,
    )

    result = _complete(client)

    assert result.text == "ok"
    assert result.attempts == 3
    assert inner.calls == 3
    assert sleeps == [0.5, 0.5]


def test_retries_stop_at_the_limit() -> None:
    inner = ScriptedClient([HttpStatusError(500)] * 5)
    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(max_retry_count=2, retry_delay_seconds=0),
        sleep_fn=lambda _: None,
    )

    with pytest.raises(HttpStatusError):
        _complete(client)

    assert inner.calls == 3


def test_non_transient_failure_is_not_retried() -> None:
    inner = ScriptedClient([HttpStatusError(401, "bad key"), "unused"])
    client = RetryingRequestClient(inner=inner, sleep_fn=lambda _: None)

    with pytest.raises(HttpStatusError):
        _complete(client)

    assert inner.calls == 1


def test_disabled_policy_makes_a_single_attempt() -> None:
    inner = ScriptedClient([HttpStatusError(503), "unused"])
    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(enabled=False),
        sleep_fn=lambda _: None,
    )

    with pytest.raises(HttpStatusError):
        _complete(client)

    assert inner.calls == 1


def test_unreachable_provider_fails_before_the_request() -> None:
    inner = ScriptedClient(["unused"])
    probes: list[float] = []

    def prober(provider: ProviderConfig, timeout_seconds: float) -> ProbeResult:
        probes.append(timeout_seconds)
        return ProbeResult(
            provider=provider.name,
            reachable=False,
            status_code=None,
            latency_ms=1.0,
            error=httpx.ConnectError("refused"),
        )

    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(max_retry_count=1, retry_delay_seconds=0),
        providers=REGISTRY,
        prober=prober,
        probe_before_request=True,
        sleep_fn=lambda _: None,
    )

    with pytest.raises(ProviderUnreachableError, match="unreachable"):
        _complete(client)

    assert inner.calls == 0
    assert probes == [3.0, 3.0]


def test_probing_requires_providers() -> None:
    with pytest.raises(ValueError):
        RetryingRequestClient(inner=ScriptedClient([]), probe_before_request=True)


def test_cancel_during_a_request_stops_further_attempts() -> None:
    cancel_event = threading.Event()

    class CancelledMidRequest(ScriptedClient):
        def complete(self, **kwargs: Any) -> CompletionResult:
            cancel_event.set()
            return super().complete(**kwargs)

    inner = CancelledMidRequest([TimeoutError("read timed out")] * 4)
    sleeps: list[float] = []
    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(max_retry_count=3, retry_delay_seconds=0.5),
        sleep_fn=sleeps.append,
    )

    with pytest.raises(TimeoutError):
        _complete(client, cancel_event)

    assert inner.calls == 1
    assert sleeps == []


def test_cancel_interrupts_the_retry_delay() -> None:
    cancel_event = threading.Event()
    inner = ScriptedClient([TimeoutError("read timed out")] * 4)
    client = RetryingRequestClient(
        inner=inner,
        policy=RetryPolicy(max_retry_count=3, retry_delay_seconds=5.0),
    )
    timer = threading.Timer(0.05, cancel_event.set)
    timer.start()

    started_at = time.monotonic()
    try:
        with pytest.raises(TaskCancelledError):
            _complete(client, cancel_event)
    finally:
        timer.cancel()

    assert time.monotonic() - started_at < 2.0
    assert inner.calls == 1


def test_cancelled_request_is_never_sent() -> None:
    cancel_event = threading.Event()
    cancel_event.set()
    inner = ScriptedClient(["unused"])
    client = RetryingRequestClient(inner=inner, sleep_fn=lambda _: None)

    with pytest.raises(TaskCancelledError):
        _complete(client, cancel_event)

    assert inner.calls == 0
