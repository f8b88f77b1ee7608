from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, replace
from typing import Any, Callable

from tenacity import (
    RetryCallState,
    retry,
    retry_if_exception,
    stop_after_attempt,
    stop_when_event_set,
    wait_fixed,
)

from batchllm.llm_client.base import (
    ChatMessage,
    CompletionResult,
    RequestClient,
    Timeouts,
)
from batchllm.llm_client.http_client import ProbeResult, probe_provider
from batchllm.llm_client.providers import ProviderConfig, ProviderRegistry
from batchllm.utils.error_taxonomy import (
    ProviderUnreachableError,
    classify_error,
    is_transient_error,
    raise_if_cancelled,
)

logger = logging.getLogger(__name__)

Prober = Callable[[ProviderConfig, float], ProbeResult]


@dataclass(frozen=True, slots=True)
class RetryPolicy:
    enabled: bool = True
    max_retry_count: int = 3
    retry_delay_seconds: float = 1.0

    @property
    def max_attempts(self) -> int:
        if not self.enabled:
            return 1
        return max(0, int(self.max_retry_count)) + 1


class _AttemptTracker:
    def __init__(self) -> None:
        self.count = 0


class RetryingRequestClient:
    """Retry transient failures of another client with a fixed delay.

    Before every attempt the provider can be probed on ``/v1/models`` so that
    an unreachable host fails fast instead of waiting for the response
    timeout. Setting ``cancel_event`` ends the retry loop: the pending delay
    returns early and no further attempt is sent.
    """

    def __init__(
        self,
        *,
        inner: RequestClient,
        policy: RetryPolicy | None = None,
        providers: ProviderRegistry | None = None,
        prober: Prober | None = None,
        probe_before_request: bool = False,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        if probe_before_request and providers is None:
            raise ValueError("providers are required when probing before requests")

        self._inner = inner
        self._policy = policy or RetryPolicy()
        self._providers = providers
        self._prober = prober or _default_prober
        self._probe_before_request = probe_before_request
        self._sleep_fn = sleep_fn

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
        tracker = _AttemptTracker()
        stop = stop_after_attempt(self._policy.max_attempts)
        sleep = self._sleep_fn
        if cancel_event is not None:
            stop = stop | stop_when_event_set(cancel_event)
            sleep = cancel_event.wait

        @retry(
            retry=retry_if_exception(is_transient_error),
            stop=stop,
            wait=wait_fixed(self._policy.retry_delay_seconds),
            sleep=sleep,
            before_sleep=_log_retry,
            reraise=True,
        )
        def _execute() -> CompletionResult:
            raise_if_cancelled(cancel_event)
            tracker.count += 1
            if self._probe_before_request:
                self._ensure_reachable(provider_name, timeouts)
            return self._inner.complete(
                provider_name=provider_name,
                model=model,
                messages=messages,
                timeouts=timeouts,
                params=params,
                cancel_event=cancel_event,
            )

        result = _execute()
        return replace(result, attempts=tracker.count)

    def _ensure_reachable(self, provider_name: str, timeouts: Timeouts) -> None:
        if self._providers is None:
            raise ValueError("providers are required when probing before requests")
        provider = self._providers.get(provider_name)
        probe = self._prober(provider, timeouts.connect_seconds)
        if probe.reachable:
            return
        raise ProviderUnreachableError(
            f"Provider {provider.name} is unreachable at "
            f"{provider.api_url('models')}: {probe.error}"
        ) from probe.error


def _default_prober(provider: ProviderConfig, timeout_seconds: float) -> ProbeResult:
    return probe_provider(provider, timeout_seconds=timeout_seconds)


def _log_retry(retry_state: RetryCallState) -> None:
    error = retry_state.outcome.exception() if retry_state.outcome else None
    if error is None:
        return
    classified = classify_error(error)
    logger.warning(
        "Transient request failure, retrying",
        extra={
            "metrics": {
                "attempt": retry_state.attempt_number,
                "error_type": classified.type,
                "error": classified.message,
            }
        },
    )
