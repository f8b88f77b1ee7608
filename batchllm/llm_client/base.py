from __future__ import annotations

import threading
from dataclasses import dataclass, field
from typing import Any, Protocol

import httpx

ChatMessage = dict[str, str]


@dataclass(frozen=True, slots=True)
class Timeouts:
    connect_seconds: float = 3.0
    response_seconds: float = 60.0

    @classmethod
    def from_ms(cls, *, connect_ms: int, response_ms: int) -> Timeouts:
        return cls(
            connect_seconds=max(500, int(connect_ms)) / 1000,
            response_seconds=max(1000, int(response_ms)) / 1000,
        )

    def as_httpx(self) -> httpx.Timeout:
        return httpx.Timeout(self.response_seconds, connect=self.connect_seconds)


@dataclass(frozen=True, slots=True)
class CompletionResult:
    text: str
    raw: dict[str, Any]
    usage: dict[str, int | None]
    provider: str
    model: str
    timings: dict[str, float] = field(default_factory=dict)
    attempts: int = 1


class RequestClient(Protocol):
    def complete(
        self,
        *,
        provider_name: str,
        model: str,
        messages: list[ChatMessage],
        timeouts: Timeouts,
        params: dict[str, Any] | None = None,
        cancel_event: threading.Event | None = None,
    ) -> CompletionResult: ...


def extract_completion_text(payload: Any) -> str:
    """Pull generated text out of chat, responses or legacy completion payloads."""

    if isinstance(payload, str):
        return payload
    if not isinstance(payload, dict):
        raise ValueError("Completion response is not an object")

    choices = payload.get("choices")
    if isinstance(choices, list) and choices:
        choice = choices[0]
        if isinstance(choice, dict):
            message = choice.get("message")
            if isinstance(message, dict) and isinstance(message.get("content"), str):
                return message["content"]
            if isinstance(choice.get("text"), str):
                return choice["text"]

    output = payload.get("output")
    if isinstance(output, list):
        texts: list[str] = []
        for item in output:
            if not isinstance(item, dict) or item.get("type") != "message":
                continue
            content = item.get("content")
            if not isinstance(content, list):
                continue
            for content_item in content:
                if not isinstance(content_item, dict):
                    continue
                text = content_item.get("text")
                if content_item.get("type") == "output_text" and isinstance(text, str):
                    texts.append(text)
        if texts:
            return "\n".join(texts)

    completion = payload.get("completion")
    if isinstance(completion, str):
        return completion

    raise ValueError("Completion response does not contain output text")


def to_dict(value: Any) -> dict[str, Any]:
    if isinstance(value, dict):
        return value

    model_dump = getattr(value, "model_dump", None)
    if callable(model_dump):
        dumped = model_dump()
        if isinstance(dumped, dict):
            return dumped

    return {}
