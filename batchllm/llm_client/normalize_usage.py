from __future__ import annotations

from typing import Any, Iterable

TOKEN_KEYS: tuple[str, ...] = ("prompt_tokens", "completion_tokens", "total_tokens")


def normalize_usage(usage: dict[str, Any] | None) -> dict[str, int | None]:
    usage_data = usage or {}

    prompt_tokens = _to_int(
        usage_data.get("prompt_tokens")
        or usage_data.get("input_tokens")
        or usage_data.get("inputTokens")
    )
    completion_tokens = _to_int(
        usage_data.get("completion_tokens")
        or usage_data.get("output_tokens")
        or usage_data.get("outputTokens")
    )
    total_tokens = _to_int(
        usage_data.get("total_tokens")
        or usage_data.get("totalTokens")
        or _sum_tokens(prompt_tokens, completion_tokens)
    )

    return {
        "prompt_tokens": prompt_tokens,
        "completion_tokens": completion_tokens,
        "total_tokens": total_tokens,
    }


def aggregate_usage(usages: Iterable[dict[str, int | None]]) -> dict[str, int]:
    totals = {key: 0 for key in TOKEN_KEYS}
    totals["requests"] = 0
    for usage in usages:
        totals["requests"] += 1
        for key in TOKEN_KEYS:
            totals[key] += int(usage.get(key) or 0)
    return totals


def _sum_tokens(prompt_tokens: int | None, completion_tokens: int | None) -> int | None:
    if prompt_tokens is None and completion_tokens is None:
        return None

    return int((prompt_tokens or 0) + (completion_tokens or 0))


def _to_int(value: Any) -> int | None:
    if value is None:
        return None

    return int(value)
