from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

_BOM = "\ufeff"
_JSON_FENCE = re.compile(r"```\s*json\s*\n(.*?)```", re.IGNORECASE | re.DOTALL)
_ANY_FENCE = re.compile(r"```[^\n]*\n(.*?)```", re.DOTALL)
_TRAILING_COMMA = re.compile(r",\s*([}\]])")
_LOOKS_LIKE_JSON = re.compile(r"^\s*[\[{].*[\]}]\s*$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class JsonParseResult:
    ok: bool
    data: Any
    text: str
    repaired: bool
    error: str | None = None


def preprocess_text(raw: str) -> str:
    text = raw
    if text.startswith(_BOM):
        text = text[len(_BOM) :]

    match = _JSON_FENCE.search(text) or _ANY_FENCE.search(text)
    if match is not None:
        text = match.group(1)

    return text.strip()


def safe_parse_json(raw_text: str) -> JsonParseResult:
    """Parse model JSON output, tolerating fences, BOM and two common slips.

    Fallbacks run in order (quote normalisation, then trailing-comma removal on
    top of it) and each must itself parse cleanly; otherwise the result is a
    failure carrying the last decoder error.
    """

    text = preprocess_text(raw_text)
    try:
        return JsonParseResult(ok=True, data=json.loads(text), text=text, repaired=False)
    except json.JSONDecodeError as error:
        last_error = str(error)

    if not _LOOKS_LIKE_JSON.match(text):
        return JsonParseResult(
            ok=False, data=None, text=text, repaired=False, error=last_error
        )

    quoted = normalize_single_quotes(text)
    try:
        return JsonParseResult(ok=True, data=json.loads(quoted), text=quoted, repaired=True)
    except json.JSONDecodeError as error:
        last_error = str(error)

    no_trailing_comma = _TRAILING_COMMA.sub(r"\1", quoted)
    try:
        return JsonParseResult(
            ok=True,
            data=json.loads(no_trailing_comma),
            text=no_trailing_comma,
            repaired=True,
        )
    except json.JSONDecodeError as error:
        last_error = str(error)

    return JsonParseResult(ok=False, data=None, text=text, repaired=False, error=last_error)


def normalize_single_quotes(text: str) -> str:
    """Swap single quotes for double quotes outside double-quoted strings."""

    result: list[str] = []
    in_double = False
    escaped = False
    for char in text:
        if in_double:
            result.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_double = False
            continue

        if char == '"':
            in_double = True
            result.append(char)
        elif char == "'":
            result.append('"')
        else:
            result.append(char)
    return "".join(result)
