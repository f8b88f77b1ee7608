from __future__ import annotations

import re
import socket
import threading
from dataclasses import dataclass
from typing import Any, Literal

ErrorType = Literal[
    "network_error",
    "timeout",
    "rate_limit",
    "server_error",
    "client_error",
    "parse_error",
    "validation_error",
    "write_error",
    "fallback_failed",
    "unknown_error",
    "user_cancelled",
]

ErrorStage = Literal["request", "parse", "validation", "write", "fallback", "cancel"]

ERROR_TYPES: tuple[ErrorType, ...] = (
    "network_error",
    "timeout",
    "rate_limit",
    "server_error",
    "client_error",
    "parse_error",
    "validation_error",
    "write_error",
    "fallback_failed",
    "unknown_error",
    "user_cancelled",
)

TRANSIENT_ERROR_TYPES: frozenset[ErrorType] = frozenset(
    {"network_error", "timeout", "rate_limit", "server_error"}
)

ERROR_FRIENDLY_MESSAGES: dict[ErrorType, str] = {
    "network_error": "Provider is unreachable. Check the network or base URL.",
    "timeout": "Provider did not answer within the configured timeout.",
    "rate_limit": "Provider rate limit reached. Retry later.",
    "server_error": "Provider returned a server error. Retry later.",
    "client_error": "Provider rejected the request. Check key, model and payload.",
    "parse_error": "Model output could not be parsed.",
    "validation_error": "Model output failed validation.",
    "write_error": "Output could not be written to disk.",
    "fallback_failed": "Fallback processing failed as well.",
    "unknown_error": "Unexpected error occurred while processing the input.",
    "user_cancelled": "Processing was stopped by the user.",
}

_STAGE_ERROR_TYPES: dict[str, ErrorType] = {
    "parse": "parse_error",
    "validation": "validation_error",
    "write": "write_error",
    "fallback": "fallback_failed",
    "cancel": "user_cancelled",
}

_NETWORK_CODES = frozenset({"ENOTFOUND", "ECONNREFUSED", "ECONNRESET", "EAI_AGAIN"})
_TIMEOUT_CODES = frozenset({"ECONNABORTED", "ETIMEDOUT"})
_NETWORK_PATTERNS: tuple[str, ...] = (
    "connection refused",
    "connection reset",
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "network is unreachable",
    "failed to establish a new connection",
)
_TIMEOUT_PATTERN = re.compile(r"time[d\s-]*out|timeout|aborted", re.IGNORECASE)
_HTTP_MESSAGE_PATTERN = re.compile(r"^HTTP\s+(\d{3}):\s*(.*)$", re.IGNORECASE | re.DOTALL)


class TaskCancelledError(RuntimeError):
    """Raised when a running task is aborted by a hard stop."""


class OutputValidationError(ValueError):
    """Raised when model output cannot be turned into a usable table."""


class OutputWriteError(OSError):
    """Raised when a result file cannot be written."""


class FallbackFailedError(RuntimeError):
    """Raised when classic fallback after a structured failure also fails."""


class ProviderUnreachableError(ConnectionError):
    """Raised when the reachability probe cannot connect to a provider."""


class HttpStatusError(RuntimeError):
    """HTTP failure surfaced by the raw HTTP client."""

    def __init__(self, status_code: int, message: str = "http error") -> None:
        super().__init__(f"HTTP {status_code}: {message}")
        self.status_code = status_code
        self.reason = message


@dataclass(frozen=True, slots=True)
class ClassifiedError:
    type: ErrorType
    message: str
    status: int | None = None
    code: str | None = None

    @property
    def is_transient(self) -> bool:
        return self.type in TRANSIENT_ERROR_TYPES

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"type": self.type, "message": self.message}
        if self.status is not None:
            payload["status"] = self.status
        if self.code is not None:
            payload["code"] = self.code
        return payload


def classify_error(error: BaseException, stage: str = "request") -> ClassifiedError:
    stage_type = _STAGE_ERROR_TYPES.get(stage)
    message = _error_message(error)
    status_code = extract_http_status_code(error)
    code = extract_error_code(error)

    if stage_type is not None:
        return ClassifiedError(
            type=stage_type, message=message, status=status_code, code=code
        )

    if isinstance(error, TaskCancelledError):
        return ClassifiedError(type="user_cancelled", message=message, code=code)

    if is_network_exception(error):
        return ClassifiedError(type="network_error", message=message, code=code)

    if is_timeout_exception(error):
        return ClassifiedError(type="timeout", message=message, code=code)

    if status_code is None:
        match = _HTTP_MESSAGE_PATTERN.match(message)
        if match is not None:
            status_code = int(match.group(1))
            message = match.group(2) or message

    if status_code is not None:
        return ClassifiedError(
            type=classify_status_code(status_code),
            message=message,
            status=status_code,
            code=code,
        )

    return ClassifiedError(type="unknown_error", message=message, code=code)


def classify_status_code(status_code: int) -> ErrorType:
    if status_code == 429:
        return "rate_limit"
    if status_code >= 500:
        return "server_error"
    if status_code >= 400:
        return "client_error"
    return "unknown_error"


def is_transient_error(error: BaseException) -> bool:
    return classify_error(error, stage="request").is_transient


def raise_if_cancelled(
    cancel_event: threading.Event | None,
    message: str = "Request cancelled before it was sent",
) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise TaskCancelledError(message)


def is_network_exception(error: BaseException) -> bool:
    if isinstance(error, (ConnectionError, socket.gaierror)):
        return True

    code = extract_error_code(error)
    if code in _NETWORK_CODES:
        return True

    class_name = error.__class__.__name__.lower()
    if "connecterror" in class_name or "apiconnectionerror" in class_name:
        return not is_timeout_exception(error)

    message = _error_message(error).lower()
    return any(pattern in message for pattern in _NETWORK_PATTERNS)


def is_timeout_exception(error: BaseException) -> bool:
    if isinstance(error, (TimeoutError, socket.timeout)):
        return True

    if extract_error_code(error) in _TIMEOUT_CODES:
        return True

    class_name = error.__class__.__name__.lower()
    if "timeout" in class_name:
        return True

    return _TIMEOUT_PATTERN.search(_error_message(error)) is not None


def extract_http_status_code(error: BaseException) -> int | None:
    for field_name in ("status_code", "status", "http_status"):
        value = getattr(error, field_name, None)
        parsed = _to_int_or_none(value)
        if parsed is not None:
            return parsed

    response = getattr(error, "response", None)
    if response is not None:
        parsed = _to_int_or_none(getattr(response, "status_code", None))
        if parsed is not None:
            return parsed

    return None


def extract_error_code(error: BaseException) -> str | None:
    for candidate in (error, error.__cause__, error.__context__):
        if candidate is None:
            continue
        value = getattr(candidate, "code", None)
        if isinstance(value, str) and value:
            return value
    return None


def build_error_details(error: BaseException) -> str:
    details: list[str] = [f"{error.__class__.__name__}: {error}"]
    status_code = extract_http_status_code(error)
    if status_code is not None:
        details.append(f"status_code={status_code}")

    for field_name in ("body", "response_body", "payload"):
        value = getattr(error, field_name, None)
        if value is None:
            continue
        details.append(f"{field_name}={value}")
    return "\n".join(details)


def _error_message(error: BaseException) -> str:
    text = str(error).strip()
    return text or error.__class__.__name__


def _to_int_or_none(value: Any) -> int | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
