from __future__ import annotations

import socket

import httpx

from batchllm.utils.error_taxonomy import (
    HttpStatusError,
    ProviderUnreachableError,
    TaskCancelledError,
    build_error_details,
    classify_error,
    classify_status_code,
    extract_http_status_code,
    is_transient_error,
)


class _SdkStatusError(Exception):
    def __init__(self, message: str, status_code: int) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.body = {"error": {"message": message}}


class _CodedError(Exception):
    def __init__(self, message: str, code: str) -> None:
        super().__init__(message)
        self.code = code


def test_stage_takes_precedence_over_error_shape() -> None:
    error = HttpStatusError(503, "unavailable")

    assert classify_error(error, stage="parse").type == "parse_error"
    assert classify_error(error, stage="validation").type == "validation_error"
    assert classify_error(error, stage="write").type == "write_error"
    assert classify_error(error, stage="fallback").type == "fallback_failed"
    assert classify_error(error, stage="cancel").type == "user_cancelled"


def test_request_stage_classifies_by_status_code() -> None:
    assert classify_error(HttpStatusError(429, "slow down")).type == "rate_limit"
    assert classify_error(HttpStatusError(500, "boom")).type == "server_error"
    assert classify_error(HttpStatusError(404, "no model")).type == "client_error"
    assert classify_error(_SdkStatusError("bad key", 401)).type == "client_error"


def test_http_status_error_keeps_status_and_reason() -> None:
    classified = classify_error(HttpStatusError(502, "bad gateway"))

    assert classified.status == 502
    assert classified.message == "HTTP 502: bad gateway"
    assert classified.is_transient is True


def test_status_parsed_from_message_when_no_attribute() -> None:
    classified = classify_error(RuntimeError("HTTP 503: overloaded"))

    assert classified.type == "server_error"
    assert classified.status == 503
    assert classified.message == "overloaded"


def test_network_and_timeout_errors() -> None:
    assert classify_error(ConnectionRefusedError("refused")).type == "network_error"
    assert classify_error(socket.gaierror("getaddrinfo failed")).type == "network_error"
    assert classify_error(_CodedError("lookup", "ENOTFOUND")).type == "network_error"
    assert classify_error(httpx.ConnectError("connection refused")).type == "network_error"
    assert classify_error(ProviderUnreachableError("down")).type == "network_error"

    assert classify_error(TimeoutError("slow")).type == "timeout"
    assert classify_error(httpx.ReadTimeout("read timed out")).type == "timeout"
    assert classify_error(_CodedError("socket", "ETIMEDOUT")).type == "timeout"


def test_cancellation_and_unknown_errors() -> None:
    assert classify_error(TaskCancelledError("hard stop")).type == "user_cancelled"
    assert classify_error(KeyError("missing")).type == "unknown_error"


def test_transient_types() -> None:
    assert is_transient_error(HttpStatusError(429, "limit")) is True
    assert is_transient_error(ConnectionResetError("reset")) is True
    assert is_transient_error(HttpStatusError(400, "bad request")) is False
    assert is_transient_error(ValueError("nope")) is False


def test_classify_status_code_boundaries() -> None:
    assert classify_status_code(399) == "unknown_error"
    assert classify_status_code(400) == "client_error"
    assert classify_status_code(499) == "client_error"
    assert classify_status_code(500) == "server_error"


def test_extract_status_from_response_attribute() -> None:
    class _Response:
        status_code = 504

    class _ErrorWithResponse(Exception):
        response = _Response()

    assert extract_http_status_code(_ErrorWithResponse("gateway")) == 504


def test_build_error_details_includes_status_and_body() -> None:
    details = build_error_details(_SdkStatusError("quota", 429))

    assert "_SdkStatusError: quota" in details
    assert "status_code=429" in details
    assert "body=" in details


def test_to_dict_omits_empty_fields() -> None:
    payload = classify_error(ValueError("broken"), stage="validation").to_dict()

    assert payload == {"type": "validation_error", "message": "broken"}
