from __future__ import annotations

import json

from batchllm.llm_client.base import ChatMessage, CompletionResult
from batchllm.pipeline.repair_loop import SchemaRepairLoop, clamp_repair_attempts
from batchllm.prompts.manager import PromptManager

VALID_PAYLOAD = {
    "rows": [
        {
            "identifier": "1",
            "question": "What is\nthe capital?",
            "answer": "  Paris  ",
            "respondent": "Alice",
        }
    ]
}
MISSING_ROWS = json.dumps([{"identifier": "1", "question": "Q", "answer": "A"}])


class FakeRepairClient:
    def __init__(self, responses: list[str]) -> None:
        self.responses = list(responses)
        self.calls: list[list[ChatMessage]] = []

    def __call__(self, messages: list[ChatMessage]) -> CompletionResult:
        self.calls.append(messages)
        return CompletionResult(
            text=self.responses.pop(0),
            raw={},
            usage={},
            provider="fake",
            model="fake-model",
        )


def _schema() -> dict:
    prompt_set = PromptManager().load_prompt_set(
        prompt_name="rows_json", version="v001", require_schema=True
    )
    assert prompt_set.schema is not None
    return prompt_set.schema


def test_valid_output_needs_no_repair_and_is_projected() -> None:
    client = FakeRepairClient([])
    loop = SchemaRepairLoop(request_repair=client)

    outcome = loop.extract_structured(json.dumps(VALID_PAYLOAD), _schema(), max_attempts=2)

    assert outcome.ok is True
    assert outcome.repair_attempts_used == 0
    assert client.calls == []
    assert outcome.rows == [
        {
            "identifier": "1",
            "question": "What is the capital?",
            "answer": "Paris",
            "respondent": "Alice",
            "field": "",
        }
    ]
    assert outcome.csv_text is not None
    assert outcome.csv_text.split("\n")[1] == '"1","What is the capital?","Paris","Alice",""'


def test_zero_attempts_never_requests_repair() -> None:
    client = FakeRepairClient([json.dumps(VALID_PAYLOAD)])
    loop = SchemaRepairLoop(request_repair=client)

    outcome = loop.extract_structured(MISSING_ROWS, _schema(), max_attempts=0)

    assert outcome.ok is False
    assert client.calls == []
    assert outcome.error is not None
    assert outcome.error.type == "validation_error"


def test_missing_rows_twice_uses_exactly_two_repairs() -> None:
    client = FakeRepairClient([MISSING_ROWS, MISSING_ROWS, json.dumps(VALID_PAYLOAD)])
    loop = SchemaRepairLoop(request_repair=client)

    outcome = loop.extract_structured(MISSING_ROWS, _schema(), max_attempts=2)

    assert len(client.calls) == 2
    assert outcome.ok is False
    assert outcome.repair_attempts_used == 2
    assert outcome.error is not None
    assert outcome.error.type == "validation_error"
    assert outcome.validation_errors


def test_repair_succeeds_on_second_round() -> None:
    client = FakeRepairClient(["still not json", json.dumps(VALID_PAYLOAD)])
    responses: list[tuple[int, str]] = []
    loop = SchemaRepairLoop(
        request_repair=client,
        repair_prompt="Fix it.",
        on_response=lambda attempt, text: responses.append((attempt, text)),
    )

    outcome = loop.extract_structured("{'rows': [", _schema(), max_attempts=3)

    assert outcome.ok is True
    assert outcome.repair_attempts_used == 2
    assert [attempt for attempt, _ in responses] == [1, 2]
    assert client.calls[0][0] == {"role": "system", "content": "Fix it."}
    assert "invalid JSON" in client.calls[0][1]["content"]
    assert "still not json" in client.calls[1][1]["content"]


def test_unparseable_final_response_is_a_parse_error() -> None:
    client = FakeRepairClient(["nope"])
    loop = SchemaRepairLoop(request_repair=client)

    outcome = loop.extract_structured("not json", _schema(), max_attempts=1)

    assert outcome.ok is False
    assert outcome.error is not None
    assert outcome.error.type == "parse_error"


def test_transport_failure_during_repair_is_classified() -> None:
    def failing(messages: list[ChatMessage]) -> CompletionResult:
        raise ConnectionRefusedError("connection refused")

    loop = SchemaRepairLoop(request_repair=failing)

    outcome = loop.extract_structured(MISSING_ROWS, _schema(), max_attempts=2)

    assert outcome.ok is False
    assert outcome.repair_attempts_used == 1
    assert outcome.error is not None
    assert outcome.error.type == "network_error"


def test_clamp_repair_attempts() -> None:
    assert clamp_repair_attempts(-1) == 0
    assert clamp_repair_attempts(2) == 2
    assert clamp_repair_attempts(9) == 3
    assert clamp_repair_attempts("x") == 0
