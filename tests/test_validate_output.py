from __future__ import annotations

import pytest

from batchllm.pipeline.validate_output import check_schema, validate_output
from batchllm.prompts.manager import PromptManager


def _rows_schema() -> dict:
    prompt_set = PromptManager().load_prompt_set(
        prompt_name="rows_json", version="v001", require_schema=True
    )
    assert prompt_set.schema is not None
    return prompt_set.schema


def test_valid_rows_payload_passes() -> None:
    result = validate_output(
        parsed_json={
            "rows": [
                {"identifier": "1", "question": "Q?", "answer": "A", "respondent": "R"},
            ]
        },
        schema=_rows_schema(),
    )

    assert result.valid is True
    assert result.errors == []


def test_all_violations_are_collected_with_paths() -> None:
    result = validate_output(
        parsed_json={
            "rows": [
                {"identifier": "", "question": "Q?"},
                {"identifier": 5, "question": "Q?", "answer": "A"},
            ]
        },
        schema=_rows_schema(),
    )

    assert result.valid is False
    assert len(result.errors) == 3
    assert any(error.startswith("rows/0: 'answer' is a required property") for error in result.errors)
    assert any(error.startswith("rows/0/identifier:") for error in result.errors)
    assert any(error.startswith("rows/1/identifier:") for error in result.errors)


def test_root_errors_have_no_path_prefix() -> None:
    result = validate_output(parsed_json=[{"identifier": "1"}], schema=_rows_schema())

    assert result.valid is False
    assert result.errors == ["[{'identifier': '1'}] is not of type 'object'"]


def test_empty_rows_violate_min_items() -> None:
    result = validate_output(parsed_json={"rows": []}, schema=_rows_schema())

    assert result.valid is False
    assert result.errors[0].startswith("rows:")


def test_check_schema_rejects_invalid_schema() -> None:
    with pytest.raises(ValueError, match="Invalid JSON schema"):
        check_schema({"type": "not-a-type"})
