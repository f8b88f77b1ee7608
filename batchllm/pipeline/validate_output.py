from __future__ import annotations

from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import SchemaError


@dataclass(frozen=True, slots=True)
class SchemaValidationResult:
    valid: bool
    errors: list[str]


def validate_output(
    *,
    parsed_json: Any,
    schema: dict[str, Any],
) -> SchemaValidationResult:
    """Validate against ``schema`` and report every violation, not just the first."""

    validator = Draft202012Validator(schema)
    errors = sorted(
        validator.iter_errors(parsed_json),
        key=lambda item: [str(part) for part in item.absolute_path],
    )

    messages: list[str] = []
    for error in errors:
        path = "/".join(str(item) for item in error.absolute_path)
        if path:
            messages.append(f"{path}: {error.message}")
        else:
            messages.append(error.message)

    return SchemaValidationResult(valid=not messages, errors=messages)


def check_schema(schema: dict[str, Any]) -> None:
    try:
        Draft202012Validator.check_schema(schema)
    except SchemaError as error:
        raise ValueError(f"Invalid JSON schema: {error.message}") from error
