from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Sequence

from batchllm.llm_client.base import ChatMessage, CompletionResult
from batchllm.pipeline.tabular import TABLE_HEADERS, normalize_cell, rows_to_csv
from batchllm.pipeline.validate_output import validate_output
from batchllm.prompts.manager import DEFAULT_REPAIR_PROMPT
from batchllm.utils.error_taxonomy import ClassifiedError, classify_error
from batchllm.utils.json_utils import JsonParseResult, safe_parse_json

logger = logging.getLogger(__name__)

MAX_REPAIR_ATTEMPTS = 3
ROWS_KEY = "rows"

RepairRequester = Callable[[list[ChatMessage]], CompletionResult]
ResponseHook = Callable[[int, str], None]


@dataclass(frozen=True, slots=True)
class StructuredOutcome:
    ok: bool
    rows: list[dict[str, str]]
    csv_text: str | None
    error: ClassifiedError | None
    repair_attempts_used: int
    validation_errors: list[str]
    responses: list[CompletionResult] = field(default_factory=list)


def clamp_repair_attempts(value: Any) -> int:
    try:
        attempts = int(value)
    except (TypeError, ValueError):
        return 0
    return max(0, min(MAX_REPAIR_ATTEMPTS, attempts))


class SchemaRepairLoop:
    """Parse, validate and, within a fixed budget, ask the model to repair JSON output."""

    def __init__(
        self,
        *,
        request_repair: RepairRequester,
        repair_prompt: str = DEFAULT_REPAIR_PROMPT,
        headers: Sequence[str] = TABLE_HEADERS,
        on_response: ResponseHook | None = None,
    ) -> None:
        self._request_repair = request_repair
        self._repair_prompt = repair_prompt
        self._headers = tuple(headers)
        self._on_response = on_response

    def extract_structured(
        self,
        text: str,
        schema: dict[str, Any],
        max_attempts: int,
    ) -> StructuredOutcome:
        budget = clamp_repair_attempts(max_attempts)
        responses: list[CompletionResult] = []

        current_text = text
        parsed, errors = self._check(current_text, schema)
        attempts = 0
        while errors and attempts < budget:
            attempts += 1
            logger.info(
                "Requesting structured output repair",
                extra={"metrics": {"attempt": attempts, "budget": budget, "errors": len(errors)}},
            )
            try:
                response = self._request_repair(
                    self.build_repair_messages(current_text, errors)
                )
            except Exception as error:  # noqa: BLE001
                return StructuredOutcome(
                    ok=False,
                    rows=[],
                    csv_text=None,
                    error=classify_error(error, stage="request"),
                    repair_attempts_used=attempts,
                    validation_errors=errors,
                    responses=responses,
                )

            responses.append(response)
            current_text = response.text
            if self._on_response is not None:
                self._on_response(attempts, current_text)
            parsed, errors = self._check(current_text, schema)

        if errors:
            stage = "parse" if not parsed.ok else "validation"
            message = errors[0] if len(errors) == 1 else f"{errors[0]} (+{len(errors) - 1} more)"
            return StructuredOutcome(
                ok=False,
                rows=[],
                csv_text=None,
                error=classify_error(ValueError(message), stage=stage),
                repair_attempts_used=attempts,
                validation_errors=errors,
                responses=responses,
            )

        rows = self.project_rows(parsed.data)
        return StructuredOutcome(
            ok=True,
            rows=rows,
            csv_text=rows_to_csv(rows, self._headers),
            error=None,
            repair_attempts_used=attempts,
            validation_errors=[],
            responses=responses,
        )

    def build_repair_messages(self, text: str, errors: list[str]) -> list[ChatMessage]:
        error_lines = "\n".join(f"- {error}" for error in errors)
        return [
            {"role": "system", "content": self._repair_prompt},
            {
                "role": "user",
                "content": f"Previous response:\n{text}\n\nValidation errors:\n{error_lines}",
            },
        ]

    def project_rows(self, data: Any) -> list[dict[str, str]]:
        raw_rows = data.get(ROWS_KEY) if isinstance(data, dict) else None
        if not isinstance(raw_rows, list):
            return []

        rows: list[dict[str, str]] = []
        for raw_row in raw_rows:
            if not isinstance(raw_row, dict):
                continue
            rows.append({header: normalize_cell(raw_row.get(header)) for header in self._headers})
        return rows

    def _check(
        self, text: str, schema: dict[str, Any]
    ) -> tuple[JsonParseResult, list[str]]:
        parsed = safe_parse_json(text)
        if not parsed.ok:
            return parsed, [f"invalid JSON: {parsed.error}"]

        result = validate_output(parsed_json=parsed.data, schema=schema)
        return parsed, result.errors
