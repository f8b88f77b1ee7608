from __future__ import annotations

import csv
import io
import re
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import BaseModel, ConfigDict, Field, model_validator

from batchllm.pipeline.tabular import ANSWER_FIELD, TABLE_HEADERS, split_csv_line

Severity = Literal["critical", "high", "medium", "low"]

DEFAULT_FORMAT_RULES_PATH = Path(__file__).resolve().parents[1] / "config" / "format_rules.yaml"

MANUAL_ONLY = "manual_only"
FIELD_COUNT_CHECK = "field_count"

_REGEX_FLAGS = {
    "i": re.IGNORECASE,
    "m": re.MULTILINE,
    "s": re.DOTALL,
    "x": re.VERBOSE,
}


class PatternRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    name: str
    severity: Severity = "low"
    description: str = ""
    pattern: str | None = None
    flags: str = ""
    check: Literal["field_count"] | None = None
    fix_strategy: str = MANUAL_ONLY

    @model_validator(mode="after")
    def _pattern_or_check(self) -> PatternRule:
        if (self.pattern is None) == (self.check is None):
            raise ValueError(f"pattern rule {self.id} needs exactly one of pattern/check")
        if self.pattern is not None:
            compile_rule_pattern(self.pattern, self.flags)
        return self


class FixRule(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    name: str
    priority: int = 0
    pattern: str | None = None
    replacement: str | None = None
    flags: str = ""
    check: Literal["field_count"] | None = None
    expected_fields: int = Field(default=len(TABLE_HEADERS), ge=1)

    @model_validator(mode="after")
    def _replacement_or_check(self) -> FixRule:
        if self.check is None:
            if self.pattern is None or self.replacement is None:
                raise ValueError(f"fix rule {self.id} needs pattern and replacement")
            compile_rule_pattern(self.pattern, self.flags)
        return self


class ContentRules(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    required_fields: list[str] = Field(default_factory=lambda: ["identifier", "answer"])
    max_lengths: dict[str, int] = Field(default_factory=dict)
    prohibited_patterns: dict[str, list[str]] = Field(default_factory=dict)


class FormatRules(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    expected_headers: list[str] = Field(default_factory=lambda: list(TABLE_HEADERS))
    pattern_rules: list[PatternRule] = Field(default_factory=list)
    fix_rules: list[FixRule] = Field(default_factory=list)
    content_rules: ContentRules = Field(default_factory=ContentRules)


@dataclass(frozen=True, slots=True)
class FormatValidatorConfig:
    rules: FormatRules = field(default_factory=lambda: bundled_format_rules())
    answer_field: str = ANSWER_FIELD
    auto_fix: bool = True
    parse_failure_penalty: float = 0.4
    severity_penalties: dict[str, float] = field(
        default_factory=lambda: {
            "critical": 0.15,
            "high": 0.10,
            "medium": 0.03,
            "low": 0.01,
        }
    )
    auto_fix_bonus: float = 0.2
    short_answer_penalty: float = 0.1
    min_answer_length: int = 10
    validity_threshold: float = 0.4


@dataclass(frozen=True, slots=True)
class FormatIssue:
    type: str
    severity: Severity
    message: str
    can_auto_fix: bool
    fix_strategy: str | None = None
    matches: int = 0
    row: int | None = None
    column: str | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.type,
            "severity": self.severity,
            "message": self.message,
            "can_auto_fix": self.can_auto_fix,
        }
        if self.fix_strategy is not None:
            payload["fix_strategy"] = self.fix_strategy
        if self.matches:
            payload["matches"] = self.matches
        if self.row is not None:
            payload["row"] = self.row
        if self.column is not None:
            payload["field"] = self.column
        return payload


@dataclass(frozen=True, slots=True)
class FormatValidationResult:
    is_valid: bool
    confidence: float
    issues: list[FormatIssue]
    auto_fixed: list[FormatIssue]
    fixed_text: str
    rows: list[dict[str, str]]
    parse_ok: bool
    parse_errors: list[str]

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "issues": [issue.to_dict() for issue in self.issues],
            "auto_fixed": [issue.to_dict() for issue in self.auto_fixed],
            "row_count": len(self.rows),
            "parse_ok": self.parse_ok,
            "parse_errors": list(self.parse_errors),
        }


@lru_cache(maxsize=1)
def bundled_format_rules() -> FormatRules:
    return load_format_rules(DEFAULT_FORMAT_RULES_PATH)


def load_format_rules(path: Path | str | None = None) -> FormatRules:
    rules_path = Path(path) if path is not None else DEFAULT_FORMAT_RULES_PATH
    if not rules_path.exists():
        raise FileNotFoundError(f"Format rules file not found: {rules_path}")

    with rules_path.open("r", encoding="utf-8") as file:
        data = yaml.safe_load(file) or {}

    if not isinstance(data, dict):
        raise ValueError(f"YAML config must contain object root: {rules_path}")

    return FormatRules.model_validate(data)


def compile_rule_pattern(pattern: str, flags: str = "") -> re.Pattern[str]:
    compiled_flags = 0
    for flag in flags:
        if flag not in _REGEX_FLAGS:
            raise ValueError(f"Unsupported regex flag: {flag}")
        compiled_flags |= _REGEX_FLAGS[flag]
    return re.compile(pattern, compiled_flags)


class FormatValidator:
    def __init__(self, config: FormatValidatorConfig | None = None) -> None:
        self._config = config or FormatValidatorConfig()
        self._expected_fields = len(self._config.rules.expected_headers)

    @property
    def config(self) -> FormatValidatorConfig:
        return self._config

    def validate(self, text: str) -> FormatValidationResult:
        issues = self.pre_check(text)
        auto_fixed: list[FormatIssue] = []
        fixed_text = text

        if self._config.auto_fix and issues:
            fixed_text = self.apply_auto_fixes(text, issues)
            auto_fixed = [issue for issue in issues if issue.can_auto_fix]

        rows, parse_errors = self.parse_table(fixed_text)
        parse_ok = not parse_errors
        if parse_ok:
            issues = issues + self.validate_content(rows)

        confidence = self._confidence(
            parse_ok=parse_ok,
            issues=issues,
            auto_fixed=auto_fixed,
            rows=rows,
        )
        is_valid = bool(rows) and (
            confidence > self._config.validity_threshold or bool(auto_fixed)
        )

        return FormatValidationResult(
            is_valid=is_valid,
            confidence=confidence,
            issues=issues,
            auto_fixed=auto_fixed,
            fixed_text=fixed_text,
            rows=rows,
            parse_ok=parse_ok,
            parse_errors=parse_errors,
        )

    def pre_check(self, text: str) -> list[FormatIssue]:
        issues: list[FormatIssue] = []
        for rule in self._config.rules.pattern_rules:
            if rule.check == FIELD_COUNT_CHECK:
                matches = self._count_field_count_mismatches(text)
            else:
                regex = compile_rule_pattern(rule.pattern or "", rule.flags)
                matches = sum(1 for _ in regex.finditer(text))

            if matches <= 0:
                continue

            issues.append(
                FormatIssue(
                    type=rule.id,
                    severity=rule.severity,
                    message=rule.description or rule.name,
                    can_auto_fix=rule.fix_strategy != MANUAL_ONLY,
                    fix_strategy=rule.fix_strategy,
                    matches=matches,
                )
            )
        return issues

    def apply_auto_fixes(self, text: str, issues: list[FormatIssue]) -> str:
        wanted = {issue.type for issue in issues}
        wanted.update(issue.fix_strategy for issue in issues if issue.fix_strategy)

        ordered_rules = sorted(
            self._config.rules.fix_rules,
            key=lambda rule: rule.priority,
            reverse=True,
        )

        fixed = text
        for rule in ordered_rules:
            if rule.id not in wanted:
                continue
            if rule.check == FIELD_COUNT_CHECK:
                fixed = fix_field_count(
                    fixed,
                    expected_fields=rule.expected_fields,
                    answer_index=self._answer_index(),
                )
            else:
                regex = compile_rule_pattern(rule.pattern or "", rule.flags)
                fixed = regex.sub(rule.replacement or "", fixed)
        return fixed

    def parse_table(self, text: str) -> tuple[list[dict[str, str]], list[str]]:
        headers = self._config.rules.expected_headers
        reader = csv.reader(io.StringIO(text), strict=True)
        try:
            records = [
                record for record in reader if any(cell.strip() for cell in record)
            ]
        except csv.Error as error:
            return [], [f"csv parse error: {error}"]

        if not records:
            return [], ["table is empty"]

        actual_headers = [cell.strip() for cell in records[0]]
        if actual_headers != list(headers):
            return [], [
                "header mismatch: expected "
                f"[{', '.join(headers)}], got [{', '.join(actual_headers)}]"
            ]

        errors: list[str] = []
        rows: list[dict[str, str]] = []
        for line_number, record in enumerate(records[1:], start=2):
            if len(record) != len(headers):
                errors.append(
                    f"row {line_number}: expected {len(headers)} fields, got {len(record)}"
                )
                continue
            rows.append(
                {header: record[index].strip() for index, header in enumerate(headers)}
            )

        if errors:
            return [], errors
        return rows, []

    def validate_content(self, rows: list[dict[str, str]]) -> list[FormatIssue]:
        content_rules = self._config.rules.content_rules
        issues: list[FormatIssue] = []

        for index, row in enumerate(rows):
            line_number = index + 2
            for field_name in content_rules.required_fields:
                if not (row.get(field_name) or "").strip():
                    issues.append(
                        FormatIssue(
                            type="missing_required_field",
                            severity="high",
                            message=f"row {line_number}: missing required field {field_name}",
                            can_auto_fix=False,
                            row=line_number,
                            column=field_name,
                        )
                    )

            for field_name, max_length in content_rules.max_lengths.items():
                value = row.get(field_name) or ""
                if len(value) > max_length:
                    issues.append(
                        FormatIssue(
                            type="field_too_long",
                            severity="medium",
                            message=(
                                f"row {line_number}: field {field_name} exceeds "
                                f"{max_length} characters"
                            ),
                            can_auto_fix=False,
                            row=line_number,
                            column=field_name,
                        )
                    )

            for field_name, patterns in content_rules.prohibited_patterns.items():
                value = row.get(field_name) or ""
                for pattern in patterns:
                    if pattern and pattern in value:
                        issues.append(
                            FormatIssue(
                                type="prohibited_content",
                                severity="high",
                                message=(
                                    f"row {line_number}: field {field_name} "
                                    f"contains {pattern!r}"
                                ),
                                can_auto_fix=True,
                                row=line_number,
                                column=field_name,
                            )
                        )
        return issues

    def _confidence(
        self,
        *,
        parse_ok: bool,
        issues: list[FormatIssue],
        auto_fixed: list[FormatIssue],
        rows: list[dict[str, str]],
    ) -> float:
        config = self._config
        score = 1.0
        if not parse_ok:
            score -= config.parse_failure_penalty

        default_penalty = config.severity_penalties.get("low", 0.01)
        for issue in issues:
            score -= config.severity_penalties.get(issue.severity, default_penalty)

        if issues:
            score += (len(auto_fixed) / len(issues)) * config.auto_fix_bonus

        if rows and not any(
            len((row.get(config.answer_field) or "").strip()) > config.min_answer_length
            for row in rows
        ):
            score -= config.short_answer_penalty

        return max(0.0, min(1.0, score))

    def _count_field_count_mismatches(self, text: str) -> int:
        return sum(
            1
            for raw, fields in split_csv_records(text)
            if raw.strip() and len(fields) != self._expected_fields
        )

    def _answer_index(self) -> int:
        headers = self._config.rules.expected_headers
        if self._config.answer_field in headers:
            return headers.index(self._config.answer_field)
        return min(2, len(headers) - 1)


def fix_field_count(
    text: str,
    expected_fields: int = len(TABLE_HEADERS),
    *,
    answer_index: int = 2,
) -> str:
    """Pad short lines and fold overflow into the answer field.

    Lines that already have ``expected_fields`` fields, and blank lines, are
    returned unchanged, so applying this twice gives the same text. The first
    non-blank line is treated as the header and is never truncated.
    """

    output: list[str] = []
    header_seen = False
    for raw, fields in split_csv_records(text):
        if not raw.strip():
            output.append(raw)
            continue

        is_header = not header_seen
        header_seen = True

        if len(fields) == expected_fields:
            output.append(raw)
            continue

        if len(fields) < expected_fields:
            fields = fields + [""] * (expected_fields - len(fields))
        elif is_header:
            output.append(raw)
            continue
        else:
            extra = " ".join(fields[expected_fields:])
            if extra.strip():
                fields[answer_index] = f"{fields[answer_index]} {extra}".strip()
            fields = fields[:expected_fields]

        output.append(",".join(_quote_raw(value) for value in fields))
    return "\n".join(output)


def split_csv_records(text: str) -> list[tuple[str, list[str]]]:
    """Split ``text`` into CSV records paired with their source text.

    A quoted cell may hold newlines, so one record can span several physical
    lines. A trailing newline yields a final empty record.
    """

    physical = io.StringIO(text, newline="").readlines()
    reader = csv.reader(physical, skipinitialspace=True)
    records: list[tuple[str, list[str]]] = []
    consumed = 0
    try:
        for fields in reader:
            raw = "".join(physical[consumed : reader.line_num])
            consumed = reader.line_num
            records.append((_strip_line_end(raw), fields))
    except csv.Error:
        return [(line, split_csv_line(line.strip())) for line in text.split("\n")]

    if text.endswith(("\n", "\r")):
        records.append(("", []))
    return records


def _strip_line_end(raw: str) -> str:
    if raw.endswith("\r\n"):
        return raw[:-2]
    if raw.endswith(("\n", "\r")):
        return raw[:-1]
    return raw


def _quote_raw(value: str) -> str:
    return '"' + value.replace('"', '""') + '"'
