from __future__ import annotations

import csv
import io
import re
from typing import Any, Iterable, Mapping, Sequence

TABLE_HEADERS: tuple[str, ...] = (
    "identifier",
    "question",
    "answer",
    "respondent",
    "field",
)
ANSWER_FIELD = "answer"
ANSWER_INDEX = TABLE_HEADERS.index(ANSWER_FIELD)

_NEWLINES = re.compile(r"\r\n|\r|\n")
_WHITESPACE = re.compile(r"\s+")


def normalize_cell(value: Any) -> str:
    text = "" if value is None else str(value)
    text = _NEWLINES.sub(" ", text)
    return _WHITESPACE.sub(" ", text).strip()


def quote_cell(value: Any) -> str:
    text = normalize_cell(value)
    return '"' + text.replace('"', '""') + '"'


def encode_row(values: Sequence[Any]) -> str:
    return ",".join(quote_cell(value) for value in values)


def rows_to_csv(
    rows: Iterable[Mapping[str, Any]],
    headers: Sequence[str] = TABLE_HEADERS,
) -> str:
    lines = [",".join(headers)]
    for row in rows:
        lines.append(encode_row([row.get(header) for header in headers]))
    return "\n".join(lines)


def parse_csv_rows(
    text: str,
    headers: Sequence[str] = TABLE_HEADERS,
) -> list[dict[str, str]]:
    """Parse a CSV body whose first record is the header row."""

    reader = csv.reader(io.StringIO(text), strict=True)
    records = [record for record in reader if any(cell.strip() for cell in record)]
    if not records:
        return []

    rows: list[dict[str, str]] = []
    for record in records[1:]:
        padded = list(record) + [""] * (len(headers) - len(record))
        rows.append(
            {header: padded[index].strip() for index, header in enumerate(headers)}
        )
    return rows


def split_csv_line(line: str) -> list[str]:
    records = list(csv.reader([line]))
    if not records:
        return []
    return records[0]
