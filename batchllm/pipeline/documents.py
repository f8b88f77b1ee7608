from __future__ import annotations

import logging
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Protocol

logger = logging.getLogger(__name__)

TEXT_EXTENSIONS: tuple[str, ...] = (".txt", ".md")
DOCX_EXTENSION = ".docx"


class DocumentConverter(Protocol):
    def to_markdown(self, path: Path) -> str: ...


class PandocConverter:
    """Convert word-processor documents to markdown with the ``pandoc`` binary."""

    def __init__(self, *, binary: str = "pandoc", timeout_seconds: float = 60.0) -> None:
        self._binary = binary
        self._timeout_seconds = timeout_seconds

    def to_markdown(self, path: Path) -> str:
        executable = shutil.which(self._binary)
        if executable is None:
            raise RuntimeError(f"{self._binary} is not installed")

        completed = subprocess.run(
            [executable, str(path), "-t", "gfm", "--wrap=none"],
            capture_output=True,
            check=False,
            text=True,
            timeout=self._timeout_seconds,
        )
        if completed.returncode != 0:
            raise RuntimeError(
                f"{self._binary} failed for {path}: {completed.stderr.strip()}"
            )
        return completed.stdout


@dataclass(frozen=True, slots=True)
class InputDocument:
    input_id: str
    source_path: Path


def supported_extensions(converter: DocumentConverter | None = None) -> tuple[str, ...]:
    if converter is None:
        return TEXT_EXTENSIONS
    return TEXT_EXTENSIONS + (DOCX_EXTENSION,)


def discover_inputs(
    paths: Iterable[Path | str],
    *,
    converter: DocumentConverter | None = None,
) -> list[InputDocument]:
    """Expand files and directories into inputs keyed by their relative path."""

    extensions = supported_extensions(converter)
    documents: list[InputDocument] = []
    seen: set[str] = set()

    for raw_path in paths:
        target = Path(raw_path)
        if target.is_dir():
            candidates = [
                (candidate, candidate.relative_to(target).as_posix())
                for candidate in sorted(target.rglob("*"))
                if candidate.is_file()
            ]
        elif target.is_file():
            candidates = [(target, target.name)]
        else:
            logger.warning("Input path does not exist", extra={"metrics": {"path": str(target)}})
            continue

        for candidate, input_id in candidates:
            if candidate.suffix.lower() not in extensions:
                continue
            if input_id in seen:
                logger.warning(
                    "Duplicate input id skipped",
                    extra={"metrics": {"input_id": input_id, "path": str(candidate)}},
                )
                continue
            seen.add(input_id)
            documents.append(InputDocument(input_id=input_id, source_path=candidate))

    return documents


def read_input(
    document: InputDocument,
    *,
    converter: DocumentConverter | None = None,
) -> str:
    if document.source_path.suffix.lower() == DOCX_EXTENSION:
        if converter is None:
            raise ValueError(f"No document converter configured for {document.input_id}")
        return converter.to_markdown(document.source_path)
    return document.source_path.read_text(encoding="utf-8-sig")
