from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path, PurePosixPath
from typing import Any

from batchllm.utils.error_taxonomy import OutputWriteError


@dataclass(frozen=True, slots=True)
class RunArtifacts:
    run_id: str
    run_output_dir: Path
    run_temp_dir: Path


class ArtifactsManager:
    """Path layout for one run: ``output/<run_id>/`` and ``temp/<run_id>/``."""

    def __init__(self, output_dir: Path | str, temp_dir: Path | str) -> None:
        self.output_dir = Path(output_dir)
        self.temp_dir = Path(temp_dir)
        self._jsonl_lock = threading.Lock()

    def create_run_artifacts(self, run_id: str | None = None) -> RunArtifacts:
        effective_run_id = run_id or new_run_id()
        return self.ensure_run_structure(
            run_id=effective_run_id,
            run_output_dir=self.output_dir / effective_run_id,
        )

    def ensure_run_structure(self, *, run_id: str, run_output_dir: Path | str) -> RunArtifacts:
        output_root = Path(run_output_dir)
        temp_root = self.temp_dir / run_id
        output_root.mkdir(parents=True, exist_ok=True)
        temp_root.mkdir(parents=True, exist_ok=True)
        return RunArtifacts(
            run_id=run_id,
            run_output_dir=output_root,
            run_temp_dir=temp_root,
        )

    @staticmethod
    def output_csv_path(artifacts: RunArtifacts, input_id: str) -> Path:
        return artifacts.run_output_dir / _with_suffix(input_id, ".csv")

    @staticmethod
    def samples_jsonl_path(artifacts: RunArtifacts, input_id: str) -> Path:
        return artifacts.run_temp_dir / _with_suffix(input_id, ".jsonl")

    @staticmethod
    def consensus_report_path(artifacts: RunArtifacts, input_id: str) -> Path:
        return artifacts.run_temp_dir / _with_suffix(input_id, ".consensus.json")

    @staticmethod
    def structured_response_path(artifacts: RunArtifacts, input_id: str, attempt: int) -> Path:
        suffix = ".response.json" if attempt == 0 else f".repair_{attempt}.json"
        return artifacts.run_temp_dir / _with_suffix(input_id, suffix)

    def append_sample(self, path: Path, payload: dict[str, Any]) -> None:
        line = json.dumps(payload, ensure_ascii=False)
        with self._jsonl_lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            with path.open("a", encoding="utf-8") as file:
                file.write(line + "\n")


def write_text_output(path: Path, text: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text if text.endswith("\n") else text + "\n", encoding="utf-8")
    except OSError as error:
        raise OutputWriteError(f"Failed to write {path}: {error}") from error


def write_json_file(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def new_run_id(now: datetime | None = None) -> str:
    moment = now or datetime.now().astimezone()
    return moment.strftime("%Y-%m-%dT%H-%M-%S")


def _with_suffix(input_id: str, suffix: str) -> Path:
    relative = PurePosixPath(input_id.replace("\\", "/"))
    return Path(*relative.with_suffix(suffix).parts)
