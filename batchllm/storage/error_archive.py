from __future__ import annotations

import json
import logging
import shutil
import threading
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Iterable

from batchllm.utils.error_taxonomy import ClassifiedError, ErrorStage, ErrorType

logger = logging.getLogger(__name__)

ERROR_DIR_NAME = "error"
ERROR_FILE_NAME = "error.json"
MANIFEST_FILE_NAME = "error_manifest.json"


@dataclass(frozen=True, slots=True)
class ErrorRecord:
    filename: str
    input_path: str
    stage: ErrorStage
    type: ErrorType
    message: str
    status: int | None = None
    code: str | None = None
    attempts_used: int = 0
    mode: str | None = None
    provider: str | None = None
    model: str | None = None

    @classmethod
    def from_classified(
        cls,
        *,
        filename: str,
        input_path: Path | str,
        stage: ErrorStage,
        error: ClassifiedError,
        attempts_used: int = 0,
        mode: str | None = None,
        provider: str | None = None,
        model: str | None = None,
    ) -> ErrorRecord:
        return cls(
            filename=filename,
            input_path=str(input_path),
            stage=stage,
            type=error.type,
            message=error.message,
            status=error.status,
            code=error.code,
            attempts_used=attempts_used,
            mode=mode,
            provider=provider,
            model=model,
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


class ErrorArchive:
    """On-disk archive of failed inputs under ``<run_output_dir>/error``.

    Layout: ``error/<type>/<dirname(filename)>/`` holds the optional input
    copy and a list-valued ``error.json``; ``error/error_manifest.json`` is
    cumulative across runs that reuse the same output directory.
    """

    def __init__(
        self,
        run_output_dir: Path | str,
        *,
        copy_input: bool = True,
        now_fn: Callable[[], str] | None = None,
    ) -> None:
        self.run_output_dir = Path(run_output_dir)
        self.error_root = self.run_output_dir / ERROR_DIR_NAME
        self._copy_input = copy_input
        self._now = now_fn or _utc_now
        self._lock = threading.Lock()
        self._pending: list[dict[str, Any]] = []

    @property
    def manifest_path(self) -> Path:
        return self.error_root / MANIFEST_FILE_NAME

    @property
    def pending_count(self) -> int:
        with self._lock:
            return len(self._pending)

    def record(self, record: ErrorRecord) -> Path:
        entry_dir = self.entry_dir(record.type, record.filename)
        entry = record.to_dict()
        entry["timestamp"] = self._now()

        with self._lock:
            entry_dir.mkdir(parents=True, exist_ok=True)
            if self._copy_input:
                self._copy_source(record, entry_dir)

            error_file = entry_dir / ERROR_FILE_NAME
            entries = _read_list(error_file)
            entries.append(entry)
            _write_json(error_file, entries)
            self._pending.append(entry)

        logger.info(
            "Archived failed input",
            extra={"metrics": {"filename": record.filename, "type": record.type}},
        )
        return entry_dir

    def finalize(self) -> dict[str, Any]:
        with self._lock:
            manifest = self._read_manifest()
            items = list(manifest.get("items", [])) + self._pending
            self._pending = []
            manifest.update(
                {
                    "generated_at": self._now(),
                    "items": items,
                    "fixed_items": list(manifest.get("fixed_items", [])),
                }
            )
            manifest.update(_counts(items))
            _write_json(self.manifest_path, manifest)
        return manifest

    def unfixed_entries(self) -> list[dict[str, Any]]:
        manifest = self._read_manifest()
        items = manifest.get("items")
        if not isinstance(items, list):
            items = [entry for path in self._error_files() for entry in _read_list(path)]
        return [
            item for item in items if isinstance(item, dict) and not item.get("fixed")
        ]

    def mark_fixed(
        self,
        filenames: Iterable[str],
        *,
        prune: bool = False,
        remove_empty: bool = True,
    ) -> int:
        targets = set(filenames)
        if not targets or not self.error_root.exists():
            return 0

        fixed_at = self._now()
        marked = 0
        with self._lock:
            for error_file in self._error_files():
                entries = _read_list(error_file)
                kept: list[dict[str, Any]] = []
                for entry in entries:
                    if entry.get("filename") not in targets:
                        kept.append(entry)
                        continue
                    marked += 1
                    copy_path = error_file.parent / PurePosixPath(str(entry["filename"])).name
                    copy_path.unlink(missing_ok=True)
                    if not prune:
                        kept.append({**entry, "fixed": True, "fixed_at": fixed_at})
                if kept:
                    _write_json(error_file, kept)
                else:
                    error_file.unlink()

            manifest = self._read_manifest()
            if manifest:
                remaining: list[dict[str, Any]] = []
                fixed_items = list(manifest.get("fixed_items", []))
                for item in manifest.get("items", []):
                    if item.get("filename") not in targets:
                        remaining.append(item)
                    elif prune:
                        fixed_items.append({**item, "fixed": True, "fixed_at": fixed_at})
                    else:
                        remaining.append({**item, "fixed": True, "fixed_at": fixed_at})
                manifest.update(
                    {
                        "items": remaining,
                        "fixed_items": fixed_items,
                        "last_reprocess_at": fixed_at,
                    }
                )
                manifest.update(_counts(remaining))
                _write_json(self.manifest_path, manifest)

            if remove_empty and not self._has_archived_files():
                shutil.rmtree(self.error_root, ignore_errors=False)
                logger.info("Error archive is empty and was removed")

        return marked

    def entry_dir(self, error_type: str, filename: str) -> Path:
        parent = PurePosixPath(filename.replace("\\", "/")).parent
        return self.error_root / error_type / Path(*parent.parts)

    def _copy_source(self, record: ErrorRecord, entry_dir: Path) -> None:
        source = Path(record.input_path)
        if not source.is_file():
            return
        destination = entry_dir / PurePosixPath(record.filename.replace("\\", "/")).name
        try:
            shutil.copy2(source, destination)
        except OSError as error:
            logger.warning(
                "Could not copy failed input into archive",
                extra={"metrics": {"filename": record.filename, "error": str(error)}},
            )

    def _read_manifest(self) -> dict[str, Any]:
        if not self.manifest_path.exists():
            return {}
        parsed = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        if not isinstance(parsed, dict):
            raise ValueError(f"Manifest root must be an object: {self.manifest_path}")
        return parsed

    def _error_files(self) -> list[Path]:
        if not self.error_root.exists():
            return []
        return sorted(self.error_root.rglob(ERROR_FILE_NAME))

    def _has_archived_files(self) -> bool:
        for path in self.error_root.rglob("*"):
            if path.is_file() and path != self.manifest_path:
                return True
        return False


def _counts(items: list[dict[str, Any]]) -> dict[str, Any]:
    by_type: dict[str, int] = {}
    open_items = [item for item in items if not item.get("fixed")]
    for item in open_items:
        error_type = str(item.get("type") or "unknown_error")
        by_type[error_type] = by_type.get(error_type, 0) + 1
    return {"total": len(open_items), "by_type": by_type}


def _read_list(path: Path) -> list[dict[str, Any]]:
    if not path.exists():
        return []
    try:
        parsed = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError:
        logger.warning("Ignoring unreadable error file", extra={"metrics": {"path": str(path)}})
        return []
    if not isinstance(parsed, list):
        return []
    return [item for item in parsed if isinstance(item, dict)]


def _write_json(path: Path, payload: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
