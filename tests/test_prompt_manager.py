from __future__ import annotations

import json
from pathlib import Path

import pytest
import yaml

from batchllm.prompts.manager import DEFAULT_REPAIR_PROMPT, PromptManager


def _create_prompt_version(
    *,
    root: Path,
    prompt_name: str,
    version: str,
    prompt_text: str,
    schema_payload: dict[str, object] | None = None,
) -> None:
    target = root / prompt_name / version
    target.mkdir(parents=True, exist_ok=True)
    (target / "system_prompt.txt").write_text(prompt_text, encoding="utf-8")
    if schema_payload is not None:
        (target / "schema.json").write_text(json.dumps(schema_payload), encoding="utf-8")
    (target / "meta.yaml").write_text(
        yaml.safe_dump({"created_at": "2026-01-01T00:00:00+00:00"}),
        encoding="utf-8",
    )


def test_prompt_manager_discovery_and_latest_version(tmp_path: Path) -> None:
    prompts_root = tmp_path / "prompts"
    for version in ("v001", "v010", "v002"):
        _create_prompt_version(
            root=prompts_root,
            prompt_name="rows_csv",
            version=version,
            prompt_text=f"prompt {version}",
        )
    (prompts_root / "rows_csv" / "draft").mkdir()
    (prompts_root / "empty").mkdir()

    manager = PromptManager(prompts_root)

    assert manager.list_prompt_names() == ["rows_csv"]
    assert manager.list_versions("rows_csv") == ["v001", "v002", "v010"]
    assert manager.latest_version("rows_csv") == "v010"


def test_classic_prompt_set_has_default_repair_prompt(tmp_path: Path) -> None:
    _create_prompt_version(
        root=tmp_path, prompt_name="rows_csv", version="v001", prompt_text="extract rows"
    )

    prompt_set = PromptManager(tmp_path).load_prompt_set(prompt_name="rows_csv", version="v001")

    assert prompt_set.system_prompt_text == "extract rows"
    assert prompt_set.schema is None
    assert prompt_set.repair_prompt_text == DEFAULT_REPAIR_PROMPT
    assert prompt_set.meta == {"created_at": "2026-01-01T00:00:00+00:00"}


def test_require_schema_fails_without_schema(tmp_path: Path) -> None:
    _create_prompt_version(
        root=tmp_path, prompt_name="rows_json", version="v001", prompt_text="json please"
    )

    with pytest.raises(FileNotFoundError, match="schema not found"):
        PromptManager(tmp_path).load_prompt_set(
            prompt_name="rows_json", version="v001", require_schema=True
        )


def test_invalid_schema_is_rejected(tmp_path: Path) -> None:
    _create_prompt_version(
        root=tmp_path,
        prompt_name="rows_json",
        version="v001",
        prompt_text="json please",
        schema_payload={"type": 12},
    )

    with pytest.raises(ValueError):
        PromptManager(tmp_path).load_prompt_set(prompt_name="rows_json", version="v001")


def test_invalid_version_format_is_rejected(tmp_path: Path) -> None:
    with pytest.raises(ValueError, match="Invalid prompt version format"):
        PromptManager(tmp_path).load_prompt_set(prompt_name="rows_csv", version="1")


def test_bundled_prompts_load() -> None:
    manager = PromptManager()

    classic = manager.load_prompt_set(prompt_name="rows_csv", version="v001")
    structured = manager.load_prompt_set(
        prompt_name="rows_json", version="v001", require_schema=True
    )

    assert manager.list_prompt_names() == ["rows_csv", "rows_json"]
    assert "identifier" in classic.system_prompt_text
    assert structured.schema is not None
    assert structured.schema["required"] == ["rows"]
    assert structured.repair_prompt_text != DEFAULT_REPAIR_PROMPT
