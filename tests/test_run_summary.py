from __future__ import annotations

import json
from pathlib import Path

from batchllm.storage.run_summary import build_run_summary, render_markdown, write_run_summary


def _summary(tmp_path: Path, **overrides: object) -> dict:
    values = {
        "run_id": "run-1",
        "mode": "classic",
        "run_output_dir": tmp_path,
        "totals": {"total": 2, "succeeded": 1, "failed": 1, "fallback": 0},
        "files": [
            {"filename": "a.txt", "mode": "classic", "succeeded": True, "confidence": 0.9},
            {
                "filename": "b.txt",
                "mode": "classic",
                "succeeded": False,
                "error": "bad | table",
            },
        ],
        "token_stats": {"requests": 3, "prompt_tokens": 30, "completion_tokens": 9, "total_tokens": 39},
        "error_stats": {"validation_error": 1},
    }
    values.update(overrides)
    return build_run_summary(**values)


def test_summary_files_are_written(tmp_path: Path) -> None:
    json_path, md_path = write_run_summary(_summary(tmp_path), tmp_path)

    payload = json.loads(json_path.read_text(encoding="utf-8"))
    assert payload["totals"] == {
        "total": 2,
        "succeeded": 1,
        "failed": 1,
        "fallback": 0,
        "cancelled_samples": 0,
    }
    assert payload["errors_by_type"] == {"validation_error": 1}
    assert payload["stop"] is None
    assert md_path.read_text(encoding="utf-8").startswith("# Run summary (run-1)")


def test_markdown_lists_tokens_errors_and_files(tmp_path: Path) -> None:
    text = render_markdown(_summary(tmp_path))

    assert "- Total tokens: 39" in text
    assert "| validation_error | 1 |" in text
    assert "| a.txt | classic | yes |  | - | 0.90 |  |" in text
    assert "bad \\| table" in text
    assert "Cancelled samples" not in text


def test_markdown_mentions_stop_and_skips_empty_sections(tmp_path: Path) -> None:
    text = render_markdown(
        _summary(
            tmp_path,
            files=[],
            token_stats=None,
            totals={"total": 1, "succeeded": 1, "failed": 0, "fallback": 1, "cancelled_samples": 2},
            error_stats={},
            stop={"stop_level": 1, "reason": "user pressed stop"},
        )
    )

    assert "- Stopped: level 1 (user pressed stop)" in text
    assert "- Cancelled samples: 2" in text
    assert "## Token usage" not in text
    assert "## Errors by type" not in text
    assert "## Files" not in text
