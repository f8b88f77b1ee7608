from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

SUMMARY_JSON_NAME = "run_summary.json"
SUMMARY_MD_NAME = "run_summary.md"


def build_run_summary(
    *,
    run_id: str,
    mode: str,
    run_output_dir: Path | str,
    totals: dict[str, int],
    files: list[dict[str, Any]],
    token_stats: dict[str, int] | None,
    error_stats: dict[str, int],
    stop: dict[str, Any] | None = None,
) -> dict[str, Any]:
    return {
        "run_id": run_id,
        "mode": mode,
        "output_dir": str(run_output_dir),
        "totals": {
            "total": int(totals.get("total", 0)),
            "succeeded": int(totals.get("succeeded", 0)),
            "failed": int(totals.get("failed", 0)),
            "fallback": int(totals.get("fallback", 0)),
            "cancelled_samples": int(totals.get("cancelled_samples", 0)),
        },
        "files": files,
        "token": token_stats,
        "errors_by_type": dict(sorted(error_stats.items())),
        "stop": stop,
        "generated_at": _utc_now(),
    }


def write_run_summary(summary: dict[str, Any], output_dir: Path | str) -> tuple[Path, Path]:
    root = Path(output_dir)
    root.mkdir(parents=True, exist_ok=True)

    json_path = root / SUMMARY_JSON_NAME
    json_path.write_text(
        f"{json.dumps(summary, ensure_ascii=False, indent=2)}\n", encoding="utf-8"
    )

    md_path = root / SUMMARY_MD_NAME
    md_path.write_text(render_markdown(summary), encoding="utf-8")
    return json_path, md_path


def render_markdown(summary: dict[str, Any]) -> str:
    totals = summary["totals"]
    lines = [
        f"# Run summary ({summary['run_id']})",
        "",
        "## Overview",
        (
            f"- Inputs: {totals['total']} total, {totals['succeeded']} succeeded, "
            f"{totals['failed']} failed, {totals['fallback']} via fallback"
        ),
        f"- Mode: {summary['mode']}",
        f"- Output directory: {summary['output_dir']}",
    ]

    if totals.get("cancelled_samples"):
        lines.append(f"- Cancelled samples: {totals['cancelled_samples']}")

    stop = summary.get("stop")
    if stop and stop.get("stop_level"):
        lines.append(f"- Stopped: level {stop['stop_level']} ({stop.get('reason') or '-'})")

    token = summary.get("token")
    if token:
        lines.extend(
            [
                "",
                "## Token usage",
                f"- Requests: {token.get('requests', 0)}",
                f"- Prompt tokens: {token.get('prompt_tokens', 0)}",
                f"- Completion tokens: {token.get('completion_tokens', 0)}",
                f"- Total tokens: {token.get('total_tokens', 0)}",
            ]
        )

    errors = summary.get("errors_by_type") or {}
    if errors:
        lines.extend(["", "## Errors by type", "| Type | Count |", "|---|---:|"])
        for error_type, count in errors.items():
            lines.append(f"| {error_type} | {count} |")

    files = summary.get("files") or []
    if files:
        lines.extend(
            [
                "",
                "## Files",
                "| File | Mode | Succeeded | Fallback | Repairs | Confidence | Error |",
                "|---|---|---|---|---:|---:|---|",
            ]
        )
        for record in files:
            confidence = record.get("confidence")
            lines.append(
                "| {filename} | {mode} | {ok} | {fallback} | {repairs} | {confidence} | {error} |".format(
                    filename=record.get("filename", "-"),
                    mode=record.get("mode") or "-",
                    ok="yes" if record.get("succeeded") else "no",
                    fallback="yes" if record.get("fallback") else "",
                    repairs=record.get("repair_attempts_used", "-"),
                    confidence="-" if confidence is None else f"{confidence:.2f}",
                    error=_escape_cell(record.get("error") or ""),
                )
            )

    return "\n".join(lines) + "\n"


def _escape_cell(value: str) -> str:
    return value.replace("|", "\\|").replace("\n", " ")


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
