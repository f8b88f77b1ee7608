from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import pytest

import batchllm.ops.cli as cli_module
from batchllm.config.settings import Settings
from batchllm.llm_client.base import CompletionResult
from batchllm.llm_client.http_client import ProbeResult
from batchllm.llm_client.providers import ProviderRegistry
from batchllm.pipeline.scheduler import RunController, StopLevel

CLEAN_TABLE = (
    "identifier,question,answer,respondent,field\n"
    '"1","What is the capital of France?","Paris is the capital of France","Alice","Geography"'
)


class CannedClient:
    def __init__(self, text: str) -> None:
        self.text = text
        self.models: list[str] = []

    def complete(self, *, provider_name: str, model: str, **kwargs: Any) -> CompletionResult:
        self.models.append(model)
        return CompletionResult(
            text=self.text,
            raw={},
            usage={"prompt_tokens": 1, "completion_tokens": 1, "total_tokens": 2},
            provider=provider_name,
            model=model,
        )


@pytest.fixture
def settings(monkeypatch, tmp_path: Path) -> Settings:
    configured = Settings(
        _env_file=None,
        output_dir=tmp_path / "output",
        temp_dir=tmp_path / "temp",
        input_dir=tmp_path / "input",
        default_provider="local",
    )
    monkeypatch.setattr(cli_module, "get_settings", lambda: configured)
    return configured


def _use_client(monkeypatch, client: CannedClient) -> None:
    monkeypatch.setattr(cli_module, "build_request_client", lambda settings, providers: client)


def _write_input(root: Path, name: str = "a.txt") -> Path:
    root.mkdir(parents=True, exist_ok=True)
    path = root / name
    path.write_text("document text", encoding="utf-8")
    return path


def test_run_prints_report_and_succeeds(monkeypatch, capsys, settings: Settings, tmp_path: Path) -> None:
    client = CannedClient(CLEAN_TABLE)
    _use_client(monkeypatch, client)
    _write_input(tmp_path / "docs")

    exit_code = cli_module.main(["run", str(tmp_path / "docs"), "--model", "llama3.1:8b"])

    report = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert report["succeeded"] == 1
    assert report["token"]["total_tokens"] == 2
    assert client.models == ["llama3.1:8b"]
    assert (Path(report["run_output_dir"]) / "a.csv").exists()


def test_run_uses_configured_input_dir(monkeypatch, capsys, settings: Settings, tmp_path: Path) -> None:
    client = CannedClient(CLEAN_TABLE)
    _use_client(monkeypatch, client)
    _write_input(tmp_path / "input")

    exit_code = cli_module.main(["run"])

    assert exit_code == 0
    assert json.loads(capsys.readouterr().out)["total"] == 1
    assert client.models == ["qwen2.5:14b"]


def test_run_without_inputs_exits_with_usage_error(monkeypatch, settings: Settings, tmp_path: Path) -> None:
    _use_client(monkeypatch, CannedClient(CLEAN_TABLE))
    (tmp_path / "empty").mkdir()

    assert cli_module.main(["run", str(tmp_path / "empty")]) == 2


def test_failed_inputs_can_be_reprocessed(monkeypatch, capsys, settings: Settings, tmp_path: Path) -> None:
    _use_client(monkeypatch, CannedClient("no table here"))
    _write_input(tmp_path / "docs")

    assert cli_module.main(["run", str(tmp_path / "docs")]) == 1
    first = json.loads(capsys.readouterr().out)
    assert first["errors_by_type"] == {"validation_error": 1}

    _use_client(monkeypatch, CannedClient(CLEAN_TABLE))
    exit_code = cli_module.main(["reprocess", first["run_output_dir"]])

    second = json.loads(capsys.readouterr().out)
    assert exit_code == 0
    assert second["run_output_dir"] == first["run_output_dir"]
    assert second["succeeded"] == 1


def test_probe_reports_unreachable_provider(monkeypatch, capsys, settings: Settings) -> None:
    timeouts: list[float] = []

    def fake_probe(provider, *, timeout_seconds: float) -> ProbeResult:
        timeouts.append(timeout_seconds)
        return ProbeResult(
            provider=provider.name,
            reachable=provider.name != "local",
            status_code=None if provider.name == "local" else 200,
            latency_ms=1.0,
        )

    monkeypatch.setattr(cli_module, "probe_provider", fake_probe)

    exit_code = cli_module.main(["probe", "--timeout-seconds", "0.5"])

    results = json.loads(capsys.readouterr().out)
    assert exit_code == 1
    assert [item["provider"] for item in results] == ["openai", "local"]
    assert [item["reachable"] for item in results] == [True, False]
    assert timeouts == [0.5, 0.5]


def test_probe_single_provider_uses_connect_timeout(monkeypatch, capsys, settings: Settings) -> None:
    timeouts: list[float] = []

    def fake_probe(provider, *, timeout_seconds: float) -> ProbeResult:
        timeouts.append(timeout_seconds)
        return ProbeResult(provider=provider.name, reachable=True, status_code=404, latency_ms=1.0)

    monkeypatch.setattr(cli_module, "probe_provider", fake_probe)

    assert cli_module.main(["probe", "--provider", "openai"]) == 0
    assert timeouts == [3.0]
    capsys.readouterr()


def test_resolve_selection_prefers_arguments(settings: Settings) -> None:
    providers = ProviderRegistry.from_config(settings.providers_config)

    default = cli_module.resolve_selection(settings, providers)
    explicit = cli_module.resolve_selection(
        settings, providers, provider_name="openai", model="gpt-4.1"
    )

    assert (default.provider, default.model) == ("local", "qwen2.5:14b")
    assert (explicit.provider, explicit.model) == ("openai", "gpt-4.1")
    assert default.timeouts.response_seconds == 60.0


def test_stop_signal_handler_escalates() -> None:
    controller = RunController()
    handler = cli_module.StopSignalHandler(controller)

    handler.handle(2, None)
    assert controller.stop_level == StopLevel.SOFT_STOP

    handler.handle(2, None)
    assert controller.stop_level == StopLevel.HARD_STOP
