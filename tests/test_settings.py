from __future__ import annotations

from pathlib import Path

from batchllm.config.settings import Settings
from batchllm.llm_client.providers import ProviderRegistry


def test_settings_reads_env_override(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.setenv("BATCHLLM_OUTPUT_DIR", str(tmp_path / "out"))
    monkeypatch.setenv("BATCHLLM_MAX_CONCURRENT_REQUESTS", "7")
    monkeypatch.setenv("BATCHLLM_CLIENT_BACKEND", "http")

    settings = Settings(_env_file=None)

    assert settings.output_dir == tmp_path / "out"
    assert settings.resolved_output_dir == (tmp_path / "out").resolve()
    assert settings.max_concurrent_requests == 7
    assert settings.client_backend == "http"


def test_samples_per_input_depends_on_multiple_requests(monkeypatch) -> None:
    monkeypatch.setenv("BATCHLLM_REQUEST_COUNT", "5")

    assert Settings(_env_file=None).samples_per_input == 1

    monkeypatch.setenv("BATCHLLM_ENABLE_MULTIPLE_REQUESTS", "true")

    assert Settings(_env_file=None).samples_per_input == 5


def test_log_file_accepts_unprefixed_alias(monkeypatch, tmp_path: Path) -> None:
    monkeypatch.delenv("BATCHLLM_LOG_FILE", raising=False)
    monkeypatch.setenv("LOG_FILE", str(tmp_path / "run.log"))

    settings = Settings(_env_file=None)

    assert settings.log_file == tmp_path / "run.log"


def test_relative_paths_resolve_against_project_root() -> None:
    settings = Settings(_env_file=None)

    assert settings.resolved_prompts_root == settings.project_root / "batchllm" / "prompts"
    assert settings.resolved_format_rules_path.exists()


def test_settings_loads_provider_config() -> None:
    settings = Settings(_env_file=None)

    registry = ProviderRegistry.from_config(settings.providers_config)

    assert registry.names() == ["openai", "local"]
    assert registry.get("openai").resolve_model(None) == "gpt-4.1-mini"
