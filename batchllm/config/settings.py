from __future__ import annotations

from functools import lru_cache
from pathlib import Path
from typing import Any, Literal

import yaml
from pydantic import AliasChoices, Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from environment variables and .env."""

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="BATCHLLM_",
        extra="ignore",
    )

    environment: str = "local"
    input_dir: Path = Path("input")
    output_dir: Path = Path("output")
    temp_dir: Path = Path("temp")

    providers_config_path: Path = Path("batchllm/config/providers.yaml")
    format_rules_path: Path = Path("batchllm/config/format_rules.yaml")
    prompts_root: Path = Path("batchllm/prompts")

    default_provider: str = "openai"
    default_model: str | None = None
    client_backend: Literal["sdk", "http"] = "sdk"

    classic_prompt_name: str = "rows_csv"
    structured_prompt_name: str = "rows_json"
    prompt_version: str = "v001"

    max_concurrent_requests: int = Field(default=3, ge=1, le=64)
    enable_multiple_requests: bool = False
    request_count: int = Field(default=3, ge=1, le=10)
    min_samples: int = Field(default=3, ge=1, le=10)
    similarity_threshold: float = Field(default=0.8, ge=0.0, le=1.0)

    enable_auto_retry: bool = True
    max_retry_count: int = Field(default=3, ge=0, le=10)
    retry_delay_ms: int = Field(default=1_000, ge=0)
    connect_timeout_ms: int = Field(default=3_000, ge=500)
    response_timeout_ms: int = Field(default=60_000, ge=1_000)
    probe_before_request: bool = True
    cancel_poll_seconds: float = Field(default=0.05, gt=0)

    max_repair_attempts: int = Field(default=2, ge=0, le=3)
    structured_fallback_to_classic: bool = True

    copy_input_on_error: bool = True
    prune_fixed_errors: bool = False

    log_level: str = "INFO"
    log_file: Path | None = Field(
        default=None,
        validation_alias=AliasChoices("BATCHLLM_LOG_FILE", "LOG_FILE"),
    )

    @property
    def project_root(self) -> Path:
        return Path(__file__).resolve().parents[2]

    @property
    def resolved_input_dir(self) -> Path:
        return self._resolve_path(self.input_dir)

    @property
    def resolved_output_dir(self) -> Path:
        return self._resolve_path(self.output_dir)

    @property
    def resolved_temp_dir(self) -> Path:
        return self._resolve_path(self.temp_dir)

    @property
    def resolved_providers_config_path(self) -> Path:
        return self._resolve_path(self.providers_config_path)

    @property
    def resolved_format_rules_path(self) -> Path:
        return self._resolve_path(self.format_rules_path)

    @property
    def resolved_prompts_root(self) -> Path:
        return self._resolve_path(self.prompts_root)

    @property
    def samples_per_input(self) -> int:
        if not self.enable_multiple_requests:
            return 1
        return self.request_count

    def load_yaml(self, path: Path) -> dict[str, Any]:
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {path}")

        with path.open("r", encoding="utf-8") as file:
            data = yaml.safe_load(file) or {}

        if not isinstance(data, dict):
            raise ValueError(f"YAML config must contain object root: {path}")

        return data

    @property
    def providers_config(self) -> dict[str, Any]:
        return self.load_yaml(self.resolved_providers_config_path)

    def _resolve_path(self, path: Path) -> Path:
        if path.is_absolute():
            return path
        return (self.project_root / path).resolve()


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
