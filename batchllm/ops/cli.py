from __future__ import annotations

import argparse
import json
import logging
import signal
from pathlib import Path
from typing import Any, Callable

from batchllm.config.settings import Settings, get_settings
from batchllm.llm_client.base import RequestClient, Timeouts
from batchllm.llm_client.factory import build_request_client
from batchllm.llm_client.http_client import probe_provider
from batchllm.llm_client.providers import ProviderRegistry
from batchllm.pipeline.consensus import ConsensusConfig, ConsensusEngine
from batchllm.pipeline.documents import PandocConverter
from batchllm.pipeline.format_validator import (
    FormatValidator,
    FormatValidatorConfig,
    load_format_rules,
)
from batchllm.pipeline.orchestrator import (
    BatchPipeline,
    ModelSelection,
    PipelineConfig,
    RunOutcome,
)
from batchllm.pipeline.scheduler import RunController
from batchllm.prompts.manager import PromptManager
from batchllm.storage.artifacts import ArtifactsManager
from batchllm.utils.logging import setup_logging

logger = logging.getLogger(__name__)


def build_pipeline(
    settings: Settings,
    *,
    providers: ProviderRegistry | None = None,
    client: RequestClient | None = None,
    use_pandoc: bool = False,
) -> BatchPipeline:
    registry = providers or ProviderRegistry.from_config(settings.providers_config)
    validator = FormatValidator(
        FormatValidatorConfig(rules=load_format_rules(settings.resolved_format_rules_path))
    )
    return BatchPipeline(
        client=client or build_request_client(settings, registry),
        artifacts_manager=ArtifactsManager(
            settings.resolved_output_dir, settings.resolved_temp_dir
        ),
        prompt_manager=PromptManager(settings.resolved_prompts_root),
        validator=validator,
        consensus=ConsensusEngine(
            validator=validator,
            config=ConsensusConfig(
                min_samples=settings.min_samples,
                similarity_threshold=settings.similarity_threshold,
            ),
        ),
        config=PipelineConfig.from_settings(settings),
        converter=PandocConverter() if use_pandoc else None,
    )


def resolve_selection(
    settings: Settings,
    providers: ProviderRegistry,
    *,
    provider_name: str | None = None,
    model: str | None = None,
) -> ModelSelection:
    provider = providers.get(provider_name or settings.default_provider)
    return ModelSelection(
        provider=provider.name,
        model=provider.resolve_model(model or settings.default_model),
        timeouts=Timeouts.from_ms(
            connect_ms=settings.connect_timeout_ms,
            response_ms=settings.response_timeout_ms,
        ),
    )


class StopSignalHandler:
    """First Ctrl-C requests a soft stop, the second one a hard stop."""

    def __init__(self, controller: RunController) -> None:
        self._controller = controller
        self._previous: Any = None

    def __enter__(self) -> StopSignalHandler:
        self._previous = signal.signal(signal.SIGINT, self.handle)
        return self

    def __exit__(self, *exc_info: object) -> None:
        signal.signal(signal.SIGINT, self._previous)

    def handle(self, signum: int, frame: object) -> None:
        if self._controller.is_stopped:
            self._controller.hard_stop("interrupted twice")
        else:
            self._controller.soft_stop("interrupted")


def _outcome_report(outcome: RunOutcome) -> dict[str, Any]:
    return {
        "run_id": outcome.run_id,
        "run_output_dir": str(outcome.run_output_dir),
        "total": outcome.total,
        "succeeded": outcome.succeeded,
        "failed": outcome.failed,
        "fallback": outcome.fallback,
        "cancelled_samples": outcome.cancelled_samples,
        "token": outcome.token_stats,
        "errors_by_type": outcome.error_stats,
        "files": [record.to_dict() for record in outcome.files],
    }


def _json_report_text(report: Any) -> str:
    return f"{json.dumps(report, ensure_ascii=False, indent=2, sort_keys=True)}\n"


def _run_with_controller(
    operation: Callable[[RunController], RunOutcome],
) -> RunOutcome:
    controller = RunController()
    with StopSignalHandler(controller):
        return operation(controller)


def _command_run(args: argparse.Namespace, settings: Settings) -> int:
    providers = ProviderRegistry.from_config(settings.providers_config)
    pipeline = build_pipeline(settings, providers=providers, use_pandoc=bool(args.pandoc))
    selection = resolve_selection(
        settings, providers, provider_name=args.provider, model=args.model
    )

    paths = [Path(item) for item in args.inputs] or [settings.resolved_input_dir]
    documents = pipeline.discover_inputs(paths)
    if not documents:
        logger.error("No input files found", extra={"metrics": {"paths": [str(p) for p in paths]}})
        return 2

    outcome = _run_with_controller(
        lambda controller: pipeline.run_batch(
            documents,
            selection,
            mode=args.mode,
            controller=controller,
        )
    )
    print(_json_report_text(_outcome_report(outcome)), end="")
    return 0 if outcome.failed == 0 else 1


def _command_reprocess(args: argparse.Namespace, settings: Settings) -> int:
    providers = ProviderRegistry.from_config(settings.providers_config)
    pipeline = build_pipeline(settings, providers=providers, use_pandoc=bool(args.pandoc))
    selection = resolve_selection(
        settings, providers, provider_name=args.provider, model=args.model
    )

    outcome = _run_with_controller(
        lambda controller: pipeline.reprocess_errors(
            Path(args.run_output_dir),
            selection,
            mode=args.mode,
            controller=controller,
        )
    )
    print(_json_report_text(_outcome_report(outcome)), end="")
    return 0 if outcome.failed == 0 else 1


def _command_probe(args: argparse.Namespace, settings: Settings) -> int:
    providers = ProviderRegistry.from_config(settings.providers_config)
    names = [args.provider] if args.provider else providers.names()
    timeout_seconds = (
        float(args.timeout_seconds)
        if args.timeout_seconds is not None
        else Timeouts.from_ms(
            connect_ms=settings.connect_timeout_ms,
            response_ms=settings.response_timeout_ms,
        ).connect_seconds
    )

    results = [
        probe_provider(providers.get(name), timeout_seconds=timeout_seconds)
        for name in names
    ]
    print(_json_report_text([result.to_dict() for result in results]), end="")
    return 0 if all(result.reachable for result in results) else 1


def _add_model_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--provider", default=None, help="Provider name from providers.yaml.")
    parser.add_argument("--model", default=None, help="Model name; provider default when omitted.")
    parser.add_argument(
        "--pandoc",
        action="store_true",
        help="Accept .docx inputs and convert them with pandoc.",
    )


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        description="Batch-extract question/answer tables from documents with an LLM."
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Process input files into CSV tables.")
    run_parser.add_argument(
        "inputs",
        nargs="*",
        help="Files or directories to process; the configured input dir when omitted.",
    )
    run_parser.add_argument(
        "--mode",
        choices=("classic", "structured"),
        default="classic",
        help="classic: CSV sampling with consensus; structured: JSON with schema repair.",
    )
    _add_model_arguments(run_parser)

    reprocess_parser = subparsers.add_parser(
        "reprocess", help="Re-run archived failures of an earlier run."
    )
    reprocess_parser.add_argument("run_output_dir", help="Output directory of the earlier run.")
    reprocess_parser.add_argument(
        "--mode",
        choices=("classic", "structured"),
        default=None,
        help="Override the mode recorded with the archived failures.",
    )
    _add_model_arguments(reprocess_parser)

    probe_parser = subparsers.add_parser("probe", help="Check that providers are reachable.")
    probe_parser.add_argument("--provider", default=None, help="Probe only this provider.")
    probe_parser.add_argument(
        "--timeout-seconds",
        default=None,
        type=float,
        help="Probe timeout in seconds.",
    )

    args = parser.parse_args(argv)

    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)

    commands: dict[str, Callable[[argparse.Namespace, Settings], int]] = {
        "run": _command_run,
        "reprocess": _command_reprocess,
        "probe": _command_probe,
    }
    return commands[args.command](args, settings)


if __name__ == "__main__":
    raise SystemExit(main())
