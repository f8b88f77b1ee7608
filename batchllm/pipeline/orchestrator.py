from __future__ import annotations

import logging
import threading
from collections import Counter
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Literal, Sequence

from batchllm.config.settings import Settings
from batchllm.llm_client.base import ChatMessage, CompletionResult, RequestClient, Timeouts
from batchllm.llm_client.normalize_usage import aggregate_usage
from batchllm.pipeline.consensus import ConsensusEngine, Sample
from batchllm.pipeline.documents import DocumentConverter, InputDocument, read_input
from batchllm.pipeline.documents import discover_inputs as discover_input_documents
from batchllm.pipeline.format_validator import FormatValidationResult, FormatValidator
from batchllm.pipeline.repair_loop import SchemaRepairLoop
from batchllm.pipeline.scheduler import (
    RunController,
    SchedulerReport,
    Task,
    TaskScheduler,
    call_with_cancel,
)
from batchllm.pipeline.tabular import rows_to_csv
from batchllm.prompts.manager import PromptManager, PromptSet
from batchllm.storage.artifacts import (
    ArtifactsManager,
    RunArtifacts,
    write_json_file,
    write_text_output,
)
from batchllm.storage.error_archive import ErrorArchive, ErrorRecord
from batchllm.storage.run_summary import build_run_summary, write_run_summary
from batchllm.utils.error_taxonomy import (
    ClassifiedError,
    ErrorStage,
    FallbackFailedError,
    OutputValidationError,
    OutputWriteError,
    TaskCancelledError,
    build_error_details,
    classify_error,
)
from batchllm.utils.logging import clear_log_context, set_log_context

logger = logging.getLogger(__name__)

RunMode = Literal["classic", "structured"]

_CLASSIC_TEMPERATURE = 0.2
_STRUCTURED_TEMPERATURE = 0.1
_REPAIR_TEMPERATURE = 0.0
_TASK_LOG_KEYS = ("input_id", "task_id", "stage")


@dataclass(frozen=True, slots=True)
class ModelSelection:
    provider: str
    model: str
    timeouts: Timeouts = field(default_factory=Timeouts)


@dataclass(frozen=True, slots=True)
class PipelineConfig:
    samples_per_input: int = 1
    max_concurrent_requests: int = 3
    min_samples: int = 3
    max_repair_attempts: int = 2
    structured_fallback_to_classic: bool = True
    copy_input_on_error: bool = True
    prune_fixed_errors: bool = False
    cancel_poll_seconds: float = 0.05
    classic_prompt_name: str = "rows_csv"
    structured_prompt_name: str = "rows_json"
    prompt_version: str = "v001"

    @classmethod
    def from_settings(cls, settings: Settings) -> PipelineConfig:
        return cls(
            samples_per_input=settings.samples_per_input,
            max_concurrent_requests=settings.max_concurrent_requests,
            min_samples=settings.min_samples,
            max_repair_attempts=settings.max_repair_attempts,
            structured_fallback_to_classic=settings.structured_fallback_to_classic,
            copy_input_on_error=settings.copy_input_on_error,
            prune_fixed_errors=settings.prune_fixed_errors,
            cancel_poll_seconds=settings.cancel_poll_seconds,
            classic_prompt_name=settings.classic_prompt_name,
            structured_prompt_name=settings.structured_prompt_name,
            prompt_version=settings.prompt_version,
        )


@dataclass(frozen=True, slots=True)
class FileRecord:
    filename: str
    mode: RunMode
    succeeded: bool
    fallback: bool = False
    output_path: str | None = None
    confidence: float | None = None
    samples: int = 0
    cancelled_samples: int = 0
    attempts_used: int = 0
    repair_attempts_used: int | None = None
    error_type: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {key: value for key, value in asdict(self).items() if value is not None}


@dataclass(frozen=True, slots=True)
class RunOutcome:
    total: int
    succeeded: int
    failed: int
    fallback: int
    run_id: str
    run_output_dir: Path
    files: list[FileRecord]
    token_stats: dict[str, int]
    error_stats: dict[str, int]
    cancelled_samples: int = 0
    summary_paths: tuple[Path, Path] | None = None


@dataclass(frozen=True, slots=True)
class _Resolved:
    rows: list[dict[str, str]]
    confidence: float | None
    fallback: bool = False
    samples: int = 1
    cancelled_samples: int = 0
    attempts_used: int = 0
    repair_attempts_used: int | None = None


class _InputFailed(Exception):
    def __init__(
        self,
        stage: ErrorStage,
        error: ClassifiedError,
        *,
        samples: int = 0,
        cancelled_samples: int = 0,
        attempts_used: int = 0,
        repair_attempts_used: int | None = None,
    ) -> None:
        super().__init__(error.message)
        self.stage = stage
        self.error = error
        self.samples = samples
        self.cancelled_samples = cancelled_samples
        self.attempts_used = attempts_used
        self.repair_attempts_used = repair_attempts_used


@dataclass(slots=True)
class _RunContext:
    run: RunArtifacts
    mode: RunMode
    selection: ModelSelection
    archive: ErrorArchive
    classic_prompt: PromptSet
    controller: RunController
    structured_prompt: PromptSet | None = None
    schema: dict[str, Any] | None = None
    usages: list[dict[str, int | None]] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)

    def add_usage(self, usage: dict[str, int | None]) -> None:
        with self.lock:
            self.usages.append(usage)


class BatchPipeline:
    """Drive a batch of inputs through the model and write one table per input.

    Classic mode fans every input out into ``samples_per_input`` requests and
    joins them per input once the scheduler drains. Structured mode sends one
    JSON request per input and repairs it against the prompt schema. Each
    input ends either as a CSV under the run directory or as an archived
    failure; no single input aborts the batch.
    """

    def __init__(
        self,
        *,
        client: RequestClient,
        artifacts_manager: ArtifactsManager,
        prompt_manager: PromptManager,
        validator: FormatValidator | None = None,
        consensus: ConsensusEngine | None = None,
        config: PipelineConfig | None = None,
        converter: DocumentConverter | None = None,
        now_fn: Callable[[], str] | None = None,
    ) -> None:
        self.client = client
        self.artifacts_manager = artifacts_manager
        self.prompt_manager = prompt_manager
        self.validator = validator or FormatValidator()
        self.consensus = consensus or ConsensusEngine(validator=self.validator)
        self.config = config or PipelineConfig()
        self.converter = converter
        self._now = now_fn or _utc_now

    def discover_inputs(self, paths: Sequence[Path | str]) -> list[InputDocument]:
        return discover_input_documents(paths, converter=self.converter)

    def run_batch(
        self,
        inputs: Sequence[InputDocument],
        selection: ModelSelection,
        *,
        mode: RunMode = "classic",
        controller: RunController | None = None,
        reuse_run_output_dir: Path | str | None = None,
    ) -> RunOutcome:
        if mode not in ("classic", "structured"):
            raise ValueError(f"Unsupported run mode: {mode}")

        controller = controller or RunController()
        if reuse_run_output_dir is not None:
            output_root = Path(reuse_run_output_dir)
            run = self.artifacts_manager.ensure_run_structure(
                run_id=output_root.name, run_output_dir=output_root
            )
        else:
            run = self.artifacts_manager.create_run_artifacts()

        ctx = self._build_context(
            run=run, mode=mode, selection=selection, controller=controller
        )
        set_log_context(run_id=run.run_id)
        logger.info(
            "Batch started",
            extra={
                "metrics": {
                    "mode": mode,
                    "inputs": len(inputs),
                    "provider": selection.provider,
                    "model": selection.model,
                    "samples_per_input": self._samples_per_input(mode),
                }
            },
        )

        try:
            if mode == "structured":
                records = self._run_structured(ctx, inputs, controller)
            else:
                records = self._run_classic(ctx, inputs, controller)

            if ctx.archive.pending_count:
                ctx.archive.finalize()

            outcome = self._build_outcome(ctx, records)
            stop = controller.snapshot() if controller.is_stopped else None
            summary = build_run_summary(
                run_id=run.run_id,
                mode=mode,
                run_output_dir=run.run_output_dir,
                totals={
                    "total": outcome.total,
                    "succeeded": outcome.succeeded,
                    "failed": outcome.failed,
                    "fallback": outcome.fallback,
                    "cancelled_samples": outcome.cancelled_samples,
                },
                files=[record.to_dict() for record in records],
                token_stats=outcome.token_stats,
                error_stats=outcome.error_stats,
                stop=stop,
            )
            summary_paths = write_run_summary(summary, run.run_output_dir)
            logger.info(
                "Batch finished",
                extra={
                    "metrics": {
                        "total": outcome.total,
                        "succeeded": outcome.succeeded,
                        "failed": outcome.failed,
                        "fallback": outcome.fallback,
                    }
                },
            )
            return RunOutcome(
                total=outcome.total,
                succeeded=outcome.succeeded,
                failed=outcome.failed,
                fallback=outcome.fallback,
                run_id=outcome.run_id,
                run_output_dir=outcome.run_output_dir,
                files=outcome.files,
                token_stats=outcome.token_stats,
                error_stats=outcome.error_stats,
                cancelled_samples=outcome.cancelled_samples,
                summary_paths=summary_paths,
            )
        finally:
            clear_log_context()

    def reprocess_errors(
        self,
        run_output_dir: Path | str,
        selection: ModelSelection,
        *,
        mode: RunMode | None = None,
        controller: RunController | None = None,
    ) -> RunOutcome:
        """Re-run archived failures into their original run directory."""

        output_root = Path(run_output_dir)
        archive = ErrorArchive(output_root, copy_input=self.config.copy_input_on_error)
        entries = archive.unfixed_entries()

        documents: list[InputDocument] = []
        seen: set[str] = set()
        for entry in entries:
            filename = str(entry.get("filename") or "")
            if not filename or filename in seen:
                continue
            seen.add(filename)
            source = _reprocess_source(archive, entry)
            if source is None:
                logger.warning(
                    "Archived input is missing and cannot be reprocessed",
                    extra={"metrics": {"filename": filename}},
                )
                continue
            documents.append(InputDocument(input_id=filename, source_path=source))

        if not documents:
            logger.info("Nothing to reprocess", extra={"metrics": {"run_output_dir": str(output_root)}})
            return RunOutcome(
                total=0,
                succeeded=0,
                failed=0,
                fallback=0,
                run_id=output_root.name,
                run_output_dir=output_root,
                files=[],
                token_stats=aggregate_usage([]),
                error_stats={},
            )

        effective_mode: RunMode = mode or _recorded_mode(entries)
        outcome = self.run_batch(
            documents,
            selection,
            mode=effective_mode,
            controller=controller,
            reuse_run_output_dir=output_root,
        )

        fixed = [record.filename for record in outcome.files if record.succeeded]
        if fixed:
            marked = archive.mark_fixed(fixed, prune=self.config.prune_fixed_errors)
            logger.info(
                "Reprocessed inputs marked as fixed",
                extra={"metrics": {"files": len(fixed), "entries": marked}},
            )
        return outcome

    def _build_context(
        self,
        *,
        run: RunArtifacts,
        mode: RunMode,
        selection: ModelSelection,
        controller: RunController,
    ) -> _RunContext:
        classic_prompt = self.prompt_manager.load_prompt_set(
            prompt_name=self.config.classic_prompt_name,
            version=self.config.prompt_version,
        )
        structured_prompt: PromptSet | None = None
        schema: dict[str, Any] | None = None
        if mode == "structured":
            structured_prompt = self.prompt_manager.load_prompt_set(
                prompt_name=self.config.structured_prompt_name,
                version=self.config.prompt_version,
                require_schema=True,
            )
            schema = structured_prompt.schema

        return _RunContext(
            run=run,
            mode=mode,
            selection=selection,
            archive=ErrorArchive(
                run.run_output_dir,
                copy_input=self.config.copy_input_on_error,
                now_fn=self._now,
            ),
            classic_prompt=classic_prompt,
            controller=controller,
            structured_prompt=structured_prompt,
            schema=schema,
        )

    def _samples_per_input(self, mode: RunMode) -> int:
        if mode == "structured":
            return 1
        return max(1, min(10, self.config.samples_per_input))

    def _run_classic(
        self,
        ctx: _RunContext,
        inputs: Sequence[InputDocument],
        controller: RunController,
    ) -> list[FileRecord]:
        sample_count = self._samples_per_input("classic")
        texts, read_errors = self._read_inputs(inputs)

        tasks = [
            Task(
                task_id=f"{document.input_id}#{index}",
                input_id=document.input_id,
                source_path=document.source_path,
                sample_index=index,
                total_samples=sample_count,
            )
            for document in inputs
            if document.input_id in texts
            for index in range(sample_count)
        ]

        def _handle(task: Task) -> Sample:
            set_log_context(
                run_id=ctx.run.run_id,
                input_id=task.input_id,
                task_id=task.task_id,
                stage="request",
            )
            try:
                result = self._request(
                    ctx,
                    _classic_messages(ctx.classic_prompt, texts[task.input_id]),
                    task,
                    temperature=_CLASSIC_TEMPERATURE,
                )
                sample = Sample(
                    index=task.sample_index,
                    raw_text=result.text,
                    usage=result.usage,
                    timestamp=self._now(),
                )
                self.artifacts_manager.append_sample(
                    self.artifacts_manager.samples_jsonl_path(ctx.run, task.input_id),
                    {
                        "index": sample.index,
                        "text": sample.raw_text,
                        "usage": sample.usage,
                        "timestamp": sample.timestamp,
                        "attempts": result.attempts,
                    },
                )
                logger.info(
                    "Sample received",
                    extra={
                        "metrics": {
                            "sample": f"{task.sample_index + 1}/{task.total_samples}",
                            "attempts": result.attempts,
                            "usage": result.usage,
                        }
                    },
                )
                return sample
            except Exception as error:  # noqa: BLE001
                logger.error(
                    "Sample request failed",
                    extra={"metrics": {"error": build_error_details(error)}},
                )
                raise
            finally:
                clear_log_context(_TASK_LOG_KEYS)

        report = TaskScheduler(
            controller=controller,
            max_workers=self.config.max_concurrent_requests,
        ).run(tasks, _handle)

        records: list[FileRecord] = []
        for document in inputs:
            read_error = read_errors.get(document.input_id)
            if read_error is not None:
                failure = _InputFailed("request", classify_error(read_error, "request"))
                records.append(self._finish_input(ctx, document, _raise(failure)))
                continue
            records.append(
                self._finish_input(
                    ctx,
                    document,
                    lambda document=document: self._join_classic(ctx, document, report),
                )
            )
        return records

    def _join_classic(
        self,
        ctx: _RunContext,
        document: InputDocument,
        report: SchedulerReport[Sample],
    ) -> _Resolved:
        samples: list[Sample] = []
        errors: list[BaseException] = []
        cancelled_samples = sum(
            1 for task in report.abandoned if task.input_id == document.input_id
        )
        for outcome in report.outcomes.values():
            if outcome.task.input_id != document.input_id:
                continue
            if outcome.ok and outcome.value is not None:
                samples.append(outcome.value)
            elif isinstance(outcome.error, TaskCancelledError):
                cancelled_samples += 1
            elif outcome.error is not None:
                errors.append(outcome.error)
        samples.sort(key=lambda sample: sample.index)
        failed_requests = len(errors)

        if not samples:
            if cancelled_samples:
                raise _InputFailed(
                    "cancel",
                    classify_error(
                        TaskCancelledError("Run stopped before any sample was received"),
                        "cancel",
                    ),
                    cancelled_samples=cancelled_samples,
                    attempts_used=failed_requests,
                )
            last_error = errors[-1] if errors else RuntimeError("No samples were requested")
            raise _InputFailed(
                "request",
                classify_error(last_error, "request"),
                attempts_used=failed_requests,
            )

        if cancelled_samples:
            logger.warning(
                "Run stopped before every sample was received; joining the partial set",
                extra={
                    "input_id": document.input_id,
                    "metrics": {"samples": len(samples), "cancelled_samples": cancelled_samples},
                },
            )

        set_log_context(input_id=document.input_id, stage="validation")
        try:
            if len(samples) == 1:
                validation = self._validate_single(samples[0])
                return _Resolved(
                    rows=validation.rows,
                    confidence=validation.confidence,
                    fallback=cancelled_samples > 0,
                    samples=1,
                    cancelled_samples=cancelled_samples,
                    attempts_used=failed_requests,
                )
            return self._resolve_consensus(
                ctx, document, samples, failed_requests, cancelled_samples
            )
        except OutputValidationError as error:
            raise _InputFailed(
                "validation",
                classify_error(error, "validation"),
                samples=len(samples),
                cancelled_samples=cancelled_samples,
                attempts_used=failed_requests,
            ) from error

    def _validate_single(self, sample: Sample) -> FormatValidationResult:
        validation = self.validator.validate(sample.raw_text)
        if validation.is_valid and validation.rows:
            return validation
        if validation.parse_errors:
            reason = validation.parse_errors[0]
        elif not validation.rows:
            reason = "no data rows"
        else:
            reason = f"confidence {validation.confidence:.2f} is below the validity threshold"
        raise OutputValidationError(f"No usable table in model output: {reason}")

    def _resolve_consensus(
        self,
        ctx: _RunContext,
        document: InputDocument,
        samples: list[Sample],
        failed_requests: int,
        cancelled_samples: int = 0,
    ) -> _Resolved:
        decision = self.consensus.select_best(samples, min_samples=self.config.min_samples)
        write_json_file(
            self.artifacts_manager.consensus_report_path(ctx.run, document.input_id),
            decision.to_report(
                source=document.input_id,
                total_samples=len(samples) + failed_requests + cancelled_samples,
            ),
        )
        logger.info(
            "Consensus decided",
            extra={
                "metrics": {
                    "selected": decision.selected_sample_index,
                    "confidence": round(decision.confidence, 4),
                    "valid_samples": len(decision.valid_sample_indices),
                    "anomalies": len(decision.anomalies),
                }
            },
        )

        if decision.selected_validation is not None:
            return _Resolved(
                rows=decision.selected_validation.rows,
                confidence=decision.confidence,
                fallback=decision.fallback or cancelled_samples > 0,
                samples=len(samples),
                cancelled_samples=cancelled_samples,
                attempts_used=failed_requests,
            )

        validation = self._majority_vote(samples)
        logger.warning(
            "No sample passed validation; using the most frequent usable table",
            extra={"metrics": {"samples": len(samples)}},
        )
        return _Resolved(
            rows=validation.rows,
            confidence=validation.confidence,
            fallback=True,
            samples=len(samples),
            cancelled_samples=cancelled_samples,
            attempts_used=failed_requests,
        )

    def _majority_vote(self, samples: list[Sample]) -> FormatValidationResult:
        candidates: dict[str, FormatValidationResult] = {}
        votes: Counter[str] = Counter()
        for sample in samples:
            validation = self.validator.validate(sample.raw_text)
            if not validation.rows:
                continue
            key = validation.fixed_text.strip()
            votes[key] += 1
            candidates.setdefault(key, validation)

        if not votes:
            raise OutputValidationError(f"No usable table in {len(samples)} samples")

        # Counter.most_common keeps insertion order among ties.
        winner, _ = votes.most_common(1)[0]
        return candidates[winner]

    def _run_structured(
        self,
        ctx: _RunContext,
        inputs: Sequence[InputDocument],
        controller: RunController,
    ) -> list[FileRecord]:
        texts, read_errors = self._read_inputs(inputs)
        tasks = [
            Task(
                task_id=f"{document.input_id}#structured",
                input_id=document.input_id,
                source_path=document.source_path,
                sample_index=0,
                total_samples=1,
            )
            for document in inputs
            if document.input_id in texts
        ]

        def _handle(task: Task) -> _Resolved:
            set_log_context(
                run_id=ctx.run.run_id,
                input_id=task.input_id,
                task_id=task.task_id,
                stage="request",
            )
            try:
                return self._process_structured(ctx, task, texts[task.input_id])
            finally:
                clear_log_context(_TASK_LOG_KEYS)

        report = TaskScheduler(
            controller=controller,
            max_workers=self.config.max_concurrent_requests,
        ).run(tasks, _handle)
        abandoned = {task.input_id for task in report.abandoned}
        outcomes = {outcome.task.input_id: outcome for outcome in report.outcomes.values()}

        records: list[FileRecord] = []
        for document in inputs:
            read_error = read_errors.get(document.input_id)
            if read_error is not None:
                failure = _InputFailed("request", classify_error(read_error, "request"))
                records.append(self._finish_input(ctx, document, _raise(failure)))
                continue
            if document.input_id in abandoned:
                failure = _InputFailed(
                    "cancel",
                    classify_error(
                        TaskCancelledError("Run stopped before the input was processed"),
                        "cancel",
                    ),
                    cancelled_samples=1,
                )
                records.append(self._finish_input(ctx, document, _raise(failure)))
                continue

            outcome = outcomes[document.input_id]
            if outcome.error is not None:
                records.append(self._finish_input(ctx, document, _raise(outcome.error)))
            else:
                resolved = outcome.value
                records.append(self._finish_input(ctx, document, lambda resolved=resolved: resolved))
        return records

    def _process_structured(self, ctx: _RunContext, task: Task, text: str) -> _Resolved:
        if ctx.structured_prompt is None or ctx.schema is None:
            raise RuntimeError("Structured prompt with a schema is not loaded")
        prompt = ctx.structured_prompt

        def _save(attempt: int, response_text: str) -> None:
            path = self.artifacts_manager.structured_response_path(ctx.run, task.input_id, attempt)
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(response_text, encoding="utf-8")

        loop = SchemaRepairLoop(
            request_repair=lambda messages: self._request(
                ctx, messages, task, temperature=_REPAIR_TEMPERATURE
            ),
            repair_prompt=prompt.repair_prompt_text,
            on_response=_save,
        )

        structured_error: ClassifiedError
        repair_attempts_used = 0
        try:
            first = self._request(
                ctx,
                [
                    {"role": "system", "content": prompt.system_prompt_text},
                    {"role": "user", "content": text},
                ],
                task,
                temperature=_STRUCTURED_TEMPERATURE,
            )
            _save(0, first.text)
            set_log_context(stage="validation")
            outcome = loop.extract_structured(first.text, ctx.schema, self.config.max_repair_attempts)
            repair_attempts_used = outcome.repair_attempts_used
            if outcome.ok and outcome.csv_text is not None:
                validation = self.validator.validate(outcome.csv_text)
                if validation.rows:
                    logger.info(
                        "Structured output accepted",
                        extra={"metrics": {"rows": len(validation.rows), "repairs": repair_attempts_used}},
                    )
                    return _Resolved(
                        rows=validation.rows,
                        confidence=validation.confidence,
                        repair_attempts_used=repair_attempts_used,
                        attempts_used=repair_attempts_used,
                    )
                structured_error = classify_error(
                    OutputValidationError("Structured rows produced no usable table"),
                    "validation",
                )
            else:
                structured_error = outcome.error or classify_error(
                    OutputValidationError("Structured extraction failed"), "validation"
                )
        except TaskCancelledError as error:
            raise _InputFailed(
                "cancel",
                classify_error(error, "cancel"),
                repair_attempts_used=repair_attempts_used,
            ) from error
        except Exception as error:  # noqa: BLE001
            structured_error = classify_error(error, "request")

        if structured_error.type == "user_cancelled":
            raise _InputFailed(
                "cancel",
                structured_error,
                attempts_used=repair_attempts_used,
                repair_attempts_used=repair_attempts_used,
            )

        logger.warning(
            "Structured extraction failed",
            extra={"metrics": {"type": structured_error.type, "error": structured_error.message}},
        )
        if not self.config.structured_fallback_to_classic:
            raise _InputFailed(
                _stage_for_type(structured_error),
                structured_error,
                attempts_used=repair_attempts_used,
                repair_attempts_used=repair_attempts_used,
            )
        return self._classic_fallback(
            ctx, task, text, structured_error, repair_attempts_used=repair_attempts_used
        )

    def _classic_fallback(
        self,
        ctx: _RunContext,
        task: Task,
        text: str,
        structured_error: ClassifiedError,
        *,
        repair_attempts_used: int,
    ) -> _Resolved:
        set_log_context(stage="fallback")
        try:
            result = self._request(
                ctx,
                _classic_messages(ctx.classic_prompt, text),
                task,
                temperature=_CLASSIC_TEMPERATURE,
            )
            validation = self._validate_single(
                Sample(index=0, raw_text=result.text, usage=result.usage, timestamp=self._now())
            )
        except TaskCancelledError as error:
            raise _InputFailed(
                "cancel",
                classify_error(error, "cancel"),
                attempts_used=repair_attempts_used,
                repair_attempts_used=repair_attempts_used,
            ) from error
        except Exception as error:  # noqa: BLE001
            failure = FallbackFailedError(
                f"{structured_error.message}; classic fallback failed: {error}"
            )
            raise _InputFailed(
                "fallback",
                classify_error(failure, "fallback"),
                attempts_used=repair_attempts_used,
                repair_attempts_used=repair_attempts_used,
            ) from error

        logger.info("Classic fallback succeeded", extra={"metrics": {"rows": len(validation.rows)}})
        return _Resolved(
            rows=validation.rows,
            confidence=validation.confidence,
            fallback=True,
            attempts_used=repair_attempts_used,
            repair_attempts_used=repair_attempts_used,
        )

    def _request(
        self,
        ctx: _RunContext,
        messages: list[ChatMessage],
        task: Task,
        *,
        temperature: float,
    ) -> CompletionResult:
        selection = ctx.selection
        cancel_event = threading.Event()
        ctx.controller.register_cancel_callback(task.task_id, cancel_event.set)
        result = call_with_cancel(
            lambda: self.client.complete(
                provider_name=selection.provider,
                model=selection.model,
                messages=messages,
                timeouts=selection.timeouts,
                params={"temperature": temperature},
                cancel_event=cancel_event,
            ),
            task.cancel_token,
            poll_seconds=self.config.cancel_poll_seconds,
            name=f"batchllm-request-{task.task_id}",
        )
        ctx.add_usage(result.usage)
        return result

    def _read_inputs(
        self, inputs: Sequence[InputDocument]
    ) -> tuple[dict[str, str], dict[str, Exception]]:
        texts: dict[str, str] = {}
        errors: dict[str, Exception] = {}
        for document in inputs:
            try:
                texts[document.input_id] = read_input(document, converter=self.converter)
            except Exception as error:  # noqa: BLE001
                logger.error(
                    "Input could not be read",
                    extra={"input_id": document.input_id, "metrics": {"error": str(error)}},
                )
                errors[document.input_id] = error
        return texts, errors

    def _finish_input(
        self,
        ctx: _RunContext,
        document: InputDocument,
        resolve: Callable[[], _Resolved],
    ) -> FileRecord:
        set_log_context(input_id=document.input_id)
        try:
            resolved = resolve()
            set_log_context(stage="write")
            output_path = self.artifacts_manager.output_csv_path(ctx.run, document.input_id)
            try:
                write_text_output(
                    output_path,
                    rows_to_csv(resolved.rows, self.validator.config.rules.expected_headers),
                )
            except OutputWriteError as error:
                raise _InputFailed(
                    "write",
                    classify_error(error, "write"),
                    samples=resolved.samples,
                    cancelled_samples=resolved.cancelled_samples,
                    attempts_used=resolved.attempts_used,
                    repair_attempts_used=resolved.repair_attempts_used,
                ) from error
        except _InputFailed as failure:
            return self._archive_failure(ctx, document, failure)
        except Exception as error:  # noqa: BLE001
            return self._archive_failure(
                ctx, document, _InputFailed("request", classify_error(error, "request"))
            )
        finally:
            clear_log_context(_TASK_LOG_KEYS)

        logger.info(
            "Output written",
            extra={
                "input_id": document.input_id,
                "metrics": {"path": str(output_path), "rows": len(resolved.rows)},
            },
        )
        return FileRecord(
            filename=document.input_id,
            mode=ctx.mode,
            succeeded=True,
            fallback=resolved.fallback,
            output_path=str(output_path),
            confidence=resolved.confidence,
            samples=resolved.samples,
            cancelled_samples=resolved.cancelled_samples,
            attempts_used=resolved.attempts_used,
            repair_attempts_used=resolved.repair_attempts_used,
        )

    def _archive_failure(
        self,
        ctx: _RunContext,
        document: InputDocument,
        failure: _InputFailed,
    ) -> FileRecord:
        logger.error(
            "Input failed",
            extra={
                "input_id": document.input_id,
                "stage": failure.stage,
                "metrics": {"type": failure.error.type, "error": failure.error.message},
            },
        )
        try:
            ctx.archive.record(
                ErrorRecord.from_classified(
                    filename=document.input_id,
                    input_path=document.source_path,
                    stage=failure.stage,
                    error=failure.error,
                    attempts_used=failure.attempts_used,
                    mode=ctx.mode,
                    provider=ctx.selection.provider,
                    model=ctx.selection.model,
                )
            )
        except Exception as error:  # noqa: BLE001
            logger.exception(
                "Failed to archive input failure",
                extra={"input_id": document.input_id, "metrics": {"error": str(error)}},
            )

        return FileRecord(
            filename=document.input_id,
            mode=ctx.mode,
            succeeded=False,
            samples=failure.samples,
            cancelled_samples=failure.cancelled_samples,
            attempts_used=failure.attempts_used,
            repair_attempts_used=failure.repair_attempts_used,
            error_type=failure.error.type,
            error=failure.error.message,
        )

    def _build_outcome(self, ctx: _RunContext, records: list[FileRecord]) -> RunOutcome:
        error_stats = Counter(
            record.error_type for record in records if not record.succeeded and record.error_type
        )
        with ctx.lock:
            token_stats = aggregate_usage(ctx.usages)
        return RunOutcome(
            total=len(records),
            succeeded=sum(1 for record in records if record.succeeded),
            failed=sum(1 for record in records if not record.succeeded),
            fallback=sum(1 for record in records if record.succeeded and record.fallback),
            run_id=ctx.run.run_id,
            run_output_dir=ctx.run.run_output_dir,
            files=records,
            token_stats=token_stats,
            error_stats=dict(sorted(error_stats.items())),
            cancelled_samples=sum(record.cancelled_samples for record in records),
        )


def _classic_messages(prompt: PromptSet, text: str) -> list[ChatMessage]:
    return [
        {"role": "system", "content": prompt.system_prompt_text},
        {"role": "user", "content": text},
    ]


def _raise(error: BaseException) -> Callable[[], _Resolved]:
    def _resolve() -> _Resolved:
        raise error

    return _resolve


def _stage_for_type(error: ClassifiedError) -> ErrorStage:
    if error.type == "parse_error":
        return "parse"
    if error.type == "validation_error":
        return "validation"
    return "request"


def _reprocess_source(archive: ErrorArchive, entry: dict[str, Any]) -> Path | None:
    source = Path(str(entry.get("input_path") or ""))
    if source.is_file():
        return source

    filename = str(entry.get("filename") or "")
    copy_path = archive.entry_dir(str(entry.get("type") or "unknown_error"), filename) / (
        PurePosixPath(filename.replace("\\", "/")).name
    )
    if copy_path.is_file():
        return copy_path
    return None


def _recorded_mode(entries: list[dict[str, Any]]) -> RunMode:
    for entry in entries:
        if entry.get("mode") == "structured":
            return "structured"
    return "classic"


def _utc_now() -> str:
    return datetime.now(tz=timezone.utc).isoformat()
