from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Literal, Sequence

from batchllm.pipeline.format_validator import FormatValidationResult, FormatValidator
from batchllm.pipeline.similarity import (
    SimilarityFn,
    build_similarity_matrix,
    mean_similarity_to_others,
    ngram_cosine_similarity,
)

AnomalySeverity = Literal["high", "medium"]


@dataclass(frozen=True, slots=True)
class Sample:
    index: int
    raw_text: str
    usage: dict[str, int | None] = field(default_factory=dict)
    timestamp: str = ""


@dataclass(frozen=True, slots=True)
class VotingWeights:
    format: float = 0.40
    completeness: float = 0.30
    semantic: float = 0.20
    length: float = 0.10


@dataclass(frozen=True, slots=True)
class ConsensusConfig:
    min_samples: int = 3
    similarity_threshold: float = 0.8
    anomaly_high_ratio: float = 0.7
    low_confidence_threshold: float = 0.7
    fallback_confidence: float = 0.5
    weights: VotingWeights = field(default_factory=VotingWeights)


@dataclass(frozen=True, slots=True)
class SampleScore:
    sample_index: int
    format_score: float
    completeness_score: float
    semantic_score: float
    length_score: float
    total_score: float

    def to_dict(self) -> dict[str, Any]:
        return {
            "sample_index": self.sample_index,
            "format": self.format_score,
            "completeness": self.completeness_score,
            "semantic": self.semantic_score,
            "length": self.length_score,
            "total": self.total_score,
        }


@dataclass(frozen=True, slots=True)
class Anomaly:
    sample_index: int
    mean_similarity: float
    severity: AnomalySeverity
    type: str = "low_similarity"


@dataclass(frozen=True, slots=True)
class ConsensusDecision:
    selected_sample_index: int | None
    confidence: float
    similarity_matrix: list[list[float]]
    scores_per_sample: list[SampleScore]
    anomalies: list[Anomaly]
    position_consistency: dict[int, dict[str, float]]
    recommendations: list[dict[str, Any]]
    decision_log: list[str]
    valid_sample_indices: list[int]
    selected_text: str | None = None
    selected_validation: FormatValidationResult | None = None
    fallback: bool = False
    no_valid_samples: bool = False

    def to_report(self, *, source: str, total_samples: int) -> dict[str, Any]:
        return {
            "generated_at": datetime.now(tz=timezone.utc).isoformat(),
            "source": source,
            "total_samples": total_samples,
            "valid_samples": list(self.valid_sample_indices),
            "selected_sample_index": self.selected_sample_index,
            "confidence": self.confidence,
            "fallback": self.fallback,
            "no_valid_samples": self.no_valid_samples,
            "similarity_matrix": self.similarity_matrix,
            "scores": [score.to_dict() for score in self.scores_per_sample],
            "anomalies": [
                {
                    "sample_index": anomaly.sample_index,
                    "mean_similarity": anomaly.mean_similarity,
                    "severity": anomaly.severity,
                    "type": anomaly.type,
                }
                for anomaly in self.anomalies
            ],
            "position_consistency": {
                str(row): cells for row, cells in self.position_consistency.items()
            },
            "recommendations": self.recommendations,
            "decision_log": self.decision_log,
        }


@dataclass(frozen=True, slots=True)
class _ValidSample:
    sample: Sample
    validation: FormatValidationResult


class ConsensusEngine:
    """Pick one trustworthy output out of several samples for the same input.

    The engine is pure: every diagnostic goes to ``decision_log`` and nothing
    is logged, so repeated calls over the same texts give the same decision.
    """

    def __init__(
        self,
        *,
        validator: FormatValidator | None = None,
        similarity_fn: SimilarityFn = ngram_cosine_similarity,
        config: ConsensusConfig | None = None,
    ) -> None:
        self._validator = validator or FormatValidator()
        self._similarity_fn = similarity_fn
        self._config = config or ConsensusConfig()

    def select_best(
        self,
        samples: Sequence[Sample],
        min_samples: int | None = None,
    ) -> ConsensusDecision:
        required = self._config.min_samples if min_samples is None else min_samples
        valid, decision_log = self._preprocess(samples)

        if len(samples) < required:
            return self._insufficient_samples(
                samples=samples,
                valid=valid,
                required=required,
                decision_log=decision_log,
            )

        if not valid:
            decision_log.append("no valid samples, nothing to select")
            return _empty_decision(
                decision_log=decision_log,
                recommendations=[
                    {
                        "type": "no_valid_samples",
                        "message": "All samples failed format validation; review the prompt.",
                        "priority": "critical",
                    }
                ],
            )

        texts = [item.validation.fixed_text for item in valid]
        matrix = build_similarity_matrix(texts, self._similarity_fn)
        position_consistency = compare_positions(
            [item.validation.rows for item in valid],
            self._validator.config.rules.expected_headers,
        )
        scores = self._vote(valid=valid, matrix=matrix, decision_log=decision_log)

        winner_position = 0
        for position, score in enumerate(scores):
            if score.total_score > scores[winner_position].total_score:
                winner_position = position
        winner = valid[winner_position]
        confidence = scores[winner_position].total_score
        decision_log.append(
            f"winner: sample {winner.sample.index} (total {confidence:.3f})"
        )

        anomalies = self._detect_anomalies(valid=valid, matrix=matrix)
        recommendations = self._recommendations(
            confidence=confidence,
            anomalies=anomalies,
            valid_count=len(valid),
            required=required,
        )

        return ConsensusDecision(
            selected_sample_index=winner.sample.index,
            confidence=confidence,
            similarity_matrix=matrix,
            scores_per_sample=scores,
            anomalies=anomalies,
            position_consistency=position_consistency,
            recommendations=recommendations,
            decision_log=decision_log,
            valid_sample_indices=[item.sample.index for item in valid],
            selected_text=winner.validation.fixed_text,
            selected_validation=winner.validation,
        )

    def _preprocess(
        self, samples: Sequence[Sample]
    ) -> tuple[list[_ValidSample], list[str]]:
        decision_log: list[str] = []
        valid: list[_ValidSample] = []
        for sample in samples:
            validation = self._validator.validate(sample.raw_text)
            if validation.is_valid:
                valid.append(_ValidSample(sample=sample, validation=validation))
                decision_log.append(
                    f"sample {sample.index}: valid, confidence "
                    f"{validation.confidence:.3f}, {len(validation.rows)} rows"
                )
            else:
                decision_log.append(
                    f"sample {sample.index}: discarded, "
                    f"{len(validation.issues)} issues, parse_ok={validation.parse_ok}"
                )
        return valid, decision_log

    def _vote(
        self,
        *,
        valid: list[_ValidSample],
        matrix: list[list[float]],
        decision_log: list[str],
    ) -> list[SampleScore]:
        weights = self._config.weights
        answer_field = self._validator.config.answer_field

        max_rows = max(len(item.validation.rows) for item in valid)
        lengths = [len(item.validation.fixed_text) for item in valid]
        mean_length = sum(lengths) / len(lengths)

        scores: list[SampleScore] = []
        for position, item in enumerate(valid):
            rows = item.validation.rows
            format_score = item.validation.confidence

            avg_answer_length = sum(
                len(row.get(answer_field) or "") for row in rows
            ) / max(len(rows), 1)
            row_ratio = len(rows) / max_rows if max_rows else 0.0
            completeness_score = row_ratio * 0.7 + min(avg_answer_length / 100, 1.0) * 0.3

            semantic_score = mean_similarity_to_others(matrix, position)

            if mean_length > 0:
                deviation = abs(lengths[position] - mean_length) / mean_length
            else:
                deviation = 0.0
            length_score = max(0.0, 1.0 - deviation)

            total = (
                format_score * weights.format
                + completeness_score * weights.completeness
                + semantic_score * weights.semantic
                + length_score * weights.length
            )
            scores.append(
                SampleScore(
                    sample_index=item.sample.index,
                    format_score=format_score,
                    completeness_score=completeness_score,
                    semantic_score=semantic_score,
                    length_score=length_score,
                    total_score=total,
                )
            )
            decision_log.append(
                f"sample {item.sample.index}: total {total:.3f} "
                f"[format {format_score:.3f}, completeness {completeness_score:.3f}, "
                f"semantic {semantic_score:.3f}, length {length_score:.3f}]"
            )
        return scores

    def _detect_anomalies(
        self, *, valid: list[_ValidSample], matrix: list[list[float]]
    ) -> list[Anomaly]:
        if len(valid) < 2:
            return []

        threshold = self._config.similarity_threshold
        anomalies: list[Anomaly] = []
        for position, item in enumerate(valid):
            mean_similarity = mean_similarity_to_others(matrix, position)
            if mean_similarity >= threshold:
                continue
            severity: AnomalySeverity = (
                "high"
                if mean_similarity < threshold * self._config.anomaly_high_ratio
                else "medium"
            )
            anomalies.append(
                Anomaly(
                    sample_index=item.sample.index,
                    mean_similarity=mean_similarity,
                    severity=severity,
                )
            )
        return anomalies

    def _recommendations(
        self,
        *,
        confidence: float,
        anomalies: list[Anomaly],
        valid_count: int,
        required: int,
    ) -> list[dict[str, Any]]:
        recommendations: list[dict[str, Any]] = []
        if confidence < self._config.low_confidence_threshold:
            recommendations.append(
                {
                    "type": "low_confidence",
                    "message": f"Confidence {confidence:.1%} is low; review manually.",
                    "priority": "high",
                }
            )
        if anomalies:
            recommendations.append(
                {
                    "type": "anomaly_detected",
                    "message": f"{len(anomalies)} sample(s) disagree with the rest.",
                    "priority": "medium",
                    "details": [anomaly.sample_index for anomaly in anomalies],
                }
            )
        if valid_count < required:
            recommendations.append(
                {
                    "type": "insufficient_samples",
                    "message": (
                        f"Only {valid_count} valid sample(s), fewer than {required}; "
                        "consider more requests per input."
                    ),
                    "priority": "medium",
                }
            )
        return recommendations

    def _insufficient_samples(
        self,
        *,
        samples: Sequence[Sample],
        valid: list[_ValidSample],
        required: int,
        decision_log: list[str],
    ) -> ConsensusDecision:
        decision_log.append(
            f"{len(samples)} sample(s) below minimum {required}, single-sample mode"
        )
        recommendations = [
            {
                "type": "insufficient_samples",
                "message": "Increase the request count to enable multi-sample consensus.",
                "priority": "high",
            }
        ]
        if not valid:
            decision_log.append("no valid samples, nothing to select")
            return _empty_decision(
                decision_log=decision_log,
                recommendations=recommendations,
                fallback=True,
            )

        chosen = valid[0]
        return ConsensusDecision(
            selected_sample_index=chosen.sample.index,
            confidence=self._config.fallback_confidence,
            similarity_matrix=[],
            scores_per_sample=[],
            anomalies=[],
            position_consistency={},
            recommendations=recommendations,
            decision_log=decision_log,
            valid_sample_indices=[item.sample.index for item in valid],
            selected_text=chosen.validation.fixed_text,
            selected_validation=chosen.validation,
            fallback=True,
        )


def compare_positions(
    tables: Sequence[Sequence[dict[str, str]]],
    fields: Sequence[str],
) -> dict[int, dict[str, float]]:
    """Per row index and field, how consistent the samples are with each other.

    Only cells with a non-empty value in at least two samples are scored.
    """

    max_rows = max((len(table) for table in tables), default=0)
    consistency: dict[int, dict[str, float]] = {}
    for row_index in range(max_rows):
        row_scores: dict[str, float] = {}
        for field_name in fields:
            values = [
                table[row_index][field_name].strip()
                for table in tables
                if row_index < len(table) and (table[row_index].get(field_name) or "").strip()
            ]
            if len(values) < 2:
                continue
            unique_count = len(set(values))
            row_scores[field_name] = 1 - (unique_count - 1) / len(values)
        consistency[row_index] = row_scores
    return consistency


def _empty_decision(
    *,
    decision_log: list[str],
    recommendations: list[dict[str, Any]],
    fallback: bool = False,
) -> ConsensusDecision:
    return ConsensusDecision(
        selected_sample_index=None,
        confidence=0.0,
        similarity_matrix=[],
        scores_per_sample=[],
        anomalies=[],
        position_consistency={},
        recommendations=recommendations,
        decision_log=decision_log,
        valid_sample_indices=[],
        fallback=fallback,
        no_valid_samples=True,
    )
