"""Text similarity used by multi-sample consensus."""

from __future__ import annotations

import hashlib
import math
from dataclasses import dataclass
from typing import Callable, Sequence

Vector = list[float]
SimilarityFn = Callable[[str, str], float]


@dataclass(frozen=True, slots=True)
class HashingEmbedder:
    """Deterministic embedder based on hashed character n-grams."""

    dimensions: int = 384
    ngram_size: int = 3

    def embed(self, texts: Sequence[str]) -> list[Vector]:
        return [self._embed_single(text) for text in texts]

    def _embed_single(self, text: str) -> Vector:
        normalized = " ".join((text or "").lower().split())
        vector = [0.0] * self.dimensions
        if not normalized:
            return vector

        if len(normalized) < self.ngram_size:
            normalized = normalized + " " * (self.ngram_size - len(normalized))

        for index in range(len(normalized) - self.ngram_size + 1):
            ngram = normalized[index : index + self.ngram_size]
            digest = hashlib.sha1(ngram.encode("utf-8"), usedforsecurity=False).digest()  # noqa: S324
            bucket = int.from_bytes(digest[:4], byteorder="little") % self.dimensions
            vector[bucket] += 1.0

        norm = math.sqrt(sum(value * value for value in vector))
        if norm > 0:
            vector = [value / norm for value in vector]
        return vector


def cosine_similarity(left: Vector, right: Vector) -> float:
    if len(left) != len(right):
        raise ValueError("Vectors must have the same size")

    dot = sum(l_value * r_value for l_value, r_value in zip(left, right, strict=True))
    left_norm = math.sqrt(sum(value * value for value in left))
    right_norm = math.sqrt(sum(value * value for value in right))
    if left_norm == 0 or right_norm == 0:
        return 0.0
    return dot / (left_norm * right_norm)


def ngram_cosine_similarity(left: str, right: str) -> float:
    if left == right:
        return 1.0
    left_vector, right_vector = _DEFAULT_EMBEDDER.embed([left, right])
    return cosine_similarity(left_vector, right_vector)


def build_similarity_matrix(
    texts: Sequence[str],
    similarity_fn: SimilarityFn = ngram_cosine_similarity,
) -> list[list[float]]:
    """Return an N x N symmetric matrix with a unit diagonal.

    Only the upper triangle is computed; the lower one is mirrored from it, so
    an asymmetric similarity function cannot break symmetry. Values are
    clamped to [0, 1].
    """

    size = len(texts)
    matrix = [[0.0] * size for _ in range(size)]
    for row in range(size):
        matrix[row][row] = 1.0
        for column in range(row + 1, size):
            value = _clamp(similarity_fn(texts[row], texts[column]))
            matrix[row][column] = value
            matrix[column][row] = value
    return matrix


def mean_similarity_to_others(matrix: Sequence[Sequence[float]], index: int) -> float:
    others = [value for column, value in enumerate(matrix[index]) if column != index]
    if not others:
        return 0.0
    return sum(others) / len(others)


def _clamp(value: float) -> float:
    if math.isnan(value):
        return 0.0
    return max(0.0, min(1.0, float(value)))


_DEFAULT_EMBEDDER = HashingEmbedder()
