"""Cosine similarity scoring and top-K ranking.

Zero-norm vectors score 0.0 against anything so that an empty or malformed
embedding never poisons a ranking with NaN.
"""
from dataclasses import dataclass
from typing import List, Sequence

import numpy as np

from clinrag.errors import DimensionMismatch


@dataclass(frozen=True)
class Match:
    """A scored candidate, referenced by its position in the input."""

    index: int
    score: float


def _as_vector(values: Sequence[float]) -> np.ndarray:
    return np.asarray(values, dtype=np.float64).reshape(-1)


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors, in ``[-1, 1]``.

    Raises:
        DimensionMismatch: If the vectors have different lengths
    """
    va = _as_vector(a)
    vb = _as_vector(b)

    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(
            f"Vector dimension mismatch: {va.shape[0]} != {vb.shape[0]}"
        )

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0 or norm_b == 0:
        return 0.0

    score = float(np.dot(va, vb) / (norm_a * norm_b))
    return max(-1.0, min(1.0, score))


def score_all(query: Sequence[float], candidates: Sequence[Sequence[float]]) -> np.ndarray:
    """Score every candidate against the query in one matrix product.

    Returns:
        Array of scores aligned with ``candidates``

    Raises:
        DimensionMismatch: If any candidate's length differs from the query's
    """
    q = _as_vector(query)
    if len(candidates) == 0:
        return np.zeros(0, dtype=np.float64)

    for position, candidate in enumerate(candidates):
        if len(candidate) != q.shape[0]:
            raise DimensionMismatch(
                f"Candidate {position} has dimension {len(candidate)}, "
                f"query has {q.shape[0]}"
            )

    matrix = np.asarray(candidates, dtype=np.float64).reshape(len(candidates), q.shape[0])

    q_norm = np.linalg.norm(q)
    if q_norm == 0:
        return np.zeros(len(candidates), dtype=np.float64)

    norms = np.linalg.norm(matrix, axis=1)
    dots = matrix @ q

    scores = np.zeros(len(candidates), dtype=np.float64)
    nonzero = norms > 0
    scores[nonzero] = dots[nonzero] / (norms[nonzero] * q_norm)
    return np.clip(scores, -1.0, 1.0)


def rank(scores: Sequence[float], k: int) -> List[Match]:
    """Order pre-computed scores descending; ties keep input order."""
    if k <= 0 or len(scores) == 0:
        return []

    values = np.asarray(scores, dtype=np.float64)
    order = np.argsort(-values, kind="stable")[:k]
    return [Match(index=int(i), score=float(values[i])) for i in order]


def top_k(
    query: Sequence[float], candidates: Sequence[Sequence[float]], k: int
) -> List[Match]:
    """Return the ``k`` best-scoring candidates, best first.

    Args:
        query: Query vector
        candidates: Candidate vectors
        k: Maximum number of results; ``k <= 0`` yields ``[]``

    Returns:
        At most ``min(k, len(candidates))`` matches
    """
    if k <= 0:
        return []
    return rank(score_all(query, candidates), k)
