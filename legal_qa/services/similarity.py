# =============================================================================
# Similarity Engine — Cosine Math Over Embedding Vectors
# =============================================================================
#
# The one place where vector similarity is computed. Used by:
#   - the legal adviser, to pick prior answers as prompt context
#   - the "find similar responses" read path
#   - answer clustering
#
# pgvector only preselects a bounded candidate pool by cosine distance
# (db/repository.py); every threshold and ordering decision is made here.
#
# DESIGN DECISION: numpy for the math. Candidate pools are a few dozen
# 1536-dimensional vectors, so a single matrix-vector product per call is
# both simple and fast.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass

import numpy as np

logger = logging.getLogger(__name__)

Vector = Sequence[float] | np.ndarray


@dataclass(frozen=True)
class Neighbor:
    """A candidate that passed the similarity threshold."""

    index: int         # Position in the candidate list given by the caller
    similarity: float  # Cosine similarity to the query vector


# ---------------------------------------------------------------------------
# Core math
# ---------------------------------------------------------------------------


def _as_matrix(vectors: Sequence[Vector] | np.ndarray) -> np.ndarray:
    matrix = np.asarray(vectors, dtype=np.float64)
    if matrix.ndim != 2:
        raise ValueError("Expected a sequence of equal-length vectors")
    return matrix


def _similarities(query: Vector, matrix: np.ndarray) -> np.ndarray:
    """
    Cosine similarity of `query` against every row of `matrix`.

    Rows (or a query) with zero magnitude score 0 instead of dividing by zero.
    """
    q = np.asarray(query, dtype=np.float64)
    if q.ndim != 1 or matrix.shape[1] != q.shape[0]:
        raise ValueError(
            f"Vectors must have the same length "
            f"(query={q.shape[-1] if q.ndim else 0}, candidates={matrix.shape[1]})"
        )

    q_norm = np.linalg.norm(q)
    row_norms = np.linalg.norm(matrix, axis=1)
    denominators = row_norms * q_norm

    scores = np.zeros(matrix.shape[0], dtype=np.float64)
    nonzero = denominators > 0
    if nonzero.any():
        scores[nonzero] = (matrix[nonzero] @ q) / denominators[nonzero]
    # Rounding can push identical vectors a hair past 1.0
    return np.clip(scores, -1.0, 1.0)


def cosine_similarity(a: Vector, b: Vector) -> float:
    """
    dot(a, b) / (‖a‖·‖b‖), or 0.0 when either vector has zero magnitude.

    Raises:
        ValueError: If the vectors differ in length.
    """
    b_arr = np.asarray(b, dtype=np.float64)
    if b_arr.ndim != 1:
        raise ValueError("Expected a one-dimensional vector")
    return float(_similarities(a, b_arr.reshape(1, -1))[0])


# ---------------------------------------------------------------------------
# Retrieval
# ---------------------------------------------------------------------------


def nearest_neighbors(
    query: Vector,
    candidates: Sequence[Vector],
    threshold: float,
    limit: int | None = None,
) -> list[Neighbor]:
    """
    Candidates whose similarity to `query` is at least `threshold`.

    Results are sorted by similarity, highest first. Candidates with equal
    scores keep their input order.

    Args:
        query: The query vector.
        candidates: Vectors to compare against.
        threshold: Minimum cosine similarity (inclusive).
        limit: Optional cap on the number of results.

    Returns:
        List of Neighbor(index, similarity).
    """
    if len(candidates) == 0:
        return []

    scores = _similarities(query, _as_matrix(candidates))
    passing = [
        Neighbor(index=i, similarity=float(score))
        for i, score in enumerate(scores)
        if score >= threshold
    ]
    # list.sort is stable, so ties keep input order
    passing.sort(key=lambda n: n.similarity, reverse=True)

    if limit is not None:
        passing = passing[:limit]
    return passing


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------


def cluster(vectors: Sequence[Vector], threshold: float = 0.85) -> list[list[int]]:
    """
    Single-pass greedy clustering in input order.

    Each vector not yet assigned seeds a new cluster. Every later unassigned
    vector joins it when its similarity to the SEED (not to the cluster
    average) is at least `threshold`. Clusters with a single member are
    dropped, so the output only contains groups of two or more.

    Returns:
        Lists of indices into `vectors`; every index appears at most once.
    """
    if len(vectors) == 0:
        return []

    matrix = _as_matrix(vectors)
    visited = np.zeros(matrix.shape[0], dtype=bool)
    clusters: list[list[int]] = []

    for seed in range(matrix.shape[0]):
        if visited[seed]:
            continue
        visited[seed] = True
        members = [seed]

        rest = np.arange(seed + 1, matrix.shape[0])
        rest = rest[~visited[rest]]
        if rest.size:
            scores = _similarities(matrix[seed], matrix[rest])
            for idx in rest[scores >= threshold]:
                visited[idx] = True
                members.append(int(idx))

        if len(members) > 1:
            clusters.append(members)

    logger.debug(
        "Clustered %d vectors into %d groups (threshold=%.2f)",
        matrix.shape[0], len(clusters), threshold,
    )
    return clusters


def centroid(vectors: Sequence[Vector]) -> list[float] | None:
    """
    Component-wise mean of `vectors`, L2-normalised.

    Returns None for empty input. A mean of zero magnitude is returned as is.
    """
    if len(vectors) == 0:
        return None

    mean = _as_matrix(vectors).mean(axis=0)
    norm = np.linalg.norm(mean)
    if norm == 0:
        return mean.tolist()
    return (mean / norm).tolist()
