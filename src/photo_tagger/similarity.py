"""Cosine similarity ranking over stored embedding vectors."""

from __future__ import annotations

from collections.abc import Hashable, Mapping
from dataclasses import dataclass
from typing import Generic, TypeVar

import numpy as np

IdT = TypeVar("IdT", bound=Hashable)


@dataclass(frozen=True)
class SimilarResult(Generic[IdT]):
    photo_id: IdT
    score: float


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    """Return ``dot(a, b) / (|a| |b|)``, or ``0.0`` when either vector has zero magnitude."""

    left = np.asarray(a, dtype=np.float64)
    right = np.asarray(b, dtype=np.float64)
    if left.shape != right.shape:
        raise ValueError(f"vector shapes differ: {left.shape} vs {right.shape}")
    norm = float(np.linalg.norm(left)) * float(np.linalg.norm(right))
    if norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / norm)


def rank_similar(
    query_id: IdT,
    query_vector: np.ndarray,
    population: Mapping[IdT, np.ndarray],
    top_k: int,
) -> list[SimilarResult[IdT]]:
    """Return up to ``top_k`` members of ``population`` closest to ``query_vector``.

    Every candidate is scored (full scan). The query itself is excluded and
    ties are broken by ascending identifier so repeated calls agree.
    """

    query = np.asarray(query_vector, dtype=np.float64).ravel()
    candidates = [key for key in population if key != query_id]
    if top_k <= 0 or not candidates:
        return []

    rows = []
    for key in candidates:
        row = np.asarray(population[key], dtype=np.float64).ravel()
        if row.size != query.size:
            raise ValueError(f"embedding for {key!r} has {row.size} values, expected {query.size}")
        rows.append(row)
    matrix = np.stack(rows)

    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    scores = np.divide(dots, norms, out=np.zeros_like(dots), where=norms > 0.0)

    ranked = sorted(zip(candidates, scores.tolist()), key=lambda pair: (-pair[1], pair[0]))
    return [SimilarResult(photo_id=key, score=float(score)) for key, score in ranked[:top_k]]


__all__ = ["SimilarResult", "cosine_similarity", "rank_similar"]
