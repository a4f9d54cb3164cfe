from __future__ import annotations

from typing import Hashable, Sequence

import numpy as np


def as_vector(v) -> np.ndarray:
    return np.asarray(v, dtype=np.float32).reshape(-1)


def cosine_similarity(a, b) -> float:
    """Cosine similarity in [-1, 1]; 0.0 for empty, zero or mismatched vectors."""
    a = as_vector(a)
    b = as_vector(b)
    if a.size == 0 or a.shape != b.shape:
        return 0.0
    na = float(np.linalg.norm(a))
    nb = float(np.linalg.norm(b))
    if na == 0.0 or nb == 0.0:
        return 0.0
    sim = float(np.dot(a, b)) / (na * nb)
    return max(-1.0, min(1.0, sim))


def normalize(v) -> np.ndarray:
    v = as_vector(v)
    n = float(np.linalg.norm(v))
    if n == 0.0:
        return v
    return v / n


def centroid(vectors: Sequence) -> np.ndarray:
    """Normalized mean of a set of vectors."""
    return normalize(np.mean(np.stack([as_vector(v) for v in vectors]), axis=0))


def top_k_by_cosine(query_vec, corpus: Sequence[tuple[Hashable, Sequence[float]]],
                    k: int | None = None) -> list[tuple[Hashable, float]]:
    """
    Rank (id, vector) pairs by cosine similarity to query_vec, descending.

    Ties keep corpus order (list.sort is stable, also with reverse=True).
    """
    scores = [(item_id, cosine_similarity(query_vec, v)) for item_id, v in corpus]
    scores.sort(key=lambda x: x[1], reverse=True)
    if k is None:
        return scores
    return scores[:max(k, 0)]

