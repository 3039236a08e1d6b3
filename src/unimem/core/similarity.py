"""
Vector similarity helpers.
"""

from typing import Optional, Sequence

import numpy as np


def cosine_similarity(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> float:
    """
    Cosine similarity between two vectors.

    Returns 0.0 instead of raising when the vectors differ in length, are
    empty, or either has zero magnitude. The result is clipped to [-1, 1]
    to absorb floating point drift.
    """
    if a is None or b is None:
        return 0.0
    va = np.asarray(a, dtype=np.float64)
    vb = np.asarray(b, dtype=np.float64)
    if va.shape != vb.shape or va.size == 0:
        return 0.0

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    return float(np.clip(np.dot(va, vb) / (norm_a * norm_b), -1.0, 1.0))


def normalize(vector: Sequence[float]) -> list:
    """Scale a vector to unit length (zero vectors are returned unchanged)."""
    v = np.asarray(vector, dtype=np.float64)
    norm = np.linalg.norm(v)
    if norm == 0.0:
        return v.tolist()
    return (v / norm).tolist()
