"""
Vector helpers for embedding comparison.
"""

import math
from typing import Optional, Sequence


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity of two vectors.

    Returns 0.0 when either vector has zero norm, is empty, or the dimensions
    differ (vectors from different embedding models are not comparable).
    """
    if not a or not b or len(a) != len(b):
        return 0.0

    dot = 0.0
    norm_a = 0.0
    norm_b = 0.0
    for x, y in zip(a, b):
        dot += x * y
        norm_a += x * x
        norm_b += y * y

    magnitude = math.sqrt(norm_a) * math.sqrt(norm_b)
    if magnitude == 0:
        return 0.0
    return dot / magnitude


def comparable(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> bool:
    """True when both vectors exist and share a dimension."""
    return bool(a) and bool(b) and len(a) == len(b)
