"""
Vector arithmetic over plain float sequences.
"""

import math
from typing import List, Sequence

from .exceptions import InvalidVector


def vector_norm(vector: Sequence[float]) -> float:
    """Euclidean (L2) norm."""
    return math.sqrt(sum(x * x for x in vector))


def normalize(vector: Sequence[float]) -> List[float]:
    """Scale a vector to unit length.

    A zero vector is returned unchanged instead of raising.
    """
    norm = vector_norm(vector)
    if norm == 0:
        return list(vector)
    return [x / norm for x in vector]


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """Cosine similarity in [-1, 1]; 1 means same direction.

    Raises:
        InvalidVector: On empty vectors, dimension mismatch or zero magnitude
    """
    if not a or not b:
        raise InvalidVector("Vectors cannot be empty")
    if len(a) != len(b):
        raise InvalidVector(f"Dimension mismatch: {len(a)} != {len(b)}")

    norm_a = vector_norm(a)
    norm_b = vector_norm(b)
    if norm_a == 0 or norm_b == 0:
        raise InvalidVector("Cosine similarity is undefined for zero-magnitude vectors")

    dot = sum(x * y for x, y in zip(a, b))
    similarity = dot / (norm_a * norm_b)
    return max(-1.0, min(1.0, similarity))


def cosine_distance(a: Sequence[float], b: Sequence[float]) -> float:
    """1 - cosine similarity, in [0, 2]."""
    return 1.0 - cosine_similarity(a, b)


def validate_vector(vector: Sequence[float]) -> None:
    """Reject empty vectors and non-finite components."""
    if vector is None or len(vector) == 0:
        raise InvalidVector("Vector cannot be empty")
    for i, value in enumerate(vector):
        if not isinstance(value, (int, float)) or not math.isfinite(value):
            raise InvalidVector(f"Vector component {i} is not a finite number: {value!r}")
