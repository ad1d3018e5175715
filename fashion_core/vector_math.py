"""
Numeric primitives for comparing embedding vectors.
"""

import math
from typing import Optional, Sequence

import numpy as np

from fashion_core.errors import DimensionMismatch, InvalidInput


def validate_vector(vector: Sequence[float], dimension: Optional[int] = None) -> np.ndarray:
    """
    Validate an embedding vector and return it as a float64 array.

    Args:
        vector: The vector to check.
        dimension: Expected length, if the caller has a fixed dimensionality.

    Returns:
        np.ndarray: A one-dimensional float64 copy of the vector.

    Raises:
        InvalidInput: If the vector is empty, not one-dimensional or holds non-finite values.
        DimensionMismatch: If ``dimension`` is given and the length differs.
    """
    try:
        array = np.asarray(vector, dtype=np.float64)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Vector is not numeric: {e}") from e

    if array.ndim != 1:
        raise InvalidInput(f"Vector must be one-dimensional, got shape {array.shape}")
    if array.size == 0:
        raise InvalidInput("Vector must not be empty")
    if not np.all(np.isfinite(array)):
        raise InvalidInput("Vector contains NaN or infinite values")
    if dimension is not None and array.size != dimension:
        raise DimensionMismatch(expected=dimension, actual=int(array.size))
    return array


def cosine_similarity(a: Sequence[float], b: Sequence[float]) -> float:
    """
    Cosine similarity between two vectors of equal length.

    Returns 0.0 when either vector has zero norm. The result is clamped to
    [-1.0, 1.0] to absorb floating-point drift.

    Raises:
        DimensionMismatch: If the vectors differ in length.
        InvalidInput: If either vector is empty or non-finite.
    """
    vec_a = validate_vector(a)
    vec_b = validate_vector(b)
    if vec_a.size != vec_b.size:
        raise DimensionMismatch(expected=int(vec_a.size), actual=int(vec_b.size))

    norm_a = float(np.linalg.norm(vec_a))
    norm_b = float(np.linalg.norm(vec_b))
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    similarity = float(np.dot(vec_a, vec_b)) / (norm_a * norm_b)
    if math.isnan(similarity):
        return 0.0
    return max(-1.0, min(1.0, similarity))
