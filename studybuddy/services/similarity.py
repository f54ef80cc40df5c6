import numpy as np
from studybuddy.services.errors import DimensionMismatch


def cosine_similarity(a, b):
    """
    Cosine similarity of two equal-length vectors, in [-1, 1].

    Returns 0.0 when either vector has zero magnitude.
    Raises DimensionMismatch if the lengths differ.
    """
    va = np.asarray(a, dtype=np.float64).ravel()
    vb = np.asarray(b, dtype=np.float64).ravel()
    if va.shape[0] != vb.shape[0]:
        raise DimensionMismatch(f"Vectors have different dimensions: {va.shape[0]} != {vb.shape[0]}")

    norm_a = np.linalg.norm(va)
    norm_b = np.linalg.norm(vb)
    if norm_a == 0.0 or norm_b == 0.0:
        return 0.0

    sim = float(np.dot(va, vb) / (norm_a * norm_b))
    # Rounding can push |sim| a hair past 1 for parallel vectors
    return max(-1.0, min(1.0, sim))
