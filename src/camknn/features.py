from __future__ import annotations
import numpy as np

def l2_norm(x) -> float:
    x = np.asarray(x, dtype=np.float64).reshape(-1)
    return float(np.sqrt(np.sum(x * x)))

def squash_and_normalize(logits, denominator: float = 300.0) -> np.ndarray:
    """Scale raw logits by a fixed denominator, then normalize to unit length.

    The output is what gets stored and queried, so a dot product between two
    outputs is their cosine similarity.
    """
    x = np.asarray(logits, dtype=np.float32).reshape(-1)
    squashed = x / np.float32(denominator)
    norm = np.sqrt(np.sum(squashed * squashed))
    if not np.isfinite(norm) or norm == 0.0:
        raise ValueError("cannot normalize a zero or non-finite logits vector")
    return (squashed / norm).astype(np.float32)

def stack_rows(vectors: list[np.ndarray], feature_size: int) -> np.ndarray:
    if not vectors:
        return np.empty((0, feature_size), dtype=np.float32)
    return np.stack(vectors, axis=0).astype(np.float32, copy=False)
