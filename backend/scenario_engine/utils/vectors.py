"""Embedding blob encoding and small time helpers shared by models and services."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Sequence

import numpy as np


def encode_vector(values: Sequence[float] | np.ndarray) -> tuple[bytes, int]:
    """Return the float32 blob and dimensionality for a vector."""

    array = np.asarray(values, dtype=np.float32).reshape(-1)
    return array.tobytes(), int(array.size)


def decode_vector(blob: bytes | None, dim: int | None = None) -> np.ndarray | None:
    if not blob:
        return None
    array = np.frombuffer(blob, dtype=np.float32)
    if dim and array.size > dim:
        array = array[:dim]
    return array.astype(np.float32, copy=False)


def l2_normalise(matrix: np.ndarray) -> np.ndarray:
    """Row-normalise a matrix; zero rows stay zero."""

    matrix = np.asarray(matrix, dtype=np.float64)
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    safe = np.where(norms > 0.0, norms, 1.0)
    return matrix / safe


def utcnow() -> datetime:
    return datetime.now(timezone.utc)
