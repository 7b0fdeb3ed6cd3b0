"""
Symmetric int8 quantization of embedding vectors.

Each vector is stored as ``dim`` signed bytes plus one float scale:
``scale = max|v| / 127`` and ``q[i] = round(v[i] / scale)`` clamped to
[-127, 127]. Cosine similarity is scale-invariant, so similarities computed
on the int8 codes equal those on the dequantized vector.
"""

from dataclasses import dataclass
from typing import Sequence, Union

import numpy as np

VectorLike = Union[Sequence[float], np.ndarray]


@dataclass(frozen=True)
class QuantizedVector:
    """int8 codes plus scale. Equality compares the byte codes and scale."""

    q8: bytes
    scale: float

    @property
    def dim(self) -> int:
        return len(self.q8)

    def to_array(self) -> np.ndarray:
        return dequantize(self.q8, self.scale)


def quantize(vector: VectorLike) -> QuantizedVector:
    arr = np.asarray(vector, dtype=np.float32).ravel()
    if arr.size == 0:
        return QuantizedVector(b"", 1.0)
    max_abs = float(np.max(np.abs(arr)))
    scale = max_abs / 127.0 if max_abs > 0 else 1.0
    codes = np.clip(np.rint(arr / scale), -127, 127).astype(np.int8)
    return QuantizedVector(codes.tobytes(), scale)


def dequantize(q8: bytes, scale: float) -> np.ndarray:
    return np.frombuffer(q8, dtype=np.int8).astype(np.float32) * np.float32(scale)


def cosine_similarity(a: VectorLike, b: VectorLike) -> float:
    """Cosine of two vectors; 0.0 when lengths differ or either is zero."""
    va = np.asarray(a, dtype=np.float32).ravel()
    vb = np.asarray(b, dtype=np.float32).ravel()
    if va.size != vb.size or va.size == 0:
        return 0.0
    norm = float(np.linalg.norm(va)) * float(np.linalg.norm(vb))
    if norm == 0.0:
        return 0.0
    return float(np.dot(va, vb) / norm)
