"""Cosine similarity with a faiss-accelerated path and a numpy fallback.

faiss computes inner products with BLAS/SIMD kernels; numpy is the
portable path. Inputs are L2-normalized first so inner product equals
cosine similarity. Both paths agree to within float32 rounding.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Any

import faiss
import numpy as np
import structlog

from tabrecall.core.errors import ConfigurationError

log = structlog.get_logger()

Vector = Sequence[float] | np.ndarray[Any, Any]


def as_matrix(vectors: Sequence[Vector] | np.ndarray[Any, Any]) -> np.ndarray[Any, Any]:
    """Stack vectors into a contiguous float32 matrix (rows = vectors)."""
    matrix = np.ascontiguousarray(np.asarray(vectors, dtype=np.float32))
    if matrix.ndim == 1:
        matrix = matrix.reshape(1, -1)
    if matrix.ndim != 2:
        raise ConfigurationError.invalid_vector(f"expected 2-D input, got {matrix.ndim}-D")
    return matrix


def normalize_rows(matrix: np.ndarray[Any, Any]) -> np.ndarray[Any, Any]:
    """L2-normalize rows in numpy. Zero rows stay zero."""
    norms = np.linalg.norm(matrix, axis=1, keepdims=True)
    norms[norms == 0] = 1.0
    return (matrix / norms).astype(np.float32, copy=False)


def cosine(a: Vector, b: Vector) -> float:
    """Scalar cosine similarity of two vectors (portable path)."""
    va = np.asarray(a, dtype=np.float32)
    vb = np.asarray(b, dtype=np.float32)
    if va.shape != vb.shape:
        raise ConfigurationError.dimension_mismatch(va.shape[-1], vb.shape[-1])
    na = float(np.linalg.norm(va))
    nb = float(np.linalg.norm(vb))
    if na == 0.0 or nb == 0.0:
        return 0.0
    return float(np.dot(va, vb) / (na * nb))


class SimilarityMath:
    """Batch and matrix cosine similarity.

    ``accelerated`` starts on and flips off permanently after the first
    faiss failure, so a broken native build costs one warning, not one per call.
    """

    def __init__(self, *, accelerated: bool = True) -> None:
        self.accelerated = accelerated

    def matrix(
        self,
        queries: Sequence[Vector] | np.ndarray[Any, Any],
        keys: Sequence[Vector] | np.ndarray[Any, Any],
    ) -> np.ndarray[Any, Any]:
        """Similarity of every query row against every key row."""
        q = as_matrix(queries)
        k = as_matrix(keys)
        if q.shape[1] != k.shape[1]:
            raise ConfigurationError.dimension_mismatch(q.shape[1], k.shape[1])
        if self.accelerated:
            try:
                return self._matrix_faiss(q, k)
            except Exception as e:
                self.accelerated = False
                log.warning("similarity.accelerated_disabled", error=str(e))
        return self._matrix_numpy(q, k)

    def batch(self, pairs: Sequence[tuple[Vector, Vector]]) -> list[float]:
        """Similarity of each (a, b) pair."""
        if not pairs:
            return []
        a = as_matrix([p[0] for p in pairs])
        b = as_matrix([p[1] for p in pairs])
        if a.shape != b.shape:
            raise ConfigurationError.dimension_mismatch(a.shape[1], b.shape[1])
        if self.accelerated:
            try:
                return self._rowwise_faiss(a, b)
            except Exception as e:
                self.accelerated = False
                log.warning("similarity.accelerated_disabled", error=str(e))
        an = normalize_rows(a)
        bn = normalize_rows(b)
        return [float(x) for x in np.clip(np.einsum("ij,ij->i", an, bn), -1.0, 1.0)]

    def against(self, query: Vector, keys: Sequence[Vector]) -> list[float]:
        """Similarity of one query against many keys."""
        if not keys:
            return []
        return [float(x) for x in self.matrix([query], keys)[0]]

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    @staticmethod
    def _matrix_faiss(q: np.ndarray[Any, Any], k: np.ndarray[Any, Any]) -> np.ndarray[Any, Any]:
        qn = q.copy()
        kn = k.copy()
        faiss.normalize_L2(qn)
        faiss.normalize_L2(kn)
        scores = faiss.pairwise_distances(qn, kn, metric=faiss.METRIC_INNER_PRODUCT)
        return np.clip(scores, -1.0, 1.0)

    @staticmethod
    def _matrix_numpy(q: np.ndarray[Any, Any], k: np.ndarray[Any, Any]) -> np.ndarray[Any, Any]:
        return np.clip(normalize_rows(q) @ normalize_rows(k).T, -1.0, 1.0)

    @staticmethod
    def _rowwise_faiss(a: np.ndarray[Any, Any], b: np.ndarray[Any, Any]) -> list[float]:
        an = a.copy()
        bn = b.copy()
        faiss.normalize_L2(an)
        faiss.normalize_L2(bn)
        out = np.einsum("ij,ij->i", an, bn)
        return [float(x) for x in np.clip(out, -1.0, 1.0)]
