"""Utility functions for the souvenir library.

This module provides:
- The library logger
- Stable identifiers built with xxhash
- Event loop management for the synchronous wrappers
- Vector and sparse score helpers used by the retrieval service
"""

import asyncio
import logging
from typing import Optional, Tuple

import numpy as np
import numpy.typing as npt
import xxhash
from scipy.sparse import csr_matrix, diags

# Logger for souvenir operations
logger = logging.getLogger("souvenir")


def make_id(*parts: object) -> str:
    """Build a stable hexadecimal identifier from the given parts.

    Example:
        >>> make_id("session", "alice") == make_id("session", "alice")
        True
    """
    return xxhash.xxh3_64_hexdigest("\x1f".join(str(p) for p in parts).encode("utf-8"))


def get_event_loop() -> asyncio.AbstractEventLoop:
    """Get or create an asyncio event loop for the current thread.

    Returns:
        asyncio.AbstractEventLoop: The current or newly created event loop
    """
    try:
        # If there is already an event loop, use it.
        loop = asyncio.get_event_loop()
    except RuntimeError:
        # If in a sub-thread, create a new event loop.
        loop = asyncio.new_event_loop()
        asyncio.set_event_loop(loop)
    return loop


def cosine_similarity(
    query: npt.NDArray[np.float32], matrix: npt.NDArray[np.float32]
) -> npt.NDArray[np.float32]:
    """Cosine similarity between a query vector and every row of ``matrix``.

    Zero vectors get a similarity of 0 instead of NaN.

    Args:
        query: Vector of shape (d,) or (1, d).
        matrix: Matrix of shape (n, d).

    Returns:
        Array of shape (n,).
    """
    if matrix.shape[0] == 0:
        return np.array([], dtype=np.float32)
    query = np.asarray(query, dtype=np.float32).reshape(-1)
    matrix = np.asarray(matrix, dtype=np.float32)
    norms = np.linalg.norm(matrix, axis=1) * np.linalg.norm(query)
    dots = matrix @ query
    with np.errstate(divide="ignore", invalid="ignore"):
        scores = np.where(norms > 0, dots / norms, 0.0)
    return scores.astype(np.float32)


def normalize_by_max(scores: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
    """Scale scores so that the largest one is 1. All-zero (or empty) input is returned unchanged."""
    if scores.size == 0:
        return scores
    top = float(np.max(scores))
    if top <= 0:
        return scores
    return (scores / top).astype(np.float32)


def probabilistic_or(strengths: npt.NDArray[np.float32]) -> float:
    """Combine independent evidence in [0, 1] as ``1 - prod(1 - s)``."""
    if strengths.size == 0:
        return 0.0
    return float(1.0 - np.prod(1.0 - np.clip(strengths, 0.0, 1.0)))


def propagate_max_product(
    seeds: npt.NDArray[np.float32], weights: csr_matrix, hops: int, min_weight: Optional[float] = None
) -> npt.NDArray[np.float32]:
    """Spread seed strengths through a weighted adjacency matrix.

    At every hop a node receives ``max(strength[u] * weight[u, v])`` over its neighbours
    ``u`` and keeps the larger of that and its current strength.

    Args:
        seeds: Initial strengths, shape (n,).
        weights: Symmetric (n, n) CSR matrix of edge weights in [0, 1].
        hops: Number of propagation steps.
        min_weight: If given, only edges with a weight strictly above it are traversed.

    Returns:
        Final strengths, shape (n,).
    """
    strengths = np.asarray(seeds, dtype=np.float32).copy()
    if hops <= 0 or weights.nnz == 0:
        return strengths

    if min_weight is not None:
        weights = weights.copy()
        weights.data[weights.data <= min_weight] = 0
        weights.eliminate_zeros()

    for _ in range(hops):
        # Row u scaled by strength[u]; column-wise max gives the best path into v
        reached = (diags(strengths) @ weights).max(axis=0)
        reached = np.asarray(reached.toarray()).reshape(-1).astype(np.float32)
        updated = np.maximum(strengths, reached)
        if np.array_equal(updated, strengths):
            break
        strengths = updated
    return strengths


def extract_sorted_scores(
    row_vector: csr_matrix,
    recency: Optional[npt.NDArray[np.float64]] = None,
) -> Tuple[npt.NDArray[np.int64], npt.NDArray[np.float32]]:
    """Extract and sort non-zero scores from a sparse row vector.

    Args:
        row_vector (csr_matrix): A sparse CSR matrix with at most one row.
        recency: Optional array indexed like the columns of ``row_vector``; among equal
            scores, larger values (more recent timestamps) come first.

    Returns:
        Tuple containing:
            - NDArray[int64]: Indices of non-zero elements, sorted by score (descending)
            - NDArray[float32]: Corresponding scores, sorted in descending order

    Example:
        >>> scores = csr_matrix([[0, 0.9, 0, 0.5, 0]])
        >>> indices, values = extract_sorted_scores(scores)
        >>> # indices: [1, 3], values: [0.9, 0.5]
    """
    assert row_vector.shape[0] <= 1, "The input matrix must be a row vector."

    if row_vector.shape[0] == 0 or row_vector.nnz == 0:
        return np.array([], dtype=np.int64), np.array([], dtype=np.float32)

    row_vector = row_vector.tocsr()
    row_vector.sort_indices()
    indices_array = np.asarray(row_vector.indices, dtype=np.int64)
    scores_array = np.asarray(row_vector.data, dtype=np.float32)

    tie_breaker = (
        np.asarray(recency, dtype=np.float64)[indices_array] if recency is not None else np.zeros(len(indices_array))
    )
    # lexsort sorts by the last key first; negate both keys for descending order
    order = np.lexsort((-tie_breaker, -scores_array))

    return indices_array[order], scores_array[order]
