"""Ranking and filtering policy implementations.

Ranking policies operate on CSR row vectors of scores, where most candidates have a zero
score. The retrieval service applies them in sequence:

    - Threshold: drops every candidate below the minimum relevance score
    - Top-K: keeps at most K candidates, preferring more recent ones among equal scores
"""

from dataclasses import dataclass, field
from typing import Optional

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix

from ._base import BaseRankingPolicy


class RankingPolicy_WithThreshold(BaseRankingPolicy):  # noqa: N801
    """Ranking policy using minimum score threshold and maximum count limits.

    Example:
        With threshold=0.7 and max_entities=128, every score < 0.7 is removed and, if more
        than 128 remain, only the 128 best are kept.
    """

    @dataclass
    class Config:
        """Configuration for threshold-based ranking.

        Attributes:
            threshold: Minimum score required to keep a result. Scores equal to it are kept.
            max_entities: Maximum number of results that pass the policy.
        """

        threshold: float = field(default=0.05)
        max_entities: int = field(default=128)

    config: Config = field()

    def __call__(self, scores: csr_matrix, tie_breaker: Optional[npt.NDArray[np.float64]] = None) -> csr_matrix:
        scores = super().__call__(scores, tie_breaker)
        scores.data[scores.data < self.config.threshold] = 0
        scores.eliminate_zeros()

        if scores.nnz > self.config.max_entities:
            scores = RankingPolicy_TopK(RankingPolicy_TopK.Config(top_k=self.config.max_entities))(
                scores, tie_breaker
            )
        return scores


class RankingPolicy_TopK(BaseRankingPolicy):  # noqa: N801
    """Ranking policy that keeps only the top K highest-scoring results.

    When a tie breaker is given (e.g. creation timestamps indexed like the columns),
    candidates with equal scores are kept in decreasing tie-breaker order.
    """

    @dataclass
    class Config:
        """Configuration for top-K ranking.

        Attributes:
            top_k: Number of top results to return.
        """

        top_k: int = field(default=10)

    config: Config = field()

    def __call__(self, scores: csr_matrix, tie_breaker: Optional[npt.NDArray[np.float64]] = None) -> csr_matrix:
        scores = super().__call__(scores, tie_breaker)
        scores.eliminate_zeros()
        if scores.nnz <= self.config.top_k:
            return scores

        scores.sort_indices()
        secondary = (
            np.asarray(tie_breaker, dtype=np.float64)[scores.indices]
            if tie_breaker is not None
            else np.zeros(scores.nnz)
        )
        order = np.lexsort((-secondary, -scores.data))
        scores.data[order[self.config.top_k:]] = 0
        scores.eliminate_zeros()
        return scores
