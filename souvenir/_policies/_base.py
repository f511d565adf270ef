"""Base policy classes.

Policies are pluggable strategies that control how the memory graph is written and how
search results are filtered:
- Entity normalization decides when two mentions name the same entity
- Graph merge policies reconcile an extraction result with the stored graph
- Ranking policies filter and truncate score vectors

Each policy receives a configuration object, so behaviour can be tuned without touching
the services that use it.
"""

from dataclasses import dataclass, field
from typing import Any, List, Optional, Tuple

import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix

from souvenir._storage._base import BaseMemoryStore
from souvenir._types import TEntity, TExtractionResult, TRelation


@dataclass
class BasePolicy:
    """Base class for all policy implementations.

    Attributes:
        config: Configuration object containing policy-specific parameters.
    """

    config: Any = field()


####################################################################################################
# GRAPH MERGE POLICIES
####################################################################################################


@dataclass
class BaseEntityNormalizer(BasePolicy):
    """Maps an entity name as written in the text to the key used for deduplication."""

    config: Any = field(default=None)

    def __call__(self, name: str) -> str:
        raise NotImplementedError


@dataclass
class BaseGraphMergePolicy(BasePolicy):
    """Reconciles the entities and relationships extracted from one chunk with the stored graph.

    Implementations only write through the given store and are always called inside a
    store transaction, so a failure leaves no partial merge behind.
    """

    async def __call__(
        self, store: BaseMemoryStore, result: TExtractionResult
    ) -> Tuple[List[TEntity], List[TRelation]]:
        """Merge ``result`` into ``store``.

        Returns:
            The entities and relations written (created or updated) for this chunk.
        """
        raise NotImplementedError


####################################################################################################
# RANKING POLICIES
####################################################################################################


class BaseRankingPolicy(BasePolicy):
    """Filters a (1, n) score vector. Scores that are dropped are removed from the sparse matrix."""

    def __call__(self, scores: csr_matrix, tie_breaker: Optional[npt.NDArray[np.float64]] = None) -> csr_matrix:
        assert scores.shape[0] == 1, "Ranking policies only support batch size of 1"
        return scores
