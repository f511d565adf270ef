__all__ = [
    "BaseEntityNormalizer",
    "BaseGraphMergePolicy",
    "BaseRankingPolicy",
    "DefaultGraphMergePolicy",
    "EntityNormalizer_CaseFold",
    "RankingPolicy_TopK",
    "RankingPolicy_WithThreshold",
]

from ._base import BaseEntityNormalizer, BaseGraphMergePolicy, BaseRankingPolicy
from ._graph_upsert import DefaultGraphMergePolicy, EntityNormalizer_CaseFold
from ._ranking import RankingPolicy_TopK, RankingPolicy_WithThreshold
