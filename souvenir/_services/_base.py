"""Base service classes for the souvenir memory pipeline.

This module defines the contracts of the services that make up the pipeline:

1. BaseChunkingService: Splits ingested text into chunks
2. BaseInformationExtractionService: Embeds chunks and extracts entities and relationships
3. BaseGraphMergeService: Reconciles extraction results with the stored graph
4. BaseRetrievalService: Answers searches with one of the retrieval strategies

It also defines the per-call parameter objects shared by the services and by the
``Souvenir`` front-end.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple, Union

from souvenir._llm import BaseEmbeddingService, BaseLLMService
from souvenir._policies._base import BaseEntityNormalizer, BaseGraphMergePolicy
from souvenir._policies._graph_upsert import EntityNormalizer_CaseFold
from souvenir._storage._base import BaseMemoryStore
from souvenir._types import (
    TChunk,
    TEntity,
    TExtractionFailure,
    TExtractionResult,
    TGraphPath,
    TId,
    TRelation,
    TRetrievalResult,
    TRetrievalStrategy,
    TSubgraph,
)


@dataclass
class ProcessParam:
    """Parameters for processing chunks (extraction and merge).

    Attributes:
        extract_entities (bool): Ask the LLM for entities and relationships. When False,
            chunks are only embedded. Defaults to True.
        generate_summaries (bool): Generate a summary for every chunk and store it in the
            chunk metadata. Defaults to False.
        summary_max_length (int): Maximum length of a summary, in characters. Defaults to 200.
        prompts (Dict[str, str]): Templates overriding entries of PROMPTS for this call.
        show_progress (bool): Display a progress bar while merging. Defaults to False.
    """

    extract_entities: bool = field(default=True)
    generate_summaries: bool = field(default=False)
    summary_max_length: int = field(default=200)
    prompts: Dict[str, str] = field(default_factory=dict)
    show_progress: bool = field(default=False)


@dataclass
class SearchParam:
    """Parameters for controlling a search.

    Attributes:
        strategy (TRetrievalStrategy): One of "vector", "graph-neighborhood",
            "graph-completion", "graph-summary" and "hybrid". Defaults to "vector".
        max_results (Optional[int]): Maximum number of results, None uses the configured value.
        min_relevance_score (Optional[float]): Minimum score of a result, None uses the
            configured value.
        max_hops (int): Graph distance explored around the entities matched in the query.
        completion_weight_threshold (float): Normalized edge weight that an edge must exceed
            to be traversed by graph-completion.
        vector_weight (float): Weight of the normalized vector score in hybrid search.
        graph_weight (float): Weight of the normalized graph score in hybrid search.
        wait_for_pending (bool): Wait for the in-flight flush of the session before searching.
    """

    strategy: TRetrievalStrategy = field(default="vector")
    max_results: Optional[int] = field(default=None)
    min_relevance_score: Optional[float] = field(default=None)
    max_hops: int = field(default=1)
    completion_weight_threshold: float = field(default=0.5)
    vector_weight: float = field(default=1.0)
    graph_weight: float = field(default=1.0)
    wait_for_pending: bool = field(default=True)


@dataclass
class BaseChunkingService:
    """Base class for text chunking services.

    Chunking is a pure function of the text and the configuration: calling ``chunk``
    twice with the same input yields the same chunks with the same ids.
    """

    def chunk(
        self, text: str, session_id: TId, source_id: Optional[TId] = None, metadata: Optional[Dict[str, Any]] = None
    ) -> List[TChunk]:
        """Split ``text`` into ordered chunks belonging to ``session_id``."""
        raise NotImplementedError


@dataclass
class BaseInformationExtractionService:
    """Base class for the extraction stage.

    Attributes:
        normalizer: Entity normalizer, used to recognize self-referencing relationships.
    """

    normalizer: BaseEntityNormalizer = field(default_factory=EntityNormalizer_CaseFold)

    async def extract(
        self,
        llm: BaseLLMService,
        embedding_service: BaseEmbeddingService,
        chunks: List[TChunk],
        params: ProcessParam,
    ) -> List[Union[TExtractionResult, TExtractionFailure]]:
        """Extract every chunk, returning one result or failure marker per chunk, in order."""
        raise NotImplementedError


@dataclass
class BaseGraphMergeService:
    """Base class for merging extraction results into the store.

    Attributes:
        merge_policy: Policy deciding how entities and relationships are reconciled.
    """

    merge_policy: BaseGraphMergePolicy = field()

    async def merge(self, store: BaseMemoryStore, result: TExtractionResult) -> Tuple[List[TEntity], List[TRelation]]:
        raise NotImplementedError


@dataclass
class BaseRetrievalService:
    """Base class for retrieval services.

    Attributes:
        store: The memory store searched.
        embedding_service: Service used to embed queries.
        normalizer: Entity normalizer, used to match entity names inside queries.
    """

    store: BaseMemoryStore = field()
    embedding_service: BaseEmbeddingService = field()
    normalizer: BaseEntityNormalizer = field(default_factory=EntityNormalizer_CaseFold)

    async def search(
        self, session_id: TId, query: str, params: SearchParam, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        raise NotImplementedError

    async def get_context(self, session_id: TId, results: List[TRetrievalResult]) -> str:
        raise NotImplementedError

    async def get_neighborhood(self, session_id: TId, entity_name: str, depth: int = 2) -> TSubgraph:
        raise NotImplementedError

    async def find_paths(
        self, session_id: TId, source_name: str, target_name: str, max_depth: int = 5
    ) -> List[TGraphPath]:
        raise NotImplementedError

    async def find_clusters(self, session_id: TId, min_size: int = 3) -> List[List[TEntity]]:
        raise NotImplementedError
