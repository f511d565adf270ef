"""Souvenir: session-scoped memory for LLM agents.

Text added to a session is chunked, embedded and mined for entities and relationships,
which are merged into a per-session knowledge graph. Memories can then be searched with
vector similarity, graph traversal or a hybrid of both, and used as context to answer
questions.

The system processes text through the following pipeline:
    1. Chunking: splitting text into token-bounded or recursively split chunks
    2. Batching: debouncing added chunks and flushing them in groups, per session
    3. Extraction: embedding chunks and extracting entities and relationships with an LLM
    4. Merge: reconciling extracted entities and relationships with the stored graph
    5. Retrieval: vector, graph-neighborhood, graph-completion, graph-summary or hybrid search

Typical Usage:
    >>> from souvenir import Souvenir, SearchParam
    >>> memory = Souvenir(working_dir="./memory")
    >>> await memory.add("Alice works with Bob in Paris.", session_id="work")
    >>> await memory.force_processing("work")
    >>> results = await memory.search("Who does Alice work with?", "work", SearchParam(strategy="hybrid"))
    >>> await memory.close()

Exports:
    Souvenir: Main class for memory operations
    SouvenirConfig: Chunking, embedding, search and batching values
    SearchParam, ProcessParam: Per-call parameters
    SouvenirError and its subclasses
"""

__all__ = [
    "MergeConflictError",
    "NotFoundError",
    "ProcessParam",
    "ProviderError",
    "SearchParam",
    "Souvenir",
    "SouvenirConfig",
    "SouvenirError",
    "ValidationError",
]

from dataclasses import dataclass, field
from typing import Type

from souvenir._exceptions import MergeConflictError, NotFoundError, ProviderError, SouvenirError, ValidationError
from souvenir._llm import BaseEmbeddingService, BaseLLMService, DefaultEmbeddingService, DefaultLLMService
from souvenir._policies import (
    BaseEntityNormalizer,
    BaseGraphMergePolicy,
    DefaultGraphMergePolicy,
    EntityNormalizer_CaseFold,
)
from souvenir._services import (
    AsyncioClock,
    BaseClock,
    DefaultChunkingService,
    DefaultChunkingServiceConfig,
    DefaultGraphMergeService,
    DefaultGraphMergeServiceConfig,
    DefaultInformationExtractionService,
    DefaultRetrievalService,
    ProcessParam,
    SearchParam,
)
from souvenir._storage import BaseMemoryStore, DefaultMemoryStore, DefaultMemoryStoreConfig, PickleMemoryStoreConfig

from ._souvenir import BaseSouvenir, SouvenirConfig


@dataclass
class Souvenir(BaseSouvenir):
    """Session-scoped memory combining vector search with a knowledge graph.

    Attributes:
        config (Config): Services, store and policies of the memory. See Config.

    Example:
        >>> memory = Souvenir(
        ...     working_dir="./memory",
        ...     settings=SouvenirConfig(chunk_size=500, chunk_overlap=50, auto_process_delay=200),
        ...     config=Souvenir.Config(llm_service=MyLLM(), embedding_service=MyEmbedder()),
        ... )
    """

    @dataclass
    class Config:
        """Components of the memory pipeline.

        Service classes:
            chunking_service_cls: Splits text into chunks.
            information_extraction_service_cls: Embeds chunks and extracts entities and relationships.
            graph_merge_service_cls: Merges extraction results into the store.
            retrieval_service_cls: Answers searches and graph queries.

        Core services:
            llm_service: LLM used for extraction, summaries and answers.
            embedding_service: Embedding model; its dimension must match ``embedding_dimensions``.

        Storage:
            store: Memory store for sessions, chunks, vectors, entities and relations.

        Policies:
            entity_normalizer: Maps entity names to their comparison key.
            merge_policy: Reconciles extracted entities and relationships with the stored graph.
            merge_config: Retry behaviour of conflicting merge transactions.

        Scheduling:
            clock: Clock driving the debounce timers.
        """

        chunking_service_cls: Type[DefaultChunkingService] = field(default=DefaultChunkingService)
        information_extraction_service_cls: Type[DefaultInformationExtractionService] = field(
            default=DefaultInformationExtractionService
        )
        graph_merge_service_cls: Type[DefaultGraphMergeService] = field(default=DefaultGraphMergeService)
        retrieval_service_cls: Type[DefaultRetrievalService] = field(default=DefaultRetrievalService)

        llm_service: BaseLLMService = field(default_factory=lambda: DefaultLLMService())
        embedding_service: BaseEmbeddingService = field(default_factory=lambda: DefaultEmbeddingService())

        store: BaseMemoryStore = field(default_factory=lambda: DefaultMemoryStore(DefaultMemoryStoreConfig()))

        entity_normalizer: BaseEntityNormalizer = field(default_factory=EntityNormalizer_CaseFold)
        merge_policy: BaseGraphMergePolicy = field(default_factory=DefaultGraphMergePolicy)
        merge_config: DefaultGraphMergeServiceConfig = field(default_factory=DefaultGraphMergeServiceConfig)

        clock: BaseClock = field(default_factory=AsyncioClock)

        def __post_init__(self):
            # Merged entities must be keyed like the entities matched in queries
            if isinstance(self.merge_policy, DefaultGraphMergePolicy):
                self.merge_policy.normalizer = self.entity_normalizer

    config: Config = field(default_factory=Config)

    def __post_init__(self):
        settings = self.settings
        if self.config.embedding_service.embedding_dim != settings.embedding_dimensions:
            raise ValidationError(
                f"Embedding service produces {self.config.embedding_service.embedding_dim}-dimensional vectors, "
                f"but embedding_dimensions is {settings.embedding_dimensions}."
            )

        self.llm_service = self.config.llm_service
        self.embedding_service = self.config.embedding_service
        self.clock = self.config.clock

        self.store = self.config.store
        if isinstance(self.store.config, PickleMemoryStoreConfig):
            self.store.config.embedding_dim = settings.embedding_dimensions
            if self.working_dir is not None:
                self.store.config.working_dir = self.working_dir

        self.chunking_service = self.config.chunking_service_cls(
            DefaultChunkingServiceConfig(
                chunk_size=settings.chunk_size,
                chunk_overlap=settings.chunk_overlap,
                mode=settings.chunking_mode,
                tokenizer=settings.chunking_tokenizer,
                min_characters_per_chunk=settings.min_characters_per_chunk,
            )
        )
        self.information_extraction_service = self.config.information_extraction_service_cls(
            normalizer=self.config.entity_normalizer, embedding_dim=settings.embedding_dimensions
        )
        self.graph_merge_service = self.config.graph_merge_service_cls(
            merge_policy=self.config.merge_policy, config=self.config.merge_config
        )
        self.retrieval_service = self.config.retrieval_service_cls(
            store=self.store,
            embedding_service=self.embedding_service,
            normalizer=self.config.entity_normalizer,
        )
