"""Main souvenir implementation module.

This module contains BaseSouvenir, which ties the pipeline together:
- Text ingestion and chunking
- Debounced, per-session batch processing (embedding, extraction, graph merge)
- Multi-strategy search and context formatting
- Question answering over the retrieved context
- Session, chunk and graph inspection

The asynchronous API is the primary one; ``insert`` and ``query_sync`` are synchronous
conveniences running on the current event loop.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional

from tqdm import tqdm

from souvenir._exceptions import NotFoundError, ProviderError, ValidationError
from souvenir._llm import BaseEmbeddingService, BaseLLMService, format_and_send_prompt
from souvenir._models import TAnswer
from souvenir._prompt import PROMPTS
from souvenir._services import (
    AsyncioClock,
    BaseChunkingService,
    BaseClock,
    BaseGraphMergeService,
    BaseInformationExtractionService,
    BaseRetrievalService,
    DefaultBatchScheduler,
    DefaultBatchSchedulerConfig,
    ProcessParam,
    SearchParam,
)
from souvenir._storage import BaseMemoryStore
from souvenir._types import (
    RETRIEVAL_STRATEGIES,
    TChunk,
    TChunkEmbedding,
    TChunkStatus,
    TEntity,
    TExtractionFailure,
    TGraphPath,
    TId,
    TQueryResponse,
    TRetrievalResult,
    TSession,
    TSubgraph,
)
from souvenir._utils import get_event_loop, logger

DEFAULT_SESSION_ID = "default"


@dataclass
class SouvenirConfig:
    """Values consumed by the memory pipeline.

    Attributes:
        chunk_size (int): Maximum tokens per chunk. Defaults to 1000.
        chunk_overlap (int): Tokens shared by consecutive chunks in token mode. Defaults to 200.
        chunking_mode (str): "token" or "recursive". Defaults to "token".
        chunking_tokenizer (Optional[str]): Tokenizer name ("character", "word" or a tiktoken
            encoding/model). None counts characters.
        min_characters_per_chunk (Optional[int]): Floor below which recursive chunks are
            merged into a neighbour.
        embedding_dimensions (int): Dimension of every stored vector. Defaults to 1536.
        min_relevance_score (float): Default minimum score of search results. Defaults to 0.7.
        max_results (int): Default maximum number of search results. Defaults to 10.
        auto_processing (bool): Process added chunks automatically after the debounce delay.
        auto_process_delay (int): Debounce delay in milliseconds. Defaults to 1000.
        auto_process_batch_size (int): Maximum chunks per processing group. Defaults to 10.
    """

    chunk_size: int = field(default=1000)
    chunk_overlap: int = field(default=200)
    chunking_mode: str = field(default="token")
    chunking_tokenizer: Optional[str] = field(default=None)
    min_characters_per_chunk: Optional[int] = field(default=None)
    embedding_dimensions: int = field(default=1536)
    min_relevance_score: float = field(default=0.7)
    max_results: int = field(default=10)
    auto_processing: bool = field(default=True)
    auto_process_delay: int = field(default=1000)
    auto_process_batch_size: int = field(default=10)

    def __post_init__(self):
        if self.embedding_dimensions <= 0:
            raise ValidationError(f"embedding_dimensions must be positive, got {self.embedding_dimensions}.")
        if self.max_results <= 0:
            raise ValidationError(f"max_results must be positive, got {self.max_results}.")
        if self.min_relevance_score < 0:
            raise ValidationError(f"min_relevance_score cannot be negative, got {self.min_relevance_score}.")
        if self.auto_process_delay < 0:
            raise ValidationError(f"auto_process_delay cannot be negative, got {self.auto_process_delay}.")
        if self.auto_process_batch_size <= 0:
            raise ValidationError(f"auto_process_batch_size must be positive, got {self.auto_process_batch_size}.")


@dataclass
class BaseSouvenir:
    """Core implementation of the souvenir memory.

    Text added to a session is chunked immediately and queued; chunks are processed in
    debounced batches (embedding, entity and relationship extraction, graph merge) and
    become searchable once processed.

    Attributes:
        working_dir (Optional[str]): Directory where the store is persisted. None keeps
            everything in memory.
        settings (SouvenirConfig): Chunking, embedding, search and batching values.
        process_params (ProcessParam): Parameters used by automatic (timer) flushes.
        llm_service (BaseLLMService): Service for LLM calls.
        embedding_service (BaseEmbeddingService): Service for embeddings.
        chunking_service (BaseChunkingService): Service splitting text into chunks.
        information_extraction_service (BaseInformationExtractionService): Service embedding
            chunks and extracting entities and relationships.
        graph_merge_service (BaseGraphMergeService): Service merging extractions into the store.
        retrieval_service (BaseRetrievalService): Service answering searches.
        store (BaseMemoryStore): Memory store.
        clock (BaseClock): Clock driving the debounce timers.
    """

    working_dir: Optional[str] = field(default=None)
    settings: SouvenirConfig = field(default_factory=SouvenirConfig)
    process_params: ProcessParam = field(default_factory=ProcessParam)

    llm_service: BaseLLMService = field(init=False, default_factory=lambda: BaseLLMService(model=""))
    embedding_service: BaseEmbeddingService = field(init=False, default_factory=BaseEmbeddingService)
    chunking_service: BaseChunkingService = field(init=False, default_factory=BaseChunkingService)
    information_extraction_service: BaseInformationExtractionService = field(
        init=False, default_factory=BaseInformationExtractionService
    )
    graph_merge_service: BaseGraphMergeService = field(init=False)
    retrieval_service: BaseRetrievalService = field(init=False)
    store: BaseMemoryStore = field(init=False, default_factory=BaseMemoryStore)
    clock: BaseClock = field(init=False, default_factory=AsyncioClock)

    _schedulers: Dict[TId, DefaultBatchScheduler] = field(init=False, default_factory=dict)
    _is_open: bool = field(init=False, default=False)

    ####################################################################################################
    # LIFECYCLE
    ####################################################################################################

    async def open(self) -> None:
        """Load the persisted store. Called automatically by the first operation."""
        if self._is_open:
            return
        await self.store.open()
        self._is_open = True

    async def close(self) -> None:
        """Cancel pending timers, wait for running flushes and save the store.

        Chunks that were still waiting for a flush stay pending and can be processed later
        with ``process_all``.
        """
        for scheduler in self._schedulers.values():
            await scheduler.close()
        if self._is_open:
            await self.store.close()
            self._is_open = False
        logger.info("Souvenir closed.")

    async def health_check(self) -> bool:
        """Whether the store can be opened and written to."""
        try:
            await self.open()
        except ValidationError as e:
            logger.error(f"Memory store failed to open: {e.message}")
            return False
        return await self.store.health_check()

    ####################################################################################################
    # SESSIONS
    ####################################################################################################

    async def create_session(self, session_id: TId, metadata: Optional[Dict[str, Any]] = None) -> TSession:
        """Create a session, or update the metadata of an existing one."""
        await self.open()
        session = await self.store.get_session(session_id)
        if session is None:
            session = TSession(id=session_id, metadata=dict(metadata or {}))
            logger.info(f"Created session '{session_id}'.")
        elif metadata:
            session.metadata.update(metadata)
        return await self.store.upsert_session(session)

    async def get_session(self, session_id: TId) -> TSession:
        """Get a session.

        Raises:
            NotFoundError: If the session does not exist.
        """
        await self.open()
        session = await self.store.get_session(session_id)
        if session is None:
            raise NotFoundError(f"Unknown session '{session_id}'.")
        return session

    async def list_sessions(self) -> List[TSession]:
        await self.open()
        return await self.store.get_sessions()

    ####################################################################################################
    # INGESTION
    ####################################################################################################

    async def add(
        self,
        text: str,
        session_id: TId = DEFAULT_SESSION_ID,
        metadata: Optional[Dict[str, Any]] = None,
        source_id: Optional[TId] = None,
    ) -> List[TId]:
        """Chunk a text and queue its chunks for processing.

        Chunks already stored (same session, source and content) are not queued again.

        Args:
            text (str): The text to remember.
            session_id (TId): Session the text belongs to; created if needed.
            metadata (Optional[Dict[str, Any]]): Metadata copied into every chunk.
            source_id (Optional[TId]): Identifier of the text, derived from its content when omitted.

        Returns:
            List[TId]: Ids of the chunks of the text, in order.
        """
        await self.create_session(session_id)
        chunks = self.chunking_service.chunk(text, session_id=session_id, source_id=source_id, metadata=metadata)
        if not chunks:
            return []

        inserted = await self.store.insert_chunks(chunks)
        self._scheduler(session_id).enqueue(inserted)
        logger.info(f"Added {len(chunks)} chunks ({len(inserted)} new) to session '{session_id}'.")
        return [chunk.id for chunk in chunks]

    async def force_processing(self, session_id: TId = DEFAULT_SESSION_ID, params: Optional[ProcessParam] = None) -> int:
        """Process the queued chunks of a session now, without waiting for the debounce delay.

        Returns:
            int: Number of chunks submitted for processing.
        """
        await self.open()
        return await self._scheduler(session_id).force_processing(params)

    async def process_all(self, session_id: Optional[TId] = None, params: Optional[ProcessParam] = None) -> int:
        """Process every pending or failed chunk of a session (or of every session when None).

        Returns:
            int: Number of chunks submitted for processing.
        """
        await self.open()
        if session_id is None:
            session_ids = [s.id for s in await self.store.get_sessions()]
        else:
            session_ids = [session_id]

        total = 0
        for sid in session_ids:
            chunks = await self.store.get_chunks(sid, [TChunkStatus.PENDING, TChunkStatus.FAILED])
            scheduler = self._scheduler(sid)
            scheduler.enqueue(chunks)
            total += await scheduler.force_processing(params)
        return total

    async def wait_until_idle(self, session_id: Optional[TId] = None) -> None:
        """Wait for the flushes in flight (of one session, or of every session when None)."""
        if session_id is not None:
            if session_id in self._schedulers:
                await self._schedulers[session_id].wait_until_idle()
            return
        for scheduler in list(self._schedulers.values()):
            await scheduler.wait_until_idle()

    def _scheduler(self, session_id: TId) -> DefaultBatchScheduler:
        scheduler = self._schedulers.get(session_id)
        if scheduler is None:
            scheduler = DefaultBatchScheduler(
                session_id=session_id,
                processor=self._process_chunks,
                clock=self.clock,
                config=DefaultBatchSchedulerConfig(
                    delay_ms=self.settings.auto_process_delay,
                    batch_size=self.settings.auto_process_batch_size,
                    auto_processing=self.settings.auto_processing,
                ),
            )
            self._schedulers[session_id] = scheduler
        return scheduler

    async def _process_chunks(self, chunks: List[TChunk], params: Optional[ProcessParam] = None) -> None:
        """Process one group of chunks: extraction, then one merge transaction per chunk.

        Per-chunk failures mark the chunk failed and do not interrupt the group. Chunks
        already processed by an earlier flush of the session are skipped.
        """
        if params is None:
            params = self.process_params

        stored = [await self.store.get_chunk(chunk.id) for chunk in chunks]
        chunks = [chunk for chunk in stored if chunk is not None and chunk.status != TChunkStatus.PROCESSED]
        if not chunks:
            logger.debug("Every chunk of the group was already processed.")
            return

        results = await self.information_extraction_service.extract(
            llm=self.llm_service, embedding_service=self.embedding_service, chunks=chunks, params=params
        )

        failed = 0
        for result in tqdm(results, desc="Merging chunks", disable=not params.show_progress):
            if isinstance(result, TExtractionFailure):
                await self.store.set_chunk_status(result.chunk_id, TChunkStatus.FAILED, error=result.error)
                failed += 1
                continue

            await self.store.upsert_embedding(
                TChunkEmbedding(chunk_id=result.chunk_id, vector=result.embedding, model=self.embedding_service.model)
            )
            await self.store.set_chunk_status(result.chunk_id, TChunkStatus.EMBEDDED)
            try:
                await self.graph_merge_service.merge(self.store, result)
            except ProviderError as e:
                logger.error(f"Error while merging chunk {result.chunk_id}: {e.message}")
                await self.store.set_chunk_status(result.chunk_id, TChunkStatus.FAILED, error=e.message)
                failed += 1

        await self.store.commit()
        logger.info(f"Processed {len(chunks)} chunks ({failed} failed).")

    ####################################################################################################
    # SEARCH
    ####################################################################################################

    async def search(
        self, query: str, session_id: TId = DEFAULT_SESSION_ID, params: Optional[SearchParam] = None
    ) -> List[TRetrievalResult]:
        """Search the memories of a session.

        Args:
            query (str): The query text.
            session_id (TId): Session searched. Unknown sessions yield no results.
            params (Optional[SearchParam]): Strategy and its parameters. Defaults to vector search
                with the configured max_results and min_relevance_score.

        Returns:
            List[TRetrievalResult]: At most max_results results, best first, every score at least
                min_relevance_score.

        Raises:
            ValidationError: If the strategy is unknown or the query embedding has the wrong dimension.
            ProviderError: If the query embedding fails.
        """
        await self.open()
        if params is None:
            params = SearchParam()
        if params.strategy not in RETRIEVAL_STRATEGIES:
            raise ValidationError(f"Unknown retrieval strategy '{params.strategy}'.")
        if params.wait_for_pending:
            await self.wait_until_idle(session_id)

        return await self.retrieval_service.search(
            session_id,
            query,
            params,
            max_results=params.max_results if params.max_results is not None else self.settings.max_results,
            min_relevance_score=(
                params.min_relevance_score
                if params.min_relevance_score is not None
                else self.settings.min_relevance_score
            ),
        )

    async def search_context(
        self, query: str, session_id: TId = DEFAULT_SESSION_ID, params: Optional[SearchParam] = None
    ) -> str:
        """Search and format the results as context for an LLM."""
        results = await self.search(query, session_id, params)
        return await self.retrieval_service.get_context(session_id, results)

    async def query(
        self,
        question: Optional[str],
        session_id: TId = DEFAULT_SESSION_ID,
        params: Optional[SearchParam] = None,
        response_model: Any = None,
    ) -> TQueryResponse:
        """Answer a question from the memories of a session.

        Args:
            question (Optional[str]): The question. Empty questions get the fail response.
            session_id (TId): Session searched.
            params (Optional[SearchParam]): Search parameters used to build the context.
            response_model: Pydantic model for a structured answer. Defaults to a plain text answer.

        Returns:
            TQueryResponse: The answer with the results and the context used to produce it.
        """
        if question is None or len(question.strip()) == 0:
            return TQueryResponse(response=PROMPTS["fail_response"])

        results = await self.search(question, session_id, params)
        if not results:
            return TQueryResponse(response=PROMPTS["fail_response"], context=PROMPTS["empty_context"])

        context = await self.retrieval_service.get_context(session_id, results)
        llm_response, _ = await format_and_send_prompt(
            prompt_key="qa",
            llm=self.llm_service,
            format_kwargs={"context": context, "question": question},
            response_model=TAnswer if response_model is None else response_model,
        )
        answer = llm_response.answer if response_model is None else llm_response
        return TQueryResponse(response=answer, results=results, context=context)

    ####################################################################################################
    # INSPECTION
    ####################################################################################################

    async def get_chunk(self, chunk_id: TId) -> TChunk:
        """Get a chunk and its processing status.

        Raises:
            NotFoundError: If the chunk does not exist.
        """
        await self.open()
        chunk = await self.store.get_chunk(chunk_id)
        if chunk is None:
            raise NotFoundError(f"Unknown chunk '{chunk_id}'.")
        return chunk

    async def get_chunks(
        self, session_id: TId = DEFAULT_SESSION_ID, status: Optional[Iterable[TChunkStatus]] = None
    ) -> List[TChunk]:
        await self.open()
        return await self.store.get_chunks(session_id, status)

    async def delete_chunk(self, chunk_id: TId) -> TChunk:
        """Forget a chunk, together with its embedding and its entity mentions.

        Entities and relationships merged from the chunk are kept; the mention count of
        every entity it mentioned is decremented.

        Raises:
            NotFoundError: If the chunk does not exist.
        """
        chunk = await self.get_chunk(chunk_id)
        scheduler = self._schedulers.get(chunk.session_id)
        if scheduler is not None:
            scheduler.discard([chunk_id])
            await scheduler.wait_until_idle()

        async with self.store.transaction(chunk.session_id) as store:
            await store.delete_chunk(chunk_id)
        await self.store.commit()
        logger.info(f"Deleted chunk {chunk_id} from session '{chunk.session_id}'.")
        return chunk

    async def get_neighborhood(self, entity_name: str, session_id: TId = DEFAULT_SESSION_ID, depth: int = 2) -> TSubgraph:
        await self.open()
        return await self.retrieval_service.get_neighborhood(session_id, entity_name, depth)

    async def find_paths(
        self, source: str, target: str, session_id: TId = DEFAULT_SESSION_ID, max_depth: int = 5
    ) -> List[TGraphPath]:
        await self.open()
        return await self.retrieval_service.find_paths(session_id, source, target, max_depth)

    async def find_clusters(self, session_id: TId = DEFAULT_SESSION_ID, min_size: int = 3) -> List[List[TEntity]]:
        await self.open()
        return await self.retrieval_service.find_clusters(session_id, min_size)

    ####################################################################################################
    # SYNCHRONOUS WRAPPERS
    ####################################################################################################

    def insert(
        self, text: str, session_id: TId = DEFAULT_SESSION_ID, metadata: Optional[Dict[str, Any]] = None
    ) -> List[TId]:
        """Add a text and process it immediately (synchronous version).

        Example:
            >>> memory = Souvenir()
            >>> chunk_ids = memory.insert("Alice met Bob in Paris.", session_id="trip")
        """

        async def _insert() -> List[TId]:
            chunk_ids = await self.add(text, session_id, metadata)
            await self.force_processing(session_id)
            return chunk_ids

        return get_event_loop().run_until_complete(_insert())

    def query_sync(
        self,
        question: str,
        session_id: TId = DEFAULT_SESSION_ID,
        params: Optional[SearchParam] = None,
        response_model: Any = None,
    ) -> TQueryResponse:
        """Answer a question (synchronous version of ``query``)."""
        try:
            return get_event_loop().run_until_complete(self.query(question, session_id, params, response_model))
        except Exception as e:
            logger.error(f"Error during query: {e}")
            raise
