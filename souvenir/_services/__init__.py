"""Services of the souvenir memory pipeline.

text -> Chunking -> Batch Scheduler (debounced, per session) -> Information Extraction
(embedding + LLM) -> Graph Merge (one store transaction per chunk) -> store -> Retrieval

1. **Chunking** (_chunk_extraction.py): token and recursive splitting with pluggable tokenizers
2. **Scheduling** (_scheduler.py): debounce timer over a clock abstraction, serialized flushes
3. **Information Extraction** (_information_extraction.py): embeddings, entities,
   relationships and optional summaries, with failures confined to their chunk
4. **Graph Merge** (_graph_merge.py): transactional merge with retries on conflicts
5. **Retrieval** (_retrieval.py): vector, graph and hybrid strategies, graph operations
   and context formatting
"""

__all__ = [
    "AsyncioClock",
    "BaseChunkingService",
    "BaseClock",
    "BaseGraphMergeService",
    "BaseInformationExtractionService",
    "BaseRetrievalService",
    "DefaultBatchScheduler",
    "DefaultBatchSchedulerConfig",
    "DefaultChunkingService",
    "DefaultChunkingServiceConfig",
    "DefaultGraphMergeService",
    "DefaultGraphMergeServiceConfig",
    "DefaultInformationExtractionService",
    "DefaultRetrievalService",
    "ProcessParam",
    "SearchParam",
    "VirtualClock",
]

from ._base import (
    BaseChunkingService,
    BaseGraphMergeService,
    BaseInformationExtractionService,
    BaseRetrievalService,
    ProcessParam,
    SearchParam,
)
from ._chunk_extraction import DefaultChunkingService, DefaultChunkingServiceConfig
from ._graph_merge import DefaultGraphMergeService, DefaultGraphMergeServiceConfig
from ._information_extraction import DefaultInformationExtractionService
from ._retrieval import DefaultRetrievalService
from ._scheduler import AsyncioClock, BaseClock, DefaultBatchScheduler, DefaultBatchSchedulerConfig, VirtualClock
