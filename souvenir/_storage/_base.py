"""Base class for memory store backends.

A memory store persists every record of the pipeline (sessions, chunks, chunk
embeddings, entities, relations and entity mentions) and answers vector similarity
queries. Every record is scoped by a session id and no operation crosses sessions.

Storage lifecycle:
    ``open()`` loads persisted data (if the backend persists anything) and ``close()``
    writes it back. ``commit()`` persists without closing and is called after every flush.

Transactions:
    ``transaction(session_id)`` is an async context manager wrapping one atomic unit of
    work (the merge of one chunk). Writes made inside it are rolled back if the block
    raises. Backends raise MergeConflictError when the unit cannot be started because of a
    concurrent writer.
"""

from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Iterable, List, Optional, Tuple

from souvenir._types import TChunk, TChunkEmbedding, TChunkStatus, TEmbedding, TEntity, TId, TRelation, TSession


@dataclass
class BaseMemoryStore:
    """Abstract interface of a session-scoped memory store.

    Attributes:
        config: Backend-specific configuration object.
    """

    config: Optional[Any] = field(default=None)

    async def open(self) -> None:
        pass

    async def commit(self) -> None:
        pass

    async def close(self) -> None:
        await self.commit()

    async def health_check(self) -> bool:
        """Whether the backend can currently serve reads and persist writes."""
        return True

    @asynccontextmanager
    async def transaction(self, session_id: TId) -> AsyncIterator["BaseMemoryStore"]:
        """Run the enclosed writes as one atomic unit of work for ``session_id``."""
        raise NotImplementedError
        yield self  # pragma: no cover

    # Sessions
    async def upsert_session(self, session: TSession) -> TSession:
        raise NotImplementedError

    async def get_session(self, session_id: TId) -> Optional[TSession]:
        raise NotImplementedError

    async def get_sessions(self) -> List[TSession]:
        raise NotImplementedError

    # Chunks
    async def insert_chunks(self, chunks: Iterable[TChunk]) -> List[TChunk]:
        """Insert chunks that are not stored yet and return the ones actually inserted."""
        raise NotImplementedError

    async def get_chunk(self, chunk_id: TId) -> Optional[TChunk]:
        raise NotImplementedError

    async def get_chunks(
        self, session_id: TId, statuses: Optional[Iterable[TChunkStatus]] = None
    ) -> List[TChunk]:
        """Chunks of a session in insertion order, optionally filtered by status."""
        raise NotImplementedError

    async def set_chunk_status(
        self, chunk_id: TId, status: TChunkStatus, error: Optional[str] = None, **metadata: Any
    ) -> None:
        raise NotImplementedError

    async def delete_chunk(self, chunk_id: TId) -> Optional[TChunk]:
        """Remove a chunk with its embedding and mentions, and return it (None if unknown)."""
        raise NotImplementedError

    # Embeddings
    async def upsert_embedding(self, embedding: TChunkEmbedding) -> None:
        """Store the embedding of a chunk.

        Raises:
            ValidationError: If the vector does not have the configured number of dimensions.
        """
        raise NotImplementedError

    async def get_embedding(self, chunk_id: TId) -> Optional[TChunkEmbedding]:
        raise NotImplementedError

    async def vector_search(
        self,
        session_id: TId,
        query: TEmbedding,
        top_k: Optional[int] = None,
        statuses: Iterable[TChunkStatus] = (TChunkStatus.PROCESSED,),
    ) -> List[Tuple[TChunk, float]]:
        """Chunks of the session ranked by cosine similarity to ``query``, best first."""
        raise NotImplementedError

    # Entities
    async def get_entity(self, entity_id: TId) -> Optional[TEntity]:
        raise NotImplementedError

    async def get_entity_by_name(self, session_id: TId, name: str) -> Optional[TEntity]:
        raise NotImplementedError

    async def get_entities(self, session_id: TId) -> List[TEntity]:
        raise NotImplementedError

    async def upsert_entity(self, entity: TEntity) -> TEntity:
        raise NotImplementedError

    # Relations
    async def find_relation(self, session_id: TId, entity_a: TId, entity_b: TId, label: str) -> Optional[TRelation]:
        """Relation between two entities with the given label, in either orientation."""
        raise NotImplementedError

    async def get_relations(self, session_id: TId) -> List[TRelation]:
        raise NotImplementedError

    async def upsert_relation(self, relation: TRelation) -> TRelation:
        raise NotImplementedError

    # Mentions
    async def add_mentions(self, chunk_id: TId, entity_ids: Iterable[TId]) -> None:
        raise NotImplementedError

    async def get_mentions(self, session_id: TId) -> List[Tuple[TId, TId]]:
        """``(entity_id, chunk_id)`` pairs of the session."""
        raise NotImplementedError
