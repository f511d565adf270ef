"""In-memory store with brute-force vector search and optional pickle persistence.

Records live in dictionaries keyed by id, with secondary indexes for entity names and
relation keys. Vector search computes exact cosine similarity over the session's
embeddings with numpy. When ``working_dir`` is configured, the whole state is pickled
to ``<working_dir>/memory_store.pkl`` on ``commit()`` and loaded back on ``open()``.

Transactions hold a per-session ``asyncio.Lock`` and keep an undo log; if the block
raises, every write made inside it is reverted in reverse order.
"""

import asyncio
import contextvars
import os
import pickle
from collections import defaultdict
from contextlib import asynccontextmanager
from dataclasses import dataclass, field, replace
from typing import Any, AsyncIterator, Callable, Dict, Iterable, List, Optional, Set, Tuple

import numpy as np

from souvenir._exceptions import MergeConflictError, ValidationError
from souvenir._types import TChunk, TChunkEmbedding, TChunkStatus, TEmbedding, TEntity, TId, TRelation, TSession
from souvenir._utils import cosine_similarity, logger

from ._base import BaseMemoryStore

# Undo log of the transaction running in the current task, if any
_undo_log: contextvars.ContextVar[Optional[List[Callable[[], None]]]] = contextvars.ContextVar(
    "souvenir_undo_log", default=None
)


@dataclass
class PickleMemoryStoreConfig:
    """Configuration for the in-memory store.

    Attributes:
        embedding_dim: Number of dimensions every stored vector must have.
        working_dir: Directory used for persistence; None keeps the store volatile.
        lock_timeout: Seconds to wait for a session transaction before raising MergeConflictError.
    """

    embedding_dim: int = field(default=1536)
    working_dir: Optional[str] = field(default=None)
    lock_timeout: float = field(default=30.0)


@dataclass
class PickleMemoryStore(BaseMemoryStore):
    """Memory store keeping every record in process memory."""

    RESOURCE_NAME = "memory_store.pkl"

    config: PickleMemoryStoreConfig = field(default_factory=PickleMemoryStoreConfig)

    _sessions: Dict[TId, TSession] = field(init=False, default_factory=dict)
    _chunks: Dict[TId, TChunk] = field(init=False, default_factory=dict)
    _embeddings: Dict[TId, TChunkEmbedding] = field(init=False, default_factory=dict)
    _entities: Dict[TId, TEntity] = field(init=False, default_factory=dict)
    _entity_names: Dict[Tuple[TId, str], TId] = field(init=False, default_factory=dict)
    _relations: Dict[TId, TRelation] = field(init=False, default_factory=dict)
    _relation_keys: Dict[Tuple[TId, frozenset[TId], str], TId] = field(init=False, default_factory=dict)
    _mentions: Dict[TId, Set[TId]] = field(init=False, default_factory=lambda: defaultdict(set))

    _locks: Dict[TId, asyncio.Lock] = field(init=False, default_factory=dict)

    @property
    def _data_file_name(self) -> Optional[str]:
        if self.config.working_dir is None:
            return None
        return os.path.join(self.config.working_dir, self.RESOURCE_NAME)

    async def open(self) -> None:
        data_file_name = self._data_file_name
        if data_file_name is None:
            logger.debug("Creating new volatile memory store.")
            return
        if not os.path.exists(data_file_name):
            logger.info(f"No data file found for memory store {data_file_name}. Loading empty storage.")
            return
        try:
            with open(data_file_name, "rb") as f:
                state = pickle.load(f)
        except Exception as e:
            t = f"Error loading data file for memory store {data_file_name}: {e}"
            logger.error(t)
            raise ValidationError(t) from e

        self._sessions = state["sessions"]
        self._chunks = state["chunks"]
        self._embeddings = state["embeddings"]
        self._entities = state["entities"]
        self._relations = state["relations"]
        self._mentions = defaultdict(set, state["mentions"])
        self._entity_names = {(e.session_id, e.name): e.id for e in self._entities.values()}
        self._relation_keys = {
            (r.session_id, frozenset((r.source, r.target)), r.label): r.id for r in self._relations.values()
        }
        for embedding in self._embeddings.values():
            self._check_dimension(embedding.vector)
        logger.info(f"Loaded memory store with {len(self._chunks)} chunks and {len(self._entities)} entities.")

    async def commit(self) -> None:
        data_file_name = self._data_file_name
        if data_file_name is None:
            return
        os.makedirs(os.path.dirname(data_file_name), exist_ok=True)
        state = {
            "sessions": self._sessions,
            "chunks": self._chunks,
            "embeddings": self._embeddings,
            "entities": self._entities,
            "relations": self._relations,
            "mentions": dict(self._mentions),
        }
        try:
            with open(data_file_name, "wb") as f:
                pickle.dump(state, f)
            logger.debug(f"Saving memory store '{data_file_name}'.")
        except Exception as e:
            logger.error(f"Error saving data file for memory store {data_file_name}: {e}")

    async def health_check(self) -> bool:
        working_dir = self.config.working_dir
        if working_dir is None:
            return True
        # The directory is created on the first commit
        target = working_dir if os.path.isdir(working_dir) else os.path.dirname(os.path.abspath(working_dir))
        healthy = os.access(target, os.W_OK)
        if not healthy:
            logger.error(f"Memory store directory '{target}' is not writable.")
        return healthy

    @asynccontextmanager
    async def transaction(self, session_id: TId) -> AsyncIterator["PickleMemoryStore"]:
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.config.lock_timeout)
        except asyncio.TimeoutError as e:
            raise MergeConflictError(f"Timed out waiting for a transaction on session '{session_id}'.") from e

        undo: List[Callable[[], None]] = []
        token = _undo_log.set(undo)
        try:
            yield self
        except BaseException:
            for revert in reversed(undo):
                revert()
            logger.debug(f"Rolled back {len(undo)} writes on session '{session_id}'.")
            raise
        finally:
            _undo_log.reset(token)
            lock.release()

    def _record(self, revert: Callable[[], None]) -> None:
        undo = _undo_log.get()
        if undo is not None:
            undo.append(revert)

    def _restore(self, table: Dict[Any, Any], key: Any, previous: Any) -> Callable[[], None]:
        def revert() -> None:
            if previous is None:
                table.pop(key, None)
            else:
                table[key] = previous

        return revert

    def _check_dimension(self, vector: TEmbedding) -> None:
        if vector.ndim != 1 or vector.shape[0] != self.config.embedding_dim:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self.config.embedding_dim}, got {tuple(vector.shape)}."
            )

    # Sessions
    async def upsert_session(self, session: TSession) -> TSession:
        self._sessions[session.id] = session
        return session

    async def get_session(self, session_id: TId) -> Optional[TSession]:
        return self._sessions.get(session_id)

    async def get_sessions(self) -> List[TSession]:
        return list(self._sessions.values())

    # Chunks
    async def insert_chunks(self, chunks: Iterable[TChunk]) -> List[TChunk]:
        inserted: List[TChunk] = []
        for chunk in chunks:
            if chunk.id in self._chunks:
                continue
            self._chunks[chunk.id] = chunk
            self._record(self._restore(self._chunks, chunk.id, None))
            inserted.append(chunk)
        return inserted

    async def get_chunk(self, chunk_id: TId) -> Optional[TChunk]:
        return self._chunks.get(chunk_id)

    async def get_chunks(
        self, session_id: TId, statuses: Optional[Iterable[TChunkStatus]] = None
    ) -> List[TChunk]:
        allowed = set(statuses) if statuses is not None else None
        return [
            c for c in self._chunks.values() if c.session_id == session_id and (allowed is None or c.status in allowed)
        ]

    async def set_chunk_status(
        self, chunk_id: TId, status: TChunkStatus, error: Optional[str] = None, **metadata: Any
    ) -> None:
        previous = self._chunks[chunk_id]
        self._chunks[chunk_id] = replace(
            previous, status=status, error=error, metadata={**previous.metadata, **metadata}
        )
        self._record(self._restore(self._chunks, chunk_id, previous))

    async def delete_chunk(self, chunk_id: TId) -> Optional[TChunk]:
        chunk = self._chunks.pop(chunk_id, None)
        if chunk is None:
            return None
        self._record(self._restore(self._chunks, chunk_id, chunk))

        embedding = self._embeddings.pop(chunk_id, None)
        if embedding is not None:
            self._record(self._restore(self._embeddings, chunk_id, embedding))

        for entity_id, chunk_ids in self._mentions.items():
            if chunk_id not in chunk_ids:
                continue
            chunk_ids.discard(chunk_id)
            self._record(lambda s=chunk_ids: s.add(chunk_id))
            entity = self._entities.get(entity_id)
            if entity is not None:
                await self.upsert_entity(replace(entity, mention_count=max(entity.mention_count - 1, 0)))
        return chunk

    # Embeddings
    async def upsert_embedding(self, embedding: TChunkEmbedding) -> None:
        vector = np.asarray(embedding.vector, dtype=np.float32)
        self._check_dimension(vector)
        previous = self._embeddings.get(embedding.chunk_id)
        self._embeddings[embedding.chunk_id] = replace(embedding, vector=vector)
        self._record(self._restore(self._embeddings, embedding.chunk_id, previous))

    async def get_embedding(self, chunk_id: TId) -> Optional[TChunkEmbedding]:
        return self._embeddings.get(chunk_id)

    async def vector_search(
        self,
        session_id: TId,
        query: TEmbedding,
        top_k: Optional[int] = None,
        statuses: Iterable[TChunkStatus] = (TChunkStatus.PROCESSED,),
    ) -> List[Tuple[TChunk, float]]:
        query = np.asarray(query, dtype=np.float32).reshape(-1)
        self._check_dimension(query)

        candidates = [
            c for c in await self.get_chunks(session_id, statuses) if c.id in self._embeddings
        ]
        if not candidates:
            return []

        matrix = np.stack([self._embeddings[c.id].vector for c in candidates])
        scores = cosine_similarity(query, matrix)
        recency = np.array([c.created_at for c in candidates], dtype=np.float64)
        # Best score first, most recent first among equal scores
        order = np.lexsort((-recency, -scores))
        if top_k is not None:
            order = order[:top_k]
        return [(candidates[i], float(scores[i])) for i in order]

    # Entities
    async def get_entity(self, entity_id: TId) -> Optional[TEntity]:
        return self._entities.get(entity_id)

    async def get_entity_by_name(self, session_id: TId, name: str) -> Optional[TEntity]:
        entity_id = self._entity_names.get((session_id, name))
        return self._entities.get(entity_id) if entity_id is not None else None

    async def get_entities(self, session_id: TId) -> List[TEntity]:
        return [e for e in self._entities.values() if e.session_id == session_id]

    async def upsert_entity(self, entity: TEntity) -> TEntity:
        previous = self._entities.get(entity.id)
        self._entities[entity.id] = entity
        self._record(self._restore(self._entities, entity.id, previous))

        name_key = (entity.session_id, entity.name)
        previous_id = self._entity_names.get(name_key)
        self._entity_names[name_key] = entity.id
        self._record(self._restore(self._entity_names, name_key, previous_id))
        return entity

    # Relations
    async def find_relation(self, session_id: TId, entity_a: TId, entity_b: TId, label: str) -> Optional[TRelation]:
        relation_id = self._relation_keys.get((session_id, frozenset((entity_a, entity_b)), label))
        return self._relations.get(relation_id) if relation_id is not None else None

    async def get_relations(self, session_id: TId) -> List[TRelation]:
        return [r for r in self._relations.values() if r.session_id == session_id]

    async def upsert_relation(self, relation: TRelation) -> TRelation:
        previous = self._relations.get(relation.id)
        self._relations[relation.id] = relation
        self._record(self._restore(self._relations, relation.id, previous))

        key = (relation.session_id, frozenset((relation.source, relation.target)), relation.label)
        previous_id = self._relation_keys.get(key)
        self._relation_keys[key] = relation.id
        self._record(self._restore(self._relation_keys, key, previous_id))
        return relation

    # Mentions
    async def add_mentions(self, chunk_id: TId, entity_ids: Iterable[TId]) -> None:
        for entity_id in entity_ids:
            chunk_ids = self._mentions[entity_id]
            if chunk_id in chunk_ids:
                continue
            chunk_ids.add(chunk_id)
            self._record(lambda s=chunk_ids: s.discard(chunk_id))

    async def get_mentions(self, session_id: TId) -> List[Tuple[TId, TId]]:
        return [
            (entity_id, chunk_id)
            for entity_id, chunk_ids in self._mentions.items()
            if entity_id in self._entities and self._entities[entity_id].session_id == session_id
            for chunk_id in sorted(chunk_ids)
        ]
