"""Multi-strategy retrieval over the memory store.

The retrieval service answers a query with one of five strategies:

- **vector**: cosine similarity between the query embedding and the chunk embeddings
- **graph-neighborhood**: entities named in the query are matched against the graph, their
  strength is spread to their neighbours (up to ``max_hops``) by max-product over the
  normalized edge weights, and every chunk mentioning a reached entity is scored by
  combining the strengths of its entities with a probabilistic OR
- **graph-completion**: graph-neighborhood, extended through strong edges (normalized
  weight above ``completion_weight_threshold``) up to two hops when too few chunks were found
- **graph-summary**: one synthesized result gathering every reachable chunk and the
  relationships of the reached entities; its score measures how many of the matched
  entities are backed by at least one chunk
- **hybrid**: vector and graph-neighborhood scores, each normalized by its own maximum,
  combined by a weighted sum

Graph strategies work on a view of the session built for every call: an igraph Graph
with one vertex per entity and one edge per relation, a CSR matrix of edge weights
normalized by the maximum weight, and the entity-to-chunk mentions. Nothing is cached
between calls, so searches always see the latest merges.

All strategies return processed chunks only, filter them with the threshold and top-k
ranking policies, and break score ties by the most recent chunk.
"""

import re
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Set, Tuple

import igraph as ig
import numpy as np
import numpy.typing as npt
from scipy.sparse import csr_matrix

from souvenir._exceptions import NotFoundError, ValidationError
from souvenir._models import dump_to_reference_list, dump_triplets
from souvenir._policies._ranking import RankingPolicy_WithThreshold
from souvenir._prompt import PROMPTS
from souvenir._types import (
    RETRIEVAL_STRATEGIES,
    TChunk,
    TChunkStatus,
    TEntity,
    TGraphPath,
    TId,
    TRelation,
    TRetrievalResult,
    TSubgraph,
)
from souvenir._utils import extract_sorted_scores, logger, normalize_by_max, probabilistic_or, propagate_max_product

from ._base import BaseRetrievalService, SearchParam

_WORD_RE = re.compile(r"\w+", re.UNICODE)


@dataclass
class TGraphView:
    """Snapshot of the graph of a session, built for a single call.

    Attributes:
        entities: Entities of the session; their position is their vertex index.
        relations: Relations of the session; their position is their edge index.
        chunks: Processed chunks of the session.
        graph: Undirected igraph Graph over the entities.
        weights: Symmetric (n, n) matrix of edge weights normalized to [0, 1]. Weights of
            relations sharing the same endpoints are summed.
        chunk_entities: For every chunk position, the indices of the entities it mentions.
    """

    entities: List[TEntity] = field()
    relations: List[TRelation] = field()
    chunks: List[TChunk] = field()
    graph: ig.Graph = field()
    weights: csr_matrix = field()
    chunk_entities: List[List[int]] = field()

    def __post_init__(self):
        self.entity_index: Dict[TId, int] = {e.id: i for i, e in enumerate(self.entities)}
        self.recency: npt.NDArray[np.float64] = np.array([c.created_at for c in self.chunks], dtype=np.float64)

    def mentioning_chunks(self, entity_indices: Set[int]) -> List[int]:
        return [j for j, mentioned in enumerate(self.chunk_entities) if entity_indices.intersection(mentioned)]

    def relations_of(self, entity_index: int) -> List[TRelation]:
        return [self.relations[e] for e in self.graph.incident(entity_index)]


@dataclass
class DefaultRetrievalService(BaseRetrievalService):
    """Retrieval service implementing the five strategies and the graph operations."""

    ####################################################################################################
    # SEARCH
    ####################################################################################################

    async def search(
        self, session_id: TId, query: str, params: SearchParam, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        """Search the memories of a session.

        Args:
            session_id: Session searched. An unknown session yields no results.
            query: Text of the query.
            params: Strategy and its parameters.
            max_results: Maximum number of results.
            min_relevance_score: Minimum score of a result.

        Returns:
            Results sorted by decreasing score.

        Raises:
            ValidationError: If the strategy is unknown.
            ProviderError: If the query embedding fails.
        """
        if params.strategy not in RETRIEVAL_STRATEGIES:
            raise ValidationError(f"Unknown retrieval strategy '{params.strategy}'.")
        if await self.store.get_session(session_id) is None:
            logger.info(f"Search on unknown session '{session_id}'.")
            return []
        if not query.strip() or max_results <= 0:
            return []

        if params.strategy == "vector":
            results = await self._search_vector(session_id, query, max_results, min_relevance_score)
        elif params.strategy == "graph-neighborhood":
            results = await self._search_graph_neighborhood(session_id, query, params, max_results, min_relevance_score)
        elif params.strategy == "graph-completion":
            results = await self._search_graph_completion(session_id, query, params, max_results, min_relevance_score)
        elif params.strategy == "graph-summary":
            results = await self._search_graph_summary(session_id, query, params, min_relevance_score)
        else:
            results = await self._search_hybrid(session_id, query, params, max_results, min_relevance_score)

        logger.debug(f"Search '{params.strategy}' on session '{session_id}' returned {len(results)} results.")
        return results

    async def _search_vector(
        self, session_id: TId, query: str, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        chunks, scores = await self._vector_scores(session_id, query)
        recency = np.array([c.created_at for c in chunks], dtype=np.float64)
        return [
            TRetrievalResult(
                chunk_id=chunks[i].id,
                score=score,
                strategy="vector",
                explanation=f"Cosine similarity {score:.3f}",
                content=chunks[i].content,
                source_chunk_ids=[chunks[i].id],
            )
            for i, score in self._rank(scores, recency, max_results, min_relevance_score)
        ]

    async def _search_graph_neighborhood(
        self, session_id: TId, query: str, params: SearchParam, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        view = await self._build_view(session_id)
        seeds = self._match_entities(query, view)
        strengths = propagate_max_product(seeds, view.weights, params.max_hops)
        scores = self._chunk_scores(view, strengths)
        return [
            self._graph_result(view, i, score, "graph-neighborhood", strengths, seeds)
            for i, score in self._rank(scores, view.recency, max_results, min_relevance_score)
        ]

    async def _search_graph_completion(
        self, session_id: TId, query: str, params: SearchParam, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        view = await self._build_view(session_id)
        seeds = self._match_entities(query, view)
        strengths = propagate_max_product(seeds, view.weights, params.max_hops)
        ranked = self._rank(self._chunk_scores(view, strengths), view.recency, max_results, min_relevance_score)

        if len(ranked) < max_results:
            extended = propagate_max_product(
                seeds, view.weights, max(params.max_hops, 2), min_weight=params.completion_weight_threshold
            )
            strengths = np.maximum(strengths, extended)
            ranked = self._rank(self._chunk_scores(view, strengths), view.recency, max_results, min_relevance_score)

        return [self._graph_result(view, i, score, "graph-completion", strengths, seeds) for i, score in ranked]

    async def _search_graph_summary(
        self, session_id: TId, query: str, params: SearchParam, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        view = await self._build_view(session_id)
        seeds = self._match_entities(query, view)
        matched = np.flatnonzero(seeds > 0)
        if matched.size == 0:
            return []

        strengths = propagate_max_product(seeds, view.weights, params.max_hops)
        scores = self._chunk_scores(view, strengths)
        indices, _ = extract_sorted_scores(csr_matrix(scores.reshape(1, -1)), view.recency)
        reachable = [int(j) for j in indices]
        if not reachable:
            return []

        # A matched entity is covered when a processed chunk mentions it or one of its neighbours
        covered = 0.0
        for i in matched:
            neighbourhood = set(view.graph.neighborhood(int(i), order=params.max_hops))
            if view.mentioning_chunks(neighbourhood):
                covered += float(seeds[i])
        coverage = covered / matched.size
        if coverage < min_relevance_score:
            return []

        reached_entities = [int(i) for i in np.flatnonzero(strengths > 0)]
        chunks = [view.chunks[j] for j in reachable]
        context = self._format_context(chunks, view, reached_entities)
        return [
            TRetrievalResult(
                chunk_id=None,
                score=coverage,
                strategy="graph-summary",
                explanation=(
                    f"{len(chunks)} chunks reachable from {matched.size} matched entities "
                    f"(coverage {coverage:.2f})"
                ),
                context=context,
                source_chunk_ids=[c.id for c in chunks],
            )
        ]

    async def _search_hybrid(
        self, session_id: TId, query: str, params: SearchParam, max_results: int, min_relevance_score: float
    ) -> List[TRetrievalResult]:
        view = await self._build_view(session_id)

        vector_chunks, vector_raw = await self._vector_scores(session_id, query)
        vector_scores = np.zeros(len(view.chunks), dtype=np.float32)
        chunk_positions = {c.id: j for j, c in enumerate(view.chunks)}
        for chunk, score in zip(vector_chunks, vector_raw):
            if chunk.id in chunk_positions:
                vector_scores[chunk_positions[chunk.id]] = max(0.0, float(score))

        seeds = self._match_entities(query, view)
        strengths = propagate_max_product(seeds, view.weights, params.max_hops)
        graph_scores = self._chunk_scores(view, strengths)

        v = normalize_by_max(vector_scores)
        g = normalize_by_max(graph_scores)
        combined = (params.vector_weight * v + params.graph_weight * g).astype(np.float32)

        return [
            TRetrievalResult(
                chunk_id=view.chunks[i].id,
                score=score,
                strategy="hybrid",
                explanation=f"vector {v[i]:.3f} x {params.vector_weight:g} + graph {g[i]:.3f} x {params.graph_weight:g}",
                content=view.chunks[i].content,
                source_chunk_ids=[view.chunks[i].id],
            )
            for i, score in self._rank(combined, view.recency, max_results, min_relevance_score)
        ]

    async def _vector_scores(self, session_id: TId, query: str) -> Tuple[List[TChunk], npt.NDArray[np.float32]]:
        query_embedding = (await self.embedding_service.encode([query]))[0]
        hits = await self.store.vector_search(session_id, query_embedding)
        return [c for c, _ in hits], np.array([s for _, s in hits], dtype=np.float32)

    def _rank(
        self,
        scores: npt.NDArray[np.float32],
        recency: npt.NDArray[np.float64],
        max_results: int,
        min_relevance_score: float,
    ) -> List[Tuple[int, float]]:
        """Filter scores with the ranking policies and return (position, score) pairs, best first."""
        if scores.size == 0:
            return []
        row = csr_matrix(np.asarray(scores, dtype=np.float32).reshape(1, -1))
        # Delegates to top-k (with the recency tie breaker) when more than max_results pass
        row = RankingPolicy_WithThreshold(
            RankingPolicy_WithThreshold.Config(threshold=min_relevance_score, max_entities=max_results)
        )(row, recency)
        indices, values = extract_sorted_scores(row, recency)
        return [(int(i), float(s)) for i, s in zip(indices, values)]

    def _graph_result(
        self,
        view: TGraphView,
        chunk_position: int,
        score: float,
        strategy: str,
        strengths: npt.NDArray[np.float32],
        seeds: npt.NDArray[np.float32],
    ) -> TRetrievalResult:
        chunk = view.chunks[chunk_position]
        contributions = sorted(
            ((float(strengths[e]), view.entities[e]) for e in view.chunk_entities[chunk_position] if strengths[e] > 0),
            key=lambda t: -t[0],
        )
        described = [
            f"{entity.display_name} ({strength:.2f}{', matched' if seeds[view.entity_index[entity.id]] > 0 else ''})"
            for strength, entity in contributions[:5]
        ]
        return TRetrievalResult(
            chunk_id=chunk.id,
            score=score,
            strategy=strategy,
            explanation=f"Entities: {', '.join(described)}",
            content=chunk.content,
            source_chunk_ids=[chunk.id],
        )

    ####################################################################################################
    # GRAPH VIEW
    ####################################################################################################

    async def _build_view(self, session_id: TId) -> TGraphView:
        entities = await self.store.get_entities(session_id)
        relations = await self.store.get_relations(session_id)
        chunks = await self.store.get_chunks(session_id, [TChunkStatus.PROCESSED])
        mentions = await self.store.get_mentions(session_id)

        entity_index = {e.id: i for i, e in enumerate(entities)}
        relations = [r for r in relations if r.source in entity_index and r.target in entity_index]
        n = len(entities)

        graph = ig.Graph(
            n=n,
            edges=[(entity_index[r.source], entity_index[r.target]) for r in relations],
            directed=False,
            vertex_attrs={"name": [e.id for e in entities]},
            edge_attrs={"weight": [r.weight for r in relations], "label": [r.label for r in relations]},
        )

        if relations:
            rows = [entity_index[r.source] for r in relations] + [entity_index[r.target] for r in relations]
            cols = [entity_index[r.target] for r in relations] + [entity_index[r.source] for r in relations]
            data = [r.weight for r in relations] * 2
            # Duplicate coordinates are summed by the constructor
            weights = csr_matrix((np.array(data, dtype=np.float32), (rows, cols)), shape=(n, n))
            top = float(weights.max())
            if top > 0:
                weights = (weights * (1.0 / top)).tocsr()
        else:
            weights = csr_matrix((n, n), dtype=np.float32)

        chunk_position = {c.id: j for j, c in enumerate(chunks)}
        chunk_entities: List[List[int]] = [[] for _ in chunks]
        for entity_id, chunk_id in mentions:
            if chunk_id in chunk_position and entity_id in entity_index:
                chunk_entities[chunk_position[chunk_id]].append(entity_index[entity_id])

        return TGraphView(
            entities=entities,
            relations=relations,
            chunks=chunks,
            graph=graph,
            weights=weights,
            chunk_entities=chunk_entities,
        )

    def _match_entities(self, query: str, view: TGraphView) -> npt.NDArray[np.float32]:
        """Match strength of every entity of the view against the query.

        An entity whose whole name appears in the query scores 1; otherwise it scores the
        fraction of its name's words that appear in the query.
        """
        normalized_query = self.normalizer(query)
        query_words = set(_WORD_RE.findall(normalized_query))
        strengths = np.zeros(len(view.entities), dtype=np.float32)
        for i, entity in enumerate(view.entities):
            if re.search(rf"(?<!\w){re.escape(entity.name)}(?!\w)", normalized_query):
                strengths[i] = 1.0
                continue
            words = _WORD_RE.findall(entity.name)
            if words:
                strengths[i] = sum(w in query_words for w in words) / len(words)
        return strengths

    def _chunk_scores(self, view: TGraphView, strengths: npt.NDArray[np.float32]) -> npt.NDArray[np.float32]:
        scores = np.zeros(len(view.chunks), dtype=np.float32)
        for j, entity_indices in enumerate(view.chunk_entities):
            if entity_indices:
                scores[j] = probabilistic_or(strengths[entity_indices])
        return scores

    ####################################################################################################
    # CONTEXT
    ####################################################################################################

    async def get_context(self, session_id: TId, results: List[TRetrievalResult]) -> str:
        """Format search results as context for an LLM prompt.

        Chunks are listed as numbered references, followed by the relationships of the
        entities they mention, grouped by label.
        """
        if not results:
            return PROMPTS["empty_context"]

        view = await self._build_view(session_id)
        chunk_position = {c.id: j for j, c in enumerate(view.chunks)}

        parts: List[str] = []
        chunks: List[TChunk] = []
        entity_indices: Set[int] = set()
        for result in results:
            if result.chunk_id is None:
                if result.context:
                    parts.append(result.context)
                continue
            if result.chunk_id in chunk_position:
                j = chunk_position[result.chunk_id]
                chunks.append(view.chunks[j])
                entity_indices.update(view.chunk_entities[j])

        if chunks:
            parts.insert(0, self._format_context(chunks, view, sorted(entity_indices)))
        return "\n\n---\n\n".join(parts) if parts else PROMPTS["empty_context"]

    def _format_context(self, chunks: List[TChunk], view: TGraphView, entity_indices: List[int]) -> str:
        sections = ["# Text Context\n", "".join(dump_to_reference_list([c.content for c in chunks]))]

        triplets = []
        for i in entity_indices:
            entity = view.entities[i]
            relations = view.relations_of(i)
            if not relations:
                continue
            triplets.append(
                dump_triplets(
                    entity.display_name,
                    [
                        (r.label, view.entities[view.entity_index[r.other(entity.id)]].display_name, r.weight)
                        for r in relations
                    ],
                    entity.type,
                )
            )
        if triplets:
            sections.append("# Knowledge Graph Context\n")
            sections.append("\n\n".join(triplets))
        return "\n".join(sections)

    ####################################################################################################
    # GRAPH OPERATIONS
    ####################################################################################################

    async def _resolve_entity(self, session_id: TId, view: TGraphView, entity_name: str) -> int:
        if await self.store.get_session(session_id) is None:
            raise NotFoundError(f"Unknown session '{session_id}'.")
        entity = await self.store.get_entity_by_name(session_id, self.normalizer(entity_name))
        if entity is None or entity.id not in view.entity_index:
            raise NotFoundError(f"Unknown entity '{entity_name}' in session '{session_id}'.")
        return view.entity_index[entity.id]

    async def get_neighborhood(self, session_id: TId, entity_name: str, depth: int = 2) -> TSubgraph:
        """Entities within ``depth`` hops of an entity, and the relations traversed to reach them.

        Raises:
            NotFoundError: If the session or the entity does not exist.
        """
        view = await self._build_view(session_id)
        start = await self._resolve_entity(session_id, view, entity_name)

        distances = view.graph.distances(source=start)[0]
        reached = [i for i, d in enumerate(distances) if d <= depth]
        relations = [
            r
            for r in view.relations
            if min(distances[view.entity_index[r.source]], distances[view.entity_index[r.target]]) < depth
        ]
        reached.sort(key=lambda i: (distances[i], view.entities[i].name))
        return TSubgraph(entities=[view.entities[i] for i in reached], relations=relations)

    async def find_paths(
        self, session_id: TId, source_name: str, target_name: str, max_depth: int = 5
    ) -> List[TGraphPath]:
        """Simple paths of at most ``max_depth`` relations between two entities, heaviest first.

        Between two consecutive entities of a path, the heaviest relation is used.

        Raises:
            NotFoundError: If the session or one of the entities does not exist.
        """
        view = await self._build_view(session_id)
        source = await self._resolve_entity(session_id, view, source_name)
        target = await self._resolve_entity(session_id, view, target_name)
        if source == target:
            return [TGraphPath(entities=[view.entities[source]], relations=[], total_weight=0.0)]

        best: Dict[FrozenSet[int], TRelation] = {}
        for r in view.relations:
            key = frozenset((view.entity_index[r.source], view.entity_index[r.target]))
            if key not in best or r.weight > best[key].weight:
                best[key] = r

        # Parallel edges appear once per relation in the adjacency list
        adjacency = [sorted(set(neighbours)) for neighbours in view.graph.get_adjlist()]
        paths: List[TGraphPath] = []

        def _walk(vertices: List[int]) -> None:
            if vertices[-1] == target:
                relations = [best[frozenset(pair)] for pair in zip(vertices, vertices[1:])]
                paths.append(
                    TGraphPath(
                        entities=[view.entities[i] for i in vertices],
                        relations=relations,
                        total_weight=sum(r.weight for r in relations),
                    )
                )
                return
            if len(vertices) > max_depth:
                return
            for neighbour in adjacency[vertices[-1]]:
                if neighbour not in vertices:
                    _walk(vertices + [neighbour])

        _walk([source])
        paths.sort(key=lambda p: (-p.total_weight, len(p.relations)))
        return paths

    async def find_clusters(self, session_id: TId, min_size: int = 3) -> List[List[TEntity]]:
        """Connected groups of at least ``min_size`` entities, largest first.

        Raises:
            NotFoundError: If the session does not exist.
        """
        if await self.store.get_session(session_id) is None:
            raise NotFoundError(f"Unknown session '{session_id}'.")
        view = await self._build_view(session_id)
        if not view.entities:
            return []

        clusters = [
            [view.entities[i] for i in component]
            for component in view.graph.connected_components()
            if len(component) >= min_size
        ]
        clusters.sort(key=lambda c: -len(c))
        return clusters

