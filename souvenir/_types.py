"""Type definitions for the souvenir memory system.

This module contains the core types shared by the pipeline:

1. Type aliases for embeddings, identifiers and scores
2. Stored records: sessions, chunks, chunk embeddings, entities and relations
3. Extraction types, with pydantic twins used for LLM structured output
4. Retrieval results and query responses

Stored records are plain dataclasses. Extraction types follow the BaseModelAlias
pattern: the nested ``Model`` is the schema the LLM fills in, and ``to_dataclass``
turns the validated response into the dataclass used by the rest of the pipeline.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, TypeAlias

import numpy as np
import numpy.typing as npt
from pydantic import Field, field_validator

from ._exceptions import ValidationError
from ._models import BaseModelAlias

####################################################################################################
# ALIASES
####################################################################################################

# Individual embedding component; float32 keeps vectors compact
TEmbeddingType: TypeAlias = np.float32

# Complete embedding vector
TEmbedding: TypeAlias = npt.NDArray[TEmbeddingType]

# Relevance scores
TScore: TypeAlias = np.float32

# Identifiers for sessions, chunks, entities and relations (hex digests)
TId: TypeAlias = str

# Retrieval strategies understood by the retrieval service
TRetrievalStrategy = Literal["vector", "graph-neighborhood", "graph-completion", "graph-summary", "hybrid"]
RETRIEVAL_STRATEGIES: Tuple[str, ...] = (
  "vector",
  "graph-neighborhood",
  "graph-completion",
  "graph-summary",
  "hybrid",
)

# Entity type assigned to endpoints that were only seen inside a relationship
UNKNOWN_ENTITY_TYPE = "UNKNOWN"


####################################################################################################
# STORED RECORDS
####################################################################################################


class TChunkStatus(str, Enum):
  """Processing status of a chunk.

  A chunk starts as PENDING, becomes EMBEDDED once its vector is stored and PROCESSED
  once its entities and relationships are merged. FAILED chunks carry an error message
  and are picked up again by the next processing run.
  """

  PENDING = "pending"
  EMBEDDED = "embedded"
  PROCESSED = "processed"
  FAILED = "failed"


@dataclass
class TSession:
  """A logical partition of the memory. Every record belongs to exactly one session."""

  id: TId = field()
  created_at: float = field(default_factory=time.time)
  metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class TChunk:
  """A segment of ingested text.

  Attributes:
      id: Stable identifier derived from the session, source, position and content.
      content: The text of the chunk. Never modified after creation.
      session_id: Session the chunk belongs to.
      source_id: Identifier of the text the chunk was cut from.
      chunk_index: Position of the chunk inside its source.
      token_count: Number of tokens according to the configured tokenizer.
      created_at: Creation timestamp (seconds since the epoch). Used to break ties in rankings.
      status: Processing status, see TChunkStatus.
      metadata: Free-form metadata supplied at ingestion time (and the generated summary, if any).
      error: Error message of the last failed processing attempt.
  """

  id: TId = field()
  content: str = field()
  session_id: TId = field()
  source_id: TId = field(default="")
  chunk_index: int = field(default=0)
  token_count: int = field(default=0)
  created_at: float = field(default_factory=time.time)
  status: TChunkStatus = field(default=TChunkStatus.PENDING)
  metadata: Dict[str, Any] = field(default_factory=dict)
  error: Optional[str] = field(default=None)

  def __str__(self) -> str:
    return self.content


@dataclass
class TChunkEmbedding:
  """The embedding of a chunk. One per chunk, dimension fixed by configuration."""

  chunk_id: TId = field()
  vector: TEmbedding = field()
  model: Optional[str] = field(default=None)


@dataclass
class TEntity:
  """A node of the knowledge graph.

  Attributes:
      id: Identifier derived from the session and the normalized name.
      name: Normalized name, unique within the session.
      display_name: Name as first seen in the text.
      type: Entity category (e.g. PERSON, LOCATION), UNKNOWN until a typed mention is seen.
      session_id: Session the entity belongs to.
      mention_count: Number of chunks that mentioned the entity.
  """

  id: TId = field()
  name: str = field()
  display_name: str = field()
  type: str = field()
  session_id: TId = field()
  mention_count: int = field(default=0)

  def to_str(self) -> str:
    return f"[{self.type}] {self.display_name}"


@dataclass
class TRelation:
  """An undirected, weighted relationship between two entities.

  The direction recorded in ``source``/``target`` is the one of the first extraction;
  lookups ignore it.

  Raises:
      ValidationError: If source and target are the same entity or the weight is negative.
  """

  id: TId = field()
  source: TId = field()
  target: TId = field()
  label: str = field()
  weight: float = field()
  session_id: TId = field()

  def __post_init__(self):
    if self.source == self.target:
      raise ValidationError(f"Relation '{self.label}' cannot connect entity {self.source} to itself.")
    if self.weight < 0:
      raise ValidationError(f"Relation '{self.label}' has a negative weight ({self.weight}).")

  def other(self, entity_id: TId) -> TId:
    """Return the endpoint opposite to ``entity_id``."""
    return self.target if self.source == entity_id else self.source


####################################################################################################
# EXTRACTION
####################################################################################################


@dataclass
class TExtractedEntity(BaseModelAlias):
  """An entity mention as returned by the LLM, before normalization."""

  name: str = field()
  type: str = field()

  class Model(BaseModelAlias.Model, alias="Entity"):
    name: str = Field(..., description="The text of the entity as it appears in the text")
    type: str = Field(
      ...,
      description=(
        "The type/category of the entity (e.g., person, organization, location, concept, event, date, technology)"
      ),
    )

    @staticmethod
    def to_dataclass(pydantic: "TExtractedEntity.Model") -> "TExtractedEntity":
      return TExtractedEntity(name=pydantic.name, type=pydantic.type)

    @field_validator("name", "type", mode="before")
    @classmethod
    def strip_value(cls, value: str):
      return value.strip() if isinstance(value, str) else value


@dataclass
class TExtractedRelation(BaseModelAlias):
  """A relationship mention as returned by the LLM.

  Attributes:
      source: Name of the source entity.
      target: Name of the target entity.
      label: Relationship type (e.g. met, located_in).
      confidence: Optional strength in [0, 1] reported by the LLM.
  """

  source: str = field()
  target: str = field()
  label: str = field()
  confidence: Optional[float] = field(default=None)

  class Model(BaseModelAlias.Model, alias="Relationship"):
    source: str = Field(..., description="The source entity text")
    target: str = Field(..., description="The target entity text")
    type: str = Field(
      ...,
      description="The type of relationship (e.g., related_to, part_of, caused_by, enables, requires, met, located_in)",
    )
    weight: Optional[float] = Field(default=None, ge=0, le=1, description="The strength of the relationship (0-1)")

    @staticmethod
    def to_dataclass(pydantic: "TExtractedRelation.Model") -> "TExtractedRelation":
      return TExtractedRelation(
        source=pydantic.source, target=pydantic.target, label=pydantic.type, confidence=pydantic.weight
      )


@dataclass
class TEntityList(BaseModelAlias):
  """Response of the entity extraction prompt."""

  entities: List[TExtractedEntity] = field(default_factory=list)

  class Model(BaseModelAlias.Model, alias="Entities"):
    entities: List[TExtractedEntity.Model] = Field(..., description="Array of extracted entities from the text")

    @staticmethod
    def to_dataclass(pydantic: "TEntityList.Model") -> "TEntityList":
      return TEntityList(entities=[e.to_dataclass(e) for e in pydantic.entities])


@dataclass
class TRelationList(BaseModelAlias):
  """Response of the relationship extraction prompt."""

  relationships: List[TExtractedRelation] = field(default_factory=list)

  class Model(BaseModelAlias.Model, alias="Relationships"):
    relationships: List[TExtractedRelation.Model] = Field(
      ..., description="Array of extracted relationships between entities"
    )

    @staticmethod
    def to_dataclass(pydantic: "TRelationList.Model") -> "TRelationList":
      return TRelationList(relationships=[r.to_dataclass(r) for r in pydantic.relationships])


@dataclass
class TExtractionResult:
  """Everything extracted from one chunk, ready to be merged into the graph."""

  chunk_id: TId = field()
  session_id: TId = field()
  embedding: TEmbedding = field()
  entities: List[TExtractedEntity] = field(default_factory=list)
  relationships: List[TExtractedRelation] = field(default_factory=list)
  summary: Optional[str] = field(default=None)


@dataclass
class TExtractionFailure:
  """Marker returned in place of a TExtractionResult when a chunk could not be extracted."""

  chunk_id: TId = field()
  error: str = field()


####################################################################################################
# RETRIEVAL
####################################################################################################


@dataclass
class TRetrievalResult:
  """A ranked memory returned by a search.

  Attributes:
      chunk_id: The retrieved chunk, or None for a synthesized graph-summary result.
      score: Relevance score, higher is better.
      strategy: The strategy that produced the result.
      explanation: Short human-readable reason for the score.
      content: Text of the chunk, None for graph-summary.
      context: Synthesized context of a graph-summary result.
      source_chunk_ids: Chunks that contributed to the result.
  """

  chunk_id: Optional[TId] = field()
  score: float = field()
  strategy: str = field()
  explanation: Optional[str] = field(default=None)
  content: Optional[str] = field(default=None)
  context: Optional[str] = field(default=None)
  source_chunk_ids: List[TId] = field(default_factory=list)


@dataclass
class TSubgraph:
  """A set of entities and the relations between them."""

  entities: List[TEntity] = field(default_factory=list)
  relations: List[TRelation] = field(default_factory=list)


@dataclass
class TGraphPath:
  """A simple path between two entities, scored by the sum of its relation weights."""

  entities: List[TEntity] = field(default_factory=list)
  relations: List[TRelation] = field(default_factory=list)
  total_weight: float = field(default=0.0)


@dataclass
class TQueryResponse:
  """Answer to a question together with the results and the context used to produce it."""

  response: Any = field()
  results: List[TRetrievalResult] = field(default_factory=list)
  context: str = field(default="")
