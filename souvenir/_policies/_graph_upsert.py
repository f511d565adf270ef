"""Graph merge policies.

The default policy implements the reconciliation rules of the memory graph:

**Entities**: names are normalized by an entity normalizer; an entity with the same
normalized name in the same session is reused (its mention count grows by one per chunk),
otherwise a new one is created. An UNKNOWN type is replaced by the first concrete type seen.

**Relationships**: both endpoints go through the same resolution (endpoints never
mentioned as entities are created with the UNKNOWN type). A relationship is identified by
its unordered pair of endpoints, its normalized label and its session. An existing one
has its weight increased; otherwise it is created with the same increment as weight.
Self-loops are ignored.

**Mentions**: every resolved entity is linked to the chunk it was extracted from.
"""

import re
from dataclasses import dataclass, field, replace
from typing import Dict, List, Optional, Set, Tuple

from souvenir._storage._base import BaseMemoryStore
from souvenir._types import UNKNOWN_ENTITY_TYPE, TEntity, TExtractionResult, TId, TRelation
from souvenir._utils import logger, make_id

from ._base import BaseEntityNormalizer, BaseGraphMergePolicy

_WHITESPACE_RE = re.compile(r"\s+")
_LABEL_RE = re.compile(r"[\s\-]+")


@dataclass
class EntityNormalizer_CaseFold(BaseEntityNormalizer):  # noqa: N801
    """Case-folds and trims names, collapsing inner whitespace.

    "  Alice  Smith" and "alice smith" map to the same entity.
    """

    def __call__(self, name: str) -> str:
        return _WHITESPACE_RE.sub(" ", name.strip()).casefold()


def normalize_label(label: str) -> str:
    """Lowercase a relationship label and join its words with underscores ("Located In" -> "located_in")."""
    return _LABEL_RE.sub("_", label.strip()).strip("_").lower() or "related_to"


def normalize_type(entity_type: Optional[str]) -> str:
    cleaned = _WHITESPACE_RE.sub("_", (entity_type or "").strip()).upper()
    return cleaned or UNKNOWN_ENTITY_TYPE


@dataclass
class DefaultGraphMergePolicy(BaseGraphMergePolicy):
    """Merge policy with normalized-name entity resolution and weight accumulation.

    Attributes:
        config: Merge configuration.
        normalizer: Entity normalizer used to build deduplication keys.
    """

    @dataclass
    class Config:
        """Configuration for the default merge policy.

        Attributes:
            use_confidence: Increment relationship weights by the confidence reported by the
                LLM (when present) instead of 1.
        """

        use_confidence: bool = field(default=False)

    config: Config = field(default_factory=Config)
    normalizer: BaseEntityNormalizer = field(default_factory=EntityNormalizer_CaseFold)

    async def __call__(
        self, store: BaseMemoryStore, result: TExtractionResult
    ) -> Tuple[List[TEntity], List[TRelation]]:
        session_id = result.session_id
        resolved: Dict[str, TEntity] = {}
        mentioned: Set[TId] = set()

        async def _resolve(name: str, entity_type: Optional[str]) -> Optional[TEntity]:
            key = self.normalizer(name)
            if not key:
                return None
            entity_type = normalize_type(entity_type)

            entity = resolved.get(key)
            if entity is None:
                stored = await store.get_entity_by_name(session_id, key)
                if stored is None:
                    entity = TEntity(
                        id=make_id(session_id, key),
                        name=key,
                        display_name=name.strip(),
                        type=entity_type,
                        session_id=session_id,
                        mention_count=1,
                    )
                else:
                    # Counted once per chunk, however many times the chunk mentions it
                    entity = replace(stored, mention_count=stored.mention_count + 1)
            if entity.type == UNKNOWN_ENTITY_TYPE and entity_type != UNKNOWN_ENTITY_TYPE:
                entity = replace(entity, type=entity_type)

            resolved[key] = entity
            mentioned.add(entity.id)
            return entity

        for extracted_entity in result.entities:
            await _resolve(extracted_entity.name, extracted_entity.type)

        relation_increments: Dict[Tuple[frozenset[TId], str], Tuple[TEntity, TEntity, float]] = {}
        for extracted_relation in result.relationships:
            source = await _resolve(extracted_relation.source, None)
            target = await _resolve(extracted_relation.target, None)
            if source is None or target is None:
                logger.debug(f"Skipping relationship with an empty endpoint in chunk {result.chunk_id}.")
                continue
            if source.id == target.id:
                logger.debug(f"Skipping self-loop '{extracted_relation.label}' on '{source.name}'.")
                continue

            increment = 1.0
            if self.config.use_confidence and extracted_relation.confidence is not None:
                increment = max(0.0, float(extracted_relation.confidence))

            key = (frozenset((source.id, target.id)), normalize_label(extracted_relation.label))
            # Duplicates inside one chunk count once
            if key not in relation_increments:
                relation_increments[key] = (source, target, increment)

        entities = [await store.upsert_entity(entity) for entity in resolved.values()]
        await store.add_mentions(result.chunk_id, sorted(mentioned))

        relations: List[TRelation] = []
        for (_, label), (source, target, increment) in relation_increments.items():
            existing = await store.find_relation(session_id, source.id, target.id, label)
            if existing is None:
                relation = TRelation(
                    id=make_id(session_id, *sorted((source.id, target.id)), label),
                    source=source.id,
                    target=target.id,
                    label=label,
                    weight=increment,
                    session_id=session_id,
                )
            else:
                relation = replace(existing, weight=existing.weight + increment)
            relations.append(await store.upsert_relation(relation))

        return entities, relations
