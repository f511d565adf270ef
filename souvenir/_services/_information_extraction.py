"""Embedding and LLM-powered entity and relationship extraction.

For every chunk, the extraction service:
1. Embeds the content and checks the vector against the configured dimension
2. Asks the LLM for the entities mentioned in the chunk
3. When at least two entities were found, asks the LLM for the relationships between them
4. Optionally asks the LLM for a short summary, falling back to the truncated content

Chunks are processed concurrently and failures are confined to their chunk: a provider
error or a malformed LLM response turns into a TExtractionFailure, while the other chunks
of the batch complete normally. Only a dimension mismatch (a configuration error) is
raised to the caller.
"""

import asyncio
from dataclasses import dataclass, field
from typing import List, Optional, Union

import numpy as np

from souvenir._exceptions import ValidationError
from souvenir._llm import BaseEmbeddingService, BaseLLMService, format_and_send_prompt
from souvenir._models import TSummary
from souvenir._types import (
    TChunk,
    TEmbedding,
    TEmbeddingType,
    TEntityList,
    TExtractedEntity,
    TExtractedRelation,
    TExtractionFailure,
    TExtractionResult,
    TRelationList,
)
from souvenir._utils import logger

from ._base import BaseInformationExtractionService, ProcessParam


@dataclass
class DefaultInformationExtractionService(BaseInformationExtractionService):
    """Extraction service issuing one embedding call and up to three LLM calls per chunk.

    Attributes:
        embedding_dim: Number of dimensions every chunk vector must have.
    """

    embedding_dim: int = field(default=1536)

    async def extract(
        self,
        llm: BaseLLMService,
        embedding_service: BaseEmbeddingService,
        chunks: List[TChunk],
        params: ProcessParam,
    ) -> List[Union[TExtractionResult, TExtractionFailure]]:
        """Extract all chunks concurrently.

        Args:
            llm: The language model service.
            embedding_service: The embedding service.
            chunks: Chunks to process.
            params: Extraction switches and prompt overrides.

        Returns:
            One TExtractionResult or TExtractionFailure per chunk, in the order of ``chunks``.

        Raises:
            ValidationError: If the embedding service returns vectors of the wrong dimension.
        """
        return list(
            await asyncio.gather(*[self._extract_from_chunk(llm, embedding_service, chunk, params) for chunk in chunks])
        )

    async def _extract_from_chunk(
        self, llm: BaseLLMService, embedding_service: BaseEmbeddingService, chunk: TChunk, params: ProcessParam
    ) -> Union[TExtractionResult, TExtractionFailure]:
        try:
            embedding = await self._embed(embedding_service, chunk)

            entities: List[TExtractedEntity] = []
            relationships: List[TExtractedRelation] = []
            if params.extract_entities:
                entities = await self._extract_entities(llm, chunk, params)
                if len(entities) >= 2:
                    relationships = await self._extract_relationships(llm, chunk, entities, params)
        except ValidationError:
            raise
        except Exception as e:
            logger.error(f"Error during information extraction from chunk {chunk.id}: {e}")
            return TExtractionFailure(chunk_id=chunk.id, error=str(e) or type(e).__name__)

        summary = await self._summarize(llm, chunk, params) if params.generate_summaries else None

        logger.debug(
            f"Extracted {len(entities)} entities and {len(relationships)} relationships from chunk {chunk.id}."
        )
        return TExtractionResult(
            chunk_id=chunk.id,
            session_id=chunk.session_id,
            embedding=embedding,
            entities=entities,
            relationships=relationships,
            summary=summary,
        )

    async def _embed(self, embedding_service: BaseEmbeddingService, chunk: TChunk) -> TEmbedding:
        vectors = np.asarray(await embedding_service.encode([chunk.content]), dtype=TEmbeddingType)
        if vectors.ndim != 2 or vectors.shape[0] != 1:
            raise ValueError(f"Expected one embedding for chunk {chunk.id}, got an array of shape {vectors.shape}.")
        if vectors.shape[1] != self.embedding_dim:
            raise ValidationError(
                f"Embedding dimension mismatch: expected {self.embedding_dim}, got {vectors.shape[1]}."
            )
        return vectors[0]

    async def _extract_entities(
        self, llm: BaseLLMService, chunk: TChunk, params: ProcessParam
    ) -> List[TExtractedEntity]:
        entity_list, _ = await format_and_send_prompt(
            prompt_key="entity_extraction",
            llm=llm,
            format_kwargs={"content": chunk.content},
            response_model=TEntityList,
            templates=params.prompts,
        )
        return [entity for entity in entity_list.entities if entity.name]

    async def _extract_relationships(
        self, llm: BaseLLMService, chunk: TChunk, entities: List[TExtractedEntity], params: ProcessParam
    ) -> List[TExtractedRelation]:
        relation_list, _ = await format_and_send_prompt(
            prompt_key="relationship_extraction",
            llm=llm,
            format_kwargs={"entities": ", ".join(entity.name for entity in entities), "content": chunk.content},
            response_model=TRelationList,
            templates=params.prompts,
        )

        relationships: List[TExtractedRelation] = []
        for relation in relation_list.relationships:
            if self.normalizer(relation.source) == self.normalizer(relation.target):
                logger.debug(f"Dropping self-referencing relationship '{relation.label}' on '{relation.source}'.")
                continue
            relationships.append(relation)
        return relationships

    async def _summarize(self, llm: BaseLLMService, chunk: TChunk, params: ProcessParam) -> Optional[str]:
        max_length = params.summary_max_length
        try:
            summary, _ = await format_and_send_prompt(
                prompt_key="summarization",
                llm=llm,
                format_kwargs={"max_length": max_length, "content": chunk.content},
                response_model=TSummary,
                templates=params.prompts,
            )
            return summary.summary
        except Exception as e:
            logger.error(f"Summary generation failed for chunk {chunk.id}: {e}")
            return f"{chunk.content[:max_length]}..."
