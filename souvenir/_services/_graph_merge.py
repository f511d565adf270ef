"""Transactional merge of extraction results into the memory store.

Each chunk is merged in its own store transaction: the merge policy writes the entities,
relations and mentions, and the chunk is marked processed in the same unit of work. If
the transaction cannot be started because of a concurrent writer, it is retried with
exponential backoff; once the attempts are exhausted the failure is reported as a
ProviderError so the chunk is marked failed like any other per-chunk failure.
"""

from dataclasses import dataclass, field
from typing import List, Tuple

from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from souvenir._exceptions import MergeConflictError, ProviderError
from souvenir._storage._base import BaseMemoryStore
from souvenir._types import TChunkStatus, TEntity, TExtractionResult, TRelation
from souvenir._utils import logger

from ._base import BaseGraphMergeService


@dataclass
class DefaultGraphMergeServiceConfig:
    """Retry configuration of the merge service.

    Attributes:
        max_merge_attempts: Number of attempts before giving up on a conflicting transaction.
        backoff_min: Minimum wait between attempts, in seconds.
        backoff_max: Maximum wait between attempts, in seconds.
    """

    max_merge_attempts: int = field(default=3)
    backoff_min: float = field(default=0.1)
    backoff_max: float = field(default=2.0)


@dataclass
class DefaultGraphMergeService(BaseGraphMergeService):
    config: DefaultGraphMergeServiceConfig = field(default_factory=DefaultGraphMergeServiceConfig)

    async def merge(self, store: BaseMemoryStore, result: TExtractionResult) -> Tuple[List[TEntity], List[TRelation]]:
        """Merge one extraction result and mark its chunk processed.

        Raises:
            ProviderError: If the transaction kept conflicting after every attempt.
        """
        metadata = {"summary": result.summary} if result.summary is not None else {}
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.config.max_merge_attempts),
                wait=wait_exponential(multiplier=self.config.backoff_min, max=self.config.backoff_max),
                retry=retry_if_exception_type(MergeConflictError),
                reraise=True,
            ):
                with attempt:
                    if attempt.retry_state.attempt_number > 1:
                        logger.info(
                            f"Retrying merge of chunk {result.chunk_id} "
                            f"(attempt {attempt.retry_state.attempt_number}/{self.config.max_merge_attempts})."
                        )
                    async with store.transaction(result.session_id):
                        entities, relations = await self.merge_policy(store, result)
                        await store.set_chunk_status(result.chunk_id, TChunkStatus.PROCESSED, **metadata)
        except MergeConflictError as e:
            raise ProviderError(
                f"Could not merge chunk {result.chunk_id} after {self.config.max_merge_attempts} attempts: {e.message}"
            ) from e

        logger.debug(f"Merged chunk {result.chunk_id}: {len(entities)} entities, {len(relations)} relations.")
        return entities, relations
