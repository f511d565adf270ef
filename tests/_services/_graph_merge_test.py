"""Unit tests for the graph merge service and the default merge policy.

This module tests:
- Entity resolution, mention counting and type upgrades
- Relationship weight accumulation across chunks
- Atomicity of the per-chunk transaction and retries on conflicts
"""
# type: ignore
import unittest

import numpy as np

from souvenir._exceptions import MergeConflictError, ProviderError
from souvenir._policies import DefaultGraphMergePolicy
from souvenir._services import DefaultGraphMergeService, DefaultGraphMergeServiceConfig
from souvenir._storage import PickleMemoryStore, PickleMemoryStoreConfig
from souvenir._types import (
    UNKNOWN_ENTITY_TYPE,
    TChunk,
    TChunkStatus,
    TExtractedEntity,
    TExtractedRelation,
    TExtractionResult,
)
from tests._fakes import EMBEDDING_DIM

NO_WAIT = DefaultGraphMergeServiceConfig(max_merge_attempts=3, backoff_min=0.0, backoff_max=0.0)
ALICE_AND_BOB = [("Alice", "PERSON"), ("Bob", "PERSON")]
ALICE_MET_BOB = [("Alice", "Bob", "met", None)]


def make_result(chunk_id, entities=(), relationships=(), summary=None):
    return TExtractionResult(
        chunk_id=chunk_id,
        session_id="s",
        embedding=np.zeros(EMBEDDING_DIM, dtype=np.float32),
        entities=[TExtractedEntity(name=n, type=t) for n, t in entities],
        relationships=[
            TExtractedRelation(source=source, target=target, label=label, confidence=confidence)
            for source, target, label, confidence in relationships
        ],
        summary=summary,
    )


class FlakyPolicy(DefaultGraphMergePolicy):
    """Merge policy raising a conflict on its first calls."""

    def __init__(self, conflicts, error=None):
        super().__init__()
        self.conflicts = conflicts
        self.error = error
        self.calls = 0

    async def __call__(self, store, result):
        self.calls += 1
        merged = await super().__call__(store, result)
        if self.calls <= self.conflicts:
            raise self.error or MergeConflictError("concurrent writer")
        return merged


class TestDefaultGraphMergeService(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=EMBEDDING_DIM))
        await self.store.insert_chunks(
            [TChunk(id=f"c{i}", content=f"chunk {i}", session_id="s") for i in range(1, 4)]
        )
        self.service = DefaultGraphMergeService(merge_policy=DefaultGraphMergePolicy(), config=NO_WAIT)

    async def test_merge_creates_entities_and_relations(self):
        entities, relations = await self.service.merge(
            self.store,
            make_result(
                "c1",
                entities=[("Alice", "PERSON"), ("Bob", "PERSON")],
                relationships=[("Alice", "Bob", "met", None)],
            ),
        )

        self.assertEqual({e.name for e in entities}, {"alice", "bob"})
        self.assertEqual({e.display_name for e in entities}, {"Alice", "Bob"})
        self.assertTrue(all(e.mention_count == 1 for e in entities))
        [relation] = relations
        self.assertEqual(relation.label, "met")
        self.assertEqual(relation.weight, 1.0)
        self.assertEqual((await self.store.get_chunk("c1")).status, TChunkStatus.PROCESSED)
        self.assertEqual(
            sorted(chunk_id for _, chunk_id in await self.store.get_mentions("s")), ["c1", "c1"]
        )

    async def test_same_relationship_from_two_chunks_weighs_two(self):
        await self.service.merge(
            self.store,
            make_result("c1", entities=ALICE_AND_BOB, relationships=ALICE_MET_BOB),
        )
        await self.service.merge(
            self.store,
            make_result(
                "c2",
                entities=[("alice", "PERSON"), ("BOB", "PERSON")],
                relationships=[("BOB", " alice", "Met", None)],
            ),
        )

        [relation] = await self.store.get_relations("s")
        self.assertEqual(relation.weight, 2.0)
        alice = await self.store.get_entity_by_name("s", "alice")
        self.assertEqual(alice.mention_count, 2)
        self.assertEqual(alice.display_name, "Alice")
        self.assertEqual(len(await self.store.get_entities("s")), 2)

    async def test_duplicates_within_a_chunk_count_once(self):
        await self.service.merge(
            self.store,
            make_result(
                "c1",
                entities=[("Alice", "PERSON"), ("Alice", "PERSON"), ("Bob", "PERSON")],
                relationships=[("Alice", "Bob", "met", None), ("Bob", "Alice", "met", None)],
            ),
        )
        [relation] = await self.store.get_relations("s")
        self.assertEqual(relation.weight, 1.0)
        self.assertEqual((await self.store.get_entity_by_name("s", "alice")).mention_count, 1)

    async def test_distinct_labels_are_distinct_relations(self):
        await self.service.merge(
            self.store,
            make_result(
                "c1",
                entities=[("Alice", "PERSON"), ("Bob", "PERSON")],
                relationships=[("Alice", "Bob", "met", None), ("Alice", "Bob", "works with", None)],
            ),
        )
        self.assertEqual(sorted(r.label for r in await self.store.get_relations("s")), ["met", "works_with"])

    async def test_unknown_endpoint_type_is_upgraded(self):
        await self.service.merge(
            self.store,
            make_result("c1", entities=[("Alice", "PERSON")], relationships=[("Alice", "Paris", "visited", None)]),
        )
        paris = await self.store.get_entity_by_name("s", "paris")
        self.assertEqual(paris.type, UNKNOWN_ENTITY_TYPE)

        await self.service.merge(self.store, make_result("c2", entities=[("Paris", "location")]))
        paris = await self.store.get_entity_by_name("s", "paris")
        self.assertEqual(paris.type, "LOCATION")
        self.assertEqual(paris.mention_count, 2)

    async def test_self_loops_are_skipped(self):
        _, relations = await self.service.merge(
            self.store,
            make_result("c1", entities=[("Alice", "PERSON")], relationships=[("Alice", "ALICE", "is", None)]),
        )
        self.assertEqual(relations, [])
        self.assertEqual(await self.store.get_relations("s"), [])

    async def test_confidence_increments(self):
        service = DefaultGraphMergeService(
            merge_policy=DefaultGraphMergePolicy(DefaultGraphMergePolicy.Config(use_confidence=True)), config=NO_WAIT
        )
        await service.merge(self.store, make_result("c1", relationships=[("Alice", "Bob", "met", 0.25)]))
        await service.merge(self.store, make_result("c2", relationships=[("Alice", "Bob", "met", None)]))
        [relation] = await self.store.get_relations("s")
        self.assertAlmostEqual(relation.weight, 1.25)

    async def test_summary_is_stored_in_chunk_metadata(self):
        await self.service.merge(self.store, make_result("c1", summary="A short summary"))
        chunk = await self.store.get_chunk("c1")
        self.assertEqual(chunk.metadata["summary"], "A short summary")
        self.assertEqual(chunk.status, TChunkStatus.PROCESSED)

    async def test_failed_merge_is_rolled_back(self):
        policy = FlakyPolicy(conflicts=1, error=RuntimeError("crash"))
        service = DefaultGraphMergeService(merge_policy=policy, config=NO_WAIT)
        with self.assertRaises(RuntimeError):
            await service.merge(
                self.store,
                make_result("c1", entities=ALICE_AND_BOB, relationships=ALICE_MET_BOB),
            )
        self.assertEqual(await self.store.get_entities("s"), [])
        self.assertEqual(await self.store.get_relations("s"), [])
        self.assertEqual(await self.store.get_mentions("s"), [])
        self.assertEqual((await self.store.get_chunk("c1")).status, TChunkStatus.PENDING)

    async def test_conflicts_are_retried(self):
        policy = FlakyPolicy(conflicts=2)
        service = DefaultGraphMergeService(merge_policy=policy, config=NO_WAIT)
        await service.merge(
            self.store,
            make_result("c1", entities=ALICE_AND_BOB, relationships=ALICE_MET_BOB),
        )
        self.assertEqual(policy.calls, 3)
        # Rolled back attempts leave no trace
        [relation] = await self.store.get_relations("s")
        self.assertEqual(relation.weight, 1.0)
        self.assertEqual((await self.store.get_entity_by_name("s", "alice")).mention_count, 1)

    async def test_exhausted_conflicts_become_provider_error(self):
        service = DefaultGraphMergeService(merge_policy=FlakyPolicy(conflicts=10), config=NO_WAIT)
        with self.assertRaises(ProviderError):
            await service.merge(self.store, make_result("c1", entities=[("Alice", "PERSON")]))
        self.assertEqual(await self.store.get_entities("s"), [])
        self.assertEqual((await self.store.get_chunk("c1")).status, TChunkStatus.PENDING)


if __name__ == "__main__":
    unittest.main()
