"""Unit tests for the in-memory store.

This module tests:
- Session, chunk, entity and relation bookkeeping
- Brute-force vector search over processed chunks
- Transaction rollback and lock timeouts
- Pickle persistence through the working directory
"""
# type: ignore
import os
import tempfile
import unittest
from dataclasses import replace

import numpy as np

from souvenir._exceptions import MergeConflictError, ValidationError
from souvenir._storage import PickleMemoryStore, PickleMemoryStoreConfig
from souvenir._types import TChunk, TChunkEmbedding, TChunkStatus, TEntity, TRelation, TSession


def vector(*values):
    return np.array(values, dtype=np.float32)


def make_entity(name, session_id="s"):
    return TEntity(id=f"e-{name}", name=name, display_name=name.title(), type="PERSON", session_id=session_id)


class TestPickleMemoryStore(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=3))
        await self.store.open()

    async def test_sessions(self):
        await self.store.upsert_session(TSession(id="s", metadata={"user": "u1"}))
        self.assertEqual((await self.store.get_session("s")).metadata, {"user": "u1"})
        self.assertIsNone(await self.store.get_session("other"))
        self.assertEqual([s.id for s in await self.store.get_sessions()], ["s"])

    async def test_insert_chunks_skips_known_ids(self):
        first = await self.store.insert_chunks([TChunk(id="a", content="A", session_id="s")])
        second = await self.store.insert_chunks(
            [TChunk(id="a", content="changed", session_id="s"), TChunk(id="b", content="B", session_id="s")]
        )
        self.assertEqual([c.id for c in first], ["a"])
        self.assertEqual([c.id for c in second], ["b"])
        self.assertEqual((await self.store.get_chunk("a")).content, "A")

    async def test_get_chunks_filters_by_session_and_status(self):
        await self.store.insert_chunks(
            [
                TChunk(id="a", content="A", session_id="s"),
                TChunk(id="b", content="B", session_id="s"),
                TChunk(id="c", content="C", session_id="other"),
            ]
        )
        await self.store.set_chunk_status("b", TChunkStatus.FAILED, error="boom")

        self.assertEqual([c.id for c in await self.store.get_chunks("s")], ["a", "b"])
        self.assertEqual([c.id for c in await self.store.get_chunks("s", [TChunkStatus.FAILED])], ["b"])
        self.assertEqual((await self.store.get_chunk("b")).error, "boom")

    async def test_set_chunk_status_merges_metadata(self):
        await self.store.insert_chunks([TChunk(id="a", content="A", session_id="s", metadata={"source": "doc"})])
        await self.store.set_chunk_status("a", TChunkStatus.FAILED, error="boom")
        await self.store.set_chunk_status("a", TChunkStatus.PROCESSED, summary="short")

        chunk = await self.store.get_chunk("a")
        self.assertEqual(chunk.status, TChunkStatus.PROCESSED)
        self.assertIsNone(chunk.error)
        self.assertEqual(chunk.metadata, {"source": "doc", "summary": "short"})

    async def test_embedding_dimension_is_checked(self):
        with self.assertRaises(ValidationError):
            await self.store.upsert_embedding(TChunkEmbedding(chunk_id="a", vector=vector(1, 0)))
        with self.assertRaises(ValidationError):
            await self.store.vector_search("s", vector(1, 0, 0, 0))

    async def test_vector_search_returns_processed_chunks(self):
        chunks = [
            TChunk(id="old", content="old", session_id="s", created_at=1.0),
            TChunk(id="new", content="new", session_id="s", created_at=2.0),
            TChunk(id="far", content="far", session_id="s", created_at=3.0),
            TChunk(id="pending", content="pending", session_id="s", created_at=4.0),
            TChunk(id="elsewhere", content="elsewhere", session_id="other", created_at=5.0),
        ]
        await self.store.insert_chunks(chunks)
        for chunk_id, v in [
            ("old", vector(1, 0, 0)),
            ("new", vector(2, 0, 0)),
            ("far", vector(0, 1, 0)),
            ("pending", vector(1, 0, 0)),
            ("elsewhere", vector(1, 0, 0)),
        ]:
            await self.store.upsert_embedding(TChunkEmbedding(chunk_id=chunk_id, vector=v))
        for chunk_id in ["old", "new", "far", "elsewhere"]:
            await self.store.set_chunk_status(chunk_id, TChunkStatus.PROCESSED)

        hits = await self.store.vector_search("s", vector(1, 0, 0))
        self.assertEqual([c.id for c, _ in hits], ["new", "old", "far"])
        self.assertAlmostEqual(hits[0][1], 1.0)
        self.assertAlmostEqual(hits[2][1], 0.0)

        hits = await self.store.vector_search("s", vector(1, 0, 0), top_k=1)
        self.assertEqual([c.id for c, _ in hits], ["new"])

        self.assertEqual(await self.store.vector_search("empty", vector(1, 0, 0)), [])

    async def test_entities_by_name(self):
        await self.store.upsert_entity(make_entity("alice"))
        await self.store.upsert_entity(replace(make_entity("alice", session_id="other"), id="e-other-alice"))
        self.assertEqual((await self.store.get_entity_by_name("s", "alice")).session_id, "s")
        self.assertEqual((await self.store.get_entity_by_name("other", "alice")).id, "e-other-alice")
        self.assertIsNone(await self.store.get_entity_by_name("s", "bob"))
        self.assertEqual(len(await self.store.get_entities("s")), 1)

    async def test_relations_ignore_direction(self):
        relation = TRelation(id="r", source="e-alice", target="e-bob", label="met", weight=1.0, session_id="s")
        await self.store.upsert_relation(relation)
        self.assertEqual(await self.store.find_relation("s", "e-bob", "e-alice", "met"), relation)
        self.assertIsNone(await self.store.find_relation("s", "e-bob", "e-alice", "knows"))
        self.assertIsNone(await self.store.find_relation("other", "e-alice", "e-bob", "met"))

    async def test_mentions(self):
        await self.store.upsert_entity(make_entity("alice"))
        await self.store.upsert_entity(make_entity("carol", session_id="other"))
        await self.store.add_mentions("c2", ["e-alice"])
        await self.store.add_mentions("c1", ["e-alice", "e-carol"])
        await self.store.add_mentions("c1", ["e-alice"])

        self.assertEqual(await self.store.get_mentions("s"), [("e-alice", "c1"), ("e-alice", "c2")])
        self.assertEqual(await self.store.get_mentions("other"), [("e-carol", "c1")])

    async def test_delete_chunk(self):
        await self.store.insert_chunks([TChunk(id="a", content="A", session_id="s")])
        await self.store.upsert_embedding(TChunkEmbedding(chunk_id="a", vector=vector(1, 0, 0)))
        await self.store.upsert_entity(replace(make_entity("alice"), mention_count=2))
        await self.store.add_mentions("a", ["e-alice"])
        await self.store.add_mentions("b", ["e-alice"])

        self.assertEqual((await self.store.delete_chunk("a")).id, "a")
        self.assertIsNone(await self.store.get_chunk("a"))
        self.assertIsNone(await self.store.get_embedding("a"))
        self.assertEqual(await self.store.get_mentions("s"), [("e-alice", "b")])
        self.assertEqual((await self.store.get_entity_by_name("s", "alice")).mention_count, 1)
        self.assertIsNone(await self.store.delete_chunk("a"))

    async def test_health_check(self):
        self.assertTrue(await self.store.health_check())
        with tempfile.TemporaryDirectory() as working_dir:
            config = PickleMemoryStoreConfig(embedding_dim=3, working_dir=os.path.join(working_dir, "new"))
            self.assertTrue(await PickleMemoryStore(config).health_check())


class TestTransactions(unittest.IsolatedAsyncioTestCase):
    async def asyncSetUp(self):
        self.store = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=3, lock_timeout=0.01))
        await self.store.insert_chunks([TChunk(id="a", content="A", session_id="s")])
        await self.store.upsert_entity(make_entity("alice"))

    async def test_writes_are_rolled_back(self):
        with self.assertRaises(RuntimeError):
            async with self.store.transaction("s") as store:
                await store.upsert_entity(make_entity("bob"))
                await store.upsert_entity(replace(make_entity("alice"), mention_count=5))
                await store.upsert_relation(
                    TRelation(id="r", source="e-alice", target="e-bob", label="met", weight=1.0, session_id="s")
                )
                await store.add_mentions("a", ["e-alice", "e-bob"])
                await store.set_chunk_status("a", TChunkStatus.PROCESSED, summary="short")
                await store.insert_chunks([TChunk(id="b", content="B", session_id="s")])
                raise RuntimeError("crash")

        self.assertEqual([e.name for e in await self.store.get_entities("s")], ["alice"])
        self.assertEqual((await self.store.get_entity_by_name("s", "alice")).mention_count, 0)
        self.assertIsNone(await self.store.get_entity_by_name("s", "bob"))
        self.assertEqual(await self.store.get_relations("s"), [])
        self.assertIsNone(await self.store.find_relation("s", "e-alice", "e-bob", "met"))
        self.assertEqual(await self.store.get_mentions("s"), [])
        chunk = await self.store.get_chunk("a")
        self.assertEqual(chunk.status, TChunkStatus.PENDING)
        self.assertEqual(chunk.metadata, {})
        self.assertIsNone(await self.store.get_chunk("b"))

    async def test_chunk_deletion_is_rolled_back(self):
        await self.store.upsert_embedding(TChunkEmbedding(chunk_id="a", vector=vector(1, 0, 0)))
        await self.store.add_mentions("a", ["e-alice"])
        with self.assertRaises(RuntimeError):
            async with self.store.transaction("s") as store:
                await store.delete_chunk("a")
                raise RuntimeError("crash")

        self.assertEqual((await self.store.get_chunk("a")).content, "A")
        self.assertIsNotNone(await self.store.get_embedding("a"))
        self.assertEqual(await self.store.get_mentions("s"), [("e-alice", "a")])

    async def test_successful_transaction_is_kept(self):
        async with self.store.transaction("s") as store:
            await store.upsert_entity(make_entity("bob"))
        self.assertIsNotNone(await self.store.get_entity_by_name("s", "bob"))

    async def test_busy_session_raises_conflict(self):
        async with self.store.transaction("s"):
            with self.assertRaises(MergeConflictError):
                async with self.store.transaction("s"):
                    pass
            # Other sessions are not blocked
            async with self.store.transaction("other"):
                pass


class TestPersistence(unittest.IsolatedAsyncioTestCase):
    async def test_commit_and_reopen(self):
        with tempfile.TemporaryDirectory() as working_dir:
            config = PickleMemoryStoreConfig(embedding_dim=3, working_dir=working_dir)
            store = PickleMemoryStore(config)
            await store.open()
            await store.upsert_session(TSession(id="s"))
            await store.insert_chunks([TChunk(id="a", content="A", session_id="s")])
            await store.upsert_embedding(TChunkEmbedding(chunk_id="a", vector=vector(1, 2, 3)))
            await store.upsert_entity(make_entity("alice"))
            await store.upsert_entity(make_entity("bob"))
            await store.upsert_relation(
                TRelation(id="r", source="e-alice", target="e-bob", label="met", weight=2.0, session_id="s")
            )
            await store.add_mentions("a", ["e-alice"])
            await store.close()
            self.assertTrue(os.path.exists(os.path.join(working_dir, PickleMemoryStore.RESOURCE_NAME)))

            reopened = PickleMemoryStore(config)
            await reopened.open()
            self.assertIsNotNone(await reopened.get_session("s"))
            self.assertEqual((await reopened.get_chunk("a")).content, "A")
            np.testing.assert_array_equal((await reopened.get_embedding("a")).vector, vector(1, 2, 3))
            self.assertEqual((await reopened.get_entity_by_name("s", "bob")).display_name, "Bob")
            self.assertEqual((await reopened.find_relation("s", "e-bob", "e-alice", "met")).weight, 2.0)
            self.assertEqual(await reopened.get_mentions("s"), [("e-alice", "a")])

            mismatched = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=4, working_dir=working_dir))
            with self.assertRaises(ValidationError):
                await mismatched.open()

    async def test_missing_file_opens_empty(self):
        with tempfile.TemporaryDirectory() as working_dir:
            store = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=3, working_dir=working_dir))
            await store.open()
            self.assertEqual(await store.get_sessions(), [])

    async def test_corrupted_file_raises(self):
        with tempfile.TemporaryDirectory() as working_dir:
            with open(os.path.join(working_dir, PickleMemoryStore.RESOURCE_NAME), "wb") as f:
                f.write(b"not a pickle")
            store = PickleMemoryStore(PickleMemoryStoreConfig(embedding_dim=3, working_dir=working_dir))
            with self.assertRaises(ValidationError):
                await store.open()


if __name__ == "__main__":
    unittest.main()
