"""Unit tests for the information extraction service.

This module tests:
- Embedding, entity and relationship extraction for a batch of chunks
- Confinement of provider failures to their own chunk
- Dimension checks, self-loop filtering and summary fallback
"""
# type: ignore
import unittest

import numpy as np

from souvenir._exceptions import ProviderError, ValidationError
from souvenir._services import DefaultInformationExtractionService, ProcessParam
from souvenir._types import TChunk, TExtractionFailure, TExtractionResult
from tests._fakes import EMBEDDING_DIM, FakeEmbeddingService, FakeLLMService


def make_chunk(i, content):
    return TChunk(id=f"c{i}", content=content, session_id="s")


class TestDefaultInformationExtractionService(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.llm = FakeLLMService()
        self.embedder = FakeEmbeddingService()
        self.service = DefaultInformationExtractionService(embedding_dim=EMBEDDING_DIM)

    async def test_extract_entities_and_relationships(self):
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Alice met Bob in Paris.")], ProcessParam()
        )

        self.assertIsInstance(result, TExtractionResult)
        self.assertEqual(result.chunk_id, "c1")
        self.assertEqual(result.session_id, "s")
        self.assertEqual(result.embedding.shape, (EMBEDDING_DIM,))
        self.assertEqual(result.embedding.dtype, np.float32)
        self.assertEqual({e.name for e in result.entities}, {"Alice", "Bob", "Paris"})
        self.assertEqual(
            {(r.source, r.target, r.label) for r in result.relationships},
            {("Alice", "Bob", "met"), ("Alice", "Paris", "located in")},
        )
        self.assertIsNone(result.summary)

    async def test_relationships_need_two_entities(self):
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Alice likes cake.")], ProcessParam()
        )
        self.assertEqual([e.name for e in result.entities], ["Alice"])
        self.assertEqual(result.relationships, [])
        # Only the entity prompt was sent
        self.assertEqual(len(self.llm.prompts), 1)

    async def test_empty_extraction_is_valid(self):
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Nothing to see here.")], ProcessParam()
        )
        self.assertIsInstance(result, TExtractionResult)
        self.assertEqual(result.entities, [])
        self.assertEqual(result.relationships, [])

    async def test_entity_extraction_disabled(self):
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Alice met Bob.")], ProcessParam(extract_entities=False)
        )
        self.assertEqual(result.entities, [])
        self.assertEqual(self.llm.prompts, [])

    async def test_embedding_failure_is_confined_to_its_chunk(self):
        self.embedder.fail_on = ["Bob"]
        chunks = [
            make_chunk(1, "Alice went to Paris."),
            make_chunk(2, "Bob stayed home."),
            make_chunk(3, "Carol lives in London."),
        ]
        results = await self.service.extract(self.llm, self.embedder, chunks, ProcessParam())

        self.assertEqual([r.chunk_id for r in results], ["c1", "c2", "c3"])
        self.assertIsInstance(results[0], TExtractionResult)
        self.assertIsInstance(results[1], TExtractionFailure)
        self.assertIn("Embedding provider unavailable", results[1].error)
        self.assertIsInstance(results[2], TExtractionResult)

    async def test_llm_failure_is_confined_to_its_chunk(self):
        self.llm.fail_on = ["London"]
        chunks = [make_chunk(1, "Alice met Bob."), make_chunk(2, "Carol lives in London.")]
        results = await self.service.extract(self.llm, self.embedder, chunks, ProcessParam())
        self.assertIsInstance(results[0], TExtractionResult)
        self.assertIsInstance(results[1], TExtractionFailure)

    async def test_dimension_mismatch_is_raised(self):
        service = DefaultInformationExtractionService(embedding_dim=EMBEDDING_DIM + 1)
        with self.assertRaises(ValidationError):
            await service.extract(self.llm, self.embedder, [make_chunk(1, "Alice")], ProcessParam())

    async def test_self_loops_are_dropped(self):
        self.llm.relations = [("Alice", " alice ", "knows"), ("Alice", "Bob", "met")]
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Alice met Bob, alice said.")], ProcessParam()
        )
        self.assertEqual([(r.source, r.target) for r in result.relationships], [("Alice", "Bob")])

    async def test_summaries(self):
        [result] = await self.service.extract(
            self.llm, self.embedder, [make_chunk(1, "Alice met Bob in Paris.")], ProcessParam(generate_summaries=True)
        )
        self.assertEqual(result.summary, "Summary: Alice met Bob in Par")

    async def test_summary_falls_back_to_truncated_content(self):
        content = "Alice " * 50
        llm = FakeLLMService()
        original = llm.send_message

        async def send_message(prompt, **kwargs):
            if prompt.startswith("Provide a concise summary"):
                raise ProviderError("summary unavailable")
            return await original(prompt, **kwargs)

        llm.send_message = send_message
        [result] = await self.service.extract(
            llm, self.embedder, [make_chunk(1, content)], ProcessParam(generate_summaries=True, summary_max_length=10)
        )
        self.assertIsInstance(result, TExtractionResult)
        self.assertEqual(result.summary, content[:10] + "...")

    async def test_prompt_overrides(self):
        params = ProcessParam(prompts={"entity_extraction": "Entities please.\nText:\n{content}"})
        [result] = await self.service.extract(self.llm, self.embedder, [make_chunk(1, "Alice met Bob.")], params)
        self.assertEqual(self.llm.prompts[0], "Entities please.\nText:\nAlice met Bob.")
        self.assertEqual({e.name for e in result.entities}, {"Alice", "Bob"})


if __name__ == "__main__":
    unittest.main()
