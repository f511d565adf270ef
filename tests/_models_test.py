"""Unit tests for souvenir data models and prompt serialization helpers.

This module tests the slim JSON schemas sent to the LLM and the formatting utilities
used to build the context of a question: numbered reference lists and relationship
triplets grouped by label.
"""
# type: ignore
import unittest

from souvenir._models import TAnswer, dump_to_reference_list, dump_triplets
from souvenir._types import TExtractedEntity, TRelationList


class TestModels(unittest.TestCase):
    """Test suite for the structured output models."""
    def test_alias_and_slim_schema(self):
        """Aliased models are renamed and their schema carries no required list nor property titles."""
        schema = TExtractedEntity.Model.model_json_schema()
        self.assertEqual(schema["title"], "Entity")
        self.assertNotIn("required", schema)
        self.assertNotIn("title", schema["properties"]["name"])

    def test_nested_alias(self):
        model = TRelationList.Model(relationships=[{"source": "Alice", "target": "Bob", "type": "met"}])
        relations = model.to_dataclass(model)
        self.assertEqual(relations.relationships[0].label, "met")
        self.assertIsNone(relations.relationships[0].confidence)

    def test_answer(self):
        self.assertEqual(TAnswer(answer="Paris").answer, "Paris")


class TestDumpToReferenceList(unittest.TestCase):
    """Test suite for dump_to_reference_list utility function."""

    def test_empty_list(self):
        self.assertEqual(dump_to_reference_list([]), [])

    def test_multiple_elements(self):
        """Elements are numbered from 1 and followed by the separator."""
        data = ["item1", "item2", "item3"]
        expected = ["[1]  item1\n=====\n\n", "[2]  item2\n=====\n\n", "[3]  item3\n=====\n\n"]
        self.assertEqual(dump_to_reference_list(data), expected)

    def test_custom_separator(self):
        self.assertEqual(dump_to_reference_list(["item1", "item2"], " | "), ["[1]  item1 | ", "[2]  item2 | "])


class TestDumpTriplets(unittest.TestCase):
    """Test suite for dump_triplets utility function."""

    def test_grouped_by_label(self):
        text = dump_triplets("Alice", [("met", "Bob", 2.0), ("located_in", "Paris", 1.0), ("met", "Carol", 0.5)], "PERSON")
        self.assertEqual(
            text,
            "**Node**: Alice\n"
            "**Type**: PERSON\n"
            "\n**Relationships**:\n"
            "  met:\n"
            "    - Bob (weight: 2.00)\n"
            "    - Carol (weight: 0.50)\n"
            "  located_in:\n"
            "    - Paris (weight: 1.00)",
        )

    def test_without_type_nor_relationships(self):
        self.assertEqual(dump_triplets("Alice", []), "**Node**: Alice")

    def test_long_names_are_truncated(self):
        text = dump_triplets("Alice", [("met", "B" * 150, 1.0)])
        self.assertIn("    - " + "B" * 100 + "... (weight: 1.00)", text)


if __name__ == "__main__":
    unittest.main()
