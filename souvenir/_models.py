"""Pydantic data models and serialization utilities for LLM interactions.

This module provides:
- Base model classes with slim JSON schemas for LLM structured outputs
- Response models for question answering and summarization
- Serialization helpers that turn chunks and relationship triplets into prompt context
"""

from collections import defaultdict
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from pydantic import BaseModel, Field
from pydantic._internal import _model_construction

####################################################################################################
# LLM Models
####################################################################################################


def _json_schema_slim(schema: dict[str, Any]) -> None:
    """Remove the 'required' list and per-property titles to keep prompts short.

    Args:
        schema (dict): The JSON schema dictionary to modify in-place
    """
    schema.pop("required", None)
    for prop in schema.get("properties", {}).values():
        prop.pop("title", None)


class _BaseModelAliasMeta(_model_construction.ModelMetaclass):
    """Metaclass that renames a model in its JSON schema and applies the slim schema."""

    def __new__(
        cls, name: str, bases: tuple[type[Any], ...], dct: Dict[str, Any], alias: Optional[str] = None, **kwargs: Any
    ) -> type:
        if alias:
            dct["__qualname__"] = alias
            name = alias
        return super().__new__(cls, name, bases, dct, json_schema_extra=_json_schema_slim, **kwargs)


class BaseModelAlias:
    """Base class for dataclasses that have a pydantic twin used for structured output.

    Subclasses define a nested ``Model`` (the schema sent to the LLM) and implement
    ``Model.to_dataclass`` to convert the validated response back into the dataclass.
    """

    class Model(BaseModel, metaclass=_BaseModelAliasMeta):
        """Inner Model class using the custom metaclass."""

        @staticmethod
        def to_dataclass(pydantic: Any) -> Any:
            raise NotImplementedError

    def to_str(self) -> str:
        raise NotImplementedError


####################################################################################################
# LLM Dumping to strings
####################################################################################################


def dump_to_reference_list(data: Iterable[object], separator: str = "\n=====\n\n") -> List[str]:
    """Convert data objects to a numbered reference list format for LLM prompts.

    Args:
        data (Iterable[object]): Objects to format as references
        separator (str): Separator string between items. Defaults to "\\n=====\\n\\n".

    Returns:
        List[str]: List of formatted reference strings with numbering

    Example:
        >>> dump_to_reference_list(["First chunk", "Second chunk"])
        ['[1]  First chunk\\n=====\\n\\n', '[2]  Second chunk\\n=====\\n\\n']
    """
    return [f"[{i + 1}]  {d}{separator}" for i, d in enumerate(data)]


def _truncate(text: str, max_chars: int = 100) -> str:
    return f"{text[:max_chars]}..." if len(text) > max_chars else text


def dump_triplets(
    node: str,
    triplets: Sequence[Tuple[str, str, float]],
    node_type: Optional[str] = None,
) -> str:
    """Format the relationships around a node as structured text, grouped by label.

    Args:
        node (str): Display name of the central node.
        triplets (Sequence[Tuple[str, str, float]]): ``(label, neighbour, weight)`` tuples.
        node_type (Optional[str]): Type of the node, omitted when None.

    Returns:
        str: A block such as::

            **Node**: Alice
            **Type**: PERSON

            **Relationships**:
              met:
                - Bob (weight: 1.00)
    """
    parts = [f"**Node**: {node}"]
    if node_type:
        parts.append(f"**Type**: {node_type}")

    grouped: Dict[str, List[Tuple[str, float]]] = defaultdict(list)
    for label, neighbour, weight in triplets:
        grouped[label].append((neighbour, weight))

    if grouped:
        parts.append("\n**Relationships**:")
        for label, targets in grouped.items():
            parts.append(f"  {label}:")
            for neighbour, weight in targets:
                parts.append(f"    - {_truncate(neighbour)} (weight: {weight:.2f})")

    return "\n".join(parts)


####################################################################################################
# Response Models
####################################################################################################


class TAnswer(BaseModel):
    """Model for LLM-generated answers to user questions.

    Attributes:
        answer (str): The generated answer text
    """

    answer: str


class TSummary(BaseModel):
    """Model for the concise summary generated for a chunk."""

    summary: str = Field(..., description="A concise summary of the content")
